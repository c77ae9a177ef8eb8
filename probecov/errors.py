"""exception hierarchy for instrumentation, replacement and aggregation"""


class ProbeCovError(Exception):
    """base class for all probecov errors"""

    pass


class UnsupportedNodeKind(ProbeCovError):
    """the rewriter met a syntax node it has no rule for"""

    def __init__(self, node):
        self.node = node
        lineno = getattr(node, "lineno", None)
        where = f" at line {lineno}" if lineno is not None else ""
        super().__init__(f"unsupported node kind {type(node).__name__}{where}")


class UnresolvableDispatchTable(ProbeCovError):
    """a generic function or class method table could not be enumerated"""

    pass


class ReplacementFailed(ProbeCovError):
    """the body of a definition could not be swapped in place"""

    pass


class RestoreFailed(ProbeCovError):
    """an original body could not be put back after the workload"""

    pass


class FlushFailed(ProbeCovError):
    """a process could not write its probe dump"""

    pass


class SourceUnavailable(ProbeCovError):
    """the syntax tree of a definition could not be located"""

    pass


class NativeCoverageError(ProbeCovError):
    """a native coverage artifact could not be parsed"""

    pass
