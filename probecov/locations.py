"""
Source locations for instrumented syntax nodes.

A SourceLocation is the only key under which execution counts are stored, so
it has to be stable: the same source text always produces the same keys, in
every process. Lines are 1-based, columns are 1-based character columns and
the end column is inclusive. A location whose columns are both 0 stands for a
whole line (the granularity of native coverage records).

Compound statements (if/for/while/with/try/match and nested definitions) span
every line of their controlled blocks in the ast. Counting the construct under
that span would mark untaken branches as covered, so LocationModel re-derives
the header span (statement start through the header colon) from tokenize
output. If the source cannot be tokenized the model falls back to the coarse
statement span.
"""

import ast
import bisect
import dataclasses
import io
import linecache
import tokenize
from typing import List, Optional, Sequence, Tuple, Union

_OPENING = "([{"
_CLOSING = ")]}"


@dataclasses.dataclass(frozen=True, order=True)
class SourceLocation:
    """Stable identity of an instrumentable span of source text."""

    file: str
    start_line: int
    start_col: int
    end_line: int
    end_col: int

    @property
    def key(self) -> str:
        """Serializes the location as file:startLine:startCol:endLine:endCol."""
        return (
            f"{self.file}:{self.start_line}:{self.start_col}"
            f":{self.end_line}:{self.end_col}"
        )

    @classmethod
    def from_key(cls, key: str) -> "SourceLocation":
        """Parses a key produced by `key`. The file part may contain colons."""
        try:
            file, start_line, start_col, end_line, end_col = key.rsplit(":", 4)
            return cls(
                file, int(start_line), int(start_col), int(end_line), int(end_col)
            )
        except ValueError as e:
            raise ValueError(f"malformed location key {key!r}: {e}") from e

    @classmethod
    def for_line(cls, file: str, line: int) -> "SourceLocation":
        """Returns the whole-line location used for native records."""
        return cls(file, line, 0, line, 0)

    @property
    def whole_line(self) -> bool:
        return self.start_col == 0 and self.end_col == 0

    def covers_line(self, line: int) -> bool:
        return self.start_line <= line <= self.end_line


# statements whose ast span includes the blocks they control
_COMPOUND = tuple(
    getattr(ast, name)
    for name in (
        "If",
        "For",
        "AsyncFor",
        "While",
        "With",
        "AsyncWith",
        "Try",
        "TryStar",
        "Match",
        "FunctionDef",
        "AsyncFunctionDef",
        "ClassDef",
    )
    if hasattr(ast, name)
)


class LocationModel:
    """Computes SourceLocations for the nodes of one source file."""

    def __init__(
        self, filename: str, source: Union[str, Sequence[str], None] = None
    ):
        self.filename = filename
        if source is None:
            self._lines = linecache.getlines(filename)
        elif isinstance(source, str):
            self._lines = source.splitlines(keepends=True)
        else:
            self._lines = list(source)
        self._colons = self._scan_colons()

    @property
    def refined(self) -> bool:
        """True when header spans can be derived from token positions."""
        return self._colons is not None

    def _scan_colons(self) -> Optional[List[Tuple[int, int]]]:
        # positions of ':' tokens outside any bracket, sorted by (line, col)
        if not self._lines:
            return None
        colons = []
        depth = 0
        readline = io.StringIO("".join(self._lines)).readline
        try:
            for tok in tokenize.generate_tokens(readline):
                if tok.type != tokenize.OP:
                    continue
                if tok.string in _OPENING:
                    depth += 1
                elif tok.string in _CLOSING:
                    depth = max(depth - 1, 0)
                elif tok.string == ":" and depth == 0:
                    colons.append(tok.start)
        except (tokenize.TokenError, SyntaxError):
            return None
        return colons

    def _char_col(self, lineno: int, byte_col: int) -> int:
        # ast reports utf-8 byte offsets; keys use character columns
        if 0 < lineno <= len(self._lines):
            encoded = self._lines[lineno - 1].encode("utf-8")
            return len(encoded[:byte_col].decode("utf-8", errors="replace"))
        return byte_col

    def locate(self, node: ast.AST) -> Optional[SourceLocation]:
        """Returns the full span of a node, or None if it carries no position."""
        lineno = getattr(node, "lineno", None)
        if lineno is None:
            return None
        col = getattr(node, "col_offset", 0) or 0
        end_lineno = getattr(node, "end_lineno", None)
        end_col = getattr(node, "end_col_offset", None)
        if end_lineno is None or end_col is None:
            end_lineno, end_col = lineno, col + 1
        return SourceLocation(
            self.filename,
            lineno,
            self._char_col(lineno, col) + 1,
            end_lineno,
            self._char_col(end_lineno, end_col),
        )

    def locate_statement(self, stmt: ast.stmt) -> Optional[SourceLocation]:
        """
        Returns the location counted for a statement.

        Simple statements use their full span. Compound statements use the
        header span so that their controlled blocks are only covered by the
        locations of the statements inside them.
        """
        full = self.locate(stmt)
        if full is None or not isinstance(stmt, _COMPOUND) or not self.refined:
            return full

        start = _header_scan_start(stmt)
        line, col = start
        char_start = (line, self._char_col(line, col))
        index = bisect.bisect_left(self._colons, char_start)
        if index == len(self._colons):
            return full
        colon_line, colon_col = self._colons[index]
        if (colon_line, colon_col + 1) > (full.end_line, full.end_col):
            return full
        return SourceLocation(
            full.file, full.start_line, full.start_col, colon_line, colon_col + 1
        )

    def source_text(self, location: SourceLocation) -> str:
        """Returns the text covered by a location, or '' if it is unavailable."""
        if not self._lines or location.end_line > len(self._lines):
            return ""
        if location.whole_line:
            return self._lines[location.start_line - 1].rstrip("\r\n")
        lines = [
            line.rstrip("\r\n")
            for line in self._lines[location.start_line - 1 : location.end_line]
        ]
        if len(lines) == 1:
            return lines[0][location.start_col - 1 : location.end_col]
        lines[0] = lines[0][location.start_col - 1 :]
        lines[-1] = lines[-1][: location.end_col]
        return "\n".join(lines)


def _header_scan_start(stmt: ast.stmt) -> Tuple[int, int]:
    """Position after which the first top-level ':' ends the statement header."""
    last = None
    if isinstance(stmt, (ast.If, ast.While)):
        last = stmt.test
    elif isinstance(stmt, (ast.For, ast.AsyncFor)):
        last = stmt.iter
    elif isinstance(stmt, (ast.With, ast.AsyncWith)):
        item = stmt.items[-1]
        last = item.optional_vars or item.context_expr
    elif hasattr(ast, "Match") and isinstance(stmt, ast.Match):
        last = stmt.subject
    elif isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
        last = stmt.returns
    elif isinstance(stmt, ast.ClassDef):
        bases = list(stmt.bases) + [kw.value for kw in stmt.keywords]
        last = bases[-1] if bases else None

    if last is not None and getattr(last, "end_lineno", None) is not None:
        return last.end_lineno, last.end_col_offset
    return stmt.lineno, stmt.col_offset
