"""
Recursive rewrite of python syntax trees that adds execution probes.

Every node is classified into one of a closed set of kinds:

    LEAF        constants, names, operators, imports, patterns...
                returned unchanged
    CALL        ast.Call
                becomes (__probecov__(key), <call>)[-1]
    DEFINITION  def / async def / lambda / class
                body, defaults, decorators and bases are rewritten,
                parameters and annotations are left alone
    BLOCK       statements owning statement lists (if, for, try, ...)
                every statement in a list is preceded by a probe statement
    LIST        any other composite node; children rewritten in order

A node type outside these tables raises UnsupportedNodeKind: skipping it
could hide calls, and an uninstrumented call is a coverage gap nobody sees.
The input tree is never modified, rewritten nodes are new objects.
"""

import ast
from enum import Enum
from typing import Callable, Dict, List, Optional

from .errors import UnsupportedNodeKind
from .locations import LocationModel, SourceLocation
from .registry import PROBE_NAME


class NodeKind(Enum):
    """variants the rewriter distinguishes"""

    LEAF = "leaf"
    CALL = "call"
    DEFINITION = "definition"
    BLOCK = "block"
    LIST = "list"


def _kinds(*names):
    # node classes missing from the running python version are ignored
    return tuple(getattr(ast, name) for name in names if hasattr(ast, name))


_LEAF = _kinds(
    "Constant",
    "Name",
    "expr_context",
    "boolop",
    "operator",
    "unaryop",
    "cmpop",
    "alias",
    "Pass",
    "Break",
    "Continue",
    "Global",
    "Nonlocal",
    "Import",
    "ImportFrom",
    "pattern",
    "TypeAlias",
    "type_param",
    "TypeIgnore",
)
_DEFINITION = _kinds("FunctionDef", "AsyncFunctionDef", "Lambda", "ClassDef")
_BLOCK = _kinds(
    "Module",
    "If",
    "For",
    "AsyncFor",
    "While",
    "With",
    "AsyncWith",
    "Try",
    "TryStar",
    "Match",
    "ExceptHandler",
    "match_case",
)
_LIST = _kinds(
    "Expr",
    "Return",
    "Delete",
    "Assign",
    "AugAssign",
    "AnnAssign",
    "Raise",
    "Assert",
    "BoolOp",
    "NamedExpr",
    "BinOp",
    "UnaryOp",
    "IfExp",
    "Dict",
    "Set",
    "ListComp",
    "SetComp",
    "DictComp",
    "GeneratorExp",
    "Await",
    "Yield",
    "YieldFrom",
    "Compare",
    "FormattedValue",
    "JoinedStr",
    "Interpolation",
    "TemplateStr",
    "Attribute",
    "Subscript",
    "Starred",
    "List",
    "Tuple",
    "Slice",
    "comprehension",
    "keyword",
    "arguments",
    "arg",
    "withitem",
)

# evaluated lazily or never at run time; probes there would never fire
_UNTOUCHED_FIELDS = frozenset(("annotation", "returns", "type_params", "type_comment"))


def node_kind(node: ast.AST) -> NodeKind:
    """classify a node, raising UnsupportedNodeKind for unknown node types"""
    if isinstance(node, ast.Call):
        return NodeKind.CALL
    if isinstance(node, _DEFINITION):
        return NodeKind.DEFINITION
    if isinstance(node, _BLOCK):
        return NodeKind.BLOCK
    if isinstance(node, _LEAF):
        return NodeKind.LEAF
    if isinstance(node, _LIST):
        return NodeKind.LIST
    raise UnsupportedNodeKind(node)


def _rebuild(node: ast.AST, changes: Dict[str, object]) -> ast.AST:
    """copy of node with some fields replaced, keeping its position"""
    fields = {name: changes.get(name, getattr(node, name, None)) for name in node._fields}
    new = type(node)(**fields)
    for attr in node._attributes:
        if hasattr(node, attr):
            setattr(new, attr, getattr(node, attr))
    return new


def _stamp(anchor: ast.AST, *nodes: ast.AST) -> None:
    for node in nodes:
        ast.copy_location(node, anchor)


def _is_docstring(stmt: ast.stmt) -> bool:
    return (
        isinstance(stmt, ast.Expr)
        and isinstance(stmt.value, ast.Constant)
        and isinstance(stmt.value.value, str)
    )


def _never_probed(stmt: ast.stmt) -> bool:
    # declarations, and future imports which must stay first in a module
    if isinstance(stmt, (ast.Global, ast.Nonlocal)):
        return True
    return isinstance(stmt, ast.ImportFrom) and stmt.module == "__future__"


class Rewriter:
    """
    instruments syntax trees of one source file

    on_probe is called with the location of every probe emitted, which is how
    the registry learns about locations that may never execute
    """

    def __init__(
        self,
        model: LocationModel,
        on_probe: Optional[Callable[[SourceLocation], None]] = None,
        leaf_visitor: Optional[Callable[[ast.AST], None]] = None,
    ):
        self.model = model
        self.on_probe = on_probe
        self.leaf_visitor = leaf_visitor

    def rewrite(self, node: ast.AST) -> ast.AST:
        kind = node_kind(node)
        if kind is NodeKind.LEAF:
            if self.leaf_visitor is not None:
                self.leaf_visitor(node)
            return node
        if kind is NodeKind.CALL:
            return self._rewrite_call(node)
        if kind is NodeKind.DEFINITION:
            return self._rewrite_definition(node)
        if kind is NodeKind.BLOCK and isinstance(node, ast.Module):
            return _rebuild(node, {"body": self.rewrite_block(node.body, docstring=True)})
        return self._rewrite_fields(node)

    def instrument_body(self, definition: ast.AST) -> ast.AST:
        """
        rewrite only the body of an outermost definition

        its decorators and default values already ran when the live function
        was created, probes placed there could never fire
        """
        if isinstance(definition, ast.Lambda):
            return _rebuild(definition, {"body": self._rewrite_lambda_body(definition.body)})
        if isinstance(definition, (ast.FunctionDef, ast.AsyncFunctionDef)):
            return _rebuild(
                definition, {"body": self.rewrite_block(definition.body, docstring=True)}
            )
        raise UnsupportedNodeKind(definition)

    def rewrite_block(self, stmts: List[ast.stmt], docstring: bool = False) -> List[ast.stmt]:
        """probe and rewrite a statement list, keeping order"""
        out: List[ast.stmt] = []
        for index, stmt in enumerate(stmts):
            if (index == 0 and docstring and _is_docstring(stmt)) or _never_probed(stmt):
                out.append(stmt)
                continue
            location = self.model.locate_statement(stmt)
            if location is not None:
                out.append(self._probe_statement(location, stmt))
            out.append(self._rewrite_statement(stmt, location))
        return out

    def _rewrite_statement(
        self, stmt: ast.stmt, location: Optional[SourceLocation]
    ) -> ast.stmt:
        # `f(x)` as a statement is counted once, by its statement probe
        if (
            isinstance(stmt, ast.Expr)
            and isinstance(stmt.value, ast.Call)
            and location is not None
            and self.model.locate(stmt.value) == location
        ):
            return _rebuild(stmt, {"value": self._rewrite_call(stmt.value, probe=False)})
        return self.rewrite(stmt)

    def _rewrite_fields(self, node: ast.AST) -> ast.AST:
        changes: Dict[str, object] = {}
        for name, value in ast.iter_fields(node):
            if name in _UNTOUCHED_FIELDS:
                continue
            if isinstance(value, list):
                if value and all(isinstance(item, ast.stmt) for item in value):
                    changes[name] = self.rewrite_block(value)
                else:
                    changes[name] = [
                        self.rewrite(item) if isinstance(item, ast.AST) else item
                        for item in value
                    ]
            elif isinstance(value, ast.AST):
                changes[name] = self.rewrite(value)
        return _rebuild(node, changes)

    def _rewrite_call(self, node: ast.Call, probe: bool = True) -> ast.expr:
        rebuilt = self._rewrite_fields(node)
        location = self.model.locate(node) if probe else None
        if location is None:
            return rebuilt
        return self._sequence(location, rebuilt, node)

    def _rewrite_definition(self, node: ast.AST) -> ast.AST:
        if isinstance(node, ast.Lambda):
            return _rebuild(
                node,
                {
                    "args": self._rewrite_arguments(node.args),
                    "body": self._rewrite_lambda_body(node.body),
                },
            )
        decorators = [self.rewrite(d) for d in node.decorator_list]
        body = self.rewrite_block(node.body, docstring=True)
        if isinstance(node, ast.ClassDef):
            return _rebuild(
                node,
                {
                    "bases": [self.rewrite(b) for b in node.bases],
                    "keywords": [self.rewrite(k) for k in node.keywords],
                    "decorator_list": decorators,
                    "body": body,
                },
            )
        return _rebuild(
            node,
            {
                "args": self._rewrite_arguments(node.args),
                "decorator_list": decorators,
                "body": body,
            },
        )

    def _rewrite_arguments(self, args: ast.arguments) -> ast.arguments:
        # parameter names stay as they are, only default values are code
        return _rebuild(
            args,
            {
                "defaults": [self.rewrite(d) for d in args.defaults],
                "kw_defaults": [
                    self.rewrite(d) if d is not None else None for d in args.kw_defaults
                ],
            },
        )

    def _rewrite_lambda_body(self, body: ast.expr) -> ast.expr:
        if isinstance(body, ast.Call):
            return self.rewrite(body)
        rebuilt = self.rewrite(body)
        location = self.model.locate(body)
        if location is None:
            return rebuilt
        return self._sequence(location, rebuilt, body)

    def _probe_call(self, location: SourceLocation, anchor: ast.AST) -> ast.Call:
        if self.on_probe is not None:
            self.on_probe(location)
        name = ast.Name(id=PROBE_NAME, ctx=ast.Load())
        key = ast.Constant(value=location.key)
        call = ast.Call(func=name, args=[key], keywords=[])
        _stamp(anchor, name, key, call)
        return call

    def _probe_statement(self, location: SourceLocation, anchor: ast.stmt) -> ast.Expr:
        stmt = ast.Expr(value=self._probe_call(location, anchor))
        _stamp(anchor, stmt)
        return stmt

    def _sequence(self, location: SourceLocation, value: ast.expr, anchor: ast.AST) -> ast.expr:
        # the tuple evaluates left to right, only the last element is kept
        pair = ast.Tuple(elts=[self._probe_call(location, anchor), value], ctx=ast.Load())
        last = ast.Constant(value=-1)
        subscript = ast.Subscript(value=pair, slice=last, ctx=ast.Load())
        _stamp(anchor, pair, last, subscript)
        return subscript
