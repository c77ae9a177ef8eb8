"""turn live functions into instrumented code objects"""

import __future__
import ast
import linecache
import logging
from collections import defaultdict
from types import CodeType, FunctionType
from typing import Dict, List, Optional, Tuple

from .errors import SourceUnavailable
from .locations import LocationModel, SourceLocation
from .registry import ProbeRegistry
from .rewriter import Rewriter

logger = logging.getLogger(__name__)

FACTORY_NAME = "__probecov_factory__"

# (definition node, name of the innermost enclosing class or None)
Definition = Tuple[ast.AST, Optional[str]]


def _index_definitions(tree: ast.Module) -> Dict[Tuple[str, int], List[Definition]]:
    """map (code name, first line) to the definition nodes of a module"""
    index: Dict[Tuple[str, int], List[Definition]] = defaultdict(list)

    def visit(node: ast.AST, class_name: Optional[str]) -> None:
        for child in ast.iter_child_nodes(node):
            if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                # decorated functions report the first decorator line
                lines = {child.lineno}
                lines.update(d.lineno for d in child.decorator_list)
                for line in sorted(lines):
                    index[(child.name, line)].append((child, class_name))
                visit(child, class_name)
            elif isinstance(child, ast.Lambda):
                index[("<lambda>", child.lineno)].append((child, class_name))
                visit(child, class_name)
            elif isinstance(child, ast.ClassDef):
                visit(child, child.name)
            else:
                visit(child, class_name)

    visit(tree, None)
    return index


def _future_flags(code: CodeType) -> int:
    flags = 0
    for name in __future__.all_feature_names:
        if name == "nested_scopes":
            continue
        feature = getattr(__future__, name)
        if code.co_flags & feature.compiler_flag:
            flags |= feature.compiler_flag
    return flags


def _find_code(code: CodeType, name: str, firstlineno: int) -> Optional[CodeType]:
    for const in code.co_consts:
        if isinstance(const, CodeType):
            if const.co_name == name and const.co_firstlineno == firstlineno:
                return const
            found = _find_code(const, name, firstlineno)
            if found is not None:
                return found
    return None


def compile_definition(
    node: ast.AST, original: CodeType, class_name: Optional[str] = None
) -> CodeType:
    """
    compile a rewritten definition into a code object compatible with original

    The definition is compiled inside a factory function that declares the
    original free variables, so the new code expects the same closure cells.
    Methods are additionally wrapped in a class of the same name so private
    names are mangled the way they were originally. The factory is never run.
    """
    declared = [
        name for name in original.co_freevars if not (class_name and name == "__class__")
    ]
    header = [f"def {FACTORY_NAME}():"]
    if declared:
        header.append("    " + " = ".join(declared) + " = None")
    if class_name:
        header.append(f"    class {class_name}:")
        header.append("        pass")
    else:
        header.append("    pass")
    module = ast.parse("\n".join(header))

    inner = ast.Expr(value=node) if isinstance(node, ast.Lambda) else node
    if isinstance(inner, ast.Expr):
        ast.copy_location(inner, node)
    container = module.body[0]
    if class_name:
        container = container.body[-1]
    container.body[-1] = inner
    ast.fix_missing_locations(module)

    code = compile(
        module,
        original.co_filename,
        "exec",
        flags=_future_flags(original),
        dont_inherit=True,
    )
    found = _find_code(code, original.co_name, original.co_firstlineno)
    if found is None:
        raise SourceUnavailable(
            f"compiled definition of {original.co_name} not found in factory"
        )
    if hasattr(original, "co_qualname"):
        found = found.replace(co_qualname=original.co_qualname)
    return found


class Instrumenter:
    """
    rewrites the source of live functions

    parsed files are cached; every location probed by a successfully compiled
    definition is registered in the registry with count 0
    """

    def __init__(self, registry: ProbeRegistry):
        self.registry = registry
        self._files: Dict[str, Tuple[LocationModel, Dict]] = {}

    def _parsed(self, filename: str, module_globals=None) -> Tuple[LocationModel, Dict]:
        if filename not in self._files:
            lines = linecache.getlines(filename, module_globals)
            if not lines:
                raise SourceUnavailable(f"no source available for {filename}")
            try:
                tree = ast.parse("".join(lines), filename)
            except SyntaxError as e:
                raise SourceUnavailable(f"cannot parse {filename}: {e}") from e
            model = LocationModel(filename, lines)
            if not model.refined:
                logger.warning("no token data for %s, using statement spans", filename)
            self._files[filename] = (model, _index_definitions(tree))
        return self._files[filename]

    def find_definition(self, func: FunctionType) -> Definition:
        code = func.__code__
        _, index = self._parsed(code.co_filename, func.__globals__)
        candidates = []
        for candidate in index.get((code.co_name, code.co_firstlineno), []):
            if all(candidate[0] is not c[0] for c in candidates):
                candidates.append(candidate)
        if not candidates:
            raise SourceUnavailable(
                f"no definition of {code.co_name} at "
                f"{code.co_filename}:{code.co_firstlineno}"
            )
        if len(candidates) > 1:
            raise SourceUnavailable(
                f"ambiguous definition of {code.co_name} at "
                f"{code.co_filename}:{code.co_firstlineno}"
            )
        return candidates[0]

    def instrument(self, func: FunctionType) -> CodeType:
        """return the instrumented code for func without installing it"""
        node, class_name = self.find_definition(func)
        model, _ = self._parsed(func.__code__.co_filename)
        probed: List[SourceLocation] = []
        rewritten = Rewriter(model, on_probe=probed.append).instrument_body(node)
        code = compile_definition(rewritten, func.__code__, class_name)
        for location in probed:
            self.registry.register(location)
        return code

    def source_text(self, location: SourceLocation) -> str:
        cached = self._files.get(location.file)
        if cached is None:
            return LocationModel(location.file).source_text(location)
        return cached[0].source_text(location)
