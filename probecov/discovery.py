"""locate the definitions of a module that can be instrumented"""

import dataclasses
import functools
import inspect
import logging
import os
from enum import Enum
from types import FunctionType, ModuleType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set

from .config import CoverageConfig
from .errors import UnresolvableDispatchTable

logger = logging.getLogger(__name__)


class DispatchVariant(Enum):
    """how a definition is reached by its callers"""

    PLAIN = "plain"  # name bound in a module namespace
    GENERIC = "generic"  # implementation held in a singledispatch registry
    STATEFUL = "stateful"  # method stored on a class shared by its instances


@dataclasses.dataclass
class DefinitionRecord:
    """one function found by discovery, in the shape replacement expects"""

    name: str
    scope: Mapping[str, Any]
    target: FunctionType
    variant: DispatchVariant
    owner: Any = None

    @property
    def identity(self) -> FunctionType:
        return self.target

    @property
    def parameters(self) -> inspect.Signature:
        return inspect.signature(self.target)

    @property
    def body(self):
        return self.target.__code__

    @property
    def enclosing_scope(self) -> Dict[str, Any]:
        return self.target.__globals__

    @property
    def closure(self):
        return self.target.__closure__

    @property
    def attributes(self) -> Dict[str, Any]:
        return self.target.__dict__

    @property
    def filename(self) -> str:
        return self.target.__code__.co_filename


@dataclasses.dataclass
class DiscoveryResult:
    records: List[DefinitionRecord] = dataclasses.field(default_factory=list)
    warnings: List[UnresolvableDispatchTable] = dataclasses.field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[DefinitionRecord]:
        return iter(self.records)

    def by_variant(self, variant: DispatchVariant) -> List[DefinitionRecord]:
        return [r for r in self.records if r.variant is variant]

    def names(self) -> List[str]:
        return [r.name for r in self.records]


def _normalize(path: str) -> str:
    return os.path.normcase(os.path.abspath(path))


def _instance_dict(value: Any) -> Dict[str, Any]:
    try:
        return vars(value)
    except TypeError:
        return {}


def _is_generic(value: Any) -> bool:
    attrs = _instance_dict(value)
    return callable(value) and "registry" in attrs and "dispatch" in attrs


def _type_name(cls: Any) -> str:
    return getattr(cls, "__qualname__", None) or repr(cls)


class _Discovery:
    def __init__(self, module: ModuleType, config: Optional[CoverageConfig]):
        self.module = module
        self.config = config
        filename = getattr(module, "__file__", None)
        self.filename = _normalize(filename) if filename else None
        self.result = DiscoveryResult()
        self._seen: Set[int] = set()
        self._classes: Set[int] = set()

    def run(self) -> DiscoveryResult:
        if self.filename is None:
            return self.result
        prefix = self.module.__name__
        namespace = vars(self.module)
        for name, value in list(namespace.items()):
            qualified = f"{prefix}.{name}"
            if isinstance(value, type):
                if value.__module__ == prefix and "<locals>" not in value.__qualname__:
                    self._visit_class(value, f"{prefix}.{value.__qualname__}")
            elif _is_generic(value):
                self._visit_generic(qualified, value)
            else:
                self._add(qualified, namespace, value, DispatchVariant.PLAIN, self.module)
        return self.result

    def _defined_here(self, func: FunctionType) -> bool:
        return _normalize(func.__code__.co_filename) == self.filename

    def _add(self, name, scope, value, variant, owner) -> None:
        # follow functools.wraps chains down to the function written in this file
        visited: Set[int] = set()
        while value is not None and id(value) not in visited:
            visited.add(id(value))
            if (
                isinstance(value, FunctionType)
                and id(value) not in self._seen
                and self._defined_here(value)
            ):
                self._seen.add(id(value))
                if self.config is None or self.config.matches_definition(name):
                    self.result.records.append(
                        DefinitionRecord(name, scope, value, variant, owner)
                    )
            value = _instance_dict(value).get("__wrapped__")

    def _warn(self, message: str) -> None:
        warning = UnresolvableDispatchTable(message)
        logger.warning("%s", warning)
        self.result.warnings.append(warning)

    def _visit_generic(self, name: str, generic: Any) -> None:
        try:
            table = generic.registry
            items = list(table.items())
        except (AttributeError, TypeError) as e:
            self._warn(f"dispatch table of {name} cannot be read: {e}")
            return
        for cls, implementation in items:
            self._add(
                f"{name}[{_type_name(cls)}]",
                table,
                implementation,
                DispatchVariant.GENERIC,
                generic,
            )

    def _visit_class(self, cls: type, qualified: str) -> None:
        if id(cls) in self._classes:
            return
        self._classes.add(id(cls))
        try:
            namespace = dict(vars(cls))
        except TypeError as e:
            self._warn(f"method table of {qualified} cannot be read: {e}")
            return

        for name, value in namespace.items():
            full = f"{qualified}.{name}"
            if isinstance(value, (staticmethod, classmethod)):
                self._add(full, namespace, value.__func__, DispatchVariant.STATEFUL, cls)
            elif isinstance(value, property):
                for accessor in ("fget", "fset", "fdel"):
                    func = getattr(value, accessor)
                    if func is not None:
                        self._add(f"{full}.{accessor}", namespace, func, DispatchVariant.STATEFUL, cls)
            elif isinstance(value, functools.cached_property):
                self._add(full, namespace, value.func, DispatchVariant.STATEFUL, cls)
            elif isinstance(value, functools.singledispatchmethod):
                dispatcher = getattr(value, "dispatcher", None)
                if dispatcher is None:
                    self._warn(f"{full} has no dispatcher")
                else:
                    self._visit_generic(full, dispatcher)
            elif _is_generic(value):
                self._visit_generic(full, value)
            elif isinstance(value, type):
                if value.__qualname__.startswith(cls.__qualname__ + "."):
                    self._visit_class(value, full)
            else:
                self._add(full, namespace, value, DispatchVariant.STATEFUL, cls)


def discover(module: ModuleType, config: Optional[CoverageConfig] = None) -> DiscoveryResult:
    """
    enumerate plain functions, singledispatch implementations and class
    methods written in the module's source file

    unreadable dispatch tables are reported as warnings on the result
    """
    return _Discovery(module, config).run()
