"""
In-place replacement of function bodies.

A python function object reaches its body through the `__code__` slot, and
every reference to the function (module attributes, class dictionaries,
dispatch registries, bound methods, closures holding it) goes through that
same object. Assigning `__code__` therefore changes what every existing
reference runs, while the parameter defaults, closure cells, globals,
attributes, name and docstring stay exactly as they were.
"""

import logging
from types import CodeType, FunctionType
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import ReplacementFailed, RestoreFailed

logger = logging.getLogger(__name__)


class Replacement:
    """a swapped body, remembering the original so it can be put back"""

    def __init__(
        self,
        name: str,
        scope: Optional[Mapping[str, Any]],
        target: FunctionType,
        original: CodeType,
        replacement: CodeType,
    ):
        self.name = name
        self.scope = scope
        self.target = target
        self.original = original
        self.replacement = replacement

    @property
    def active(self) -> bool:
        return self.target.__code__ is self.replacement

    def apply(self) -> None:
        self.target.__code__ = self.replacement

    def restore(self) -> None:
        """put the original body back; restoring twice is a no-op"""
        if self.target.__code__ is self.original:
            return
        try:
            self.target.__code__ = self.original
        except (TypeError, ValueError) as e:
            raise RestoreFailed(f"could not restore {self.name}: {e}") from e

    def __repr__(self) -> str:
        state = "active" if self.active else "restored"
        return f"Replacement({self.name!r}, {state})"


def _code_of(new: Union[CodeType, FunctionType]) -> CodeType:
    if isinstance(new, CodeType):
        return new
    if isinstance(new, FunctionType):
        return new.__code__
    raise ReplacementFailed(f"replacement body must be code or a function, not {type(new).__name__}")


def _check(name: str, target: Any, code: CodeType) -> None:
    if not isinstance(target, FunctionType):
        raise ReplacementFailed(
            f"{name} is a {type(target).__name__}, only python functions can be replaced"
        )
    if code.co_freevars != target.__code__.co_freevars:
        raise ReplacementFailed(
            f"{name}: closure layout differs "
            f"({target.__code__.co_freevars} != {code.co_freevars})"
        )


def replace(
    name: str,
    scope: Optional[Mapping[str, Any]],
    old: FunctionType,
    new: Union[CodeType, FunctionType],
) -> Replacement:
    """
    make every call path reaching `old` run the body of `new`

    `scope` is the namespace `name` was discovered in and is only kept for
    reporting. All checks happen before the single assignment, so a failure
    leaves `old` untouched.
    """
    code = _code_of(new)
    _check(name, old, code)
    replacement = Replacement(name, scope, old, old.__code__, code)
    try:
        replacement.apply()
    except (TypeError, ValueError) as e:
        raise ReplacementFailed(f"could not replace {name}: {e}") from e
    logger.debug("replaced body of %s", name)
    return replacement


class ReplacementLedger:
    """
    every replacement made during an instrumentation pass

    the first body seen for a function is kept as its original, so replacing
    the same function again never loses the pristine body
    """

    def __init__(self):
        self._entries: Dict[int, Replacement] = {}
        self.warnings: List[RestoreFailed] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, target: Any) -> bool:
        return id(target) in self._entries

    def __iter__(self):
        return iter(self._entries.values())

    def replace(
        self,
        name: str,
        scope: Optional[Mapping[str, Any]],
        old: FunctionType,
        new: Union[CodeType, FunctionType],
    ) -> Replacement:
        existing = self._entries.get(id(old))
        if existing is not None:
            code = _code_of(new)
            _check(name, old, code)
            previous = existing.replacement
            existing.replacement = code
            try:
                existing.apply()
            except (TypeError, ValueError) as e:
                existing.replacement = previous
                raise ReplacementFailed(f"could not replace {name}: {e}") from e
            return existing
        replacement = replace(name, scope, old, new)
        self._entries[id(old)] = replacement
        return replacement

    def restore_all(self) -> List[RestoreFailed]:
        """restore every entry; failures are logged and returned, not raised"""
        failures = []
        for replacement in self._entries.values():
            try:
                replacement.restore()
            except RestoreFailed as e:
                logger.warning("%s", e)
                failures.append(e)
        self.warnings.extend(failures)
        return failures
