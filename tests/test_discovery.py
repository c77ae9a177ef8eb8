"""tests for definition discovery"""

import inspect

import pytest

from probecov.config import CoverageConfig
from probecov.discovery import DispatchVariant, discover
from probecov.errors import UnresolvableDispatchTable


SOURCE = """\
import functools
from os.path import join


def plain(x, y=1):
    return x + y


@functools.singledispatch
def describe(value):
    return "object"


@describe.register(int)
def _describe_int(value):
    return "int"


def logged(f):
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        return f(*args, **kwargs)
    return wrapper


@logged
def wrapped(x):
    return x


class Shape:
    def area(self):
        return 0

    @staticmethod
    def unit():
        return 1

    @classmethod
    def make(cls):
        return cls()

    @property
    def name(self):
        return "shape"

    @functools.singledispatchmethod
    def scale(self, factor):
        return factor

    @scale.register(int)
    def _scale_int(self, factor):
        return factor * 2

    class Inner:
        def ping(self):
            return "pong"


class BrokenGeneric:
    def __init__(self):
        self.registry = None
        self.dispatch = None

    def __call__(self, value):
        return value


broken = BrokenGeneric()
"""


@pytest.fixture
def module(make_module):
    return make_module(SOURCE)


class TestDiscover:
    """test enumeration of instrumentable definitions"""

    def test_plain_functions(self, module):
        """test module level functions are found"""
        result = discover(module)
        plain = {r.name for r in result.by_variant(DispatchVariant.PLAIN)}
        prefix = module.__name__
        assert f"{prefix}.plain" in plain
        assert f"{prefix}.logged" in plain
        # imported functions belong to another file
        assert f"{prefix}.join" not in plain

    def test_wrapped_functions_followed(self, module):
        """test decorated functions are found through __wrapped__"""
        result = discover(module)
        targets = {r.target for r in result}
        assert module.wrapped.__wrapped__ in targets

    def test_generic_functions(self, module):
        """test singledispatch implementations are found in their registry"""
        result = discover(module)
        generic = {r.name: r for r in result.by_variant(DispatchVariant.GENERIC)}
        prefix = module.__name__
        assert f"{prefix}.describe[object]" in generic
        assert f"{prefix}.describe[int]" in generic
        record = generic[f"{prefix}.describe[int]"]
        assert record.target is module._describe_int
        assert record.scope is module.describe.registry
        assert record.owner is module.describe

    def test_generic_not_duplicated_as_plain(self, module):
        """test a function reachable two ways is recorded once"""
        result = discover(module)
        targets = [r.target for r in result]
        assert len(targets) == len(set(map(id, targets)))

    def test_stateful_methods(self, module):
        """test methods of classes are found with their class as owner"""
        result = discover(module)
        stateful = {r.name: r for r in result.by_variant(DispatchVariant.STATEFUL)}
        prefix = f"{module.__name__}.Shape"
        for name in ("area", "unit", "make", "name.fget", "Inner.ping"):
            assert f"{prefix}.{name}" in stateful
        assert stateful[f"{prefix}.area"].owner is module.Shape
        assert stateful[f"{prefix}.unit"].target is module.Shape.unit

    def test_singledispatchmethod(self, module):
        """test singledispatchmethod implementations are found"""
        result = discover(module)
        names = result.names()
        assert f"{module.__name__}.Shape.scale[int]" in names

    def test_record_properties(self, module):
        """test records expose what replacement needs"""
        result = discover(module)
        record = next(r for r in result if r.name.endswith(".plain"))
        assert list(record.parameters.parameters) == ["x", "y"]
        assert record.parameters.parameters["y"].default == 1
        assert record.enclosing_scope is vars(module)
        assert record.closure is None
        assert record.body is module.plain.__code__
        assert record.identity is module.plain
        assert record.filename == module.__file__

    def test_unresolvable_dispatch_table(self, module):
        """test unreadable dispatch tables are warnings, not failures"""
        result = discover(module)
        assert len(result.warnings) == 1
        assert isinstance(result.warnings[0], UnresolvableDispatchTable)
        assert "broken" in str(result.warnings[0])
        assert len(result) > 0

    def test_excluded_definitions(self, module):
        """test configuration can drop definitions"""
        config = CoverageConfig(exclude_definitions=["*.Shape.*"])
        result = discover(module, config)
        assert not any(".Shape." in name for name in result.names())
        assert any(name.endswith(".plain") for name in result.names())

    def test_module_without_file(self):
        """test modules without a source file yield nothing"""
        import types

        assert len(discover(types.ModuleType("empty"))) == 0

    def test_instances_share_methods(self, module):
        """test methods are stored once on the class"""
        result = discover(module)
        area = next(r for r in result if r.name.endswith(".Shape.area"))
        assert inspect.unwrap(module.Shape().area.__func__) is area.target
