"""tests for the syntax tree rewriter"""

import ast
import textwrap

import pytest

from probecov.errors import UnsupportedNodeKind
from probecov.locations import LocationModel
from probecov.registry import PROBE_NAME, ProbeRegistry, activate, install_probe
from probecov.rewriter import NodeKind, Rewriter, node_kind


def run_instrumented(source, filename="sample.py"):
    """rewrite a module source, execute it and return (namespace, registry, tree, model)"""
    source = textwrap.dedent(source)
    model = LocationModel(filename, source)
    tree = ast.parse(source, filename)
    probed = []
    rewritten = Rewriter(model, on_probe=probed.append).rewrite(tree)
    ast.fix_missing_locations(rewritten)

    registry = ProbeRegistry("test")
    for location in probed:
        registry.register(location)
    install_probe()
    activate(registry)

    namespace = {}
    exec(compile(rewritten, filename, "exec"), namespace)
    return namespace, registry, tree, model


class Strange(ast.AST):
    """node type the rewriter has no rule for"""

    _fields = ()


class TestNodeKind:
    """test node classification"""

    def test_known_kinds(self):
        """test each variant is recognized"""
        call = ast.parse("f(x)").body[0].value
        assert node_kind(call) is NodeKind.CALL
        assert node_kind(ast.parse("def f(): pass").body[0]) is NodeKind.DEFINITION
        assert node_kind(ast.parse("lambda: 1").body[0].value) is NodeKind.DEFINITION
        assert node_kind(ast.parse("if x: pass").body[0]) is NodeKind.BLOCK
        assert node_kind(ast.parse("x").body[0].value) is NodeKind.LEAF
        assert node_kind(ast.parse("1").body[0].value) is NodeKind.LEAF
        assert node_kind(ast.parse("a + b").body[0].value) is NodeKind.LIST

    def test_unknown_kind_raises(self):
        """test unknown node types are rejected"""
        with pytest.raises(UnsupportedNodeKind) as exc_info:
            node_kind(Strange())
        assert "Strange" in str(exc_info.value)

    def test_rewrite_fails_on_unknown_kind(self):
        """test an unknown node deep in a tree aborts the rewrite"""
        model = LocationModel("sample.py", "x = 1\n")
        tree = ast.Module(body=[ast.Expr(value=Strange())], type_ignores=[])
        with pytest.raises(UnsupportedNodeKind):
            Rewriter(model).rewrite(tree)


class TestRewriter:
    """test probe insertion"""

    def test_semantics_preserved(self):
        """test instrumented code computes the same results"""
        source = """
            def compute(items, scale=2):
                total = 0
                for item in items:
                    if item % 2:
                        total += item * scale
                    elif item > 10:
                        continue
                    else:
                        total -= max(item, 1)
                return total, [abs(i) for i in items], {k: str(k) for k in items}

            def gen(n):
                for i in range(n):
                    yield len(str(i))

            def safe(x):
                try:
                    return 10 // x
                except ZeroDivisionError:
                    return None
                finally:
                    pass
        """
        plain = {}
        exec(textwrap.dedent(source), plain)
        namespace, _, _, _ = run_instrumented(source)

        for args in ([1, 2, 3, 12], [], [-5, 7]):
            assert namespace["compute"](args) == plain["compute"](args)
        assert list(namespace["gen"](12)) == list(plain["gen"](12))
        assert namespace["safe"](0) is None
        assert namespace["safe"](3) == 3

    def test_input_tree_not_modified(self):
        """test rewriting returns new nodes"""
        source = "def f(x):\n    return g(x) + 1\n"
        model = LocationModel("sample.py", source)
        tree = ast.parse(source)
        before = ast.dump(tree, include_attributes=True)
        Rewriter(model).rewrite(tree)
        assert ast.dump(tree, include_attributes=True) == before

    def test_branch_counts(self):
        """test if/else branches are counted separately"""
        source = """
            def sign(x):
                if x > 0:
                    return "pos"
                else:
                    return "neg"
        """
        namespace, registry, tree, model = run_instrumented(source)
        for x in (1, 2, -1, -2, -3):
            namespace["sign"](x)

        if_stmt = tree.body[0].body[0]
        pos = model.locate_statement(if_stmt.body[0])
        neg = model.locate_statement(if_stmt.orelse[0])
        assert registry[model.locate_statement(if_stmt)] == 5
        assert registry[pos] == 2
        assert registry[neg] == 3

    def test_call_counts(self):
        """test each call expression has its own probe"""
        source = """
            def add(a, b):
                return a + b

            def twice():
                return add(1, 2) + add(3, 4)
        """
        namespace, registry, tree, model = run_instrumented(source)
        assert namespace["twice"]() == 10
        ret = tree.body[1].body[0]
        first, second = ret.value.left, ret.value.right
        assert registry[model.locate(first)] == 1
        assert registry[model.locate(second)] == 1
        assert registry[model.locate_statement(tree.body[0].body[0])] == 2

    def test_call_statement_counted_once(self):
        """test a call used as a statement is not counted twice"""
        source = """
            seen = []

            def log(x):
                seen.append(x)
        """
        namespace, registry, tree, model = run_instrumented(source)
        namespace["log"](1)
        stmt = tree.body[1].body[0]
        assert model.locate_statement(stmt) == model.locate(stmt.value)
        assert registry[model.locate_statement(stmt)] == 1

    def test_unexecuted_locations_registered(self):
        """test probes that never fire are known with count 0"""
        source = """
            def f(x):
                if x:
                    return 1
                return 2
        """
        namespace, registry, tree, model = run_instrumented(source)
        namespace["f"](0)
        inner = tree.body[0].body[0].body[0]
        assert model.locate_statement(inner) in registry
        assert registry[model.locate_statement(inner)] == 0

    def test_docstring_not_probed(self):
        """test docstrings stay the first statement"""
        source = '''
            def f():
                """documented"""
                return 1
        '''
        namespace, registry, tree, model = run_instrumented(source)
        assert namespace["f"].__doc__ == "documented"
        assert model.locate_statement(tree.body[0].body[0]) not in registry

    def test_lambda_body(self):
        """test lambda bodies are counted"""
        source = """
            inc = lambda x: x + 1
        """
        namespace, registry, tree, model = run_instrumented(source)
        assert namespace["inc"](1) == 2
        assert namespace["inc"](2) == 3
        body = tree.body[0].value.body
        assert registry[model.locate(body)] == 2

    def test_comprehension_calls(self):
        """test calls inside comprehensions count every iteration"""
        source = """
            def squares(n):
                return [pow(i, 2) for i in range(n)]
        """
        namespace, registry, tree, model = run_instrumented(source)
        assert namespace["squares"](4) == [0, 1, 4, 9]
        comp = tree.body[0].body[0].value
        assert registry[model.locate(comp.elt)] == 4

    def test_probe_name_in_output(self):
        """test probes call the builtin probe by name with the location key"""
        source = "def f():\n    return 1\n"
        model = LocationModel("sample.py", source)
        rewritten = Rewriter(model).rewrite(ast.parse(source))
        names = {n.id for n in ast.walk(rewritten) if isinstance(n, ast.Name)}
        assert PROBE_NAME in names

    def test_instrument_body_rejects_classes(self):
        """test only functions and lambdas can be instrumented directly"""
        source = "class A:\n    pass\n"
        model = LocationModel("sample.py", source)
        with pytest.raises(UnsupportedNodeKind):
            Rewriter(model).instrument_body(ast.parse(source).body[0])

    def test_leaf_visitor(self):
        """test leaves are reported to the visitor"""
        source = "def f(x):\n    return x\n"
        model = LocationModel("sample.py", source)
        leaves = []
        Rewriter(model, leaf_visitor=leaves.append).rewrite(ast.parse(source))
        assert any(isinstance(leaf, ast.Name) and leaf.id == "x" for leaf in leaves)
