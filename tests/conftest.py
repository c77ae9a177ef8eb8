"""shared fixtures for probecov tests"""

import importlib.util
import sys
import textwrap
import uuid

import pytest

from probecov.registry import activate


@pytest.fixture(autouse=True)
def no_active_registry():
    """make sure a test never leaves a registry counting"""
    yield
    activate(None)


@pytest.fixture
def make_module(tmp_path):
    """write source to a uniquely named module under tmp_path and import it"""
    created = []

    def _make(source, name=None):
        name = name or f"sample_{uuid.uuid4().hex[:8]}"
        path = tmp_path / f"{name}.py"
        path.write_text(textwrap.dedent(source))
        spec = importlib.util.spec_from_file_location(name, path)
        module = importlib.util.module_from_spec(spec)
        sys.modules[name] = module
        spec.loader.exec_module(module)
        created.append(name)
        return module

    yield _make
    for name in created:
        sys.modules.pop(name, None)
