"""tests for probe registries and dumps"""

import builtins
import json

import pytest

from probecov.errors import FlushFailed
from probecov.locations import SourceLocation
from probecov.registry import (
    MARKER_SUFFIX,
    PROBE_NAME,
    ProbeRegistry,
    activate,
    active,
    install_probe,
    load_dump,
    probe,
)

LOC_A = SourceLocation("pkg/mod.py", 2, 5, 2, 16)
LOC_B = SourceLocation("pkg/mod.py", 3, 5, 3, 12)


class TestProbeRegistry:
    """test counting"""

    def test_register_starts_at_zero(self):
        """test registered locations are reported with count 0"""
        registry = ProbeRegistry("p1")
        key = registry.register(LOC_A)
        assert key == LOC_A.key
        assert LOC_A in registry
        assert registry[LOC_A] == 0
        assert len(registry) == 1

    def test_count(self):
        """test counting by key"""
        registry = ProbeRegistry("p1")
        registry.register(LOC_A)
        for _ in range(3):
            registry.count(LOC_A.key)
        assert registry[LOC_A] == 3
        assert registry[LOC_A.key] == 3
        assert registry[LOC_B] == 0

    def test_register_keeps_counts(self):
        """test registering an executed location again does not reset it"""
        registry = ProbeRegistry("p1")
        registry.count(LOC_A.key)
        registry.register(LOC_A)
        assert registry[LOC_A] == 1

    def test_probe_callable(self):
        """test probes are zero-argument callables"""
        registry = ProbeRegistry("p1")
        counter = registry.probe(LOC_B)
        counter()
        counter()
        assert registry[LOC_B] == 2
        assert counter.key == LOC_B.key

    def test_fresh_copy(self):
        """test fork copies keep keys, drop counts and change identity"""
        registry = ProbeRegistry("p1")
        registry.count(LOC_A.key)
        copy = registry.fresh_copy()
        assert copy.process_id != registry.process_id
        assert copy[LOC_A] == 0
        assert LOC_A in copy
        assert registry[LOC_A] == 1

    def test_process_ids_unique(self):
        """test generated process ids differ"""
        assert ProbeRegistry().process_id != ProbeRegistry().process_id


class TestDumps:
    """test the on-disk format"""

    def test_dump_and_load(self, tmp_path):
        """test dumps are JSON keyed by location"""
        registry = ProbeRegistry("host.1.abc")
        registry.register(LOC_B)
        registry.count(LOC_A.key)
        path = registry.dump(tmp_path)
        assert path.name == "host.1.abc.json"
        assert json.loads(path.read_text()) == {LOC_A.key: 1, LOC_B.key: 0}
        assert load_dump(path) == registry.to_dump()
        assert not list(tmp_path.glob("*.tmp"))

    def test_dump_creates_directory(self, tmp_path):
        """test missing dump directories are created"""
        registry = ProbeRegistry("p1")
        path = registry.dump(tmp_path / "nested" / "dumps")
        assert path.exists()

    def test_dump_failure(self, tmp_path):
        """test unwritable dump locations raise FlushFailed"""
        blocker = tmp_path / "file"
        blocker.write_text("")
        with pytest.raises(FlushFailed):
            ProbeRegistry("p1").dump(blocker)

    def test_mark_started(self, tmp_path):
        """test start markers are written"""
        registry = ProbeRegistry("p1")
        registry.mark_started(tmp_path)
        assert (tmp_path / f"p1{MARKER_SUFFIX}").exists()

    def test_load_invalid(self, tmp_path):
        """test invalid dumps are rejected"""
        bad_key = tmp_path / "bad_key.json"
        bad_key.write_text(json.dumps({"not a key": 1}))
        with pytest.raises(ValueError):
            load_dump(bad_key)

        bad_count = tmp_path / "bad_count.json"
        bad_count.write_text(json.dumps({LOC_A.key: -1}))
        with pytest.raises(ValueError):
            load_dump(bad_count)

        not_object = tmp_path / "list.json"
        not_object.write_text("[]")
        with pytest.raises(ValueError):
            load_dump(not_object)


class TestProbeFunction:
    """test the function instrumented code calls"""

    def test_counts_into_active_registry(self):
        """test the builtin probe counts into the active registry"""
        registry = ProbeRegistry("p1")
        install_probe()
        previous = activate(registry)
        assert active() is registry
        getattr(builtins, PROBE_NAME)(LOC_A.key)
        activate(previous)
        assert registry[LOC_A] == 1

    def test_noop_without_registry(self):
        """test probes are harmless when no registry is active"""
        activate(None)
        probe(LOC_A.key)
        assert active() is None
