"""process-wide probe counters and their on-disk dump format"""

import builtins
import json
import logging
import os
import secrets
import socket
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional, Tuple, Union

from .errors import FlushFailed
from .locations import SourceLocation

logger = logging.getLogger(__name__)

# name the rewriter emits for probes; resolved through builtins
PROBE_NAME = "__probecov__"

DUMP_SUFFIX = ".json"
MARKER_SUFFIX = ".started"

_active: Optional["ProbeRegistry"] = None


def new_process_id() -> str:
    """unique identifier for the dump of the current process"""
    return f"{socket.gethostname()}.{os.getpid()}.{secrets.token_hex(3)}"


class ProbeRegistry:
    """
    mapping of location key to execution count for one process
    counts only ever grow while the process runs
    """

    def __init__(self, process_id: Optional[str] = None):
        self.process_id = process_id or new_process_id()
        self._counts: Dict[str, int] = {}

    def register(self, location: SourceLocation) -> str:
        """make a location known with count 0 so unexecuted code is reported"""
        key = location.key
        self._counts.setdefault(key, 0)
        return key

    def count(self, key: str) -> None:
        """the probe operation: one more execution of key"""
        self._counts[key] = self._counts.get(key, 0) + 1

    def probe(self, location: SourceLocation) -> "Probe":
        self.register(location)
        return Probe(location, self)

    def __getitem__(self, location: Union[SourceLocation, str]) -> int:
        key = location.key if isinstance(location, SourceLocation) else location
        return self._counts.get(key, 0)

    def __contains__(self, location: Union[SourceLocation, str]) -> bool:
        key = location.key if isinstance(location, SourceLocation) else location
        return key in self._counts

    def __len__(self) -> int:
        return len(self._counts)

    def __iter__(self) -> Iterator[str]:
        return iter(self._counts)

    def items(self) -> Iterator[Tuple[str, int]]:
        return iter(self._counts.items())

    def to_dump(self) -> Dict[str, int]:
        return dict(self._counts)

    def fresh_copy(self) -> "ProbeRegistry":
        """same keys at zero under a new process id (used after fork)"""
        copy = ProbeRegistry()
        copy._counts = dict.fromkeys(self._counts, 0)
        return copy

    def dump_path(self, directory: Union[str, Path]) -> Path:
        return Path(directory) / f"{self.process_id}{DUMP_SUFFIX}"

    def marker_path(self, directory: Union[str, Path]) -> Path:
        return Path(directory) / f"{self.process_id}{MARKER_SUFFIX}"

    def mark_started(self, directory: Union[str, Path]) -> None:
        """leave a marker so the aggregator can tell if this process never flushed"""
        try:
            Path(directory).mkdir(parents=True, exist_ok=True)
            self.marker_path(directory).touch()
        except OSError as e:
            logger.warning("could not write start marker for %s: %s", self.process_id, e)

    def dump(self, directory: Union[str, Path]) -> Path:
        """
        write the counts as a JSON object keyed by location key
        the file is written to a temporary name and renamed into place
        """
        path = self.dump_path(directory)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(self._counts, f)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise FlushFailed(f"could not write dump for {self.process_id}: {e}") from e
        logger.debug("wrote %d counters to %s", len(self._counts), path)
        return path


class Probe:
    """zero-argument callable counting one location in a registry"""

    __slots__ = ("location", "registry", "key")

    def __init__(self, location: SourceLocation, registry: ProbeRegistry):
        self.location = location
        self.registry = registry
        self.key = location.key

    def __call__(self) -> None:
        self.registry.count(self.key)

    def __repr__(self) -> str:
        return f"Probe({self.key!r})"


def load_dump(path: Union[str, Path]) -> Dict[str, int]:
    """read one dump file, validating keys and counts"""
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: dump is not a JSON object")
    for key, value in data.items():
        SourceLocation.from_key(key)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValueError(f"{path}: invalid count {value!r} for {key}")
    return data


def probe(key: str) -> None:
    """the function instrumented code calls; a no-op without an active registry"""
    registry = _active
    if registry is not None:
        registry.count(key)


def install_probe() -> None:
    """make the probe name resolvable from every module through builtins"""
    setattr(builtins, PROBE_NAME, probe)


def activate(registry: Optional[ProbeRegistry]) -> Optional[ProbeRegistry]:
    """set the registry probes count into; returns the previous one"""
    global _active
    previous, _active = _active, registry
    return previous


def active() -> Optional[ProbeRegistry]:
    return _active


def as_counts(dump: Union[ProbeRegistry, Mapping[str, int]]) -> Mapping[str, int]:
    if isinstance(dump, ProbeRegistry):
        return dump.to_dump()
    return dump
