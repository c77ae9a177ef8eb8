"""merging of per-process probe dumps and native records into one report"""

import dataclasses
import logging
import os
from collections import Counter, defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .locations import LocationModel, SourceLocation
from .native import NativeCoverageRecord
from .registry import DUMP_SUFFIX, MARKER_SUFFIX, ProbeRegistry, as_counts, load_dump

logger = logging.getLogger(__name__)

INTERPRETED = "interpreted"
NATIVE = "native"

Dump = Union[ProbeRegistry, Mapping[str, int]]


@dataclasses.dataclass(frozen=True)
class CoverageEntry:
    """merged count of one location"""

    location: SourceLocation
    count: int
    source_text: str = ""
    origin: str = INTERPRETED
    native_count: int = 0

    @property
    def covered(self) -> bool:
        return self.count > 0


@dataclasses.dataclass(frozen=True)
class LineCoverage:
    """rollup of all entries of one source line"""

    file: str
    line: int
    count: int
    covered: bool
    native_count: int = 0


class _SourceTexts:
    """one LocationModel per file, built on first use"""

    def __init__(self):
        self._models: Dict[str, LocationModel] = {}

    def __call__(self, location: SourceLocation) -> str:
        model = self._models.get(location.file)
        if model is None:
            model = self._models[location.file] = LocationModel(location.file)
        return model.source_text(location)


def _same_file(a: str, b: str) -> bool:
    return a == b or os.path.normcase(os.path.normpath(a)) == os.path.normcase(os.path.normpath(b))


def merge(
    dumps: Iterable[Dump],
    native_records: Iterable[NativeCoverageRecord] = (),
) -> List[CoverageEntry]:
    """
    sum interpreted counts per location over any number of dumps and attach
    native line counts

    The result is sorted by location, so it does not depend on the order of
    the dumps. Native totals are added to the native_count of every
    interpreted entry whose span covers the line; lines no interpreted entry
    covers become native entries of their own.
    """
    totals: Counter = Counter()
    for dump in dumps:
        for key, count in as_counts(dump).items():
            totals[SourceLocation.from_key(key)] += count

    native_totals: Counter = Counter()
    for record in native_records:
        native_totals[(record.file, record.line)] += record.count

    by_file: Dict[str, List[SourceLocation]] = defaultdict(list)
    for location in totals:
        by_file[location.file].append(location)

    attributed: Counter = Counter()
    native_only: List[Tuple[str, int, int]] = []
    for (file, line), count in native_totals.items():
        covering = [
            location
            for other, locations in by_file.items()
            if _same_file(other, file)
            for location in locations
            if location.covers_line(line)
        ]
        if covering:
            for location in covering:
                attributed[location] += count
        else:
            native_only.append((file, line, count))

    source_text = _SourceTexts()
    entries = [
        CoverageEntry(location, count, source_text(location), INTERPRETED, attributed[location])
        for location, count in totals.items()
    ]
    for file, line, count in native_only:
        location = SourceLocation.for_line(file, line)
        entries.append(CoverageEntry(location, count, source_text(location), NATIVE))
    entries.sort(key=lambda entry: (entry.location, entry.origin))
    return entries


def tally_lines(entries: Iterable[CoverageEntry]) -> List[LineCoverage]:
    """
    roll entries up to lines

    a line is covered if any entry overlapping it executed; its count is the
    sum of the interpreted entries starting on it, so a statement spread over
    several lines is counted once, on its first line
    """
    counts: Counter = Counter()
    native: Counter = Counter()
    covered: Dict[Tuple[str, int], bool] = {}
    for entry in entries:
        location = entry.location
        if entry.origin == NATIVE:
            key = (location.file, location.start_line)
            native[key] += entry.count
            covered[key] = covered.get(key, False) or entry.count > 0
            continue
        counts[(location.file, location.start_line)] += entry.count
        for line in range(location.start_line, location.end_line + 1):
            key = (location.file, line)
            covered[key] = covered.get(key, False) or entry.count > 0
            if entry.native_count:
                native[key] = max(native[key], entry.native_count)
    return [
        LineCoverage(file, line, counts[(file, line)], covered[(file, line)], native[(file, line)])
        for file, line in sorted(covered)
    ]


@dataclasses.dataclass
class DumpSet:
    """dumps read from a directory, with the processes that never flushed"""

    dumps: List[Dict[str, int]] = dataclasses.field(default_factory=list)
    processes: List[str] = dataclasses.field(default_factory=list)
    missing: List[str] = dataclasses.field(default_factory=list)
    failed: List[Tuple[str, str]] = dataclasses.field(default_factory=list)


def load_dumps(directory: Union[str, Path]) -> DumpSet:
    """
    read every dump of a directory

    a process that wrote a start marker but no dump is listed as missing,
    an unreadable dump is listed as failed; neither stops the aggregation
    """
    result = DumpSet()
    directory = Path(directory)
    if not directory.is_dir():
        return result
    started = {p.name[: -len(MARKER_SUFFIX)] for p in directory.glob(f"*{MARKER_SUFFIX}")}
    flushed = set()
    for path in sorted(directory.glob(f"*{DUMP_SUFFIX}")):
        process_id = path.name[: -len(DUMP_SUFFIX)]
        try:
            result.dumps.append(load_dump(path))
        except (OSError, ValueError) as e:
            logger.warning("skipping unreadable dump %s: %s", path, e)
            result.failed.append((str(path), str(e)))
            continue
        result.processes.append(process_id)
        flushed.add(process_id)
    result.missing = sorted(started - flushed - {Path(p).name[: -len(DUMP_SUFFIX)] for p, _ in result.failed})
    for process_id in result.missing:
        logger.warning("process %s started but left no dump", process_id)
    return result


class CoverageReport:
    """
    merged coverage of a run
    provides the line rollup, tabular projection, and per file views
    """

    def __init__(
        self,
        entries: List[CoverageEntry],
        missing: Optional[List[str]] = None,
        failed: Optional[List[Tuple[str, str]]] = None,
    ):
        self.entries = entries
        self.missing = list(missing or [])
        self.failed = list(failed or [])

    @classmethod
    def from_dumps(
        cls, dumps: Iterable[Dump], native_records: Iterable[NativeCoverageRecord] = ()
    ) -> "CoverageReport":
        return cls(merge(dumps, native_records))

    @classmethod
    def from_directory(
        cls, directory: Union[str, Path], native_records: Iterable[NativeCoverageRecord] = ()
    ) -> "CoverageReport":
        """create report from every dump in a directory"""
        dump_set = load_dumps(directory)
        return cls(merge(dump_set.dumps, native_records), dump_set.missing, dump_set.failed)

    def __len__(self) -> int:
        return len(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def complete(self) -> bool:
        """true if every started process contributed a readable dump"""
        return not self.missing and not self.failed

    def lines(self) -> List[LineCoverage]:
        return tally_lines(self.entries)

    def files(self) -> List[str]:
        return sorted({entry.location.file for entry in self.entries})

    def by_file(self) -> Dict[str, List[CoverageEntry]]:
        """organize entries by file"""
        grouped = defaultdict(list)
        for entry in self.entries:
            grouped[entry.location.file].append(entry)
        return dict(grouped)

    def filter_by_file(self, file_filter: str) -> "CoverageReport":
        """return report restricted to files whose path contains the given string"""
        entries = [e for e in self.entries if file_filter.lower() in e.location.file.lower()]
        return CoverageReport(entries, self.missing, self.failed)

    def percent_covered(self) -> float:
        """share of interpreted entries executed at least once, in percent"""
        interpreted = [e for e in self.entries if e.origin == INTERPRETED]
        if not interpreted:
            return 0.0
        return 100.0 * sum(1 for e in interpreted if e.covered) / len(interpreted)

    def to_rows(self) -> List[Dict[str, object]]:
        """tabular projection with one row per entry"""
        return [
            {
                "filename": entry.location.file,
                "first_line": entry.location.start_line,
                "first_column": entry.location.start_col,
                "last_line": entry.location.end_line,
                "last_column": entry.location.end_col,
                "value": entry.count,
                "native_value": entry.native_count,
                "origin": entry.origin,
                "source": entry.source_text,
            }
            for entry in self.entries
        ]
