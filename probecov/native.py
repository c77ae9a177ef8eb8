"""
Readers for line-level coverage produced by native compilers.

Two notations are understood:

 - gcov text listings (`gcov foo.c` -> foo.c.gcov), one line per source line:
       "        4:   10:    x = y + 1;"
       "    #####:   11:    abort();"
       "        -:   12:}"
   with a "-:    0:Source:<path>" preamble naming the source file.
 - lcov tracefiles (`lcov --capture`, `geninfo`), records of
       SF:<path>
       DA:<line>,<count>[,<checksum>]
       end_of_record

Example Usage:
    records = native.read("build/foo.c.gcov")
    records += native.read("coverage.info")
"""

import dataclasses
import re
from typing import Iterable, List, Optional, TextIO, Union

from .errors import NativeCoverageError

# --- Constants ---
_GCOV_SOURCE_TAG = "Source:"
_GCOV_NOT_EXECUTABLE = "-"
_GCOV_UNEXECUTED = ("#####", "=====")
_LCOV_SOURCE_PREFIX = "SF:"
_LCOV_LINE_PREFIX = "DA:"
_LCOV_END = "end_of_record"

_GCOV_LINE = re.compile(r"^\s*([^:]+):\s*(\d+):(.*)$")


class NativeFormat:
    """enumeration of supported native coverage notations"""

    GCOV = "gcov"
    LCOV = "lcov"


@dataclasses.dataclass(frozen=True)
class NativeCoverageRecord:
    """execution count of one source line from compiled code"""

    file: str
    line: int
    count: int


def detect_format(lines: List[str]) -> str:
    """guess the notation from the first meaningful lines"""
    for line in lines:
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith(("TN:", _LCOV_SOURCE_PREFIX)):
            return NativeFormat.LCOV
        if _GCOV_LINE.match(line):
            return NativeFormat.GCOV
        break
    raise NativeCoverageError("unrecognized native coverage format")


class _Parser:
    @staticmethod
    def parse_gcov(lines: Iterable[str], source: Optional[str] = None) -> List[NativeCoverageRecord]:
        records = []
        for number, raw in enumerate(lines, 1):
            if not raw.strip():
                continue
            match = _GCOV_LINE.match(raw)
            if not match:
                # branch / call summary lines carry no line counts
                if raw.lstrip().startswith(("branch", "call", "function", "unconditional")):
                    continue
                raise NativeCoverageError(f"malformed gcov line {number}: {raw.rstrip()}")
            count_str, line_str, text = match.group(1).strip(), match.group(2), match.group(3)
            line_no = int(line_str)
            if line_no == 0:
                if text.startswith(_GCOV_SOURCE_TAG):
                    source = text[len(_GCOV_SOURCE_TAG) :].strip()
                continue
            if count_str == _GCOV_NOT_EXECUTABLE:
                continue
            if source is None:
                raise NativeCoverageError("gcov listing has no Source: preamble")
            records.append(
                NativeCoverageRecord(source, line_no, _Parser._gcov_count(count_str, number))
            )
        return records

    @staticmethod
    def _gcov_count(count_str: str, number: int) -> int:
        if count_str in _GCOV_UNEXECUTED:
            return 0
        # gcov marks lines with unexecuted blocks as "4*"
        count_str = count_str.rstrip("*")
        try:
            return int(count_str)
        except ValueError:
            # newer gcov abbreviates large counts, e.g. 1.2k, 3M
            units = {"k": 10**3, "M": 10**6, "G": 10**9, "T": 10**12}
            if count_str and count_str[-1] in units:
                try:
                    return int(round(float(count_str[:-1]) * units[count_str[-1]]))
                except ValueError:
                    pass
            raise NativeCoverageError(f"invalid gcov count on line {number}: {count_str!r}")

    @staticmethod
    def parse_lcov(lines: Iterable[str]) -> List[NativeCoverageRecord]:
        records = []
        source = None
        for number, raw in enumerate(lines, 1):
            line = raw.strip()
            if line.startswith(_LCOV_SOURCE_PREFIX):
                source = line[len(_LCOV_SOURCE_PREFIX) :]
            elif line.startswith(_LCOV_LINE_PREFIX):
                if source is None:
                    raise NativeCoverageError(f"DA record before SF on line {number}")
                parts = line[len(_LCOV_LINE_PREFIX) :].split(",")
                try:
                    line_no, count = int(parts[0]), int(parts[1])
                except (ValueError, IndexError) as e:
                    raise NativeCoverageError(f"malformed DA record on line {number}: {e}")
                if count < 0:
                    raise NativeCoverageError(f"negative count on line {number}")
                records.append(NativeCoverageRecord(source, line_no, count))
            elif line == _LCOV_END:
                source = None
        return records


# --- Public API Functions ---


def parse(stream: TextIO, fmt: Optional[str] = None) -> List[NativeCoverageRecord]:
    """parse an open text stream in the given (or detected) notation"""
    lines = stream.readlines()
    fmt = fmt or detect_format(lines)
    if fmt == NativeFormat.GCOV:
        return _Parser.parse_gcov(lines)
    if fmt == NativeFormat.LCOV:
        return _Parser.parse_lcov(lines)
    raise NativeCoverageError(f"unknown native format: {fmt}")


def read(filepath_or_stream: Union[str, TextIO], fmt: Optional[str] = None) -> List[NativeCoverageRecord]:
    """
    Reads native coverage records from a .gcov listing or an lcov tracefile.

    Raises:
        NativeCoverageError: If the content cannot be parsed.
        FileNotFoundError: If the file path does not exist.
    """
    if isinstance(filepath_or_stream, str):
        with open(filepath_or_stream, "r", errors="replace") as f:
            return parse(f, fmt)
    return parse(filepath_or_stream, fmt)


def read_many(paths: Iterable[str]) -> List[NativeCoverageRecord]:
    records: List[NativeCoverageRecord] = []
    for path in paths:
        records.extend(read(path))
    return records
