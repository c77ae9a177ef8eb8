"""probecov - source-level coverage for python programs across processes"""

from .locations import SourceLocation, LocationModel
from .registry import ProbeRegistry, Probe, load_dump
from .rewriter import NodeKind, Rewriter, node_kind
from .instrument import Instrumenter
from .replace import Replacement, ReplacementLedger, replace
from .discovery import DefinitionRecord, DiscoveryResult, DispatchVariant, discover
from .config import CoverageConfig
from .session import CoverageSession, process_startup
from .aggregate import (
    CoverageEntry,
    CoverageReport,
    DumpSet,
    LineCoverage,
    load_dumps,
    merge,
    tally_lines,
)
from .native import NativeCoverageRecord
from .errors import (
    ProbeCovError,
    UnsupportedNodeKind,
    UnresolvableDispatchTable,
    ReplacementFailed,
    RestoreFailed,
    FlushFailed,
    SourceUnavailable,
    NativeCoverageError,
)

__all__ = [
    "SourceLocation",
    "LocationModel",
    "ProbeRegistry",
    "Probe",
    "load_dump",
    "NodeKind",
    "Rewriter",
    "node_kind",
    "Instrumenter",
    "Replacement",
    "ReplacementLedger",
    "replace",
    "DefinitionRecord",
    "DiscoveryResult",
    "DispatchVariant",
    "discover",
    "CoverageConfig",
    "CoverageSession",
    "process_startup",
    "CoverageEntry",
    "CoverageReport",
    "DumpSet",
    "LineCoverage",
    "load_dumps",
    "merge",
    "tally_lines",
    "NativeCoverageRecord",
    "ProbeCovError",
    "UnsupportedNodeKind",
    "UnresolvableDispatchTable",
    "ReplacementFailed",
    "RestoreFailed",
    "FlushFailed",
    "SourceUnavailable",
    "NativeCoverageError",
]
