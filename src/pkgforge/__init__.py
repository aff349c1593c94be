from importlib.metadata import version

from .cache import CacheIndex
from .cancellation import CancellationToken
from .canonical import canonical_digest, digest_tree, to_canonical_json
from .errors import (
    BuildCancelled,
    BuildFailed,
    CyclicDependency,
    DuplicateSpecification,
    FingerprintCollision,
    InputConflict,
    InvalidSpecification,
    PhaseFailed,
    PkgforgeError,
    SpecificationNotFound,
    UnresolvedInput,
)
from .executor import BuildExecutor, PhaseInvocation, PhaseOutcome, ProcessRunner, SubprocessRunner
from .graph import Graph, GraphBuilder, Node
from .loader import load_file, load_paths, parse_specification
from .models import (
    STANDARD_PHASES,
    BuildResult,
    BuildStatus,
    InputKind,
    InputRef,
    NodeOutcome,
    NodeState,
    OverrideKind,
    Phase,
    PhaseOverride,
    RunReport,
    SourceDescriptor,
    SourceMethod,
    Specification,
)
from .orchestrator import BuildOrchestrator
from .phases import PhaseOverrides, PlannedPhase, plan_phases
from .scheduler import Scheduler
from .store import SpecificationStore
from .versioning import compare_versions, version_key


def get_version() -> str:
    try:
        return version("pkgforge")
    except Exception:
        return "0.0.0"


__all__ = [
    "BuildCancelled",
    "BuildExecutor",
    "BuildFailed",
    "BuildOrchestrator",
    "BuildResult",
    "BuildStatus",
    "CacheIndex",
    "CancellationToken",
    "CyclicDependency",
    "DuplicateSpecification",
    "FingerprintCollision",
    "Graph",
    "GraphBuilder",
    "InputConflict",
    "InputKind",
    "InputRef",
    "InvalidSpecification",
    "Node",
    "NodeOutcome",
    "NodeState",
    "OverrideKind",
    "Phase",
    "PhaseFailed",
    "PhaseInvocation",
    "PhaseOutcome",
    "PhaseOverride",
    "PhaseOverrides",
    "PkgforgeError",
    "PlannedPhase",
    "ProcessRunner",
    "RunReport",
    "STANDARD_PHASES",
    "Scheduler",
    "SourceDescriptor",
    "SourceMethod",
    "Specification",
    "SpecificationNotFound",
    "SpecificationStore",
    "SubprocessRunner",
    "UnresolvedInput",
    "canonical_digest",
    "compare_versions",
    "digest_tree",
    "load_file",
    "load_paths",
    "parse_specification",
    "plan_phases",
    "to_canonical_json",
    "version_key",
]
