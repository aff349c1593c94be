from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9+._-]*$")
VERSION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9+._~-]*$")

STANDARD_PHASES: tuple[str, ...] = ("unpack", "patch", "configure", "build", "check", "install")

# A phase action is either a shell snippet or an argv vector.
PhaseAction = str | tuple[str, ...]


class InputKind(str, Enum):
    NATIVE = "native"
    PROPAGATED = "propagated"
    REGULAR = "regular"


class SourceMethod(str, Enum):
    URL = "url"
    GIT = "git"
    PATH = "path"
    NONE = "none"


class OverrideKind(str, Enum):
    DEFAULT = "default"
    SKIP = "skip"
    REPLACE = "replace"


class NodeState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CACHED = "cached"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {NodeState.SUCCEEDED, NodeState.FAILED, NodeState.CACHED, NodeState.BLOCKED, NodeState.CANCELLED}
)
# States a dependency must reach before its dependents may run.
SATISFIED_STATES = frozenset({NodeState.SUCCEEDED, NodeState.CACHED})


class BuildStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _check_action(value: PhaseAction | None) -> PhaseAction | None:
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            raise ValueError("action must be a non-empty command")
        return value
    if not value or not all(isinstance(arg, str) and arg for arg in value):
        raise ValueError("argv action must be a non-empty list of non-empty strings")
    return value


class SourceDescriptor(BaseModel):
    """Where the sources come from and how to check them."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: SourceMethod = SourceMethod.NONE
    location: str = ""
    revision: str | None = None
    checksum: str | None = None

    @model_validator(mode="after")
    def _check_method_fields(self) -> "SourceDescriptor":
        if self.method != SourceMethod.NONE and not self.location.strip():
            raise ValueError(f"source.location is required for method {self.method.value}")
        if self.method == SourceMethod.GIT and not self.revision:
            raise ValueError("git sources require a revision")
        if self.method == SourceMethod.URL and not self.checksum:
            raise ValueError("url sources require a checksum")
        return self


class InputRef(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    kind: InputKind = InputKind.REGULAR
    version: str | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not NAME_RE.match(value):
            raise ValueError(f"invalid input name: {value!r}")
        return value


class PhaseOverride(BaseModel):
    """Tagged override of one phase: keep it, skip it, or replace its action."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: OverrideKind = OverrideKind.DEFAULT
    action: PhaseAction | None = None

    @field_validator("action")
    @classmethod
    def _check_action(cls, value: PhaseAction | None) -> PhaseAction | None:
        return _check_action(value)

    @model_validator(mode="after")
    def _check_variant(self) -> "PhaseOverride":
        if self.kind == OverrideKind.REPLACE and self.action is None:
            raise ValueError("replace override requires an action")
        if self.kind != OverrideKind.REPLACE and self.action is not None:
            raise ValueError(f"{self.kind.value} override must not carry an action")
        return self

    @classmethod
    def skip(cls) -> "PhaseOverride":
        return cls(kind=OverrideKind.SKIP)

    @classmethod
    def replace(cls, action: PhaseAction) -> "PhaseOverride":
        return cls(kind=OverrideKind.REPLACE, action=action)


class Phase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    action: PhaseAction | None = None
    override: PhaseOverride | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not NAME_RE.match(value):
            raise ValueError(f"invalid phase name: {value!r}")
        return value

    @field_validator("action")
    @classmethod
    def _check_action(cls, value: PhaseAction | None) -> PhaseAction | None:
        return _check_action(value)


def _standard_phases() -> tuple[Phase, ...]:
    return tuple(Phase(name=name) for name in STANDARD_PHASES)


class Specification(BaseModel):
    """Declarative description of one buildable package. Identity is (name, version)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    version: str
    source: SourceDescriptor = Field(default_factory=SourceDescriptor)
    inputs: tuple[InputRef, ...] = ()
    phases: tuple[Phase, ...] = Field(default_factory=_standard_phases)
    license: str = "unknown"
    description: str = ""
    meta: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not NAME_RE.match(value):
            raise ValueError(f"name must match {NAME_RE.pattern}, got {value!r}")
        return value

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not VERSION_RE.match(value):
            raise ValueError(f"version must match {VERSION_RE.pattern}, got {value!r}")
        return value

    @field_validator("phases")
    @classmethod
    def _check_phases(cls, value: tuple[Phase, ...]) -> tuple[Phase, ...]:
        seen: set[str] = set()
        for phase in value:
            if phase.name in seen:
                raise ValueError(f"duplicate phase: {phase.name}")
            seen.add(phase.name)
        return value

    @model_validator(mode="after")
    def _check_inputs(self) -> "Specification":
        seen: set[str] = set()
        for ref in self.inputs:
            if ref.name in seen:
                raise ValueError(f"duplicate input: {ref.name}")
            seen.add(ref.name)
        return self

    @property
    def ref(self) -> str:
        return f"{self.name}@{self.version}"

    def phase(self, name: str) -> Phase | None:
        for phase in self.phases:
            if phase.name == name:
                return phase
        return None

    def build_content(self) -> dict[str, Any]:
        """Fields that determine the build output; license, description and meta do not."""
        return {
            "name": self.name,
            "version": self.version,
            "source": self.source.model_dump(mode="json"),
            "inputs": [ref.model_dump(mode="json") for ref in self.inputs],
        }


class BuildResult(BaseModel):
    """Outcome of executing one node. Only successful results are cached."""

    fingerprint: str
    name: str
    version: str
    status: BuildStatus
    artifact_path: str | None = None
    output_digest: str | None = None
    log_path: str | None = None
    failed_phase: str | None = None
    cause: str | None = None
    phases_run: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == BuildStatus.SUCCEEDED

    def content_key(self) -> tuple[str, str | None]:
        return self.status.value, self.output_digest


class StateTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    node: str
    from_state: NodeState
    to_state: NodeState


class NodeOutcome(BaseModel):
    name: str
    version: str
    fingerprint: str
    state: NodeState
    failed_phase: str | None = None
    cause: str | None = None
    blocked_by: str | None = None
    result: BuildResult | None = None

    @property
    def ref(self) -> str:
        return f"{self.name}@{self.version}"

    def describe(self) -> str:
        if self.state == NodeState.FAILED:
            if self.failed_phase:
                return f"failed({self.failed_phase}: {self.cause})"
            return f"failed({self.cause})"
        if self.state == NodeState.BLOCKED:
            return f"blocked({self.blocked_by})"
        return self.state.value


class RunReport(BaseModel):
    outcomes: list[NodeOutcome] = Field(default_factory=list)
    dispatch_order: list[str] = Field(default_factory=list)
    transitions: list[StateTransition] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return all(outcome.state in SATISFIED_STATES for outcome in self.outcomes)

    def outcome(self, key: str) -> NodeOutcome:
        """Look up an outcome by ``name@version`` or by a name unique in this run."""
        matches = [item for item in self.outcomes if key in (item.ref, item.name)]
        if len(matches) != 1:
            raise KeyError(key)
        return matches[0]

    def failures(self) -> list[tuple[str, str]]:
        return [
            (outcome.ref, outcome.describe())
            for outcome in self.outcomes
            if outcome.state not in SATISFIED_STATES
        ]
