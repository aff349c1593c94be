"""Error taxonomy for specification loading, graph resolution and builds."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .models import RunReport


class PkgforgeError(Exception):
    """Base class for every error raised by pkgforge."""


class InvalidSpecification(PkgforgeError, ValueError):
    """A specification entry is malformed; raised at load time."""

    def __init__(self, field: str, reason: str, *, source: str | None = None) -> None:
        self.field = field
        self.reason = reason
        self.source = source
        location = f" ({source})" if source else ""
        super().__init__(f"invalid specification field {field!r}{location}: {reason}")


class SpecificationNotFound(PkgforgeError, LookupError):
    def __init__(self, name: str, version: str | None = None) -> None:
        self.name = name
        self.version = version
        label = f"{name}@{version}" if version else name
        super().__init__(f"specification not found: {label}")


class DuplicateSpecification(PkgforgeError):
    def __init__(self, name: str, version: str) -> None:
        self.name = name
        self.version = version
        super().__init__(f"specification already registered: {name}@{version}")


class UnresolvedInput(PkgforgeError):
    """An input reference names a specification the store does not hold."""

    def __init__(self, name: str, *, required_by: str | None = None, version: str | None = None) -> None:
        self.name = name
        self.required_by = required_by
        self.version = version
        label = f"{name}@{version}" if version else name
        suffix = f" (required by {required_by})" if required_by else ""
        super().__init__(f"unresolved input: {label}{suffix}")


class CyclicDependency(PkgforgeError):
    """The declared inputs form a cycle.

    ``cycle`` lists the node names along the cycle and repeats the first
    name at the end, e.g. ``["a", "b", "a"]``.
    """

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"dependency cycle: {' -> '.join(self.cycle)}")


class FingerprintCollision(PkgforgeError):
    """Two different build results were produced for one fingerprint."""

    def __init__(self, fingerprint: str, *, existing_digest: str | None, new_digest: str | None) -> None:
        self.fingerprint = fingerprint
        self.existing_digest = existing_digest
        self.new_digest = new_digest
        super().__init__(
            f"fingerprint collision for {fingerprint}: stored output {existing_digest} "
            f"differs from new output {new_digest}"
        )


class PhaseFailed(PkgforgeError):
    """A build phase exited unsuccessfully; aborts the remaining phases of a node."""

    def __init__(self, phase: str, cause: str) -> None:
        self.phase = phase
        self.cause = cause
        super().__init__(f"phase {phase!r} failed: {cause}")


class BuildCancelled(PkgforgeError):
    def __init__(self, phase: str | None = None) -> None:
        self.phase = phase
        super().__init__("Cancelled" if phase is None else f"Cancelled during phase {phase!r}")


class BuildFailed(PkgforgeError):
    """Aggregate report of every Failed, Blocked and Cancelled node of a run."""

    def __init__(self, failures: Sequence[tuple[str, str]], report: "RunReport") -> None:
        self.failures = list(failures)
        self.report = report
        summary = "; ".join(f"{node}: {cause}" for node, cause in self.failures)
        super().__init__(f"build failed for {len(self.failures)} node(s): {summary}")


class InputConflict(PkgforgeError):
    """Two inputs of one node map to the same ``PKGFORGE_INPUT_*`` variable."""

    def __init__(self, variable: str, refs: Sequence[str]) -> None:
        self.variable = variable
        self.refs = list(refs)
        super().__init__(f"inputs {', '.join(self.refs)} all map to {variable}")
