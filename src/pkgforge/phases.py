"""Effective phase plans: declared phases combined with run-level overrides."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .models import OverrideKind, PhaseAction, PhaseOverride, Specification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedPhase:
    name: str
    action: PhaseAction | None
    mode: OverrideKind = OverrideKind.DEFAULT

    @property
    def skipped(self) -> bool:
        return self.mode == OverrideKind.SKIP

    @property
    def runnable(self) -> bool:
        return not self.skipped and self.action is not None

    def payload(self) -> dict[str, Any]:
        action: Any = list(self.action) if isinstance(self.action, tuple) else self.action
        return {"name": self.name, "mode": self.mode.value, "action": action}


class PhaseOverrides:
    """Run-level phase overrides.

    Keys are either a bare phase name (applies to every package) or
    ``package:phase``; a package-specific entry wins over a bare one.
    """

    def __init__(self, entries: Mapping[str, PhaseOverride] | None = None) -> None:
        self._entries: dict[str, PhaseOverride] = {}
        for key, override in (entries or {}).items():
            self.set(key, override)

    def set(self, key: str, override: PhaseOverride) -> None:
        key = key.strip()
        if not key or key.startswith(":") or key.endswith(":"):
            raise ValueError(f"invalid phase override key: {key!r}")
        self._entries[key] = override

    @classmethod
    def skipping(cls, keys: Iterable[str]) -> "PhaseOverrides":
        return cls({key: PhaseOverride.skip() for key in keys})

    def for_phase(self, package: str, phase: str) -> PhaseOverride | None:
        return self._entries.get(f"{package}:{phase}") or self._entries.get(phase)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def plan_phases(spec: Specification, overrides: PhaseOverrides | None = None) -> tuple[PlannedPhase, ...]:
    planned: list[PlannedPhase] = []
    for phase in spec.phases:
        override = overrides.for_phase(spec.name, phase.name) if overrides else None
        if override is None:
            override = phase.override
        kind = override.kind if override is not None else OverrideKind.DEFAULT
        if kind == OverrideKind.SKIP:
            planned.append(PlannedPhase(phase.name, None, OverrideKind.SKIP))
        elif override is not None and kind == OverrideKind.REPLACE:
            planned.append(PlannedPhase(phase.name, override.action, OverrideKind.REPLACE))
        else:
            planned.append(PlannedPhase(phase.name, phase.action, OverrideKind.DEFAULT))
    logger.debug(
        "phase plan for %s: %s",
        spec.ref,
        ", ".join(f"{item.name}={item.mode.value}" for item in planned),
    )
    return tuple(planned)
