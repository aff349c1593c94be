from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Callable

import pytest

from pkgforge import (
    BuildExecutor,
    CacheIndex,
    CancellationToken,
    InputRef,
    Phase,
    PhaseInvocation,
    PhaseOutcome,
    Specification,
    SpecificationStore,
)

DEFAULT_ACTIONS = {
    "configure": "./configure --prefix=$PKGFORGE_OUT",
    "build": "make",
    "check": "make check",
    "install": "make install",
}


def make_spec(
    name: str,
    *inputs: tuple[str, str] | str,
    version: str = "1.0",
    phases: list[Phase] | None = None,
    **extra: object,
) -> Specification:
    refs = []
    for item in inputs:
        if isinstance(item, str):
            refs.append(InputRef(name=item))
        else:
            dep_name, kind = item
            refs.append(InputRef(name=dep_name, kind=kind))
    if phases is None:
        phases = [Phase(name=phase, action=action) for phase, action in DEFAULT_ACTIONS.items()]
    return Specification(name=name, version=version, inputs=tuple(refs), phases=tuple(phases), **extra)


class RecordingRunner:
    """In-process stand-in for the subprocess runner.

    Records every invocation, fails the phases listed in ``fail`` and writes
    one file per package into the install prefix during ``install``.
    """

    def __init__(
        self,
        *,
        fail: dict[str, str] | None = None,
        delay: float = 0.0,
        on_phase: Callable[[PhaseInvocation, CancellationToken], PhaseOutcome | None] | None = None,
    ) -> None:
        self.fail = fail or {}
        self.delay = delay
        self.on_phase = on_phase
        self.invocations: list[PhaseInvocation] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> list[tuple[str, str]]:
        with self._lock:
            return [(item.node, item.phase) for item in self.invocations]

    def nodes(self) -> list[str]:
        return list(dict.fromkeys(node for node, _ in self.calls))

    def run(self, invocation: PhaseInvocation, cancel: CancellationToken) -> PhaseOutcome:
        with self._lock:
            self.invocations.append(invocation)
        if self.delay:
            time.sleep(self.delay)
        if self.on_phase is not None:
            outcome = self.on_phase(invocation, cancel)
            if outcome is not None:
                return outcome
        name = invocation.env["PKGFORGE_NAME"]
        if self.fail.get(name) == invocation.phase:
            return PhaseOutcome(exit_status=1)
        if invocation.phase == "install":
            out = Path(invocation.env["PKGFORGE_OUT"])
            (out / f"{name}.txt").write_text(invocation.env["PKGFORGE_VERSION"], encoding="utf-8")
        return PhaseOutcome(exit_status=0)


@pytest.fixture(autouse=True)
def _clean_pkgforge_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("PKGFORGE_"):
            monkeypatch.delenv(key)


@pytest.fixture
def cache(tmp_path: Path) -> CacheIndex:
    return CacheIndex(tmp_path / "cache")


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def executor(cache: CacheIndex, runner: RecordingRunner, tmp_path: Path) -> BuildExecutor:
    return BuildExecutor(cache, tmp_path / "work", runner=runner)


@pytest.fixture
def store() -> SpecificationStore:
    return SpecificationStore()
