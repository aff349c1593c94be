"""Build executor: runs the phase plan of one node in an isolated working area.

Every runnable phase maps to exactly one invocation of a ``ProcessRunner``.
The working area is a fresh temporary directory per node::

    <work_root>/<name>-<fp[:12]>-XXXX/
        build/      current directory of every phase
        out/        install prefix (PKGFORGE_OUT)
        tmp/        TMPDIR and HOME
        build.log   stdout and stderr of all phases

On success ``out/`` is moved to the content-addressed store path of the
node's fingerprint.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from .cache import CacheIndex
from .cancellation import CancellationToken
from .canonical import digest_tree
from .errors import BuildCancelled, InputConflict, PhaseFailed
from .graph import Node
from .models import BuildResult, BuildStatus, InputKind, PhaseAction

logger = logging.getLogger(__name__)

_ENV_NAME_RE = re.compile(r"[^A-Za-z0-9]+")
_POLL_SECONDS = 0.05
_KILL_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class PhaseInvocation:
    node: str
    phase: str
    action: PhaseAction
    cwd: Path
    env: Mapping[str, str]
    log_path: Path
    timeout: float | None = None

    @property
    def argv(self) -> list[str]:
        if isinstance(self.action, str):
            return ["/bin/sh", "-c", self.action]
        return list(self.action)


@dataclass(frozen=True)
class PhaseOutcome:
    exit_status: int | None
    cancelled: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.cancelled and not self.timed_out


class ProcessRunner(Protocol):
    def run(self, invocation: PhaseInvocation, cancel: CancellationToken) -> PhaseOutcome:
        """Run one phase invocation, appending its output to ``invocation.log_path``."""


class SubprocessRunner:
    """Runs phases as child processes in their own session.

    A hard cancellation or timeout terminates the whole process group,
    escalating to SIGKILL after a grace period.
    """

    def __init__(self, *, kill_grace: float = _KILL_GRACE_SECONDS) -> None:
        self.kill_grace = kill_grace

    def _stop(self, proc: subprocess.Popen[bytes]) -> None:
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                return
            try:
                proc.wait(timeout=self.kill_grace)
                return
            except subprocess.TimeoutExpired:
                continue

    def run(self, invocation: PhaseInvocation, cancel: CancellationToken) -> PhaseOutcome:
        with invocation.log_path.open("ab") as log_handle:
            proc = subprocess.Popen(
                invocation.argv,
                cwd=str(invocation.cwd),
                env=dict(invocation.env),
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
            waited = 0.0
            while True:
                try:
                    exit_status = proc.wait(timeout=_POLL_SECONDS)
                    return PhaseOutcome(exit_status=exit_status)
                except subprocess.TimeoutExpired:
                    waited += _POLL_SECONDS
                if cancel.hard:
                    self._stop(proc)
                    return PhaseOutcome(exit_status=proc.returncode, cancelled=True)
                if invocation.timeout is not None and waited >= invocation.timeout:
                    self._stop(proc)
                    return PhaseOutcome(exit_status=proc.returncode, timed_out=True)


def env_name(name: str) -> str:
    return _ENV_NAME_RE.sub("_", name).strip("_").upper()


def input_variables(results: Sequence[BuildResult]) -> dict[str, str]:
    """Map each input to its ``PKGFORGE_INPUT_*`` variable.

    An input is exported as ``PKGFORGE_INPUT_<NAME>``. When several versions
    of one package are inputs, each is exported as
    ``PKGFORGE_INPUT_<NAME>_<VERSION>`` instead and the bare name is not set.

    Raises:
        InputConflict: two different inputs map to the same variable, e.g.
            ``foo-bar`` and ``foo_bar``.
    """
    by_name: dict[str, list[BuildResult]] = {}
    for result in results:
        by_name.setdefault(result.name, []).append(result)

    claimed: dict[str, list[str]] = {}
    values: dict[str, str] = {}
    for name, versions in by_name.items():
        for result in versions:
            variable = f"PKGFORGE_INPUT_{env_name(name)}"
            if len(versions) > 1:
                variable = f"{variable}_{env_name(result.version)}"
            claimed.setdefault(variable, []).append(f"{result.name}@{result.version}")
            values[variable] = result.artifact_path or ""
    for variable, refs in claimed.items():
        if len(refs) > 1:
            raise InputConflict(variable, refs)
    return values


@dataclass
class _Workspace:
    root: Path
    build_dir: Path = field(init=False)
    out_dir: Path = field(init=False)
    tmp_dir: Path = field(init=False)
    log_path: Path = field(init=False)

    def __post_init__(self) -> None:
        self.build_dir = self.root / "build"
        self.out_dir = self.root / "out"
        self.tmp_dir = self.root / "tmp"
        self.log_path = self.root / "build.log"
        for directory in (self.build_dir, self.out_dir, self.tmp_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.log_path.touch()


class BuildExecutor:
    def __init__(
        self,
        cache: CacheIndex,
        work_root: Path,
        *,
        runner: ProcessRunner | None = None,
        phase_timeout: float | None = None,
        keep_failed: bool = False,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.cache = cache
        self.work_root = work_root
        self.work_root.mkdir(parents=True, exist_ok=True)
        self.runner = runner if runner is not None else SubprocessRunner()
        self.phase_timeout = phase_timeout
        self.keep_failed = keep_failed
        self.base_env = dict(base_env) if base_env is not None else {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}

    def _phase_env(self, node: Node, inputs: Mapping[int, BuildResult], workspace: _Workspace) -> dict[str, str]:
        source = node.spec.source
        env = dict(self.base_env)
        env.update(
            {
                "HOME": str(workspace.tmp_dir),
                "TMPDIR": str(workspace.tmp_dir),
                "LANG": "C",
                "PKGFORGE_NAME": node.name,
                "PKGFORGE_VERSION": node.version,
                "PKGFORGE_FINGERPRINT": node.fingerprint,
                "PKGFORGE_BUILD_TOP": str(workspace.build_dir),
                "PKGFORGE_OUT": str(workspace.out_dir),
                "PKGFORGE_SOURCE_METHOD": source.method.value,
                "PKGFORGE_SOURCE_LOCATION": source.location,
                "PKGFORGE_SOURCE_REVISION": source.revision or "",
                "PKGFORGE_SOURCE_CHECKSUM": source.checksum or "",
            }
        )
        runtime: list[str] = []
        native: list[str] = []
        bin_dirs: list[str] = []
        resolved: list[BuildResult] = []
        for index, kind in node.inputs:
            result = inputs.get(index)
            if result is None or result.artifact_path is None:
                raise ValueError(f"{node.ref} is missing the build result of input #{index}")
            resolved.append(result)
            (native if kind == InputKind.NATIVE else runtime).append(result.artifact_path)
            bin_dir = Path(result.artifact_path) / "bin"
            if bin_dir.is_dir():
                bin_dirs.append(str(bin_dir))
        env.update(input_variables(resolved))
        env["PKGFORGE_INPUTS"] = " ".join(runtime)
        env["PKGFORGE_NATIVE_INPUTS"] = " ".join(native)
        if bin_dirs:
            env["PATH"] = os.pathsep.join([*bin_dirs, env.get("PATH", "")]).rstrip(os.pathsep)
        return env

    def _run_phases(
        self,
        node: Node,
        env: Mapping[str, str],
        workspace: _Workspace,
        cancel: CancellationToken,
        phases_run: list[str],
    ) -> None:
        for phase in node.phases:
            if cancel.hard:
                raise BuildCancelled(phase.name)
            if phase.skipped:
                logger.debug("%s: skipping phase %s", node.ref, phase.name)
                continue
            if not phase.runnable or phase.action is None:
                continue
            with workspace.log_path.open("a", encoding="utf-8") as log_handle:
                log_handle.write(f"==> {node.ref}: {phase.name}\n")
            invocation = PhaseInvocation(
                node=node.ref,
                phase=phase.name,
                action=phase.action,
                cwd=workspace.build_dir,
                env={**env, "PKGFORGE_PHASE": phase.name},
                log_path=workspace.log_path,
                timeout=self.phase_timeout,
            )
            logger.info("%s: running phase %s", node.ref, phase.name)
            try:
                outcome = self.runner.run(invocation, cancel)
            except OSError as exc:
                raise PhaseFailed(phase.name, f"could not start: {exc}") from exc
            phases_run.append(phase.name)
            if outcome.cancelled:
                raise BuildCancelled(phase.name)
            if outcome.timed_out:
                raise PhaseFailed(phase.name, f"timed out after {self.phase_timeout}s")
            if outcome.exit_status != 0:
                raise PhaseFailed(phase.name, f"exit status {outcome.exit_status}")

    def _install(self, node: Node, workspace: _Workspace) -> tuple[Path, str]:
        digest = digest_tree(workspace.out_dir)
        target = self.cache.artifact_path(node.fingerprint)
        with self.cache.locked(node.fingerprint):
            if target.exists():
                if node.fingerprint in self.cache:
                    # Another build already owns this path; put() compares digests.
                    return target, digest
                shutil.rmtree(target)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(workspace.out_dir), str(target))
        return target, digest

    def _keep_log(self, node: Node, workspace: _Workspace) -> Path:
        destination = self.cache.log_path(node.fingerprint)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(workspace.log_path, destination)
        return destination

    def execute(
        self,
        node: Node,
        inputs: Mapping[int, BuildResult] | None = None,
        cancel: CancellationToken | None = None,
    ) -> BuildResult:
        """Run the phase plan of ``node``; a failing phase yields a failed result.

        Args:
            node: Node to build.
            inputs: Build results of the node's effective inputs, by node index.
            cancel: Token checked between phases and passed to the runner.

        Returns:
            A succeeded result whose artifact now lives in the store, or a
            failed one naming the phase and cause. Inputs whose
            ``PKGFORGE_INPUT_*`` variables collide fail the node before any
            phase runs, with no failed phase.

        Raises:
            ValueError: A result for one of the node's inputs is missing.
        """
        cancel = cancel if cancel is not None else CancellationToken()
        workspace = _Workspace(
            Path(tempfile.mkdtemp(prefix=f"{node.name}-{node.fingerprint[:12]}-", dir=self.work_root))
        )
        phases_run: list[str] = []
        failed = True
        try:
            try:
                env = self._phase_env(node, inputs or {}, workspace)
            except InputConflict as exc:
                logger.error("%s: %s", node.ref, exc)
                return self._failure(node, workspace, phases_run, None, str(exc))
            try:
                self._run_phases(node, env, workspace, cancel, phases_run)
            except PhaseFailed as exc:
                logger.error("%s: %s", node.ref, exc)
                return self._failure(node, workspace, phases_run, exc.phase, exc.cause)
            except BuildCancelled as exc:
                logger.warning("%s: cancelled during %s", node.ref, exc.phase)
                return self._failure(node, workspace, phases_run, exc.phase, "Cancelled")

            artifact, digest = self._install(node, workspace)
            log_path = self._keep_log(node, workspace)
            failed = False
            logger.info("%s: built %s", node.ref, artifact)
            return BuildResult(
                fingerprint=node.fingerprint,
                name=node.name,
                version=node.version,
                status=BuildStatus.SUCCEEDED,
                artifact_path=str(artifact),
                output_digest=digest,
                log_path=str(log_path),
                phases_run=phases_run,
            )
        finally:
            if failed and self.keep_failed:
                logger.info("%s: keeping failed working area %s", node.ref, workspace.root)
            else:
                shutil.rmtree(workspace.root, ignore_errors=True)

    def _failure(
        self,
        node: Node,
        workspace: _Workspace,
        phases_run: list[str],
        phase: str | None,
        cause: str,
    ) -> BuildResult:
        log_path = self._keep_log(node, workspace)
        return BuildResult(
            fingerprint=node.fingerprint,
            name=node.name,
            version=node.version,
            status=BuildStatus.FAILED,
            log_path=str(log_path),
            failed_phase=phase,
            cause=cause,
            phases_run=phases_run,
        )
