from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_jobs: int | None = None
    state_root: str = ".pkgforge"
    work_root: str = ""
    spec_path: str = "specs"
    phase_timeout: float | None = None
    keep_failed: bool = False
    recursion_limit: int = 100

    @classmethod
    def from_env(cls, *, env_file: Path | None = None) -> "RuntimeSettings":
        """Build settings from ``PKGFORGE_*`` variables.

        A ``.env`` file (``env_file``, or ``.env`` in the current directory)
        is loaded first; variables already set in the environment win.
        """
        dotenv_path = env_file if env_file is not None else Path.cwd() / ".env"
        if dotenv_path.is_file():
            load_dotenv(dotenv_path, override=False)

        max_jobs_raw = os.getenv("PKGFORGE_MAX_JOBS", "").strip()
        timeout_raw = os.getenv("PKGFORGE_PHASE_TIMEOUT", "").strip()
        return cls(
            max_jobs=_get_env_int("PKGFORGE_MAX_JOBS", default=1, minimum=1, maximum=1_024) if max_jobs_raw else None,
            state_root=os.getenv("PKGFORGE_STATE_ROOT", ".pkgforge"),
            work_root=os.getenv("PKGFORGE_WORK_ROOT", ""),
            spec_path=os.getenv("PKGFORGE_SPEC_PATH", "specs"),
            phase_timeout=_get_env_float("PKGFORGE_PHASE_TIMEOUT") if timeout_raw else None,
            keep_failed=_get_env_bool("PKGFORGE_KEEP_FAILED", default=False),
            recursion_limit=_get_env_int("PKGFORGE_RECURSION_LIMIT", default=100, minimum=10),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if self.max_jobs is not None and self.max_jobs < 1:
            raise ValueError(f"PKGFORGE_MAX_JOBS must be >= 1, got: {self.max_jobs}")
        if self.phase_timeout is not None and self.phase_timeout <= 0:
            raise ValueError(f"PKGFORGE_PHASE_TIMEOUT must be > 0, got: {self.phase_timeout}")
        if not self.state_root.strip():
            raise ValueError("PKGFORGE_STATE_ROOT must be non-empty")
        if not self.spec_path.strip():
            raise ValueError("PKGFORGE_SPEC_PATH must be non-empty")
        if self.recursion_limit < 10:
            raise ValueError(f"PKGFORGE_RECURSION_LIMIT must be >= 10, got: {self.recursion_limit}")
        return RuntimeSettings(
            max_jobs=self.max_jobs,
            state_root=self.state_root.strip(),
            work_root=self.work_root.strip(),
            spec_path=self.spec_path.strip(),
            phase_timeout=self.phase_timeout,
            keep_failed=self.keep_failed,
            recursion_limit=self.recursion_limit,
        )

    @property
    def state_root_path(self) -> Path:
        return Path(self.state_root)

    @property
    def cache_root_path(self) -> Path:
        return self.state_root_path / "cache"

    @property
    def work_root_path(self) -> Path:
        """Working areas live under the state root unless configured elsewhere."""
        return Path(self.work_root) if self.work_root else self.state_root_path / "work"

    @property
    def checkpoint_path(self) -> Path:
        return self.state_root_path / "checkpoints" / "pipeline.sqlite"


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc


def _get_env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (1/0, true/false, yes/no, on/off), got: {raw!r}")
