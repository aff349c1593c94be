from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .errors import FingerprintCollision
from .models import BuildResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _record_lock(record_path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a cache record across processes.

    The lock lives on ``<record>.json.lock`` next to the record, never on the
    record itself, because ``_write_record`` swaps the record file out with
    ``os.replace`` while the lock is held.

    Args:
        record_path: The ``results/<fp[:2]>/<fp>.json`` path being guarded.
            Its shard directory is created if needed.
    """
    lock_path = record_path.with_suffix(record_path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _write_record(record_path: Path, payload: str) -> None:
    """Publish a cache record so readers see either no record or all of it.

    The payload goes to a ``.<name>.*.tmp`` sibling in the same shard
    directory, is fsynced, and is renamed over ``record_path``.

    Args:
        record_path: Destination record path.
        payload: Serialized ``BuildResult`` JSON.

    Raises:
        OSError: If writing or renaming fails. The temporary file is removed
            first and any previous record is left untouched.
    """
    record_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(record_path.parent), prefix=f".{record_path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(payload)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_name, str(record_path))
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _check_fingerprint(fingerprint: str) -> str:
    if len(fingerprint) < 8 or not all(char in "0123456789abcdef" for char in fingerprint):
        raise ValueError(f"fingerprint must be a lowercase hex digest, got {fingerprint!r}")
    return fingerprint


# ---------------------------------------------------------------------------
# CacheIndex
# ---------------------------------------------------------------------------

class CacheIndex:
    """Content-addressed index of successful build results.

    Layout under ``root`` is a pure function of the fingerprint::

        results/<fp[:2]>/<fp>.json   BuildResult record
        store/<fp[:2]>/<fp>/         output artifact tree
        logs/<fp[:2]>/<fp>.log       captured build log
        events.jsonl                 append-only journal

    Each fingerprint has its own in-process lock and ``fcntl`` sidecar lock,
    so lookups and puts for distinct fingerprints never serialize.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.results_dir = self.root / "results"
        self.store_dir = self.root / "store"
        self.logs_dir = self.root / "logs"
        self.events_path = self.root / "events.jsonl"
        for directory in (self.root, self.results_dir, self.store_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._events_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Path layout
    # ------------------------------------------------------------------

    def result_path(self, fingerprint: str) -> Path:
        fingerprint = _check_fingerprint(fingerprint)
        return self.results_dir / fingerprint[:2] / f"{fingerprint}.json"

    def artifact_path(self, fingerprint: str) -> Path:
        fingerprint = _check_fingerprint(fingerprint)
        return self.store_dir / fingerprint[:2] / fingerprint

    def log_path(self, fingerprint: str) -> Path:
        fingerprint = _check_fingerprint(fingerprint)
        return self.logs_dir / fingerprint[:2] / f"{fingerprint}.log"

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _lock_for(self, fingerprint: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(fingerprint)
            if lock is None:
                lock = threading.Lock()
                self._locks[fingerprint] = lock
            return lock

    @contextmanager
    def locked(self, fingerprint: str) -> Iterator[None]:
        """Hold the in-process and on-disk lock of one fingerprint."""
        with self._lock_for(fingerprint):
            with _record_lock(self.result_path(fingerprint)):
                yield

    def _log_event(self, event: dict[str, object]) -> None:
        record = {"at": datetime.now(UTC).isoformat(), **event}
        with self._events_lock:
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")

    # ------------------------------------------------------------------
    # Lookup / put
    # ------------------------------------------------------------------

    def _read(self, fingerprint: str) -> BuildResult | None:
        path = self.result_path(fingerprint)
        if not path.is_file():
            return None
        text = path.read_text(encoding="utf-8")
        try:
            return BuildResult.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"cache record at {path} failed validation: {exc}") from exc

    def lookup(self, fingerprint: str) -> BuildResult | None:
        """Return the stored result for ``fingerprint``, or None when it was never built.

        A record whose artifact tree has disappeared is treated as absent.

        Args:
            fingerprint: Lowercase hex node fingerprint.

        Returns:
            The recorded ``BuildResult``; a ``hit`` event is journaled.

        Raises:
            ValueError: If the fingerprint is malformed or the record fails
                validation.
        """
        with self.locked(fingerprint):
            result = self._read(fingerprint)
        if result is None:
            return None
        if result.artifact_path is not None and not Path(result.artifact_path).is_dir():
            logger.warning("cache record %s points at missing artifact %s", fingerprint, result.artifact_path)
            return None
        self._log_event({"event": "hit", "fingerprint": fingerprint, "name": result.name})
        return result

    def put(self, fingerprint: str, result: BuildResult) -> BuildResult:
        """Store ``result``; an existing identical entry is kept.

        Args:
            fingerprint: Fingerprint the result is filed under.
            result: Outcome of building that fingerprint.

        Returns:
            The stored entry, which is the earlier record when one existed.

        Raises:
            FingerprintCollision: If an entry with different content exists.
            ValueError: If ``result`` belongs to another fingerprint.
        """
        if result.fingerprint != fingerprint:
            raise ValueError(f"result for {result.fingerprint} cannot be stored under {fingerprint}")
        with self.locked(fingerprint):
            existing = self._read(fingerprint)
            if existing is not None:
                if existing.content_key() != result.content_key():
                    raise FingerprintCollision(
                        fingerprint,
                        existing_digest=existing.output_digest,
                        new_digest=result.output_digest,
                    )
                logger.debug("cache entry %s already present", fingerprint)
                return existing
            _write_record(self.result_path(fingerprint), result.model_dump_json(indent=2))
        self._log_event(
            {
                "event": "put",
                "fingerprint": fingerprint,
                "name": result.name,
                "version": result.version,
                "output_digest": result.output_digest,
            }
        )
        logger.info("cached %s@%s as %s", result.name, result.version, fingerprint)
        return result

    def remove(self, fingerprint: str) -> bool:
        """Drop a record and its artifact tree. Returns whether anything was removed."""
        with self.locked(fingerprint):
            path = self.result_path(fingerprint)
            artifact = self.artifact_path(fingerprint)
            removed = path.is_file() or artifact.exists()
            path.unlink(missing_ok=True)
            if artifact.exists():
                shutil.rmtree(artifact)
        if removed:
            self._log_event({"event": "remove", "fingerprint": fingerprint})
        return removed

    def entries(self) -> list[BuildResult]:
        results: list[BuildResult] = []
        for path in sorted(self.results_dir.glob("*/*.json")):
            result = self._read(path.stem)
            if result is not None:
                results.append(result)
        return results

    def __contains__(self, fingerprint: object) -> bool:
        return isinstance(fingerprint, str) and self.result_path(fingerprint).is_file()
