from __future__ import annotations

import hashlib
import logging
import os
import stat
from enum import Enum
from pathlib import Path, PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))

_TREE_CHUNK = 1 << 16


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert fingerprint inputs into JSON-primitive types.

    rfc8785.dumps only accepts: bool, int, float, str, None, list/tuple, dict.
    Pydantic models, enums and paths are converted first. Sets are emitted
    as sorted lists so that their iteration order never leaks into a digest.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, (set, frozenset)):
        normalized = [_normalize_for_jcs(item) for item in value]
        return sorted(normalized, key=lambda item: rfc8785.dumps(item))

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, PurePath):
        return value.as_posix()

    if isinstance(value, bytes):
        raise TypeError(
            f"Cannot serialize bytes to canonical JSON. "
            f"Encode to base64 or hex string first: {value!r:.64}"
        )

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785."""
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")


def canonical_digest(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``value``."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def digest_tree(root: Path) -> str:
    """Digest a directory tree by relative path, file type, executable bit and content.

    Timestamps and ownership are ignored, so two builds that write the same
    files produce the same digest.
    """
    hasher = hashlib.sha256()
    if not root.exists():
        raise FileNotFoundError(f"cannot digest missing tree: {root}")

    entries: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        base = Path(dirpath)
        for name in dirnames:
            entries.append(base / name)
        for name in sorted(filenames):
            entries.append(base / name)
    entries.sort(key=lambda path: path.relative_to(root).as_posix())

    for path in entries:
        rel = path.relative_to(root).as_posix()
        mode = path.lstat().st_mode
        if stat.S_ISLNK(mode):
            hasher.update(f"L {rel}\0{os.readlink(path)}\0".encode("utf-8"))
        elif stat.S_ISDIR(mode):
            hasher.update(f"D {rel}\0".encode("utf-8"))
        else:
            executable = "x" if mode & stat.S_IXUSR else "-"
            hasher.update(f"F {rel} {executable}\0".encode("utf-8"))
            with path.open("rb") as handle:
                while chunk := handle.read(_TREE_CHUNK):
                    hasher.update(chunk)
            hasher.update(b"\0")
    digest = hasher.hexdigest()
    logger.debug("digested %d entries under %s: %s", len(entries), root, digest)
    return digest
