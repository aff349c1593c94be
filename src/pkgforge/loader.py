"""Parse specification mappings and specification files.

Accepted shapes, per file:

* JSON: one specification object, or a list of them.
* TOML: one specification table at the top level, or an array of
  ``[[package]]`` tables.
"""

from __future__ import annotations

import json
import logging
import tomllib
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from .errors import InvalidSpecification
from .models import Specification

logger = logging.getLogger(__name__)

SPEC_SUFFIXES = frozenset({".json", ".toml"})
REQUIRED_FIELDS = ("name", "version")


def _error_field(location: tuple[int | str, ...]) -> str:
    return ".".join(str(part) for part in location) or "<root>"


def parse_specification(payload: Any, *, source: str | None = None) -> Specification:
    """Validate one specification mapping, failing fast with the offending field.

    Args:
        payload: Decoded JSON object or TOML table.
        source: Label naming where the payload came from, used in errors.

    Raises:
        InvalidSpecification: With ``field`` set to the dotted path of the
            first offending field, or ``<root>`` for a non-mapping payload.
    """
    if not isinstance(payload, Mapping):
        raise InvalidSpecification("<root>", f"expected a mapping, got {type(payload).__name__}", source=source)
    for field_name in REQUIRED_FIELDS:
        value = payload.get(field_name)
        if not isinstance(value, str) or not value.strip():
            raise InvalidSpecification(field_name, "required non-empty string", source=source)
    try:
        return Specification.model_validate(dict(payload))
    except ValidationError as exc:
        first = exc.errors()[0]
        raise InvalidSpecification(_error_field(first["loc"]), first["msg"], source=source) from exc


def parse_specifications(payloads: Iterable[Any], *, source: str | None = None) -> list[Specification]:
    specs: list[Specification] = []
    for idx, payload in enumerate(payloads):
        label = f"{source}[{idx}]" if source else f"[{idx}]"
        specs.append(parse_specification(payload, source=label))
    return specs


def _read_json(path: Path) -> list[Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InvalidSpecification("<root>", f"invalid JSON: {exc}", source=str(path)) from exc
    return data if isinstance(data, list) else [data]


def _read_toml(path: Path) -> list[Any]:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise InvalidSpecification("<root>", f"invalid TOML: {exc}", source=str(path)) from exc
    if "package" in data:
        packages = data["package"]
        if not isinstance(packages, list):
            raise InvalidSpecification("package", "expected an array of [[package]] tables", source=str(path))
        return packages
    return [data]


def load_file(path: Path) -> list[Specification]:
    suffix = path.suffix.lower()
    if suffix == ".json":
        payloads = _read_json(path)
    elif suffix == ".toml":
        payloads = _read_toml(path)
    else:
        raise InvalidSpecification("<root>", f"unsupported specification file type {suffix!r}", source=str(path))
    specs = parse_specifications(payloads, source=str(path))
    logger.debug("loaded %d specification(s) from %s", len(specs), path)
    return specs


def iter_spec_files(path: Path) -> list[Path]:
    """Specification files under ``path`` (recursively), in sorted order."""
    if path.is_file():
        return [path]
    if not path.is_dir():
        raise FileNotFoundError(f"specification path does not exist: {path}")
    return sorted(
        candidate
        for candidate in path.rglob("*")
        if candidate.is_file() and candidate.suffix.lower() in SPEC_SUFFIXES
    )


def load_paths(paths: Iterable[Path]) -> list[Specification]:
    specs: list[Specification] = []
    for path in paths:
        for spec_file in iter_spec_files(path):
            specs.extend(load_file(spec_file))
    return specs
