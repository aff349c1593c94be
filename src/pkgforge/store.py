from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator

from .errors import DuplicateSpecification, SpecificationNotFound
from .loader import load_paths
from .models import Specification
from .versioning import version_key

logger = logging.getLogger(__name__)


class SpecificationStore:
    """Table of specifications keyed by (name, version).

    Registration happens while loading; afterwards the store is only read,
    so the graph builder and scheduler share it without locking.
    """

    def __init__(self, specs: Iterable[Specification] = ()) -> None:
        self._entries: dict[str, dict[str, Specification]] = {}
        self.register_all(specs)

    @classmethod
    def from_paths(cls, paths: Iterable[Path]) -> "SpecificationStore":
        store = cls(load_paths(paths))
        logger.info("specification store loaded %d specification(s)", len(store))
        return store

    def register(self, spec: Specification) -> None:
        versions = self._entries.setdefault(spec.name, {})
        if spec.version in versions:
            raise DuplicateSpecification(spec.name, spec.version)
        versions[spec.version] = spec

    def register_all(self, specs: Iterable[Specification]) -> None:
        for spec in specs:
            self.register(spec)

    def lookup(self, name: str, version: str | None = None) -> Specification:
        """Return ``name@version``, or the latest version of ``name`` when no version is given.

        Raises:
            SpecificationNotFound: The name, or the pinned version of it, is not registered.
        """
        versions = self._entries.get(name)
        if not versions:
            raise SpecificationNotFound(name, version)
        if version is None:
            return versions[max(versions, key=version_key)]
        try:
            return versions[version]
        except KeyError:
            raise SpecificationNotFound(name, version) from None

    def versions(self, name: str) -> list[str]:
        """Registered versions of ``name``, oldest first."""
        return sorted(self._entries.get(name, {}), key=version_key)

    def names(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, key: object) -> bool:
        if isinstance(key, tuple) and len(key) == 2:
            name, version = key
            return version in self._entries.get(name, {})
        return key in self._entries

    def __iter__(self) -> Iterator[Specification]:
        for name in self.names():
            for version in self.versions(name):
                yield self._entries[name][version]

    def __len__(self) -> int:
        return sum(len(versions) for versions in self._entries.values())
