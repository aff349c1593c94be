from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Iterable, Iterator

from .canonical import canonical_digest
from .errors import CyclicDependency, SpecificationNotFound, UnresolvedInput
from .models import InputKind, InputRef, Specification
from .phases import PhaseOverrides, PlannedPhase, plan_phases
from .store import SpecificationStore

logger = logging.getLogger(__name__)

# When one dependency is reached along several edges, the strongest kind wins.
_KIND_RANK = {InputKind.NATIVE: 0, InputKind.REGULAR: 1, InputKind.PROPAGATED: 2}


@dataclass(frozen=True)
class Node:
    """One resolved specification inside a build plan.

    ``direct_inputs`` are the declared edges; ``inputs`` additionally holds
    the propagated inputs re-exposed by dependencies. Both are
    ``(node index, kind)`` pairs sorted by index.
    """

    index: int
    spec: Specification
    direct_inputs: tuple[tuple[int, InputKind], ...]
    inputs: tuple[tuple[int, InputKind], ...]
    phases: tuple[PlannedPhase, ...]
    fingerprint: str

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def version(self) -> str:
        return self.spec.version

    @property
    def ref(self) -> str:
        return self.spec.ref

    @property
    def dependencies(self) -> tuple[int, ...]:
        return tuple(index for index, _ in self.inputs)

    def input_indices(self, kind: InputKind | None = None) -> tuple[int, ...]:
        return tuple(index for index, item_kind in self.inputs if kind is None or item_kind == kind)


class Graph:
    """Acyclic build graph. Node indices are a topological order: inputs come first."""

    def __init__(self, nodes: Iterable[Node], roots: Iterable[int]) -> None:
        self.nodes: tuple[Node, ...] = tuple(nodes)
        self.roots: tuple[int, ...] = tuple(roots)
        self._by_ref = {node.ref: node for node in self.nodes}
        by_name: dict[str, list[Node]] = defaultdict(list)
        for node in self.nodes:
            by_name[node.name].append(node)
        self._by_name = dict(by_name)
        dependents: dict[int, list[int]] = defaultdict(list)
        for node in self.nodes:
            for dep in node.dependencies:
                dependents[dep].append(node.index)
        self._dependents = {index: tuple(sorted(items)) for index, items in dependents.items()}

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def __getitem__(self, index: int) -> Node:
        return self.nodes[index]

    def node(self, key: str) -> Node:
        """Find a node by ``name@version`` or by a name that is unique in the graph."""
        if key in self._by_ref:
            return self._by_ref[key]
        matches = self._by_name.get(key, [])
        if len(matches) != 1:
            raise KeyError(key)
        return matches[0]

    def dependents(self, index: int) -> tuple[int, ...]:
        return self._dependents.get(index, ())

    def transitive_dependents(self, index: int) -> list[int]:
        seen: set[int] = set()
        queue: deque[int] = deque(self.dependents(index))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.dependents(current))
        return sorted(seen)

    def topological_order(self) -> list[Node]:
        return list(self.nodes)

    def edges(self) -> list[tuple[str, str, InputKind]]:
        """Declared edges as ``(dependent ref, dependency ref, kind)``."""
        return [
            (node.ref, self.nodes[dep].ref, kind)
            for node in self.nodes
            for dep, kind in node.direct_inputs
        ]

    def runtime_closure(self, key: str) -> list[Node]:
        """Dependencies visible at run time: everything reachable over non-native inputs."""
        start = self.node(key)
        seen: set[int] = set()
        queue: deque[int] = deque(
            index for index, kind in start.inputs if kind != InputKind.NATIVE
        )
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(
                index for index, kind in self.nodes[current].inputs if kind != InputKind.NATIVE
            )
        return [self.nodes[index] for index in sorted(seen)]


def parse_root(root: str) -> tuple[str, str | None]:
    name, sep, version = root.strip().partition("@")
    if not name or (sep and not version):
        raise ValueError(f"invalid root reference: {root!r}")
    return name, version or None


def compute_fingerprint(
    spec: Specification,
    inputs: Iterable[tuple[InputKind, str]],
    phases: Iterable[PlannedPhase],
) -> str:
    """SHA-256 over the canonical JSON of everything that determines a node's output."""
    payload = {
        "spec": spec.build_content(),
        "inputs": sorted([kind.value, fingerprint] for kind, fingerprint in inputs),
        "phases": [phase.payload() for phase in phases],
    }
    return canonical_digest(payload)


class GraphBuilder:
    """Resolves root names against a specification store into a build graph."""

    def __init__(self, store: SpecificationStore, *, overrides: PhaseOverrides | None = None) -> None:
        self.store = store
        self.overrides = overrides

    def _resolve_input(self, ref: InputRef, required_by: Specification) -> Specification:
        try:
            return self.store.lookup(ref.name, ref.version)
        except SpecificationNotFound:
            raise UnresolvedInput(ref.name, required_by=required_by.ref, version=ref.version) from None

    def build(self, root_names: Iterable[str]) -> Graph:
        """Resolve the closure of ``root_names`` into an immutable graph.

        Args:
            root_names: Roots as ``name`` (latest version) or ``name@version``.

        Returns:
            The graph, its node indices in dependency order.

        Raises:
            SpecificationNotFound: A root names no registered specification.
            UnresolvedInput: A declared input cannot be found in the store.
            CyclicDependency: The inputs form a cycle, including an input
                naming its own specification.
            ValueError: ``root_names`` is empty.
        """
        root_specs: list[Specification] = []
        for root in sorted(set(root_names)):
            name, version = parse_root(root)
            root_specs.append(self.store.lookup(name, version))
        if not root_specs:
            raise ValueError("at least one root is required")

        nodes: list[Node] = []
        index_of: dict[tuple[str, str], int] = {}
        # Propagated inputs each finished node re-exposes to its consumers.
        exported: list[frozenset[int]] = []

        def finish(spec: Specification, resolved: list[tuple[Specification, InputKind]]) -> None:
            direct: dict[int, InputKind] = {}
            effective: dict[int, InputKind] = {}
            exports: set[int] = set()

            def add(target: dict[int, InputKind], index: int, kind: InputKind) -> None:
                current = target.get(index)
                if current is None or _KIND_RANK[kind] > _KIND_RANK[current]:
                    target[index] = kind

            for dep_spec, kind in resolved:
                dep_index = index_of[(dep_spec.name, dep_spec.version)]
                add(direct, dep_index, kind)
                add(effective, dep_index, kind)
                for reexposed in exported[dep_index]:
                    add(effective, reexposed, kind)
                if kind == InputKind.PROPAGATED:
                    exports.add(dep_index)
                    exports.update(exported[dep_index])

            phases = plan_phases(spec, self.overrides)
            inputs = tuple(sorted(effective.items()))
            fingerprint = compute_fingerprint(
                spec,
                ((kind, nodes[index].fingerprint) for index, kind in inputs),
                phases,
            )
            node = Node(
                index=len(nodes),
                spec=spec,
                direct_inputs=tuple(sorted(direct.items())),
                inputs=inputs,
                phases=phases,
                fingerprint=fingerprint,
            )
            index_of[(spec.name, spec.version)] = node.index
            nodes.append(node)
            exported.append(frozenset(exports))

        for root_spec in root_specs:
            if (root_spec.name, root_spec.version) in index_of:
                continue
            # Iterative depth-first traversal; ``path`` is the recursion stack.
            path: list[Specification] = [root_spec]
            on_path: set[tuple[str, str]] = {(root_spec.name, root_spec.version)}
            frames: list[tuple[Specification, Iterator[InputRef], list[tuple[Specification, InputKind]]]] = [
                (root_spec, iter(root_spec.inputs), [])
            ]
            while frames:
                spec, pending, resolved = frames[-1]
                ref = next(pending, None)
                if ref is None:
                    frames.pop()
                    path.pop()
                    on_path.discard((spec.name, spec.version))
                    finish(spec, resolved)
                    continue
                dep = self._resolve_input(ref, spec)
                resolved.append((dep, ref.kind))
                key = (dep.name, dep.version)
                if key in index_of:
                    continue
                if key in on_path:
                    start = next(idx for idx, item in enumerate(path) if (item.name, item.version) == key)
                    cycle = [item.name for item in path[start:]] + [dep.name]
                    raise CyclicDependency(cycle)
                path.append(dep)
                on_path.add(key)
                frames.append((dep, iter(dep.inputs), []))

        roots = [index_of[(spec.name, spec.version)] for spec in root_specs]
        graph = Graph(nodes, roots)
        logger.info(
            "resolved build graph: %d node(s), %d edge(s) from roots %s",
            len(graph),
            len(graph.edges()),
            ", ".join(spec.ref for spec in root_specs),
        )
        return graph
