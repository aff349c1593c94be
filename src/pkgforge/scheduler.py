"""Concurrent, dependency-ordered dispatch of build graph nodes.

Per-node state machine::

    Pending -> Ready -> Running -> Succeeded | Failed
                     \\-> Cached
    Pending -> Blocked     (a dependency failed)
    Pending | Ready -> Cancelled   (never dispatched after a cancellation)

A fixed pool of ``max_jobs`` worker loops pulls Ready nodes from one heap
guarded by a single condition variable. Cache lookups, builds and cache
writes all happen outside that condition, so the concurrency limit is the
only thing that bounds parallel work.
"""

from __future__ import annotations

import heapq
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from .cache import CacheIndex
from .cancellation import CancellationToken
from .errors import BuildFailed
from .executor import BuildExecutor
from .graph import Graph, Node
from .models import (
    SATISFIED_STATES,
    BuildResult,
    NodeOutcome,
    NodeState,
    RunReport,
    StateTransition,
)

logger = logging.getLogger(__name__)


def resolve_max_jobs(max_jobs: int | None) -> int:
    """Worker count: the explicit value, else the available parallelism."""
    if max_jobs is not None:
        if max_jobs < 1:
            raise ValueError(f"max_jobs must be >= 1, got {max_jobs}")
        return max_jobs
    return max(1, os.cpu_count() or 1)


@dataclass
class _NodeRecord:
    state: NodeState = NodeState.PENDING
    waiting_on: int = 0
    result: BuildResult | None = None
    failed_phase: str | None = None
    cause: str | None = None
    blocked_by: str | None = None


class Scheduler:
    def __init__(
        self,
        graph: Graph,
        executor: BuildExecutor,
        cache: CacheIndex,
        *,
        max_jobs: int | None = None,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self.graph = graph
        self.executor = executor
        self.cache = cache
        self.max_jobs = resolve_max_jobs(max_jobs)
        self.cancellation = cancellation if cancellation is not None else CancellationToken()

        self._cond = threading.Condition()
        self._ready: list[int] = []
        self._records = [_NodeRecord(waiting_on=len(node.dependencies)) for node in graph]
        self._unfinished = len(graph)
        self._stopping = False
        self._fatal: BaseException | None = None
        self._dispatch_order: list[str] = []
        self._transitions: list[StateTransition] = []

    # ------------------------------------------------------------------
    # State bookkeeping (caller holds self._cond)
    # ------------------------------------------------------------------

    def _transition(self, index: int, state: NodeState) -> None:
        record = self._records[index]
        self._transitions.append(
            StateTransition(node=self.graph[index].ref, from_state=record.state, to_state=state)
        )
        logger.debug("%s: %s -> %s", self.graph[index].ref, record.state.value, state.value)
        record.state = state
        if state.terminal:
            self._unfinished -= 1

    def _mark_ready(self, index: int) -> None:
        self._transition(index, NodeState.READY)
        heapq.heappush(self._ready, index)

    def _release_dependents(self, index: int) -> None:
        for dependent in self.graph.dependents(index):
            record = self._records[dependent]
            record.waiting_on -= 1
            if record.waiting_on == 0 and record.state == NodeState.PENDING:
                self._mark_ready(dependent)

    def _block_dependents(self, index: int) -> None:
        failed_ref = self.graph[index].ref
        for dependent in self.graph.transitive_dependents(index):
            record = self._records[dependent]
            if record.state != NodeState.PENDING:
                continue
            record.blocked_by = failed_ref
            record.cause = f"dependency {failed_ref} failed"
            self._transition(dependent, NodeState.BLOCKED)
            logger.warning("%s: blocked by %s", self.graph[dependent].ref, failed_ref)

    def _stop(self, error: BaseException | None = None) -> None:
        if error is not None and self._fatal is None:
            self._fatal = error
        self._stopping = True
        self._cond.notify_all()

    def _on_cancel(self) -> None:
        with self._cond:
            self._stop()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _next_ready(self) -> int | None:
        with self._cond:
            while True:
                if self._stopping or self._unfinished == 0:
                    self._cond.notify_all()
                    return None
                if self._ready:
                    return heapq.heappop(self._ready)
                self._cond.wait()

    def _input_results(self, node: Node) -> dict[int, BuildResult]:
        with self._cond:
            results: dict[int, BuildResult] = {}
            for dep in node.dependencies:
                result = self._records[dep].result
                if result is not None:
                    results[dep] = result
            return results

    def _process(self, index: int) -> None:
        node = self.graph[index]
        cached = self.cache.lookup(node.fingerprint)
        if cached is not None and cached.succeeded:
            with self._cond:
                self._records[index].result = cached
                self._transition(index, NodeState.CACHED)
                logger.info("%s: cached (%s)", node.ref, node.fingerprint[:12])
                self._release_dependents(index)
                self._cond.notify_all()
            return

        with self._cond:
            if self._stopping:
                # Cancelled between dequeue and dispatch.
                heapq.heappush(self._ready, index)
                return
            self._transition(index, NodeState.RUNNING)
            self._dispatch_order.append(node.ref)
        inputs = self._input_results(node)

        result = self.executor.execute(node, inputs, self.cancellation)
        if result.succeeded:
            result = self.cache.put(node.fingerprint, result)

        with self._cond:
            record = self._records[index]
            record.result = result
            if result.succeeded:
                self._transition(index, NodeState.SUCCEEDED)
                self._release_dependents(index)
            else:
                record.failed_phase = result.failed_phase
                record.cause = result.cause
                self._transition(index, NodeState.FAILED)
                self._block_dependents(index)
            self._cond.notify_all()

    def _worker(self) -> None:
        while True:
            index = self._next_ready()
            if index is None:
                return
            try:
                self._process(index)
            except Exception as exc:
                logger.error(
                    "%s: fatal scheduler error, waiting for running nodes before stopping: %s",
                    self.graph[index].ref,
                    exc,
                )
                with self._cond:
                    record = self._records[index]
                    if not record.state.terminal:
                        record.cause = str(exc)
                        self._transition(index, NodeState.FAILED)
                        self._block_dependents(index)
                    self._stop(exc)
                return

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _report(self) -> RunReport:
        outcomes = []
        for node, record in zip(self.graph, self._records):
            outcomes.append(
                NodeOutcome(
                    name=node.name,
                    version=node.version,
                    fingerprint=node.fingerprint,
                    state=record.state,
                    failed_phase=record.failed_phase,
                    cause=record.cause,
                    blocked_by=record.blocked_by,
                    result=record.result,
                )
            )
        return RunReport(
            outcomes=outcomes,
            dispatch_order=list(self._dispatch_order),
            transitions=list(self._transitions),
            cancelled=self.cancellation.cancelled,
        )

    def run(self) -> RunReport:
        """Build every node of the graph.

        Returns the run report when every node ends Succeeded or Cached.

        Raises:
            BuildFailed: If any node ends Failed, Blocked or Cancelled.
            FingerprintCollision: If the cache detects a non-deterministic build.
        """
        with self._cond:
            for node in self.graph:
                if self._records[node.index].waiting_on == 0:
                    self._mark_ready(node.index)
        self.cancellation.subscribe(self._on_cancel)

        logger.info("scheduling %d node(s) with %d worker(s)", len(self.graph), self.max_jobs)
        try:
            with ThreadPoolExecutor(max_workers=self.max_jobs, thread_name_prefix="pkgforge-worker") as pool:
                futures = [pool.submit(self._worker) for _ in range(self.max_jobs)]
            for future in futures:
                future.result()
        finally:
            self.cancellation.unsubscribe(self._on_cancel)

        with self._cond:
            for index, record in enumerate(self._records):
                if not record.state.terminal:
                    record.cause = "Cancelled"
                    self._transition(index, NodeState.CANCELLED)
            report = self._report()

        if self._fatal is not None:
            raise self._fatal
        failures = report.failures()
        if failures:
            logger.error("build finished with %d unsuccessful node(s)", len(failures))
            raise BuildFailed(failures, report)
        logger.info(
            "build finished: %d node(s) ok",
            sum(1 for outcome in report.outcomes if outcome.state in SATISFIED_STATES),
        )
        return report
