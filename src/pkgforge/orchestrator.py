from __future__ import annotations

import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Iterable, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph

from .cache import CacheIndex
from .cancellation import CancellationToken
from .errors import BuildFailed
from .executor import BuildExecutor, ProcessRunner
from .graph import Graph, GraphBuilder
from .models import RunReport
from .phases import PhaseOverrides
from .scheduler import Scheduler
from .settings import RuntimeSettings
from .store import SpecificationStore

logger = logging.getLogger(__name__)


class PipelineState(TypedDict, total=False):
    spec_paths: list[str]
    roots: list[str]
    plan_only: bool
    spec_count: int
    plan: list[dict[str, Any]]
    report: dict[str, Any]
    success: bool


class BuildOrchestrator:
    """Pipeline graph: load specifications -> resolve build graph -> schedule builds.

    Load-time and graph-time errors abort the pipeline before any build
    starts. ``BuildFailed`` from the schedule step propagates to the caller
    with the full run report attached; the report is also kept on
    ``self.report``.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        store: SpecificationStore | None = None,
        overrides: PhaseOverrides | None = None,
        runner: ProcessRunner | None = None,
        cancellation: CancellationToken | None = None,
        max_jobs: int | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.store = store
        self.overrides = overrides
        self.cancellation = cancellation if cancellation is not None else CancellationToken()
        self.max_jobs = max_jobs if max_jobs is not None else self.settings.max_jobs
        self.cache = CacheIndex(self.settings.cache_root_path)
        self.executor = BuildExecutor(
            self.cache,
            self.settings.work_root_path,
            runner=runner,
            phase_timeout=self.settings.phase_timeout,
            keep_failed=self.settings.keep_failed,
        )
        self.build_plan: Graph | None = None
        self.report: RunReport | None = None

        checkpoint_path = self.settings.checkpoint_path
        checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(checkpoint_path, check_same_thread=False)
        self._checkpointer = SqliteSaver(self._conn)
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)
        graph.add_node("load_specifications", self._load_node)
        graph.add_node("resolve_graph", self._resolve_node)
        graph.add_node("schedule", self._schedule_node)

        graph.add_edge(START, "load_specifications")
        graph.add_edge("load_specifications", "resolve_graph")
        graph.add_conditional_edges(
            "resolve_graph",
            self._resolve_route,
            {
                "schedule": "schedule",
                "end": END,
            },
        )
        graph.add_edge("schedule", END)
        return graph

    def _load_node(self, state: PipelineState) -> dict[str, Any]:
        if self.store is None:
            paths = [Path(item) for item in state.get("spec_paths") or [self.settings.spec_path]]
            self.store = SpecificationStore.from_paths(paths)
        return {"spec_count": len(self.store)}

    def _resolve_node(self, state: PipelineState) -> dict[str, Any]:
        if self.store is None:
            raise RuntimeError("specifications must be loaded before resolving the graph")
        self.build_plan = GraphBuilder(self.store, overrides=self.overrides).build(state["roots"])
        return {"plan": self.plan_entries()}

    def _resolve_route(self, state: PipelineState) -> str:
        return "end" if state.get("plan_only") else "schedule"

    def _schedule_node(self, _state: PipelineState) -> dict[str, Any]:
        if self.build_plan is None:
            raise RuntimeError("graph must be resolved before scheduling")
        scheduler = Scheduler(
            self.build_plan,
            self.executor,
            self.cache,
            max_jobs=self.max_jobs,
            cancellation=self.cancellation,
        )
        try:
            self.report = scheduler.run()
        except BuildFailed as exc:
            self.report = exc.report
            raise
        return {"report": self.report.model_dump(mode="json"), "success": True}

    def plan_entries(self) -> list[dict[str, Any]]:
        if self.build_plan is None:
            return []
        plan = self.build_plan
        return [
            {
                "ref": node.ref,
                "fingerprint": node.fingerprint,
                "cached": node.fingerprint in self.cache,
                "inputs": [f"{plan[index].ref}:{kind.value}" for index, kind in node.direct_inputs],
            }
            for node in plan
        ]

    def _invoke(self, roots: Iterable[str], spec_paths: Iterable[Path] | None, plan_only: bool) -> dict[str, Any]:
        state: PipelineState = {
            "roots": sorted(set(roots)),
            "spec_paths": [str(path) for path in spec_paths] if spec_paths is not None else [],
            "plan_only": plan_only,
        }
        return self.graph.invoke(
            state,
            config={
                "recursion_limit": self.settings.recursion_limit,
                "configurable": {"thread_id": f"pkgforge-{uuid.uuid4().hex[:8]}"},
            },
        )

    def plan(self, roots: Iterable[str], *, spec_paths: Iterable[Path] | None = None) -> list[dict[str, Any]]:
        """Resolve the graph without building; one entry per node in build order."""
        result = self._invoke(roots, spec_paths, plan_only=True)
        return list(result.get("plan", []))

    def run(self, roots: Iterable[str], *, spec_paths: Iterable[Path] | None = None) -> RunReport:
        self._invoke(roots, spec_paths, plan_only=False)
        if self.report is None:
            raise RuntimeError("pipeline finished without a run report")
        return self.report

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "BuildOrchestrator":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()
