import sys
import threading
import time
from pathlib import Path

import pytest

from pkgforge import (
    BuildExecutor,
    BuildStatus,
    CacheIndex,
    CancellationToken,
    GraphBuilder,
    InputKind,
    InputRef,
    Phase,
    PhaseInvocation,
    PhaseOverride,
    PhaseOverrides,
    Specification,
    SpecificationStore,
    SubprocessRunner,
)
from pkgforge.graph import Graph
from conftest import RecordingRunner, make_spec


def _graph(*specs, roots=None, overrides=None) -> Graph:
    store = SpecificationStore(specs)
    return GraphBuilder(store, overrides=overrides).build(roots or {spec.name for spec in specs})


def test_successful_build_installs_into_store(
    executor: BuildExecutor, runner: RecordingRunner, cache: CacheIndex, tmp_path: Path
) -> None:
    node = _graph(make_spec("zlib", version="1.3.1")).node("zlib")
    result = executor.execute(node)

    assert result.status == BuildStatus.SUCCEEDED
    assert result.phases_run == ["configure", "build", "check", "install"]
    assert runner.calls == [("zlib@1.3.1", phase) for phase in ("configure", "build", "check", "install")]
    artifact = Path(result.artifact_path)
    assert artifact == cache.artifact_path(node.fingerprint)
    assert (artifact / "zlib.txt").read_text(encoding="utf-8") == "1.3.1"
    assert Path(result.log_path) == cache.log_path(node.fingerprint)
    assert "==> zlib@1.3.1: install" in Path(result.log_path).read_text(encoding="utf-8")
    assert list((tmp_path / "work").iterdir()) == []


def test_skip_and_replace_overrides(executor: BuildExecutor, runner: RecordingRunner) -> None:
    overrides = PhaseOverrides({"check": PhaseOverride.skip(), "zlib:build": PhaseOverride.replace("make -j1")})
    node = _graph(make_spec("zlib"), overrides=overrides).node("zlib")
    result = executor.execute(node)

    assert result.succeeded
    assert [phase for _, phase in runner.calls] == ["configure", "build", "install"]
    build = next(item for item in runner.invocations if item.phase == "build")
    assert build.action == "make -j1"
    assert build.env["PKGFORGE_PHASE"] == "build"


def test_phases_without_action_are_not_invoked(executor: BuildExecutor, runner: RecordingRunner) -> None:
    node = _graph(make_spec("meta", phases=[Phase(name="unpack"), Phase(name="install", action="true")])).node("meta")
    result = executor.execute(node)
    assert result.succeeded
    assert runner.calls == [("meta@1.0", "install")]


def test_failed_phase_aborts_remaining_phases(cache: CacheIndex, tmp_path: Path) -> None:
    runner = RecordingRunner(fail={"zlib": "build"})
    executor = BuildExecutor(cache, tmp_path / "work", runner=runner)
    node = _graph(make_spec("zlib")).node("zlib")
    result = executor.execute(node)

    assert result.status == BuildStatus.FAILED
    assert result.failed_phase == "build"
    assert result.cause == "exit status 1"
    assert result.phases_run == ["configure", "build"]
    assert result.artifact_path is None
    assert Path(result.log_path).is_file()
    assert not cache.artifact_path(node.fingerprint).exists()
    assert list((tmp_path / "work").iterdir()) == []


def test_keep_failed_preserves_working_area(cache: CacheIndex, tmp_path: Path) -> None:
    executor = BuildExecutor(
        cache, tmp_path / "work", runner=RecordingRunner(fail={"zlib": "check"}), keep_failed=True
    )
    result = executor.execute(_graph(make_spec("zlib")).node("zlib"))
    assert result.failed_phase == "check"
    kept = list((tmp_path / "work").iterdir())
    assert len(kept) == 1
    assert {child.name for child in kept[0].iterdir()} == {"build", "out", "tmp", "build.log"}


def test_each_node_gets_an_isolated_working_area(executor: BuildExecutor, runner: RecordingRunner) -> None:
    graph = _graph(make_spec("a"), make_spec("b"))
    executor.execute(graph.node("a"))
    executor.execute(graph.node("b"))

    by_node = {item.node: item for item in runner.invocations if item.phase == "build"}
    first, second = by_node["a@1.0"], by_node["b@1.0"]
    assert first.cwd != second.cwd
    assert first.cwd.name == "build"
    assert first.env["HOME"] == first.env["TMPDIR"]
    assert first.env["PKGFORGE_OUT"] != second.env["PKGFORGE_OUT"]
    assert not first.cwd.exists()


def test_inputs_are_exposed_through_the_environment(cache: CacheIndex, tmp_path: Path) -> None:
    def add_bin(invocation: PhaseInvocation, _cancel: CancellationToken) -> None:
        if invocation.phase == "install":
            (Path(invocation.env["PKGFORGE_OUT"]) / "bin").mkdir()
        return None

    runner = RecordingRunner(on_phase=add_bin)
    executor = BuildExecutor(cache, tmp_path / "work", runner=runner, base_env={"PATH": "/usr/bin:/bin"})
    graph = _graph(make_spec("cc-wrapper"), make_spec("lib"), make_spec("app", ("cc-wrapper", "native"), "lib"))
    results = {}
    for name in ("cc-wrapper", "lib"):
        node = graph.node(name)
        results[node.index] = executor.execute(node)

    app = graph.node("app")
    assert executor.execute(app, results).succeeded

    env = next(item.env for item in runner.invocations if item.node == "app@1.0")
    wrapper = results[graph.node("cc-wrapper").index].artifact_path
    lib = results[graph.node("lib").index].artifact_path
    assert env["PKGFORGE_INPUT_CC_WRAPPER"] == wrapper
    assert env["PKGFORGE_INPUT_LIB"] == lib
    assert env["PKGFORGE_NATIVE_INPUTS"] == wrapper
    assert env["PKGFORGE_INPUTS"] == lib
    assert env["PATH"] == f"{wrapper}/bin:{lib}/bin:/usr/bin:/bin"
    assert env["PKGFORGE_FINGERPRINT"] == app.fingerprint


def test_missing_input_result_is_rejected(executor: BuildExecutor, runner: RecordingRunner) -> None:
    graph = _graph(make_spec("lib"), make_spec("app", "lib"))
    with pytest.raises(ValueError, match="missing the build result"):
        executor.execute(graph.node("app"), {})
    assert runner.calls == []


def _build_inputs(executor: BuildExecutor, graph: Graph, refs: list[str]) -> dict:
    return {graph.node(ref).index: executor.execute(graph.node(ref)) for ref in refs}


def test_inputs_whose_variables_collide_fail_the_node(executor: BuildExecutor, runner: RecordingRunner) -> None:
    graph = _graph(make_spec("foo-bar"), make_spec("foo_bar"), make_spec("app", "foo-bar", "foo_bar"))
    results = _build_inputs(executor, graph, ["foo-bar", "foo_bar"])

    result = executor.execute(graph.node("app"), results)

    assert result.status == BuildStatus.FAILED
    assert result.failed_phase is None
    assert "PKGFORGE_INPUT_FOO_BAR" in result.cause
    assert "foo-bar@1.0" in result.cause and "foo_bar@1.0" in result.cause
    assert "app@1.0" not in runner.nodes()


def test_several_versions_of_one_input_get_versioned_variables(
    executor: BuildExecutor, runner: RecordingRunner
) -> None:
    graph = _graph(
        make_spec("lib", version="1"),
        make_spec("lib", version="2"),
        Specification(
            name="shim", version="1.0", inputs=(InputRef(name="lib", kind=InputKind.PROPAGATED, version="1"),)
        ),
        Specification(name="app", version="1.0", inputs=(InputRef(name="shim"), InputRef(name="lib", version="2"))),
        roots={"app"},
    )
    results = _build_inputs(executor, graph, ["lib@1", "lib@2", "shim"])

    assert executor.execute(graph.node("app"), results).succeeded

    env = next(item.env for item in runner.invocations if item.node == "app@1.0")
    assert env["PKGFORGE_INPUT_LIB_1"] == results[graph.node("lib@1").index].artifact_path
    assert env["PKGFORGE_INPUT_LIB_2"] == results[graph.node("lib@2").index].artifact_path
    assert env["PKGFORGE_INPUT_SHIM"] == results[graph.node("shim").index].artifact_path
    assert "PKGFORGE_INPUT_LIB" not in env


def test_invocation_argv() -> None:
    shell = PhaseInvocation(node="a@1", phase="build", action="make all", cwd=Path("."), env={}, log_path=Path("x"))
    argv = PhaseInvocation(node="a@1", phase="build", action=("make", "all"), cwd=Path("."), env={}, log_path=Path("x"))
    assert shell.argv == ["/bin/sh", "-c", "make all"]
    assert argv.argv == ["make", "all"]


def test_subprocess_runner_builds_real_commands(cache: CacheIndex, tmp_path: Path) -> None:
    executor = BuildExecutor(cache, tmp_path / "work", runner=SubprocessRunner())
    spec = make_spec(
        "hello",
        phases=[
            Phase(name="build", action=(sys.executable, "-c", "open('hello.txt', 'w').write('hi'); print('compiled')")),
            Phase(name="install", action='mkdir -p "$PKGFORGE_OUT/share" && cp hello.txt "$PKGFORGE_OUT/share/"'),
        ],
    )
    result = executor.execute(_graph(spec).node("hello"))

    assert result.succeeded, result.cause
    assert (Path(result.artifact_path) / "share" / "hello.txt").read_text(encoding="utf-8") == "hi"
    log = Path(result.log_path).read_text(encoding="utf-8")
    assert "==> hello@1.0: build" in log
    assert "compiled" in log


def test_subprocess_runner_reports_exit_status(cache: CacheIndex, tmp_path: Path) -> None:
    executor = BuildExecutor(cache, tmp_path / "work", runner=SubprocessRunner())
    spec = make_spec("bad", phases=[Phase(name="build", action="echo broken >&2; exit 3"), Phase(name="install", action="true")])
    result = executor.execute(_graph(spec).node("bad"))

    assert result.failed_phase == "build"
    assert result.cause == "exit status 3"
    assert result.phases_run == ["build"]
    assert "broken" in Path(result.log_path).read_text(encoding="utf-8")


def test_subprocess_runner_reports_unstartable_command(cache: CacheIndex, tmp_path: Path) -> None:
    executor = BuildExecutor(cache, tmp_path / "work", runner=SubprocessRunner())
    spec = make_spec("ghost", phases=[Phase(name="build", action=(str(tmp_path / "no-such-tool"),))])
    result = executor.execute(_graph(spec).node("ghost"))
    assert result.failed_phase == "build"
    assert result.cause.startswith("could not start")


def test_subprocess_runner_enforces_phase_timeout(cache: CacheIndex, tmp_path: Path) -> None:
    executor = BuildExecutor(cache, tmp_path / "work", runner=SubprocessRunner(kill_grace=1.0), phase_timeout=0.3)
    spec = make_spec("slow", phases=[Phase(name="build", action=(sys.executable, "-c", "import time; time.sleep(30)"))])
    started = time.monotonic()
    result = executor.execute(_graph(spec).node("slow"))

    assert time.monotonic() - started < 10
    assert result.failed_phase == "build"
    assert result.cause == "timed out after 0.3s"


def test_hard_cancel_kills_running_phase(cache: CacheIndex, tmp_path: Path) -> None:
    executor = BuildExecutor(cache, tmp_path / "work", runner=SubprocessRunner(kill_grace=1.0))
    spec = make_spec(
        "slow",
        phases=[
            Phase(name="build", action=(sys.executable, "-c", "import time; time.sleep(30)")),
            Phase(name="install", action="true"),
        ],
    )
    token = CancellationToken()
    timer = threading.Timer(0.3, token.cancel, kwargs={"hard": True})
    timer.start()
    started = time.monotonic()
    try:
        result = executor.execute(_graph(spec).node("slow"), cancel=token)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10
    assert result.status == BuildStatus.FAILED
    assert result.failed_phase == "build"
    assert result.cause == "Cancelled"
    assert result.phases_run == ["build"]
