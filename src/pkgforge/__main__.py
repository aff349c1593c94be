"""Entry point for `python -m pkgforge` and the `pkgforge` CLI script."""

from __future__ import annotations

import argparse
import logging
import signal
from dataclasses import replace
from pathlib import Path
from types import FrameType
from typing import Any

from pkgforge import BuildOrchestrator, PhaseOverrides
from pkgforge.errors import BuildFailed, PkgforgeError
from pkgforge.scheduler import resolve_max_jobs
from pkgforge.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pkgforge", description="Build package specifications in dependency order")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("roots", nargs="+", help="Packages to build, as NAME or NAME@VERSION")
        sub.add_argument(
            "--specs",
            type=Path,
            action="append",
            default=None,
            help="Specification file or directory (repeatable; default: PKGFORGE_SPEC_PATH)",
        )
        sub.add_argument(
            "--state-root",
            type=Path,
            default=None,
            help="Directory holding the cache, store and checkpoints (default: PKGFORGE_STATE_ROOT)",
        )
        sub.add_argument(
            "--skip-phase",
            action="append",
            default=[],
            metavar="[NAME:]PHASE",
            help="Skip a phase for every package, or for one package with NAME:PHASE",
        )

    build = subparsers.add_parser("build", help="Build the roots and their dependencies")
    add_common(build)
    build.add_argument("--jobs", "-j", type=int, default=None, help="Concurrent builds (default: CPU count)")
    build.add_argument("--keep-failed", action="store_true", help="Keep working areas of failed builds")

    plan = subparsers.add_parser("plan", help="Print the build order without building")
    add_common(plan)
    return parser.parse_args(argv)


def _settings_for(args: argparse.Namespace) -> RuntimeSettings:
    settings = RuntimeSettings.from_env()
    overrides: dict[str, Any] = {}
    if args.state_root is not None:
        overrides["state_root"] = str(args.state_root)
    if getattr(args, "keep_failed", False):
        overrides["keep_failed"] = True
    if not overrides:
        return settings
    return replace(settings, **overrides).normalized()


def _install_interrupt_handler(orchestrator: BuildOrchestrator) -> Any:
    """First Ctrl-C stops dispatching, the second kills running phases."""
    presses = 0

    def handler(_signum: int, _frame: FrameType | None) -> None:
        nonlocal presses
        presses += 1
        orchestrator.cancellation.cancel(hard=presses > 1)

    return signal.signal(signal.SIGINT, handler)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = _settings_for(args)
        overrides = PhaseOverrides.skipping(args.skip_phase)
        max_jobs = getattr(args, "jobs", None)
        if max_jobs is not None:
            resolve_max_jobs(max_jobs)
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2

    orchestrator = BuildOrchestrator(
        settings=settings,
        overrides=overrides,
        max_jobs=max_jobs,
    )
    try:
        if args.command == "plan":
            for entry in orchestrator.plan(args.roots, spec_paths=args.specs):
                status = "cached" if entry["cached"] else "build"
                print(f"{entry['ref']} {entry['fingerprint'][:16]} {status}")
            return 0

        previous_handler = _install_interrupt_handler(orchestrator)
        try:
            report = orchestrator.run(args.roots, spec_paths=args.specs)
        except BuildFailed as exc:
            report = exc.report
            logging.error("%s", exc)
        finally:
            signal.signal(signal.SIGINT, previous_handler)
        for outcome in report.outcomes:
            print(f"{outcome.ref}: {outcome.describe()}")
        return 0 if report.succeeded else 1
    except (PkgforgeError, OSError, ValueError) as exc:
        logging.error("Build aborted: %s", exc)
        return 1
    finally:
        orchestrator.close()


if __name__ == "__main__":
    raise SystemExit(main())
