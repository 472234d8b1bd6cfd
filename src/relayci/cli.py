# cli.py
from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click

from relayci.cache import CacheStore
from relayci.config import EngineConfig
from relayci.context import ISOLATION_DIRECTORY, ISOLATION_SHARED, ExecutionContextManager
from relayci.document import load_workflow
from relayci.errors import ConfigurationError
from relayci.model import Workflow
from relayci.scheduler import SKIPPED_NEEDS_PROPAGATE, SKIPPED_NEEDS_SATISFY, Scheduler
from relayci.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

DEFAULT_WORKFLOW = "relayci_workflow.py"
DOCUMENT_NAMES = (".relayci.yml", ".relayci.yaml")


def find_workflow_files(root: Path | None = None) -> list[Path]:
    """
    Find all workflow files in the given directory (default: cwd).

    Returns:
        List of Path objects for workflow files
    """
    current_dir = root or Path(".")
    workflow_files = []

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    for name in DOCUMENT_NAMES:
        path = current_dir / name
        if path.exists():
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Args:
        workflow_arg: Optional workflow argument from CLI

    Returns:
        Path to workflow file

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
                *(f"  {name}" for name in DOCUMENT_NAMES),
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  relayci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  relayci run --workflow {workflow_files[0]}",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load_or_exit(workflow_arg: str | None) -> Workflow:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return load_workflow(workflow_path)
    except (ConfigurationError, FileNotFoundError, TypeError, ValueError, SyntaxError) as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=str(e).splitlines(),
        )
        sys.exit(EXIT_CONFIG)


def _build_scheduler(workflow: Workflow, config: EngineConfig, console: Console) -> Scheduler:
    contexts = ExecutionContextManager(
        ".",
        workspace_root=config.workspace_dir,
        isolation=config.isolation,
        keep_workspaces=config.keep_workspaces,
        pass_env=config.pass_env,
        workflow_env=workflow.env,
    )
    return Scheduler(
        workflow,
        cache=CacheStore(config.cache_dir),
        contexts=contexts,
        max_workers=config.max_workers,
        fail_fast=config.fail_fast,
        skipped_needs=config.skipped_needs,
        console=console,
    )


@contextmanager
def _abort_on_signals(scheduler: Scheduler) -> Iterator[None]:
    """Route SIGINT/SIGTERM to Scheduler.abort() while the run is in progress."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        get_console().print_info(f"\nReceived {signal.Signals(signum).name}, cancelling run...")
        scheduler.abort()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print failures and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """relayci - matrix-aware, cache-aware CI workflow engine."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel workers")
@click.option("--cache-dir", default=None, help="Cache directory [default: .relayci/cache]")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop scheduling new jobs after first failure")
@click.option(
    "--skipped-needs",
    type=click.Choice([SKIPPED_NEEDS_PROPAGATE, SKIPPED_NEEDS_SATISFY]),
    default=None,
    help="Whether a skipped needed job skips its dependents (propagate) or counts as done (satisfy)",
)
@click.option(
    "--isolation",
    type=click.Choice([ISOLATION_SHARED, ISOLATION_DIRECTORY]),
    default=None,
    help="Run every job in the repository (shared) or in its own copy (directory)",
)
@click.option("--summary-json", type=click.Path(dir_okay=False), default=None, help="Write the run summary as JSON")
@click.pass_context
def run(ctx, workflow, workers, cache_dir, fail_fast, skipped_needs, isolation, summary_json):
    """Run a relayci workflow."""
    console = get_console()

    try:
        config = EngineConfig.from_env().with_overrides(
            max_workers=workers,
            cache_dir=cache_dir,
            fail_fast=fail_fast,
            skipped_needs=skipped_needs,
            isolation=isolation,
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)

    wf = _load_or_exit(workflow)

    try:
        scheduler = _build_scheduler(wf, config, console)
    except ConfigurationError as e:
        console.print_error(
            "Invalid workflow",
            str(e),
            details=[f"involved: {', '.join(e.members)}"] if e.members else None,
        )
        sys.exit(EXIT_CONFIG)

    try:
        with _abort_on_signals(scheduler):
            summary = scheduler.run()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if summary_json:
        Path(summary_json).write_text(json.dumps(summary.to_dict(), indent=2, default=str), encoding="utf-8")

    if not summary.ok:
        sys.exit(EXIT_FAILED)
    if summary.cancelled:
        sys.exit(EXIT_INTERRUPTED)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.pass_context
def plan(ctx, workflow):
    """Print the expanded job instances, stage by stage, without running them."""
    console = get_console()
    wf = _load_or_exit(workflow)
    try:
        scheduler = Scheduler(wf, max_workers=1, console=console)
    except ConfigurationError as e:
        console.print_error(
            "Invalid workflow",
            str(e),
            details=[f"involved: {', '.join(e.members)}"] if e.members else None,
        )
        sys.exit(EXIT_CONFIG)

    levels = [[scheduler.graph[iid].name for iid in level] for level in scheduler.plan()]
    console.print_plan(levels)


if __name__ == "__main__":
    cli()
