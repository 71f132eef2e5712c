"""
Ripple CLI - Main entry point

Incremental builds for a set of interdependent repositories.

Usage:
    ripple build                    Build changed repositories and their dependents
    ripple setup                    Clone and install every repository in the graph
    ripple dag show|layers|affected|export
                                    Inspect the dependency graph
    ripple status                   Show the build manifest
    ripple reset                    Reset failed (or all) manifest entries
    ripple version                  Show version information
"""

import json
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

from ripple.context import config, set_log_level
from ripple.dag import Graph, load_graph
from ripple.exceptions import (
    CycleError,
    GraphDefinitionError,
    ManifestPersistenceError,
    UnknownNodeError,
)
from ripple.workflow.runner import (
    BuildOrchestrator,
    ExecutionPlan,
    ExecutionStatus,
    LayeredExecutor,
    NodeResult,
    RunReport,
    RunStatus,
)
from ripple.workflow.run_logger import RunLogger
from ripple.workflow.state import Manifest, Phase, save_manifest
from ripple.workflow.workspace import CloneAction, CommandAction, Workspace

app = typer.Typer(
    name="ripple",
    help="Incremental builds across interdependent repositories",
    add_completion=False,
)

dag_app = typer.Typer(
    name="dag",
    help="Inspect the dependency graph.",
)
app.add_typer(dag_app, name="dag")


def _get_version() -> str:
    """Get package version."""
    from ripple import __version__
    return __version__


def _echo_success(message: str):
    """Print success message in green."""
    typer.echo(typer.style(f"✓ {message}", fg=typer.colors.GREEN))


def _echo_error(message: str):
    """Print error message in red."""
    typer.echo(typer.style(f"✗ {message}", fg=typer.colors.RED))


def _echo_warning(message: str):
    """Print warning message in yellow."""
    typer.echo(typer.style(f"⚠ {message}", fg=typer.colors.YELLOW))


def _echo_info(message: str):
    """Print info message in blue."""
    typer.echo(typer.style(f"ℹ {message}", fg=typer.colors.BLUE))


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------

GRAPH_OPTION = typer.Option(
    None, "--graph", "-g",
    help="Graph definition file (defaults to paths.graph)",
)
REPOS_OPTION = typer.Option(
    None, "--repos-dir",
    help="Directory holding the working copies (defaults to paths.repos)",
)


def _graph_path(graph_file: Optional[Path]) -> Path:
    return Path(graph_file or config.paths.graph).expanduser()


def _manifest_path() -> Path:
    return Path(str(config.paths.manifest)).expanduser()


def _logs_dir() -> Path:
    return Path(str(config.paths.logs)).expanduser()


def _load_graph_or_exit(graph_file: Optional[Path]) -> Graph:
    """Load and validate the graph definition, exiting with code 1 on errors."""
    path = _graph_path(graph_file)
    try:
        graph = load_graph(path)
        graph.topological_sort()
    except FileNotFoundError as e:
        _echo_error(str(e))
        raise typer.Exit(1)
    except (GraphDefinitionError, CycleError) as e:
        _echo_error(str(e))
        raise typer.Exit(1)
    return graph


def _load_manifest() -> Manifest:
    return Manifest.load_or_new(_manifest_path())


def _run_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def _print_plan(plan: ExecutionPlan, title: str) -> None:
    """Print the execution plan: one block per layer, changed nodes starred."""
    _echo_info(f"{title}:")
    _echo_info("=" * 60)
    current_layer = None
    for decision in plan.decisions:
        if decision.layer != current_layer:
            current_layer = decision.layer
            typer.echo(f"  Layer {decision.layer}:")
        marker = "*" if decision.node in plan.changed else " "
        if decision.run:
            status_msg = typer.style("RUN ", fg=typer.colors.GREEN)
        else:
            status_msg = typer.style("SKIP", fg=typer.colors.YELLOW)
        typer.echo(f"    {marker} {status_msg} {decision.node} ({decision.reason})")
    _echo_info("=" * 60)
    _echo_info(
        f"Total: {len(plan.decisions)} nodes in {len(plan.layers)} layers, "
        f"{len(plan.to_run)} to run (* = changed)"
    )


def _on_start(layer: int, node: str, position: int, total: int) -> None:
    typer.echo(f"[{position}/{total}] Layer {layer}: {node} ...")


def _on_done(layer: int, node: str, position: int, total: int, result: NodeResult) -> None:
    if result.status == ExecutionStatus.SUCCESS:
        _echo_success(f"{node} ({result.duration:.1f}s)")
    elif result.status == ExecutionStatus.SKIPPED:
        _echo_warning(f"{node} skipped: {result.reason}")
    else:
        _echo_error(f"{node} failed: {result.error_message}")
        if result.log_path:
            typer.echo(f"    log: {result.log_path}")


def _make_confirm_retry(retry: Optional[bool], yes: bool):
    def confirm_retry(failed: List[str]) -> bool:
        _echo_warning(f"{len(failed)} failed: {', '.join(failed)}")
        if retry is not None:
            return retry
        if yes:
            return False
        return typer.confirm("Retry failed?", default=True)

    return confirm_retry


def print_summary(report: RunReport, title: str, run_log: Optional[Path] = None) -> None:
    """Print the run summary box."""
    typer.echo("")
    _echo_info("=" * 60)
    if report.status == RunStatus.COMPLETE:
        _echo_success(f"{title} Complete")
    else:
        _echo_error(f"{title} Incomplete")
    _echo_info("=" * 60)

    succeeded = typer.style(f"{report.succeeded}", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  Succeeded:       {succeeded}")
    typer.echo(f"  Skipped:         {report.skipped}")
    if report.failed > 0:
        failed = typer.style(f"{report.failed}", fg=typer.colors.RED, bold=True)
        typer.echo(f"  Failed:          {failed}")
    typer.echo(f"  Layers:          {len(report.selection.layers)}")
    if report.rounds:
        typer.echo(f"  Retry rounds:    {report.rounds}")
    typer.echo(f"  Total time:      {report.duration:.1f}s")
    typer.echo(f"  Logs:            {_logs_dir()}")
    if run_log:
        typer.echo(f"  Run log:         {run_log}")
    _echo_info("=" * 60)

    if report.failed > 0:
        _echo_error("Failed nodes:")
        for result in report.results:
            if result.status == ExecutionStatus.FAILED:
                _echo_error(f"  - {result.node_id}: {result.error_message}")


def _exit_code(report: RunReport) -> int:
    if report.status == RunStatus.FAILED:
        return 1
    if report.status == RunStatus.INCOMPLETE:
        return 2
    return 0


def _run(
    orchestrator: BuildOrchestrator,
    run_logger: RunLogger,
    title: str,
    **run_kwargs,
) -> RunReport:
    """Run an orchestrator, turning structural and persistence errors into exit code 1."""
    try:
        report = orchestrator.run(**run_kwargs)
    except (UnknownNodeError, CycleError) as e:
        _echo_error(str(e))
        raise typer.Exit(1)
    except ManifestPersistenceError as e:
        _echo_error(f"Manifest could not be saved: {e}")
        raise typer.Exit(1)

    if report.status == RunStatus.UP_TO_DATE:
        _echo_success("Everything is up to date. Nothing to run.")
        return report
    if report.status == RunStatus.CANCELLED:
        return report

    print_summary(report, title, run_logger.write())
    return report


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def _command_action(workspace: Workspace) -> CommandAction:
    return CommandAction(
        workspace,
        command=config.build.command,
        build_file=config.build.get("build_file", ""),
        skip_tests_flag=config.build.get("skip_tests_flag", ""),
        env=config.build.get("env", {}),
        timeout=config.build.timeout,
    )


def _executor(manifest: Manifest, action, workspace: Workspace, phase: Phase) -> LayeredExecutor:
    return LayeredExecutor(
        manifest,
        action,
        workspace=workspace,
        manifest_path=_manifest_path(),
        phase=phase,
        logs_dir=_logs_dir(),
        on_start=_on_start,
        on_done=_on_done,
        strict_persistence=config.manifest.strict,
    )


def _skip_tests_options(skip_tests: Optional[bool]) -> Optional[dict]:
    # None lets an interrupted run resume with the options it started with
    return None if skip_tests is None else {"skip_tests": skip_tests}


@app.command()
def version():
    """Show version information."""
    typer.echo(f"Ripple version: {_get_version()}")
    typer.echo(f"Python version: {sys.version.split()[0]}")


@app.command()
def build(
    build_all: bool = typer.Option(
        False, "--all", "-a",
        help="Build every repository, ignoring change detection",
    ),
    repos: Optional[List[str]] = typer.Option(
        None, "--repo", "-r",
        help="Build only this repository and its dependents (repeatable)",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run",
        help="Show the build plan without building",
    ),
    skip_tests: Optional[bool] = typer.Option(
        None, "--skip-tests/--run-tests",
        help="Append the configured skip-tests flag (default: as the interrupted run, else run tests)",
    ),
    yes: bool = typer.Option(
        False, "--yes", "-y",
        help="Don't ask for confirmation",
    ),
    retry: Optional[bool] = typer.Option(
        None, "--retry/--no-retry",
        help="Retry failed builds without asking (default: ask)",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Debug logging and a run log even without failures",
    ),
    graph_file: Optional[Path] = GRAPH_OPTION,
    repos_dir: Optional[Path] = REPOS_OPTION,
):
    """Build changed repositories and everything that depends on them."""
    if verbose:
        set_log_level("DEBUG")

    graph = _load_graph_or_exit(graph_file)
    workspace = Workspace(repos_dir or Path(str(config.paths.repos)))
    if not workspace.repos_dir.is_dir():
        _echo_error(f"Repositories directory not found: {workspace.repos_dir}")
        raise typer.Exit(1)

    manifest = _load_manifest()
    executor = _executor(manifest, _command_action(workspace), workspace, Phase.BUILD)

    def confirm_plan(plan: ExecutionPlan) -> bool:
        _print_plan(plan, "Build plan")
        if dry_run:
            _echo_info("Dry run: nothing was built.")
            return False
        if not plan.to_run:
            _echo_success("Everything is up to date. Nothing to build.")
            return False
        return yes or typer.confirm("Proceed with build?", default=True)

    flags = [f for f, on in (("--all", build_all), ("--skip-tests", skip_tests)) if on]
    flags += [f"--repo {r}" for r in repos or []]
    run_logger = RunLogger(_logs_dir(), _run_id(), Phase.BUILD.value, verbose=verbose, flags=flags)

    orchestrator = BuildOrchestrator(
        graph,
        executor,
        confirm_plan=confirm_plan,
        confirm_retry=_make_confirm_retry(retry, yes),
        max_retry_rounds=config.build.max_retry_rounds,
        run_logger=run_logger,
    )

    report = _run(
        orchestrator,
        run_logger,
        "Build",
        targets=repos or None,
        build_all=build_all,
        options=_skip_tests_options(skip_tests),
    )
    code = _exit_code(report)
    if code:
        raise typer.Exit(code)


SETUP_PHASES = (Phase.CLONE, Phase.BUILD)


def _show_pass_plan(title: str):
    def confirm_plan(plan: ExecutionPlan) -> bool:
        _print_plan(plan, f"{title} plan")
        if not plan.to_run:
            _echo_success(f"{title}: nothing to do.")
        return bool(plan.to_run)

    return confirm_plan


@app.command()
def setup(
    yes: bool = typer.Option(
        False, "--yes", "-y",
        help="Don't ask for confirmation",
    ),
    retry: Optional[bool] = typer.Option(
        None, "--retry/--no-retry",
        help="Retry failed repositories without asking (default: ask)",
    ),
    force: bool = typer.Option(
        False, "--force", "-f",
        help="Start over even if a previous setup completed",
    ),
    skip_tests: Optional[bool] = typer.Option(
        None, "--skip-tests/--run-tests",
        help="Skip tests during the install pass (default: as the interrupted setup, else run tests)",
    ),
    graph_file: Optional[Path] = GRAPH_OPTION,
    repos_dir: Optional[Path] = REPOS_OPTION,
):
    """
    Clone every repository, then install them all in dependency order.

    Both passes are recorded in the manifest, so an interrupted setup
    resumes where it stopped.
    """
    graph = _load_graph_or_exit(graph_file)
    workspace = Workspace(repos_dir or Path(str(config.paths.repos)))

    manifest = _load_manifest()
    if manifest.is_complete(SETUP_PHASES) and not force:
        _echo_success("Setup already complete. Use --force to run it again.")
        return

    _echo_info(f"{graph.node_count()} repositories, {len(graph.layers())} layers")
    _echo_info(f"Target: {workspace.repos_dir}")
    if not yes and not typer.confirm("Proceed with setup?", default=True):
        return
    workspace.repos_dir.mkdir(parents=True, exist_ok=True)

    run_id = _run_id()
    passes = (
        ("Clone", Phase.CLONE, CloneAction(
            workspace,
            url_template=config.clone.url,
            org=config.clone.get("org", ""),
            branch=config.clone.get("branch", ""),
        ), None),
        ("Install", Phase.BUILD, _command_action(workspace), _skip_tests_options(skip_tests)),
    )

    code = 0
    for plan_title, phase, action, options in passes:
        run_logger = RunLogger(_logs_dir(), f"{run_id}_{phase.value}", phase.value)
        orchestrator = BuildOrchestrator(
            graph,
            _executor(manifest, action, workspace, phase),
            confirm_plan=_show_pass_plan(plan_title),
            confirm_retry=_make_confirm_retry(retry, yes),
            max_retry_rounds=config.build.max_retry_rounds,
            run_logger=run_logger,
        )
        report = _run(orchestrator, run_logger, plan_title, build_all=True, force=force, options=options)
        code = code or _exit_code(report)
        if report.status == RunStatus.FAILED:
            _echo_error(f"{plan_title} failed for every repository; stopping setup.")
            break

    if code:
        raise typer.Exit(code)


@app.command()
def status(
    json_output: bool = typer.Option(
        False, "--json",
        help="Print the raw manifest as JSON",
    ),
):
    """Show the build manifest."""
    path = _manifest_path()
    if not path.exists():
        _echo_info(f"No manifest at {path}. Nothing has been built yet.")
        return

    manifest = _load_manifest()
    if json_output:
        typer.echo(manifest.to_json())
        return

    _echo_info(f"Manifest: {path}")
    typer.echo(f"  Updated:   {manifest.updated_at}")
    typer.echo(f"  Completed: {manifest.completed_at or '-'}")

    for phase in Phase:
        s = manifest.summary(phase)
        if s.total == 0:
            continue
        typer.echo(
            f"  {phase.value:<9} {s.ok} ok, {s.failed} failed, {s.pending} pending"
        )
        for node_id in manifest.failed(phase):
            ps = manifest.phase_state(node_id, phase)
            _echo_error(f"  {phase.value} {node_id}: {ps.error if ps else ''}")


@app.command()
def reset(
    reset_all: bool = typer.Option(
        False, "--all",
        help="Reset every entry, not only failures",
    ),
):
    """Reset failed manifest entries to pending."""
    path = _manifest_path()
    manifest = _load_manifest()

    if reset_all:
        manifest.reset_all()
        message = "All manifest entries reset"
    else:
        nodes = manifest.reset_failed()
        message = f"Reset {len(nodes)} failed node(s)" + (f": {', '.join(nodes)}" if nodes else "")

    try:
        save_manifest(manifest, path)
    except ManifestPersistenceError as e:
        _echo_error(str(e))
        raise typer.Exit(1)
    _echo_success(message)


# ----------------------------------------------------------------------
# dag subcommands
# ----------------------------------------------------------------------


@dag_app.command("show")
def dag_show(
    node: Optional[str] = typer.Option(
        None, "--node", "-n",
        help="Show details for a single node",
    ),
    graph_file: Optional[Path] = GRAPH_OPTION,
):
    """Show nodes and their direct dependencies."""
    graph = _load_graph_or_exit(graph_file)

    if node is not None:
        if node not in graph:
            _echo_error(f"unknown node: {node}")
            raise typer.Exit(1)
        typer.echo(node)
        typer.echo(f"  depends on:          {', '.join(graph.dependencies_of(node)) or '-'}")
        typer.echo(f"  all dependencies:    {', '.join(graph.transitive_dependencies_of(node)) or '-'}")
        typer.echo(f"  required by:         {', '.join(graph.dependents_of(node)) or '-'}")
        typer.echo(f"  all dependents:      {', '.join(graph.transitive_dependents_of(node)) or '-'}")
        return

    _echo_info(f"{graph.node_count()} nodes, {graph.edge_count()} edges")
    for node_id in graph.topological_sort():
        deps = graph.dependencies_of(node_id)
        suffix = f" <- {', '.join(deps)}" if deps else ""
        typer.echo(f"  {node_id}{suffix}")


@dag_app.command("layers")
def dag_layers(graph_file: Optional[Path] = GRAPH_OPTION):
    """Show the build layers."""
    graph = _load_graph_or_exit(graph_file)
    for idx, layer in enumerate(graph.layers()):
        typer.echo(f"Layer {idx}: {', '.join(layer)}")


@dag_app.command("affected")
def dag_affected(
    source: str = typer.Option(
        ..., "--from",
        help="Node whose dependents to list",
    ),
    json_output: bool = typer.Option(
        False, "--json",
        help="Print as JSON",
    ),
    graph_file: Optional[Path] = GRAPH_OPTION,
):
    """List every node that transitively depends on a node."""
    graph = _load_graph_or_exit(graph_file)
    if source not in graph:
        _echo_error(f"unknown node: {source}")
        raise typer.Exit(1)

    affected = graph.transitive_dependents_of(source)
    if json_output:
        typer.echo(json.dumps(
            {"source": source, "affected": affected, "count": len(affected)},
            indent=2,
        ))
        return

    if not affected:
        _echo_info(f"Nothing depends on {source}")
        return
    _echo_info(f"{len(affected)} node(s) affected by {source}:")
    for node_id in affected:
        typer.echo(f"  {node_id}")


@dag_app.command("export")
def dag_export(
    output: Optional[Path] = typer.Option(
        None, "--output", "-o",
        help="Write to a file instead of stdout",
    ),
    graph_file: Optional[Path] = GRAPH_OPTION,
):
    """Export layers and edges as JSON."""
    graph = _load_graph_or_exit(graph_file)
    document = graph.export_json()
    if output is None:
        typer.echo(document)
        return
    output.write_text(document + "\n", encoding="utf-8")
    _echo_success(f"Graph exported to {output}")


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
