"""CLI for featureflow.

Provides command-line access to the pipeline: orchestration passes, the
feature queue, project registration and lesson memory.
"""

import asyncio
import time
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from featureflow.blackboard import Blackboard
from featureflow.config import FlowConfig
from featureflow.errors import ReflectError
from featureflow.launcher import LauncherProvider
from featureflow.logging_setup import setup_logging
from featureflow.models import Feature, FeatureStatus
from featureflow.orchestrator import OrchestratorResult, PhaseOrchestrator
from featureflow.reflect import (
    LessonEngine,
    LessonQuery,
    ReflectMetadata,
    ReflectMode,
    handle_reflect_work_item,
    parse_reflect_meta,
    query_lessons,
)
from featureflow.telemetry import create_metrics, setup_telemetry

console = Console()

STATUS_COLORS = {
    FeatureStatus.PENDING: "white",
    FeatureStatus.ACTIVE: "cyan",
    FeatureStatus.SUCCEEDED: "green",
    FeatureStatus.FAILED: "red",
    FeatureStatus.BLOCKED: "yellow",
}


@click.group()
@click.version_option(package_name="featureflow")
@click.option("--log-level", default="INFO", help="Log level (DEBUG, INFO, WARNING)")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
def cli(log_level: str, json_logs: bool) -> None:
    """featureflow - Autonomous feature delivery pipeline."""
    setup_logging(log_level, json_output=json_logs)


def _session_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}"


def _lesson_engine(
    store: Blackboard, config: FlowConfig, launchers: LauncherProvider
) -> LessonEngine:
    return LessonEngine(
        store=store,
        launchers=launchers,
        mode=ReflectMode(config.reflect_mode),
        output_dir=config.state_dir,
    )


def _print_pass_summary(result: OrchestratorResult) -> None:
    console.print(
        f"Processed {result.features_processed} | "
        f"[green]advanced {result.features_advanced}[/green] | "
        f"[yellow]released {result.features_released}[/yellow] | "
        f"[red]failed {result.features_failed}[/red]"
    )
    for feature_id, error in result.errors:
        console.print(f"  [red]{feature_id}:[/red] {error}")


async def _process_reflect_items(
    store: Blackboard, engine: LessonEngine, session_id: str
) -> int:
    """Claim and run available reflect work items. Returns the number handled."""
    handled = 0
    for item in await store.list_work_items(status="available"):
        try:
            parse_reflect_meta(item.metadata)
        except ValueError:
            continue
        if not await store.claim_work_item(item.item_id, session_id):
            continue
        await handle_reflect_work_item(store, engine, item, session_id)
        handled += 1
    return handled


@cli.command()
@click.option("--once/--loop", default=True, help="Run a single pass or keep polling")
@click.option("--interval", default=60, help="Seconds between passes in loop mode")
def run(once: bool, interval: int) -> None:
    """Run orchestration passes over the feature queue."""
    asyncio.run(_run(once, interval))


async def _run(once: bool, interval: int) -> None:
    """Internal async implementation of the run command."""
    config = FlowConfig.from_env()
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)
    launchers = LauncherProvider.from_config(config)
    session_id = _session_id("orchestrator")

    async with Blackboard(config.db_path) as store:
        orchestrator = PhaseOrchestrator.from_config(
            store, config, launchers=launchers, tracer=tracer
        )
        engine = _lesson_engine(store, config, launchers)

        released = await orchestrator.release_orphaned_features(session_id)
        if released:
            console.print(f"[yellow]Released {released} orphaned feature(s)[/yellow]")

        while True:
            result = await orchestrator.run_once(session_id)
            _print_pass_summary(result)
            reflected = await _process_reflect_items(store, engine, session_id)
            if reflected:
                console.print(f"Ran reflect for {reflected} work item(s)")
            if once:
                break
            await asyncio.sleep(interval)


@cli.command()
@click.option("--project", "-p", default=None, help="Filter by project")
def status(project: str | None) -> None:
    """Show features and their pipeline position."""
    asyncio.run(_status(project))


async def _status(project: str | None) -> None:
    config = FlowConfig.from_env()
    async with Blackboard(config.db_path) as store:
        features = await store.list_features(project_id=project)

    if not features:
        console.print("[yellow]No features found[/yellow]")
        return

    table = Table(title="Features")
    table.add_column("Feature")
    table.add_column("Project")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Failures", justify="right")
    table.add_column("PR")
    table.add_column("Last error")

    for feature in features:
        color = STATUS_COLORS[feature.status]
        table.add_row(
            feature.feature_id,
            feature.project_id,
            feature.phase.value,
            f"[{color}]{feature.status.value}[/{color}]",
            f"{feature.failure_count}/{feature.max_failures}",
            feature.pr_url or "-",
            (feature.last_error or "")[:60],
        )
    console.print(table)


@cli.command()
@click.argument("feature_id")
@click.argument("title")
@click.option("--project", "-p", required=True, help="Registered project id")
@click.option("--description", "-d", default="", help="Feature description")
@click.option("--github-repo", default=None, help="owner/name of the GitHub repository")
@click.option("--main-branch", default="main", help="Branch pull requests target")
def enqueue(
    feature_id: str,
    title: str,
    project: str,
    description: str,
    github_repo: str | None,
    main_branch: str,
) -> None:
    """Queue a new feature for delivery."""
    asyncio.run(
        _enqueue(feature_id, title, project, description, github_repo, main_branch)
    )


async def _enqueue(
    feature_id: str,
    title: str,
    project: str,
    description: str,
    github_repo: str | None,
    main_branch: str,
) -> None:
    config = FlowConfig.from_env()
    async with Blackboard(config.db_path) as store:
        registered = await store.get_project(project)
        if registered is None:
            raise click.ClickException(
                f"Project {project} is not registered (use 'featureflow project add')"
            )
        feature = Feature(
            feature_id=feature_id,
            title=title,
            project_id=project,
            description=description,
            github_repo=github_repo or registered.github_repo,
            main_branch=main_branch,
            max_failures=config.max_failures,
        )
        try:
            await store.create_feature(feature)
        except ValueError as e:
            raise click.ClickException(str(e)) from e
        await store.append_event(
            "feature.queued",
            f"Queued feature {feature_id}: {title}",
            target_id=feature_id,
            target_type="feature",
            metadata={"project_id": project},
        )
    console.print(f"[green]Queued[/green] {feature_id}: {title}")


@cli.group()
def project() -> None:
    """Manage registered projects."""
    pass


@project.command("add")
@click.argument("project_id")
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@click.option("--github-repo", default=None, help="owner/name of the GitHub repository")
def project_add(project_id: str, path: str, github_repo: str | None) -> None:
    """Register a local repository as a project."""
    asyncio.run(_project_add(project_id, path, github_repo))


async def _project_add(project_id: str, path: str, github_repo: str | None) -> None:
    config = FlowConfig.from_env()
    async with Blackboard(config.db_path) as store:
        await store.register_project(project_id, Path(path).resolve(), github_repo)
    console.print(f"[green]Registered[/green] {project_id} -> {Path(path).resolve()}")


@cli.command()
@click.option("--project", "-p", default=None, help="Filter by project")
@click.option("--category", "-c", default=None, help="Filter by category")
@click.option(
    "--severity",
    type=click.Choice(["low", "medium", "high"]),
    default=None,
    help="Filter by severity",
)
@click.option("--search", "-s", default=None, help="Full-text search")
@click.option("--limit", "-n", default=50, help="Maximum lessons to show")
def lessons(
    project: str | None,
    category: str | None,
    severity: str | None,
    search: str | None,
    limit: int,
) -> None:
    """List lessons learned from earlier features."""
    query = LessonQuery(
        project=project,
        category=category,
        severity=severity,  # type: ignore[arg-type]
        search_text=search,
        limit=limit,
    )
    asyncio.run(_lessons(query))


async def _lessons(query: LessonQuery) -> None:
    config = FlowConfig.from_env()
    async with Blackboard(config.db_path) as store:
        found = await query_lessons(store, query)

    if not found:
        console.print("[yellow]No lessons found[/yellow]")
        return

    table = Table(title="Lessons")
    table.add_column("Category")
    table.add_column("Severity")
    table.add_column("Project")
    table.add_column("Constraint")

    for lesson in found:
        table.add_row(lesson.category, lesson.severity, lesson.project, lesson.constraint)
    console.print(table)


@cli.command()
@click.argument("work_item_id")
@click.option("--project", "-p", required=True, help="Project the feature belongs to")
@click.option("--pr-number", type=int, required=True, help="Merged pull request number")
@click.option("--pr-url", required=True, help="Merged pull request URL")
def reflect(work_item_id: str, project: str, pr_number: int, pr_url: str) -> None:
    """Extract lessons from a finished feature cycle."""
    metadata = ReflectMetadata(
        project_id=project,
        implementation_work_item_id=work_item_id,
        pr_number=pr_number,
        pr_url=pr_url,
    )
    asyncio.run(_reflect(metadata))


async def _reflect(metadata: ReflectMetadata) -> None:
    config = FlowConfig.from_env()
    _, meter = setup_telemetry(config)
    create_metrics(meter)
    async with Blackboard(config.db_path) as store:
        engine = _lesson_engine(store, config, LauncherProvider.from_config(config))
        try:
            result = await engine.run(metadata)
        except ReflectError as e:
            raise click.ClickException(f"Reflect failed: {e}") from e

    console.print(
        f"[bold]Reflect {metadata.implementation_work_item_id}:[/bold] "
        f"{result.lessons_extracted} extracted, "
        f"{result.lessons_deduped} duplicates, "
        f"[green]{result.lessons_persisted} persisted[/green]"
    )
    if result.categories:
        console.print(f"Categories: {', '.join(result.categories)}")


@cli.command("release-orphans")
def release_orphans() -> None:
    """Reset features left active by a dead orchestrator."""
    asyncio.run(_release_orphans())


async def _release_orphans() -> None:
    config = FlowConfig.from_env()
    async with Blackboard(config.db_path) as store:
        orchestrator = PhaseOrchestrator.from_config(store, config)
        released = await orchestrator.release_orphaned_features(_session_id("cli"))
    console.print(f"Released {released} feature(s)")


def main() -> None:
    """Main entry point for the featureflow CLI."""
    cli()


if __name__ == "__main__":
    main()
