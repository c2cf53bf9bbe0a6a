"""Tests for the featureflow CLI."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from featureflow.blackboard import Blackboard
from featureflow.cli import cli
from featureflow.config import FlowConfig
from featureflow.models import Feature, FeatureStatus, Phase
from featureflow.reflect.schema import LessonRecord
from featureflow.reflect.store import persist_lesson


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def seed(coro_factory) -> None:
    """Run an async setup function against the configured blackboard."""

    async def _seed() -> None:
        async with Blackboard(FlowConfig.from_env().db_path) as store:
            await coro_factory(store)

    asyncio.run(_seed())


def read_feature(feature_id: str) -> Feature | None:
    async def _read() -> Feature | None:
        async with Blackboard(FlowConfig.from_env().db_path) as store:
            return await store.get_feature(feature_id)

    return asyncio.run(_read())


class TestCliHelp:
    """Tests for command discovery."""

    def test_lists_commands(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "status", "enqueue", "project", "lessons", "reflect"):
            assert command in result.output

    def test_run_help(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["run", "--help"])

        assert result.exit_code == 0
        assert "--once / --loop" in result.output


class TestQueueCommands:
    """Tests for project registration, enqueue and status."""

    def test_register_enqueue_and_status(self, runner: CliRunner, tmp_path: Path) -> None:
        repo = tmp_path / "repo"
        repo.mkdir()

        added = runner.invoke(cli, ["project", "add", "proj", str(repo), "--github-repo", "o/r"])
        queued = runner.invoke(cli, ["enqueue", "F-1", "Export", "--project", "proj"])
        status = runner.invoke(cli, ["status"])

        assert added.exit_code == 0, added.output
        assert "Registered" in added.output
        assert queued.exit_code == 0, queued.output
        assert "Queued" in queued.output
        assert status.exit_code == 0
        assert "F-1" in status.output
        assert "queued" in status.output

        feature = read_feature("F-1")
        assert feature is not None
        assert feature.github_repo == "o/r"
        assert feature.phase == Phase.QUEUED

    def test_enqueue_unregistered_project(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["enqueue", "F-1", "Export", "--project", "ghost"])

        assert result.exit_code != 0
        assert "Project ghost is not registered" in result.output

    def test_enqueue_duplicate(self, runner: CliRunner, tmp_path: Path) -> None:
        runner.invoke(cli, ["project", "add", "proj", str(tmp_path)])
        runner.invoke(cli, ["enqueue", "F-1", "Export", "--project", "proj"])

        result = runner.invoke(cli, ["enqueue", "F-1", "Again", "--project", "proj"])

        assert result.exit_code != 0
        assert "already exists" in result.output

    def test_status_empty(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "No features found" in result.output


class TestRunCommand:
    """Tests for orchestration from the command line."""

    def test_single_pass_with_empty_queue(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["run", "--once"])

        assert result.exit_code == 0, result.output
        assert "Processed 0" in result.output

    def test_release_orphans(self, runner: CliRunner, tmp_path: Path) -> None:
        async def add_active(store: Blackboard) -> None:
            await store.register_project("proj", tmp_path)
            await store.create_feature(
                Feature(
                    "F-1",
                    "Export",
                    "proj",
                    phase=Phase.PLANNING,
                    status=FeatureStatus.ACTIVE,
                    phase_started_at=datetime.now(timezone.utc),
                )
            )

        seed(add_active)

        result = runner.invoke(cli, ["release-orphans"])

        assert result.exit_code == 0, result.output
        assert "Released 1 feature(s)" in result.output
        feature = read_feature("F-1")
        assert feature is not None
        assert feature.status == FeatureStatus.PENDING


class TestLessonsCommand:
    """Tests for lesson listing."""

    def test_no_lessons(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["lessons"])

        assert result.exit_code == 0
        assert "No lessons found" in result.output

    def test_lists_filtered_lessons(self, runner: CliRunner) -> None:
        async def add_lessons(store: Blackboard) -> None:
            for index, severity in enumerate(("high", "low"), start=1):
                await persist_lesson(
                    store,
                    LessonRecord(
                        id=f"lesson-proj-1-{index}",
                        project="proj",
                        workItemId="F-1",
                        phase="implement",
                        category=f"cat{severity}",
                        severity=severity,
                        symptom="Build broke after dependency bump",
                        rootCause="Lock file was not regenerated",
                        resolution="Regenerated the lock file",
                        constraint="Regenerate lock files after bumps",
                        createdAt="2026-02-01T00:00:00+00:00",
                    ),
                )

        seed(add_lessons)

        result = runner.invoke(cli, ["lessons", "--severity", "high"])

        assert result.exit_code == 0, result.output
        assert "cathigh" in result.output
        assert "catlow" not in result.output

    def test_rejects_unknown_severity(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["lessons", "--severity", "urgent"])

        assert result.exit_code == 2
