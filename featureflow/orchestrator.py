"""Pipeline orchestrator.

Moves features through the phase state machine:

    queued → specifying → specified → planning → planned → tasking → tasked
           → implementing → implemented → completing → completed

Ready ("-ed") states advance into the next in-progress ("-ing") state; an
in-progress state runs its executor, and a successful run must pass the
phase gate before the feature moves on. Failures keep the feature in its
in-progress state for retry until the failure budget is exhausted.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

import structlog
from opentelemetry import trace

from featureflow import telemetry
from featureflow.blackboard import Blackboard
from featureflow.config import FlowConfig
from featureflow.errors import CommandError
from featureflow.gates import QualityGate, check_artifact_gate, check_code_gate
from featureflow.launcher import LauncherProvider
from featureflow.lock import FeatureLock, FeatureLockedError
from featureflow.models import (
    ADVANCE_MAP,
    GATE_MAP,
    TERMINAL_PHASES,
    Feature,
    FeatureStatus,
    GateKind,
    Phase,
    PhaseResult,
    is_active_phase,
    to_completed_phase,
)
from featureflow.phases import PhaseExecutor, PhaseExecutorOptions, build_executors
from featureflow.spec_dirs import link_spec_dir
from featureflow.specflow_cli import SpecflowCli
from featureflow.worktree import GitClient

logger = structlog.get_logger(__name__)

DEFAULT_PHASE_TIMEOUT_MIN = 20

# Minutes an active session may run before it is considered stale
PHASE_STALE_TIMEOUT_MIN: dict[Phase, int] = {
    Phase.SPECIFYING: 20,
    Phase.PLANNING: 20,
    Phase.TASKING: 20,
    Phase.IMPLEMENTING: 180,
    Phase.COMPLETING: 20,
}

ActionKind = Literal["wait", "release", "fail", "advance", "run-phase", "check-gate"]


@dataclass
class OrchestratorAction:
    """What to do next with a feature."""

    kind: ActionKind
    reason: str = ""
    gate: GateKind | None = None
    from_phase: Phase | None = None
    to_phase: Phase | None = None


@dataclass
class OrchestratorResult:
    """Counts from one orchestration pass."""

    features_processed: int = 0
    features_advanced: int = 0
    features_released: int = 0
    features_failed: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class PhaseOutcome:
    ran: bool
    failed: bool
    error: str | None = None


def _is_stale(started_at: datetime | None, timeout_min: float, now: datetime) -> bool:
    if started_at is None:
        return True
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return (now - started_at).total_seconds() > timeout_min * 60


def determine_action(
    feature: Feature,
    timeout_min: float = DEFAULT_PHASE_TIMEOUT_MIN,
    now: datetime | None = None,
) -> OrchestratorAction:
    """Decide the next action for a feature. Pure function.

    Args:
        feature: Feature to inspect
        timeout_min: Stale timeout for phases without an explicit override
        now: Current time (defaults to UTC now)

    Returns:
        The action the orchestrator should take
    """
    now = now or datetime.now(timezone.utc)

    if feature.phase in TERMINAL_PHASES:
        return OrchestratorAction("wait", "terminal state")

    if feature.status == FeatureStatus.BLOCKED:
        return OrchestratorAction("wait", "blocked")

    if feature.failure_count >= feature.max_failures:
        return OrchestratorAction(
            "fail",
            f"max failures exceeded ({feature.failure_count}/{feature.max_failures})",
        )

    if feature.status == FeatureStatus.ACTIVE:
        limit = PHASE_STALE_TIMEOUT_MIN.get(feature.phase, timeout_min)
        if _is_stale(feature.phase_started_at, limit, now):
            return OrchestratorAction("release", "phase timeout exceeded")
        return OrchestratorAction("wait", "session active")

    if is_active_phase(feature.phase) and feature.status == FeatureStatus.SUCCEEDED:
        return OrchestratorAction("check-gate", gate=GATE_MAP.get(feature.phase, "pass"))

    if feature.phase in ADVANCE_MAP and feature.status == FeatureStatus.PENDING:
        return OrchestratorAction(
            "advance", from_phase=feature.phase, to_phase=ADVANCE_MAP[feature.phase]
        )

    if is_active_phase(feature.phase) and feature.status == FeatureStatus.PENDING:
        return OrchestratorAction("run-phase")

    return OrchestratorAction("wait", "no action available")


@dataclass
class PhaseOrchestrator:
    """Runs orchestration passes over the blackboard's features.

    Attributes:
        store: Blackboard holding features, projects and events
        executors: Phase executors, first eligible one wins
        quality_gate: Scores specify/plan artifacts
        git: Source-control collaborator for worktrees and the code gate
        config: Paths and timeouts
        tracer: OpenTelemetry tracer for phase spans
    """

    store: Blackboard
    executors: list[PhaseExecutor]
    quality_gate: QualityGate
    git: GitClient
    config: FlowConfig
    tracer: trace.Tracer = field(default_factory=lambda: trace.get_tracer("featureflow"))

    @classmethod
    def from_config(
        cls,
        store: Blackboard,
        config: FlowConfig,
        launchers: LauncherProvider | None = None,
        tracer: trace.Tracer | None = None,
    ) -> "PhaseOrchestrator":
        """Wire the default collaborators from configuration."""
        launchers = launchers or LauncherProvider.from_config(config)
        specflow = SpecflowCli(binary=config.specflow_bin)
        git = GitClient()
        return cls(
            store=store,
            executors=build_executors(launchers, specflow, git),
            quality_gate=QualityGate(specflow=specflow),
            git=git,
            config=config,
            tracer=tracer or trace.get_tracer(config.service_name),
        )

    def select_executor(self, feature: Feature) -> PhaseExecutor | None:
        return next((e for e in self.executors if e.can_run(feature)), None)

    async def release_orphaned_features(self, session_id: str) -> int:
        """Reset features left active by a previous, now dead, process.

        Call on startup, before the first pass.
        """
        released = 0
        for feature in await self.store.list_features(status=FeatureStatus.ACTIVE):
            await self.store.update_feature(
                feature.feature_id,
                status=FeatureStatus.PENDING,
                current_session=None,
                last_error="released on startup (orphaned active session)",
            )
            await self.store.append_event(
                "feature.released",
                f"Released orphaned feature {feature.feature_id} "
                f"(was {feature.phase.value}, session {feature.current_session})",
                actor_id=session_id,
                target_id=feature.feature_id,
                target_type="feature",
                metadata={"phase": feature.phase.value, "reason": "orphaned"},
            )
            released += 1
        if released:
            logger.info("Released orphaned features", count=released)
        return released

    async def release_stuck_features(
        self, features: list[Feature], session_id: str
    ) -> int:
        """Reset active features whose session outlived its stale timeout."""
        released = 0
        for feature in features:
            action = determine_action(feature, self.config.phase_timeout_min)
            if action.kind != "release":
                continue
            await self._release(feature, action.reason, session_id)
            released += 1
        return released

    async def _release(self, feature: Feature, reason: str, session_id: str) -> None:
        await self.store.update_feature(
            feature.feature_id,
            status=FeatureStatus.PENDING,
            current_session=None,
            last_error=reason,
        )
        await self.store.append_event(
            "feature.released",
            f"Released {feature.feature_id} from {feature.phase.value}: {reason}",
            actor_id=session_id,
            target_id=feature.feature_id,
            target_type="feature",
            metadata={"phase": feature.phase.value, "reason": reason},
        )
        logger.warning("Released feature", feature_id=feature.feature_id, reason=reason)

    async def setup_worktree(self, feature: Feature, project_path: Path) -> Path:
        """Create or reuse the feature worktree and expose its spec directory."""
        branch = f"specflow-{feature.feature_id.lower()}"
        if feature.worktree_path:
            worktree = Path(feature.worktree_path)
        else:
            worktree = (
                self.config.worktree_root / feature.project_id / feature.feature_id.lower()
            )
        await self.git.ensure_worktree(project_path, worktree, branch, feature.main_branch)
        link_spec_dir(worktree, project_path, feature.feature_id)
        return worktree

    async def check_gate_and_advance(self, feature: Feature, session_id: str) -> bool:
        """Apply the gate for a finished in-progress phase.

        Returns:
            True if the gate passed and the feature moved to its ready state
        """
        gate = GATE_MAP.get(feature.phase, "pass")
        worktree = feature.worktree_path or ""
        passed, details = True, "auto-pass"
        score_updates: dict[str, int] = {}

        if gate == "quality":
            result = await self.quality_gate.evaluate(
                worktree, feature.phase, feature.feature_id
            )
            passed, details = result.passed, result.reason
            if feature.phase == Phase.SPECIFYING:
                score_updates["specify_score"] = result.score
            elif feature.phase == Phase.PLANNING:
                score_updates["plan_score"] = result.score
        elif gate == "artifact":
            artifact = check_artifact_gate(worktree, feature.feature_id)
            passed, details = artifact.passed, artifact.reason
        elif gate == "code":
            code = await check_code_gate(self.git, worktree, feature.main_branch)
            passed, details = code.passed, code.reason

        telemetry.record_gate(gate, passed)
        await self.store.append_event(
            "gate.checked",
            f'Gate "{gate}" for {feature.phase.value}: '
            f"{'PASSED' if passed else 'FAILED'} ({details})",
            actor_id=session_id,
            target_id=feature.feature_id,
            target_type="feature",
            metadata={
                "gate": gate,
                "phase": feature.phase.value,
                "passed": passed,
                "details": details,
                **score_updates,
            },
        )

        if passed:
            await self.store.update_feature(
                feature.feature_id,
                phase=to_completed_phase(feature.phase),
                status=FeatureStatus.PENDING,
                **score_updates,
            )
            logger.info(
                "Gate passed", feature_id=feature.feature_id, gate=gate, details=details
            )
            return True

        await self.store.update_feature(
            feature.feature_id,
            status=FeatureStatus.PENDING,
            failure_count=feature.failure_count + 1,
            last_error=f'Gate "{gate}" failed: {details}',
            **score_updates,
        )
        logger.warning(
            "Gate failed", feature_id=feature.feature_id, gate=gate, details=details
        )
        return False

    async def _record_result(
        self, feature: Feature, result: PhaseResult, session_id: str
    ) -> PhaseOutcome:
        telemetry.record_phase(feature.phase.value, result.status)
        if result.succeeded:
            updates: dict = {"status": FeatureStatus.SUCCEEDED, "current_session": None}
            if isinstance(result.metadata.get("pr_number"), int):
                updates["pr_number"] = result.metadata["pr_number"]
            if isinstance(result.metadata.get("pr_url"), str):
                updates["pr_url"] = result.metadata["pr_url"]
            if isinstance(result.metadata.get("commit_sha"), str):
                updates["commit_sha"] = result.metadata["commit_sha"]
            await self.store.update_feature(feature.feature_id, **updates)
            await self.store.append_event(
                "phase.succeeded",
                f'Phase "{feature.phase.value}" succeeded for {feature.feature_id}',
                actor_id=session_id,
                target_id=feature.feature_id,
                target_type="feature",
                metadata={
                    "phase": feature.phase.value,
                    "artifacts": result.artifacts,
                    **result.metadata,
                },
            )
            return PhaseOutcome(ran=True, failed=False)

        attempts = feature.failure_count + 1
        await self.store.update_feature(
            feature.feature_id,
            status=FeatureStatus.PENDING,
            current_session=None,
            failure_count=attempts,
            last_error=result.error,
        )
        await self.store.append_event(
            "phase.failed",
            f'Phase "{feature.phase.value}" failed for {feature.feature_id} '
            f"(attempt {attempts}/{feature.max_failures})",
            actor_id=session_id,
            target_id=feature.feature_id,
            target_type="feature",
            metadata={"phase": feature.phase.value, "error": result.error, **result.metadata},
        )
        return PhaseOutcome(ran=True, failed=True, error=result.error)

    async def run_phase(self, feature: Feature, session_id: str) -> PhaseOutcome:
        """Run the eligible executor for a feature's in-progress phase."""
        executor = self.select_executor(feature)
        if executor is None:
            return PhaseOutcome(
                ran=False,
                failed=True,
                error=f'No executor available for phase "{feature.phase.value}"',
            )

        project = await self.store.get_project(feature.project_id)
        if project is None or not project.local_path:
            return PhaseOutcome(
                ran=False,
                failed=True,
                error=f'Project "{feature.project_id}" not found or missing local_path',
            )
        project_path = Path(project.local_path)

        try:
            worktree = await self.setup_worktree(feature, project_path)
        except (CommandError, OSError) as e:
            return PhaseOutcome(ran=False, failed=True, error=f"Worktree setup failed: {e}")

        try:
            with FeatureLock(
                self.config.state_dir,
                feature.feature_id,
                session_id=session_id,
                phase=feature.phase.value,
            ):
                return await self._execute(
                    executor, feature, worktree, project_path, session_id
                )
        except FeatureLockedError as e:
            logger.info("Feature locked elsewhere", feature_id=feature.feature_id)
            return PhaseOutcome(ran=False, failed=False, error=str(e))

    async def _execute(
        self,
        executor: PhaseExecutor,
        feature: Feature,
        worktree: Path,
        project_path: Path,
        session_id: str,
    ) -> PhaseOutcome:
        await self.store.update_feature(
            feature.feature_id,
            status=FeatureStatus.ACTIVE,
            current_session=session_id,
            worktree_path=str(worktree),
            branch_name=f"specflow-{feature.feature_id.lower()}",
            phase_started_at=datetime.now(timezone.utc),
        )
        await self.store.append_event(
            "phase.started",
            f'Starting phase "{feature.phase.value}" for {feature.feature_id}',
            actor_id=session_id,
            target_id=feature.feature_id,
            target_type="feature",
            metadata={"phase": feature.phase.value, "worktree_path": str(worktree)},
        )

        options = PhaseExecutorOptions(
            worktree_path=worktree,
            project_path=project_path,
            session_id=session_id,
        )
        started = time.monotonic()
        with self.tracer.start_as_current_span("featureflow.phase") as span:
            span.set_attribute("feature.id", feature.feature_id)
            span.set_attribute("feature.phase", feature.phase.value)
            span.set_attribute("executor", executor.phase_name)
            result = await executor.execute(feature, self.store, options)
            span.set_attribute("phase.status", result.status)
            if result.error:
                span.set_attribute("phase.error", result.error[:500])

        logger.info(
            "Phase finished",
            feature_id=feature.feature_id,
            phase=feature.phase.value,
            status=result.status,
            duration_seconds=round(time.monotonic() - started, 1),
        )
        return await self._record_result(feature, result, session_id)

    async def _fail_feature(self, feature: Feature, reason: str, session_id: str) -> None:
        await self.store.update_feature(
            feature.feature_id,
            phase=Phase.FAILED,
            status=FeatureStatus.FAILED,
            last_error=reason,
        )
        await self.store.append_event(
            "feature.failed",
            f"Feature {feature.feature_id} marked failed: {reason}",
            actor_id=session_id,
            target_id=feature.feature_id,
            target_type="feature",
            metadata={"feature_id": feature.feature_id, "reason": reason},
        )
        logger.error("Feature failed", feature_id=feature.feature_id, reason=reason)

    async def _drain(
        self, feature: Feature, session_id: str, result: OrchestratorResult
    ) -> None:
        """Process one feature until it blocks, waits or fails."""
        current: Feature | None = feature
        while current is not None:
            action = determine_action(current, self.config.phase_timeout_min)
            keep_going = False

            if action.kind == "release":
                await self._release(current, action.reason, session_id)
                result.features_released += 1
                keep_going = True

            elif action.kind == "fail":
                await self._fail_feature(current, action.reason, session_id)
                result.features_failed += 1

            elif action.kind == "advance":
                assert action.from_phase is not None and action.to_phase is not None
                await self.store.update_feature(
                    current.feature_id, phase=action.to_phase, status=FeatureStatus.PENDING
                )
                await self.store.append_event(
                    "feature.advanced",
                    f"Advanced {current.feature_id}: "
                    f"{action.from_phase.value} → {action.to_phase.value}",
                    actor_id=session_id,
                    target_id=current.feature_id,
                    target_type="feature",
                    metadata={
                        "from_phase": action.from_phase.value,
                        "to_phase": action.to_phase.value,
                    },
                )
                result.features_advanced += 1
                keep_going = True

            elif action.kind == "check-gate":
                if await self.check_gate_and_advance(current, session_id):
                    result.features_advanced += 1
                    keep_going = True

            elif action.kind == "run-phase":
                outcome = await self.run_phase(current, session_id)
                if outcome.failed:
                    result.features_failed += 1
                    if outcome.error:
                        result.errors.append((current.feature_id, outcome.error))
                elif outcome.ran:
                    # Gate check follows immediately on success
                    keep_going = True

            current = (
                await self.store.get_feature(feature.feature_id) if keep_going else None
            )

    async def run_once(self, session_id: str | None = None) -> OrchestratorResult:
        """One orchestration pass over the actionable features."""
        sid = session_id or f"orchestrator-{int(time.time() * 1000)}"
        result = OrchestratorResult()

        features = await self.store.get_actionable_features(self.config.max_concurrent)
        if not features:
            return result

        result.features_released = await self.release_stuck_features(features, sid)

        for feature in await self.store.get_actionable_features(self.config.max_concurrent):
            result.features_processed += 1
            try:
                await self._drain(feature, sid, result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                message = f"Unhandled error: {e}"
                logger.exception("Orchestration error", feature_id=feature.feature_id)
                result.errors.append((feature.feature_id, message))
                stuck = await self.store.get_feature(feature.feature_id)
                if stuck is not None and stuck.status == FeatureStatus.ACTIVE:
                    await self.store.update_feature(
                        feature.feature_id,
                        status=FeatureStatus.PENDING,
                        current_session=None,
                        failure_count=stuck.failure_count + 1,
                        last_error=message,
                    )

        logger.info(
            "Orchestration pass finished",
            processed=result.features_processed,
            advanced=result.features_advanced,
            released=result.features_released,
            failed=result.features_failed,
        )
        return result
