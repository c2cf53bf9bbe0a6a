"""Phase gates.

A phase that finished successfully must still pass its gate before the
feature advances:

- quality: specify and plan artifacts are scored by `specflow eval`
- artifact: tasking must have produced tasks.md
- code: implementing must have changed real source files
"""

from dataclasses import dataclass, field
from pathlib import Path

import structlog

from featureflow.errors import CommandError
from featureflow.models import Phase
from featureflow.spec_dirs import find_feature_dir, specs_root
from featureflow.specflow_cli import SpecflowCli, parse_eval_score
from featureflow.worktree import GitClient

logger = structlog.get_logger(__name__)

PHASE_EVAL_THRESHOLDS: dict[str, int] = {
    Phase.SPECIFYING.value: 80,
    Phase.PLANNING.value: 80,
}

PHASE_RUBRICS: dict[str, str] = {
    Phase.SPECIFYING.value: "spec-quality",
    Phase.PLANNING.value: "plan-quality",
}

PHASE_ARTIFACTS: dict[str, str] = {
    Phase.SPECIFYING.value: "spec.md",
    Phase.PLANNING.value: "plan.md",
}

DEFAULT_THRESHOLD = 80
EVAL_TIMEOUT_SECONDS = 120

# Changed paths that do not count as implementation work
CODE_GATE_EXCLUSIONS = (
    ".specify/",
    ".specflow/",
    "CHANGELOG.md",
    "Plans/",
    "docs/",
    "README.md",
    ".claude/",
    "verify.md",
)


@dataclass
class QualityGateResult:
    """Outcome of a quality evaluation."""

    passed: bool
    score: int
    reason: str


@dataclass
class ArtifactGateResult:
    passed: bool
    reason: str


@dataclass
class CodeGateResult:
    """Outcome of the source-change check."""

    passed: bool
    reason: str
    changed_files: list[str] = field(default_factory=list)
    source_files: list[str] = field(default_factory=list)


@dataclass
class QualityGate:
    """Scores phase artifacts with specflow's rubric evaluator.

    Attributes:
        specflow: CLI runner used for `specflow eval run`
        thresholds: Minimum passing score per in-progress phase
        timeout_seconds: Evaluation timeout
    """

    specflow: SpecflowCli = field(default_factory=SpecflowCli)
    thresholds: dict[str, int] = field(
        default_factory=lambda: dict(PHASE_EVAL_THRESHOLDS)
    )
    timeout_seconds: float = EVAL_TIMEOUT_SECONDS

    async def evaluate(
        self, worktree_path: Path | str, phase: Phase | str, feature_id: str
    ) -> QualityGateResult:
        """Evaluate the artifact produced by a phase.

        Phases without a rubric pass with a perfect score. Evaluation
        failures are reported as a failing result, never raised.

        Args:
            worktree_path: Feature worktree
            phase: In-progress phase whose artifact is scored
            feature_id: Feature identifier

        Returns:
            QualityGateResult with score and human-readable reason
        """
        phase_name = phase.value if isinstance(phase, Phase) else phase
        rubric = PHASE_RUBRICS.get(phase_name)
        artifact = PHASE_ARTIFACTS.get(phase_name)
        threshold = self.thresholds.get(phase_name, DEFAULT_THRESHOLD)

        if not rubric or not artifact:
            return QualityGateResult(True, 100, "no gate for this phase")

        feature_dir = find_feature_dir(worktree_path, feature_id)
        artifact_path = (
            feature_dir / artifact
            if feature_dir
            else specs_root(worktree_path) / feature_id / artifact
        )

        result = await self.specflow.run(
            [
                "eval",
                "run",
                "--file",
                str(artifact_path),
                "--rubric",
                rubric,
                "--json",
            ],
            cwd=worktree_path,
            timeout=self.timeout_seconds,
        )

        try:
            score = parse_eval_score(result.stdout)
        except ValueError:
            if not result.ok:
                reason = (
                    f"Eval failed (exit {result.exit_code}): "
                    f"{(result.stderr or result.stdout).strip()}"
                )
            else:
                reason = f"Failed to parse eval output: {result.stdout.strip()[:200]}"
            logger.warning(
                "Quality evaluation failed", feature_id=feature_id, reason=reason
            )
            return QualityGateResult(False, 0, reason)

        passed = score >= threshold
        reason = (
            f"Score {score} >= threshold {threshold}"
            if passed
            else f"Score {score} below threshold {threshold}"
        )
        logger.info(
            "Quality gate evaluated",
            feature_id=feature_id,
            phase=phase_name,
            score=score,
            passed=passed,
        )
        return QualityGateResult(passed, score, reason)


def check_artifact_gate(worktree_path: Path | str, feature_id: str) -> ArtifactGateResult:
    """Pass when the feature directory contains tasks.md."""
    feature_dir = find_feature_dir(worktree_path, feature_id)
    if feature_dir is not None and (feature_dir / "tasks.md").is_file():
        return ArtifactGateResult(True, "tasks.md present")
    return ArtifactGateResult(False, "tasks.md missing")


def is_source_file(path: str) -> bool:
    """Whether a changed path counts as implementation work."""
    for exclusion in CODE_GATE_EXCLUSIONS:
        if path.startswith(exclusion) or path == exclusion.rstrip("/"):
            return False
    return True


async def check_code_gate(
    git: GitClient, worktree_path: Path | str, main_branch: str
) -> CodeGateResult:
    """Pass when the worktree changes at least one real source file."""
    try:
        changed = await git.changed_files(Path(worktree_path), main_branch)
    except CommandError as e:
        return CodeGateResult(False, f"Failed to get changed files: {e}")

    source_files = [path for path in changed if is_source_file(path)]
    if source_files:
        return CodeGateResult(
            True, f"{len(source_files)} source file(s) changed", changed, source_files
        )
    return CodeGateResult(
        False,
        "No source files changed (only spec/docs: "
        f"{', '.join(changed) or 'empty diff'})",
        changed,
        [],
    )
