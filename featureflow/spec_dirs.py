"""Feature spec directory resolution.

specflow keeps each feature's artifacts (spec.md, plan.md, tasks.md, ...)
under `.specify/specs/<feature-id>-<slug>/`. These helpers locate that
directory and make it visible inside a feature worktree.
"""

from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

SPECS_SUBDIR = Path(".specify") / "specs"


def specs_root(base: Path | str) -> Path:
    return Path(base) / SPECS_SUBDIR


def find_feature_dir(base: Path | str, feature_id: str) -> Path | None:
    """Find the feature's spec directory by case-insensitive id prefix.

    Args:
        base: Worktree or project root
        feature_id: Feature identifier, e.g. "F-012"

    Returns:
        The first matching directory in sorted order, or None
    """
    root = specs_root(base)
    if not root.is_dir():
        return None
    prefix = feature_id.lower()
    for entry in sorted(root.iterdir()):
        if entry.is_dir() and entry.name.lower().startswith(prefix):
            return entry
    return None


def resolve_feature_dir(base: Path | str, feature_id: str) -> Path:
    """Like find_feature_dir(), falling back to `<specs>/<feature_id>`."""
    return find_feature_dir(base, feature_id) or specs_root(base) / feature_id


def link_spec_dir(worktree: Path, project_path: Path, feature_id: str) -> Path | None:
    """Symlink the project's feature spec directory into the worktree.

    specflow writes artifacts into the project checkout, while gates and
    executors look inside the worktree. Does nothing if the project has no
    spec directory yet or the worktree already has one.

    Returns:
        The spec directory path inside the worktree, or None
    """
    source = find_feature_dir(project_path, feature_id)
    if source is None:
        return None

    destination = specs_root(worktree) / source.name
    if destination.exists():
        return destination

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.symlink_to(source, target_is_directory=True)
    except OSError as e:
        logger.warning(
            "Could not link spec directory", feature_id=feature_id, error=str(e)
        )
        return None
    return destination
