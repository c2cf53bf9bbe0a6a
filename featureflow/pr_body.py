"""Pull request body assembly for completed features.

Summarizes the feature from its spec and plan: the problem statement, the
key implementation decisions, and a table of changed files.
"""

import re
from dataclasses import dataclass

MAX_PR_BODY_LENGTH = 4000

PROBLEM_FALLBACK = "See spec.md for full feature details"
DECISIONS_FALLBACK = "See plan.md for implementation details"
FILES_FALLBACK = "_See PR diff for file changes_"

_PROBLEM_HEADINGS = [
    re.compile(r"^##\s+Problem\s+Statement\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^#\s+Problem\s+Statement\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^##\s+Problem\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^#\s+Problem\s*$", re.IGNORECASE | re.MULTILINE),
]

_DECISION_HEADINGS = [
    re.compile(
        r"^##\s+(?:Technical\s+)?(?:Approach|Decisions|Strategy|Implementation)",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(
        r"^#\s+(?:Technical\s+)?(?:Approach|Decisions|Strategy|Implementation)",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(r"^##\s+Key\s+Decisions", re.IGNORECASE | re.MULTILINE),
]

_NEXT_HEADING = re.compile(r"^##?\s+", re.MULTILINE)
_BULLET = re.compile(r"^\s*[-*]\s+(.+)$", re.MULTILINE)
_SENTENCE_BREAK = re.compile(r"[.!?]\s+")


@dataclass
class FileChange:
    path: str
    additions: int
    deletions: int


def _section_after(content: str, match: re.Match) -> str:
    """Text between a heading match and the next level 1-2 heading."""
    remainder = content[match.end() :]
    next_heading = _NEXT_HEADING.search(remainder)
    end = next_heading.start() if next_heading else len(remainder)
    return remainder[:end].strip()


def extract_problem_statement(spec_content: str) -> str:
    """First sentences of the spec's Problem Statement section.

    Returns up to three sentences capped at 300 characters, or a pointer to
    spec.md when the section is missing.
    """
    for pattern in _PROBLEM_HEADINGS:
        match = pattern.search(spec_content)
        if not match:
            continue
        section = _section_after(spec_content, match)
        if not section:
            continue
        sentences = ". ".join(_SENTENCE_BREAK.split(section)[:3])
        if len(sentences) > 300:
            sentences = sentences[:297] + "..."
        if sentences.endswith(".") or sentences.endswith("..."):
            return sentences
        return sentences + "."
    return PROBLEM_FALLBACK


def extract_key_decisions(plan_content: str) -> list[str]:
    """Up to five distinct bullets from the plan's approach/decision section."""
    decisions: list[str] = []
    for pattern in _DECISION_HEADINGS:
        match = pattern.search(plan_content)
        if not match:
            continue
        for bullet in _BULLET.findall(_section_after(plan_content, match)):
            decision = bullet.strip()
            if decision not in decisions and len(decisions) < 5:
                decisions.append(decision)
        if decisions:
            break
    return decisions or [DECISIONS_FALLBACK]


def parse_numstat(output: str) -> list[FileChange]:
    """Parse `git diff --numstat` output. Binary files count as 0/0."""
    changes = []
    for line in output.splitlines():
        parts = line.split("\t", 2)
        if len(parts) != 3:
            continue
        added, deleted, path = parts
        changes.append(
            FileChange(
                path=path.strip(),
                additions=int(added) if added.isdigit() else 0,
                deletions=int(deleted) if deleted.isdigit() else 0,
            )
        )
    return changes


def format_files_changed(files: list[FileChange]) -> str:
    """Markdown table of changed files."""
    if not files:
        return FILES_FALLBACK
    rows = ["| File | Changes |", "|------|---------|"]
    rows.extend(f"| `{f.path}` | +{f.additions} -{f.deletions} |" for f in files)
    return "\n".join(rows)


def build_pr_body(
    feature_id: str,
    spec_content: str,
    plan_content: str,
    files: list[FileChange],
) -> str:
    """Assemble the PR description, truncated to MAX_PR_BODY_LENGTH."""
    decisions = "\n".join(f"- {d}" for d in extract_key_decisions(plan_content))
    body = "\n".join(
        [
            f"# Feature: {feature_id}",
            "",
            "## Summary",
            "",
            extract_problem_statement(spec_content),
            "",
            "## Implementation Approach",
            "",
            decisions,
            "",
            "## Files Changed",
            "",
            format_files_changed(files),
            "",
            "---",
            "*Automated by featureflow*",
        ]
    )
    if len(body) > MAX_PR_BODY_LENGTH:
        body = body[: MAX_PR_BODY_LENGTH - 3] + "..."
    return body
