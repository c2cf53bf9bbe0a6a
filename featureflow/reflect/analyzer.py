"""Reflect inputs and agent output handling.

Collects what happened during a feature's cycle from the event log, turns
it into an extraction prompt, and parses the agent's JSON answer.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from featureflow.blackboard import Blackboard
from featureflow.errors import ReflectError

NO_SPEC = "(No spec content available)"
NO_PLAN = "(No plan content available)"
NO_REVIEW = "(No review feedback available)"
NO_REWORK = "(No rework cycles)"
NO_DIFF = "(No diff summary available)"

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


@dataclass
class ReflectMetadata:
    """Metadata carried by a reflect work item."""

    project_id: str
    implementation_work_item_id: str
    pr_number: int
    pr_url: str


def parse_reflect_meta(metadata: Any) -> ReflectMetadata:
    """Validate reflect work item metadata.

    Raises:
        ValueError: If the metadata is not a complete reflect payload
    """
    if not isinstance(metadata, dict):
        raise ValueError("Invalid reflect metadata: not an object")
    if metadata.get("reflect") is not True:
        raise ValueError("Invalid reflect metadata: missing reflect flag")
    for key in ("project_id", "implementation_work_item_id", "pr_url"):
        value = metadata.get(key)
        if not isinstance(value, str) or not value:
            raise ValueError(f"Invalid reflect metadata: missing {key}")
    pr_number = metadata.get("pr_number")
    if isinstance(pr_number, bool) or not isinstance(pr_number, int):
        raise ValueError("Invalid reflect metadata: missing pr_number")
    return ReflectMetadata(
        project_id=metadata["project_id"],
        implementation_work_item_id=metadata["implementation_work_item_id"],
        pr_number=pr_number,
        pr_url=metadata["pr_url"],
    )


@dataclass
class ReflectContext:
    """Everything the reflect agent is shown about one feature cycle."""

    project: str
    work_item_id: str
    pr_url: str
    spec_content: str = NO_SPEC
    plan_content: str = NO_PLAN
    review_results: str = NO_REVIEW
    rework_history: str = NO_REWORK
    diff_summary: str = NO_DIFF


async def _latest_artifact(store: Blackboard, target_id: str, artifact_type: str) -> str:
    events = await store.query_events(
        event_type="artifact.created",
        target_id=target_id,
        metadata_equals={"artifact_type": artifact_type},
        descending=True,
        limit=1,
    )
    return str(events[0].metadata.get("content") or "") if events else ""


async def gather_reflect_inputs(
    store: Blackboard, metadata: ReflectMetadata
) -> ReflectContext:
    """Build the reflect context from the event log.

    Missing inputs are replaced with explicit placeholder text.
    """
    target = metadata.implementation_work_item_id

    spec = await _latest_artifact(store, target, "spec")
    plan = await _latest_artifact(store, target, "plan")

    reviews = await store.query_events(
        event_type="code_review.completed", target_id=target, descending=True
    )
    review_parts = []
    for event in reviews:
        issues = event.metadata.get("issues")
        text = event.summary
        if isinstance(issues, list) and issues:
            text += "\nIssues: " + ", ".join(str(i) for i in issues)
        review_parts.append(text)

    reworks = await store.query_events(event_type="rework.%", target_id=target)
    rework_parts = []
    for event in reworks:
        fixing = event.metadata.get("fixing")
        rework_parts.append(
            f"{event.summary} Fixing: {fixing}".strip() if fixing else event.summary
        )

    merges = await store.query_events(
        event_type="pr.merged", target_id=target, descending=True, limit=1
    )
    diff_summary = str(merges[0].metadata.get("diff_summary") or "") if merges else ""

    return ReflectContext(
        project=metadata.project_id,
        work_item_id=target,
        pr_url=metadata.pr_url,
        spec_content=spec or NO_SPEC,
        plan_content=plan or NO_PLAN,
        review_results="\n\n".join(review_parts) or NO_REVIEW,
        rework_history="\n".join(rework_parts) or NO_REWORK,
        diff_summary=diff_summary or NO_DIFF,
    )


LESSON_SCHEMA_EXAMPLE = """[
  {
    "phase": "implement | review | rework | merge-fix",
    "category": "testing | types | architecture | edge-cases | dependencies | ...",
    "severity": "low | medium | high",
    "symptom": "Observable behavior: what went wrong",
    "rootCause": "Why it went wrong: the underlying reason",
    "resolution": "How it was fixed",
    "constraint": "Actionable rule in imperative voice: 'Always...', 'Never...', 'When X, do Y...'",
    "tags": ["keyword1", "keyword2"]
  }
]"""


def build_reflect_prompt(context: ReflectContext, output_path: str | None = None) -> str:
    """Build the lesson extraction prompt.

    Args:
        context: Gathered cycle inputs
        output_path: When set, the agent is told to write the JSON array to
            this file; otherwise to reply with the array only
    """
    if output_path:
        deliverable = (
            f"Write a JSON array of lesson objects to: `{output_path}`\n\n"
            "Use the Write tool to write the file. Each lesson must follow this schema:"
        )
        closing = (
            f"Write the JSON array to the file at `{output_path}` using the Write tool. "
            "This is the primary deliverable."
        )
    else:
        deliverable = (
            "Reply with a JSON array of lesson objects and nothing else. "
            "Each lesson must follow this schema:"
        )
        closing = "Your entire reply must be the JSON array."

    return f"""# Reflect Phase: Extract Implementation Lessons

## Context

You are analyzing a completed feature cycle to extract actionable lessons for future agents.

**Project:** {context.project}
**Work Item:** {context.work_item_id}
**PR:** {context.pr_url}

## Inputs

### Original Specification
{context.spec_content}

### Technical Plan
{context.plan_content}

### Review Feedback
{context.review_results}

### Rework History
{context.rework_history}

### Final Diff Summary
{context.diff_summary}

## Task

Analyze the gap between what the spec described, what was implemented, what
review caught, and what rework fixed. Extract lessons that would prevent
similar issues in future implementations.

## Output

{deliverable}

```json
{LESSON_SCHEMA_EXAMPLE}
```

## Quality Requirements

- Constraints must be imperative and specific
- Root cause must differ from symptom
- Avoid near-duplicates of existing lessons
- Extract at least 1 lesson

{closing}"""


def parse_lessons_output(text: str) -> list[Any]:
    """Parse the agent's lesson array.

    Accepts a bare JSON array, an array inside a markdown code fence, or an
    array embedded in surrounding prose.

    Raises:
        ReflectError: If no JSON array can be parsed
    """
    candidates = [text.strip()]
    candidates.extend(match.strip() for match in _FENCE.findall(text))
    start, end = text.find("["), text.rfind("]")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, list):
            return parsed

    raise ReflectError(
        "Reflect agent output is not a JSON array",
        details={"output": text[:500]},
    )
