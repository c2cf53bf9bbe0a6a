"""Tests for pull request body assembly."""

from featureflow.pr_body import (
    DECISIONS_FALLBACK,
    FILES_FALLBACK,
    MAX_PR_BODY_LENGTH,
    PROBLEM_FALLBACK,
    FileChange,
    build_pr_body,
    extract_key_decisions,
    extract_problem_statement,
    format_files_changed,
    parse_numstat,
)

SPEC = """# Feature: CSV export

## Problem Statement

Users cannot export reports. They copy tables by hand. It is slow. Nobody likes it.

## Requirements

- Export to CSV
"""

PLAN = """# Plan

## Technical Approach

- Stream rows instead of buffering
- Reuse the report query
- Stream rows instead of buffering

## Risks

- Large files
"""


class TestExtractProblemStatement:
    """Tests for summary extraction from spec.md."""

    def test_takes_first_three_sentences(self) -> None:
        assert extract_problem_statement(SPEC) == (
            "Users cannot export reports. They copy tables by hand. It is slow."
        )

    def test_plain_problem_heading(self) -> None:
        spec = "# Problem\n\nThe cache never expires\n\n# Goals\n"

        assert extract_problem_statement(spec) == "The cache never expires."

    def test_missing_section_falls_back(self) -> None:
        assert extract_problem_statement("# Spec\n\nNothing here") == PROBLEM_FALLBACK

    def test_long_statement_is_capped(self) -> None:
        spec = "## Problem Statement\n\n" + "word " * 100

        statement = extract_problem_statement(spec)

        assert len(statement) == 300
        assert statement.endswith("...")


class TestExtractKeyDecisions:
    """Tests for decision extraction from plan.md."""

    def test_distinct_bullets_from_approach_section(self) -> None:
        assert extract_key_decisions(PLAN) == [
            "Stream rows instead of buffering",
            "Reuse the report query",
        ]

    def test_caps_at_five(self) -> None:
        plan = "## Decisions\n" + "\n".join(f"- choice {i}" for i in range(8))

        assert len(extract_key_decisions(plan)) == 5

    def test_fallback(self) -> None:
        assert extract_key_decisions("# Plan\n\nprose only") == [DECISIONS_FALLBACK]


class TestFilesChanged:
    """Tests for numstat parsing and formatting."""

    def test_parse_numstat(self) -> None:
        output = "10\t2\tsrc/app.py\n-\t-\tassets/logo.png\nmalformed\n"

        assert parse_numstat(output) == [
            FileChange("src/app.py", 10, 2),
            FileChange("assets/logo.png", 0, 0),
        ]

    def test_format_table(self) -> None:
        table = format_files_changed([FileChange("src/app.py", 10, 2)])

        assert table.splitlines() == [
            "| File | Changes |",
            "|------|---------|",
            "| `src/app.py` | +10 -2 |",
        ]

    def test_format_empty(self) -> None:
        assert format_files_changed([]) == FILES_FALLBACK


class TestBuildPrBody:
    """Tests for the assembled PR body."""

    def test_sections_in_order(self) -> None:
        body = build_pr_body("F-001", SPEC, PLAN, [FileChange("src/app.py", 1, 0)])

        headings = [line for line in body.splitlines() if line.startswith("#")]
        assert headings == [
            "# Feature: F-001",
            "## Summary",
            "## Implementation Approach",
            "## Files Changed",
        ]
        assert body.endswith("*Automated by featureflow*")

    def test_truncates_long_bodies(self) -> None:
        files = [FileChange(f"src/module_{i}.py", i, i) for i in range(300)]

        body = build_pr_body("F-001", SPEC, PLAN, files)

        assert len(body) == MAX_PR_BODY_LENGTH
        assert body.endswith("...")
