"""Prompt and tracking-document text for review and continuation passes."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from loopforge.constants import PROJECT_CONTEXT_DOCUMENT, SPECS_DIR, TRACKING_DOCUMENT
from loopforge.review.contracts import MissingItem, ReviewResult

PRIORITY_ORDER = {"HIGH": 0, "MEDIUM": 1, "LOW": 2}

REPORT_EXAMPLE = """```json
{
  "reviewStatus": "PARTIAL",
  "overallScore": 75,
  "requirements": [
    {
      "id": "REQ-001",
      "description": "User can sign in",
      "status": "COMPLETE",
      "evidence": "src/auth/login.py",
      "notes": "Covered by tests"
    }
  ],
  "missingItems": [
    {
      "description": "Database migrations are not configured",
      "priority": "HIGH",
      "suggestedFix": "Add a migration script and document how to run it"
    }
  ],
  "setupInstructions": {
    "envVars": ["DATABASE_URL=..."],
    "installCommands": ["pip install -e ."],
    "buildCommand": "",
    "testCommand": "pytest",
    "runCommand": "python -m app"
  },
  "testingNotes": "How to verify the implementation",
  "summary": "One paragraph overall assessment"
}
```"""


def _score(result: ReviewResult) -> str:
    return f"{result.overall_score:g}/100"


def generate_review_prompt(project_name: str = "Project") -> str:
    """Read-only review prompt asking for a JSON report."""
    return f"""# {project_name} - Comprehensive Review

You are reviewing a finished implementation to decide whether ALL requirements are met.
This is READ-ONLY mode. Do NOT change any file. Analyze and report only.

## Step 1: Study the requirements
- Every file in `{SPECS_DIR}/`
- `{PROJECT_CONTEXT_DOCUMENT}` for the project overview

## Step 2: Study the plan
Read `{TRACKING_DOCUMENT}`: which tasks were planned, which are checked off, and any documented blockers.

## Step 3: Study the source
Search the code before concluding anything is missing. Map code to requirements and note deviations.

## Step 4: Gap analysis
Decide which requirements are complete, partial or missing, and look for failing tests.

## Output format

Finish with ONLY a fenced JSON block in exactly this shape:

{REPORT_EXAMPLE}

- reviewStatus: COMPLETE (score 90-100), PARTIAL (60-89) or INCOMPLETE (0-59)
- requirement status: COMPLETE, PARTIAL or MISSING
- missing item priority: HIGH, MEDIUM or LOW

## Guardrails

- Do NOT write code or modify files
- Cite file paths as evidence
- Do not ask for confirmation; output the JSON block and stop
"""


def _format_items(items: List[MissingItem], priority: str) -> str:
    if not items:
        return ""
    lines = []
    for item in items:
        suffix = f" (Suggested: {item.suggested_fix})" if item.suggested_fix else ""
        lines.append(f"- [ ] {item.description}{suffix}")
    return f"\n### {priority} Priority\n" + "\n".join(lines) + "\n"


def generate_continuation_prompt(result: ReviewResult, project_name: str = "Project") -> str:
    """Build-mode prompt seeded from a review's missing items."""
    grouped = "".join(
        _format_items([i for i in result.missing_items if i.priority == priority], priority)
        for priority in ("HIGH", "MEDIUM", "LOW")
    )
    return f"""# {project_name} - Continuation Build Mode

You are in BUILD mode. Work on ONE task per iteration from the review findings below.

---

## Review Context

Previous review status: **{result.review_status}** ({_score(result)})

{result.summary}

### Items to Address
{grouped}
---

## Step 1: Orient
Study `{SPECS_DIR}/`, `{PROJECT_CONTEXT_DOCUMENT}` and the "Review Findings" section at the
bottom of `{TRACKING_DOCUMENT}`. Pick the first unchecked finding with the highest priority.

## Step 2: Implement
Change only the files the task needs and follow the existing patterns.

## Step 3: Validate
Run the project's build and test commands. Everything must pass before moving on.

## Step 4: Record
Mark the task done in `{TRACKING_DOCUMENT}` (`- [ ]` to `- [x]`), commit, and note any discoveries.

## Guardrails

- ONE task per iteration
- Search before assuming something is missing
- If stuck, document the blocker and move to the next task
"""


def generate_review_findings_section(result: ReviewResult, today: Optional[date] = None) -> str:
    """Section appended to the tracking document after a review."""
    stamp = (today or date.today()).isoformat()

    ordered = sorted(result.missing_items, key=lambda item: PRIORITY_ORDER.get(item.priority, 1))
    items = "\n".join(
        f"- [ ] [{item.priority}] {item.description}"
        + (f" - {item.suggested_fix}" if item.suggested_fix else "")
        for item in ordered
    ) or "- No items to address"

    requirements = "\n".join(
        f"- [{'x' if req.status == 'COMPLETE' else ' '}] {req.description} ({req.status})"
        + (f" - {req.notes}" if req.notes else "")
        for req in result.requirements
    )

    return f"""

---

## Review Findings ({stamp})

**Review Status**: {result.review_status} ({_score(result)})
**Summary**: {result.summary}

### Items to Address

{items}

### Requirements Status

{requirements}
"""
