"""Fix prompt, tracking-document section and default scenarios for E2E passes."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from loopforge.constants import E2E_SCREENSHOTS_DIR, TRACKING_DOCUMENT
from loopforge.e2e.contracts import E2ETestResult, TestScenario, TestStep, VisualFinding

PRIORITY_ORDER = {"HIGH": 0, "MEDIUM": 1, "LOW": 2}


def _format_findings(findings: List[VisualFinding], priority: str) -> str:
    if not findings:
        return ""
    lines = []
    for finding in findings:
        line = f"- [ ] [{finding.type.upper()}] {finding.description}"
        if finding.location:
            line += f" (Location: {finding.location})"
        if finding.suggested_fix:
            line += f"\n  - Suggested fix: {finding.suggested_fix}"
        lines.append(line)
    return f"\n### {priority} Priority\n" + "\n".join(lines) + "\n"


def generate_e2e_fix_prompt(result: E2ETestResult, project_name: str = "Project") -> str:
    findings = "".join(
        _format_findings([f for f in result.findings if f.priority == priority], priority)
        for priority in ("HIGH", "MEDIUM", "LOW")
    )
    errors = result.interaction_errors
    interaction_section = ""
    if errors:
        interaction_section = "\n### Interaction Errors\n" + "\n".join(
            f'- [ ] {e.action} on "{e.target}" failed: {e.error}' for e in errors
        ) + "\n"

    return f"""# {project_name} - E2E Test Fix Mode

You are in BUILD mode. Fix the visual and functional issues found during E2E testing,
ONE fix per iteration, then validate.

---

## E2E Test Results

**Test Status:** {result.test_status} (Visual Score: {result.visual_score:g}/100)
**Summary:** {result.summary}

### Visual Findings
{findings}{interaction_section}
---

## Step 1: Study the findings
Note each issue's type and location. Screenshots, when captured, are in `{E2E_SCREENSHOTS_DIR}/`.

## Step 2: Pick ONE fix
Highest priority first; layout and functionality before style.

## Step 3: Implement
Make the smallest change that fixes the root cause. Keep responsive layout and accessibility intact.

## Step 4: Validate and record
Run the build and tests, mark the fix done in `{TRACKING_DOCUMENT}`, and commit.
"""


def generate_e2e_findings_section(result: E2ETestResult, today: Optional[date] = None) -> str:
    stamp = (today or date.today()).isoformat()

    ordered = sorted(result.findings, key=lambda f: PRIORITY_ORDER.get(f.priority, 1))
    findings = "\n".join(
        f"- [ ] [{f.priority}] [{f.type}] {f.description}"
        + (f" - {f.suggested_fix}" if f.suggested_fix else "")
        for f in ordered
    ) or "- No visual issues found"

    errors = result.interaction_errors
    interactions = (
        "\n".join(f"- [ ] {e.action} failed: {e.error}" for e in errors)
        if errors
        else "All interactions successful"
    )

    screenshots = "\n".join(
        f"- {s.id}: {s.description} ({s.viewport.width}x{s.viewport.height})"
        for s in result.screenshots
    )

    return f"""

---

## E2E Test Findings ({stamp})

**Test Status:** {result.test_status} (Visual Score: {result.visual_score:g}/100)
**Duration:** {round(result.test_duration_ms / 1000)}s
**Browser:** {result.browser_used}
**Screenshots:** {len(result.screenshots)} captured

### Summary
{result.summary}

### Visual Issues to Fix

{findings}

### Interaction Results

{interactions}

### Screenshot References
{screenshots}
"""


def default_scenarios(base_url: str) -> List[TestScenario]:
    """Homepage load and first-link navigation scenarios."""
    return [
        TestScenario(
            name="Homepage Load",
            description="Verify homepage loads correctly",
            steps=[
                TestStep(action="navigate", target=base_url, take_screenshot=True),
                TestStep(action="wait", value="1000"),
                TestStep(action="scroll", description="Scroll down", take_screenshot=True),
            ],
        ),
        TestScenario(
            name="Navigation Test",
            description="Test main navigation links",
            steps=[
                TestStep(action="navigate", target=base_url),
                TestStep(action="click", target="nav a:first-child", take_screenshot=True),
                TestStep(action="wait", value="500"),
            ],
        ),
    ]
