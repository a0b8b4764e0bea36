"""Tests for continuation planning and the review document templates."""

from datetime import date

from loopforge.constants import CONTINUATION_PROMPT_DOCUMENT, TRACKING_DOCUMENT
from loopforge.loop.contracts import AutoContinuePolicy, LoopConfig
from loopforge.loop.events import EventBus
from loopforge.review.continuation import ContinuationPlanner
from loopforge.review.contracts import MissingItem, RequirementReview, ReviewResult
from loopforge.review.templates import (
    generate_continuation_prompt,
    generate_review_findings_section,
    generate_review_prompt,
)


def _result(status="PARTIAL", missing=True):
    return ReviewResult(
        review_status=status,
        overall_score=70,
        requirements=[
            RequirementReview(id="R1", description="Parser", status="COMPLETE"),
            RequirementReview(id="R2", description="Docs", status="MISSING", notes="none yet"),
        ],
        missing_items=[
            MissingItem(description="Add changelog", priority="LOW"),
            MissingItem(description="Write guide", priority="HIGH", suggested_fix="docs/guide.md"),
        ]
        if missing
        else [],
        summary="Mostly there",
    )


ENABLED = AutoContinuePolicy(enabled=True, max_auto_iterations=2)


class TestPlan:
    """Test the continuation decision."""

    def test_proceeds_with_missing_items(self):
        decision = ContinuationPlanner(EventBus()).plan(_result(), ENABLED)
        assert decision.proceed
        assert "2 items to address" in decision.reason

    def test_disabled(self):
        decision = ContinuationPlanner(EventBus()).plan(_result(), AutoContinuePolicy())
        assert not decision.proceed

    def test_complete_review_stops(self):
        assert not ContinuationPlanner(EventBus()).plan(_result("COMPLETE"), ENABLED).proceed

    def test_error_review_stops(self):
        assert not ContinuationPlanner(EventBus()).plan(_result("ERROR"), ENABLED).proceed

    def test_no_missing_items_stops(self):
        assert not ContinuationPlanner(EventBus()).plan(_result(missing=False), ENABLED).proceed

    def test_cap_reached(self):
        policy = ENABLED.model_copy(update={"current_auto_iteration": 2})
        decision = ContinuationPlanner(EventBus()).plan(_result(), policy)
        assert not decision.proceed
        assert decision.cap_reached
        assert decision.reason == "Max auto-continue iterations (2) reached"


class TestApply:
    """Test document writing and the follow-up config."""

    def test_apply_writes_documents_and_advances(self, project):
        config = LoopConfig(
            session_id="s1", project_path=str(project), prompt_file="PROMPT_build.md", auto_continue=ENABLED
        )
        next_config = ContinuationPlanner(EventBus()).apply(config, _result())

        assert next_config.prompt_file == CONTINUATION_PROMPT_DOCUMENT
        assert next_config.auto_continue.current_auto_iteration == 1
        assert config.auto_continue.current_auto_iteration == 0

        prompt = (project / CONTINUATION_PROMPT_DOCUMENT).read_text()
        assert "Write guide (Suggested: docs/guide.md)" in prompt
        plan = (project / TRACKING_DOCUMENT).read_text()
        assert plan.startswith("# Implementation Plan")
        assert "## Review Findings" in plan


class TestTemplates:
    """Test generated document text."""

    def test_review_prompt_names_project(self):
        prompt = generate_review_prompt("shop")
        assert prompt.startswith("# shop - Comprehensive Review")
        assert '"reviewStatus"' in prompt

    def test_continuation_prompt_groups_by_priority(self):
        prompt = generate_continuation_prompt(_result(), "shop")
        assert "**PARTIAL** (70/100)" in prompt
        assert prompt.index("### HIGH Priority") < prompt.index("### LOW Priority")
        assert "### MEDIUM Priority" not in prompt
        assert "- [ ] Add changelog" in prompt

    def test_findings_section(self):
        section = generate_review_findings_section(_result(), today=date(2024, 5, 1))
        assert "## Review Findings (2024-05-01)" in section
        assert section.index("[HIGH] Write guide - docs/guide.md") < section.index("[LOW] Add changelog")
        assert "- [x] Parser (COMPLETE)" in section
        assert "- [ ] Docs (MISSING) - none yet" in section

    def test_findings_section_without_items(self):
        section = generate_review_findings_section(_result("COMPLETE", missing=False))
        assert "- No items to address" in section
