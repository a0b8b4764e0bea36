"""Decides whether a review's findings seed another loop cycle."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from loopforge.constants import CONTINUATION_PROMPT_DOCUMENT
from loopforge.loop.contracts import AutoContinuePolicy, LoopConfig
from loopforge.loop.events import EventBus, EventType
from loopforge.loop.tracking import ProjectDocuments
from loopforge.review.contracts import ReviewResult
from loopforge.review.templates import (
    generate_continuation_prompt,
    generate_review_findings_section,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContinuationDecision:
    proceed: bool
    reason: str
    cap_reached: bool = False


class ContinuationPlanner:
    """Turns review findings into continuation documents and a follow-up config."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    def plan(self, result: ReviewResult, policy: AutoContinuePolicy) -> ContinuationDecision:
        """Continue iff enabled, not complete, has missing items and under the cap."""
        if not policy.enabled:
            return ContinuationDecision(False, "auto-continue disabled")
        if result.review_status == "COMPLETE":
            return ContinuationDecision(False, "review complete")
        if result.review_status == "ERROR":
            return ContinuationDecision(False, "review failed")
        if not result.missing_items:
            return ContinuationDecision(False, "no missing items")
        if policy.exhausted:
            return ContinuationDecision(
                False,
                f"Max auto-continue iterations ({policy.max_auto_iterations}) reached",
                cap_reached=True,
            )
        return ContinuationDecision(
            True,
            f"{len(result.missing_items)} items to address "
            f"(auto-continue {policy.current_auto_iteration + 1}/{policy.max_auto_iterations})",
        )

    def write_documents(self, session_id: str, project_path: str, result: ReviewResult) -> None:
        """Write the continuation prompt and append findings to the tracking document."""
        docs = ProjectDocuments(project_path)
        docs.write_document(
            CONTINUATION_PROMPT_DOCUMENT,
            generate_continuation_prompt(result, docs.project_path.name),
        )
        docs.append_to_tracking(generate_review_findings_section(result))
        self._bus.publish(session_id, EventType.SYSTEM, {"message": "Generated continuation documents"})
        logger.info(f"[{session_id}] Wrote continuation documents to {project_path}")

    def apply(self, config: LoopConfig, result: ReviewResult) -> LoopConfig:
        """Write documents and return the config for the next cycle."""
        self.write_documents(config.session_id, config.project_path, result)
        policy = config.auto_continue.model_copy(
            update={"current_auto_iteration": config.auto_continue.current_auto_iteration + 1}
        )
        return config.model_copy(
            update={"prompt_file": CONTINUATION_PROMPT_DOCUMENT, "auto_continue": policy}
        )
