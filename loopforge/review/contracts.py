"""Pydantic contracts for review pass results.

Field names serialize in camelCase so the report schema the agent is asked
to produce and the cached result share one shape.
"""

from __future__ import annotations

import time
from typing import List, Literal, Optional

import pydantic as pd
from pydantic.alias_generators import to_camel

ReviewStatus = Literal["COMPLETE", "PARTIAL", "INCOMPLETE", "ERROR", "PENDING"]
RequirementStatus = Literal["COMPLETE", "PARTIAL", "MISSING"]
Priority = Literal["HIGH", "MEDIUM", "LOW"]

REVIEW_STATUSES = ("COMPLETE", "PARTIAL", "INCOMPLETE", "ERROR", "PENDING")
REQUIREMENT_STATUSES = ("COMPLETE", "PARTIAL", "MISSING")
PRIORITIES = ("HIGH", "MEDIUM", "LOW")


def now_ms() -> int:
    return int(time.time() * 1000)


class _CamelModel(pd.BaseModel):
    model_config = pd.ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class RequirementReview(_CamelModel):
    id: str
    description: str
    status: RequirementStatus
    evidence: Optional[str] = None
    notes: Optional[str] = None


class MissingItem(_CamelModel):
    description: str
    priority: Priority
    suggested_fix: Optional[str] = None


class SetupInstructions(_CamelModel):
    env_vars: List[str] = pd.Field(default_factory=list)
    install_commands: List[str] = pd.Field(default_factory=list)
    build_command: str = ""
    test_command: str = ""
    run_command: str = ""


class ReviewResult(_CamelModel):
    """Normalized outcome of one review pass."""

    review_status: ReviewStatus
    overall_score: float = pd.Field(ge=0, le=100)
    requirements: List[RequirementReview]
    missing_items: List[MissingItem] = pd.Field(default_factory=list)
    setup_instructions: SetupInstructions = pd.Field(default_factory=SetupInstructions)
    testing_notes: str = ""
    summary: str = ""
    timestamp: int = pd.Field(default_factory=now_ms)
    review_duration_ms: Optional[int] = None
    raw_output: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.review_status == "COMPLETE"

    def to_payload(self) -> dict:
        """Event payload form, without the raw output."""
        return self.model_dump(by_alias=True, exclude={"raw_output"})


def create_error_review_result(error: str, raw_output: Optional[str] = None) -> ReviewResult:
    """Build the explicit error result used when a review cannot produce a report."""
    return ReviewResult(
        review_status="ERROR",
        overall_score=0,
        requirements=[],
        summary=f"Review failed: {error}",
        raw_output=raw_output,
    )
