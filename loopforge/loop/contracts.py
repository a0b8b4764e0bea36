"""Pydantic contracts for loop configuration and agent status signals."""

from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional

import pydantic as pd
from pydantic.alias_generators import to_camel

LoopMode = Literal["plan", "build"]


class AutoContinuePolicy(pd.BaseModel):
    """Whether a finished review may seed another loop cycle automatically."""

    enabled: bool = False
    max_auto_iterations: int = pd.Field(default=0, ge=0)
    current_auto_iteration: int = pd.Field(default=0, ge=0)

    model_config = pd.ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    @property
    def exhausted(self) -> bool:
        return self.current_auto_iteration >= self.max_auto_iterations


class LoopConfig(pd.BaseModel):
    """Configuration for one supervised agent loop session."""

    session_id: str
    project_path: str
    prompt_file: str
    mode: LoopMode = "build"
    model: str = "opus"
    agent_cli_path: Optional[str] = None
    max_iterations: int = pd.Field(default=0, ge=0)
    auto_push: bool = False
    verbose: bool = False
    auto_review: bool = False
    auto_continue: AutoContinuePolicy = pd.Field(default_factory=AutoContinuePolicy)

    model_config = pd.ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class StatusBlock(pd.BaseModel):
    """Structured completion signal embedded in agent output."""

    task_completed: str = ""
    files_created: List[str] = pd.Field(default_factory=list)
    next_task: str = ""
    exit_signal: bool = False
    notes: str = ""

    model_config = pd.ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class CompletionReason(str, Enum):
    """Why a loop cycle ended."""

    PLAN_EXHAUSTED = "plan_exhausted"
    EXIT_SIGNAL = "exit_signal"
    MAX_ITERATIONS = "max_iterations_reached"
    MANUALLY_STOPPED = "manually_stopped"
    NONZERO_EXIT = "nonzero_exit"
    UNKNOWN = "unknown"

    def describe(self, *, max_iterations: int = 0, exit_code: Optional[int] = None) -> str:
        """Human-readable reason for completion events."""
        if self is CompletionReason.PLAN_EXHAUSTED:
            return "All tasks completed in IMPLEMENTATION_PLAN.md"
        if self is CompletionReason.EXIT_SIGNAL:
            return "EXIT_SIGNAL received"
        if self is CompletionReason.MAX_ITERATIONS:
            return f"Max iterations ({max_iterations}) reached"
        if self is CompletionReason.MANUALLY_STOPPED:
            return "Loop was stopped"
        if self is CompletionReason.NONZERO_EXIT:
            return f"Exit code {exit_code}"
        return "Unknown"
