"""Exceptions raised at the loop controller and orchestrator seams."""

from __future__ import annotations


class LoopForgeError(Exception):
    """Base exception for loopforge errors."""


class SessionAlreadyRunningError(LoopForgeError):
    """Raised when starting a session that already has an active loop."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is already running")
        self.session_id = session_id


class PromptNotFoundError(LoopForgeError):
    """Raised when the prompt document does not exist."""


class ProcessAlreadyAttachedError(LoopForgeError):
    """Raised when a session already owns a live agent process."""


class InvalidTransitionError(LoopForgeError):
    """Raised when the loop state machine rejects a transition."""

    def __init__(self, from_state: object, to_state: object, message: str) -> None:
        super().__init__(message)
        self.from_state = from_state
        self.to_state = to_state


class ReviewInProgressError(LoopForgeError):
    """Raised when a review is already running for the session."""


class ReviewTimeoutError(LoopForgeError):
    """Raised when the review invocation exceeds its timeout."""


class E2EInProgressError(LoopForgeError):
    """Raised when an E2E run is already in progress for the session."""


class ReviewProcessError(LoopForgeError):
    """Raised when the review invocation fails without producing output."""
