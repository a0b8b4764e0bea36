"""Per-session state records, keyed by session id."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from loopforge.fsm.loop_fsm import LoopFSM
from loopforge.loop.contracts import LoopConfig

if TYPE_CHECKING:
    from loopforge.e2e.contracts import E2ETestResult
    from loopforge.loop.supervisor import ProcessHandle
    from loopforge.review.contracts import ReviewResult


logger = logging.getLogger(__name__)


@dataclass
class SessionState:
    """Everything the loop core knows about one session.

    Only code acting on this session's id mutates the record.
    """

    session_id: str
    config: Optional[LoopConfig] = None
    fsm: LoopFSM = field(default_factory=LoopFSM)
    handle: Optional["ProcessHandle"] = None
    review_handle: Optional["ProcessHandle"] = None
    should_continue: bool = False
    exit_signal_received: bool = False
    stop_requested: bool = False
    branch: Optional[str] = None
    agent_session_id: Optional[str] = None
    review_in_progress: bool = False
    e2e_in_progress: bool = False
    latest_review: Optional["ReviewResult"] = None
    latest_e2e: Optional["E2ETestResult"] = None
    task: Optional["asyncio.Task[None]"] = None

    @property
    def iteration(self) -> int:
        return self.fsm.iteration_count

    @property
    def has_process(self) -> bool:
        return self.handle is not None

    @property
    def is_running(self) -> bool:
        """True while a process is attached or the driving task is alive."""
        if self.handle is not None:
            return True
        return self.task is not None and not self.task.done()


class SessionRegistry:
    """Owns one SessionState per session id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionState] = {}

    def get(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            state = SessionState(session_id=session_id)
            self._sessions[session_id] = state
            logger.debug(f"Registered session {session_id}")
        return state

    def remove(self, session_id: str) -> Optional[SessionState]:
        state = self._sessions.pop(session_id, None)
        if state is not None:
            logger.debug(f"Removed session {session_id}")
        return state

    def running_sessions(self) -> List[str]:
        return [sid for sid, state in self._sessions.items() if state.is_running]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
