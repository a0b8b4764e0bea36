"""Read-only review pass over a project after a loop cycle completes."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

from loopforge.constants import (
    REQUIRED_REVIEW_ARTIFACTS,
    REVIEW_DEBUG_OUTPUT,
    REVIEW_PROMPT_DOCUMENT,
    REVIEW_TIMEOUT_SECONDS,
)
from loopforge.errors import ReviewInProgressError, ReviewProcessError, ReviewTimeoutError
from loopforge.loop.contracts import LoopConfig
from loopforge.loop.events import EventBus, EventType
from loopforge.loop.registry import SessionState
from loopforge.loop.supervisor import (
    ProcessHandle,
    ProcessSupervisor,
    build_agent_command,
    build_agent_env,
)
from loopforge.loop.tracking import ProjectDocuments
from loopforge.review.contracts import ReviewResult, create_error_review_result
from loopforge.review.parser import ReviewOutputParser
from loopforge.review.templates import generate_review_prompt


logger = logging.getLogger(__name__)

REVIEW_MODE = "review"


class ReviewOrchestrator:
    """Runs one review at a time per session and caches the latest result."""

    def __init__(
        self,
        bus: EventBus,
        supervisor: ProcessSupervisor,
        parser: Optional[ReviewOutputParser] = None,
        timeout_seconds: float = REVIEW_TIMEOUT_SECONDS,
    ) -> None:
        self._bus = bus
        self._supervisor = supervisor
        self._parser = parser or ReviewOutputParser()
        self._timeout_seconds = timeout_seconds

    async def run_review(self, state: SessionState, config: LoopConfig) -> ReviewResult:
        """Run a review pass for the session.

        Failures become an ERROR-status result; the single-flight guard is
        always released.

        Raises:
            ReviewInProgressError: If a review is already running for the session
        """
        session_id = state.session_id
        if state.review_in_progress:
            raise ReviewInProgressError(f"Review already in progress for session {session_id}")

        docs = ProjectDocuments(config.project_path)
        missing = [
            name for name in REQUIRED_REVIEW_ARTIFACTS if not (docs.project_path / name).exists()
        ]
        if missing:
            result = create_error_review_result(f"Missing required files: {', '.join(missing)}", "")
            state.latest_review = result
            logger.warning(f"[{session_id}] Review skipped: {result.summary}")
            self._bus.publish(
                session_id, EventType.REVIEW_ERROR, {"error": result.summary, "result": result.to_payload()}
            )
            return result

        state.review_in_progress = True
        started = time.monotonic()
        self._bus.publish(session_id, EventType.REVIEW_START, {})
        self._bus.publish(session_id, EventType.SYSTEM, {"message": "Starting auto-review..."})
        logger.info(f"[{session_id}] Review started")

        failed = False
        try:
            result = await self._review(state, config, docs)
        except (ReviewTimeoutError, ReviewProcessError, OSError) as e:
            result = self._fail(state, str(e))
            failed = True
        finally:
            state.review_in_progress = False

        result = result.model_copy(
            update={"review_duration_ms": int((time.monotonic() - started) * 1000)}
        )
        state.latest_review = result

        if failed:
            return result

        if result.review_status != "ERROR":
            self._bus.publish(
                session_id,
                EventType.SYSTEM,
                {
                    "message": f"Review complete: {result.review_status} ({result.overall_score:g}/100)",
                    "reviewStatus": result.review_status,
                    "score": result.overall_score,
                },
            )
        self._bus.publish(session_id, EventType.REVIEW_COMPLETE, {"result": result.to_payload()})
        logger.info(f"[{session_id}] Review finished: {result.review_status}")
        return result

    async def _review(
        self, state: SessionState, config: LoopConfig, docs: ProjectDocuments
    ) -> ReviewResult:
        prompt = generate_review_prompt(docs.project_path.name)
        docs.write_document(REVIEW_PROMPT_DOCUMENT, prompt)

        def on_spawn(handle: ProcessHandle) -> None:
            state.review_handle = handle
            if state.stop_requested:
                self._supervisor.stop(state)

        argv = build_agent_command(config.agent_cli_path, config.model, read_only=True)
        try:
            invocation = await self._supervisor.run_once(
                argv,
                cwd=str(docs.project_path),
                env=build_agent_env(REVIEW_MODE, state.session_id),
                stdin_text=prompt,
                timeout=self._timeout_seconds,
                on_spawn=on_spawn,
            )
            stopped = state.review_handle is not None and state.review_handle.stopped
        finally:
            state.review_handle = None

        if stopped:
            raise ReviewProcessError("Review stopped before completion")
        logger.info(
            f"[{state.session_id}] Review process exited with code {invocation.exit_code} "
            f"({len(invocation.stdout)} chars)"
        )

        if invocation.exit_code != 0 and not invocation.stdout:
            raise ReviewProcessError(
                f"Review process exited with code {invocation.exit_code}: {invocation.stderr.strip()}"
            )

        output = invocation.stdout + invocation.stderr
        self._save_debug_output(docs.project_path, output)

        parsed = self._parser.parse(output)
        if parsed is None:
            return create_error_review_result("Failed to parse review output", output)
        return parsed

    def _fail(self, state: SessionState, message: str) -> ReviewResult:
        logger.error(f"[{state.session_id}] Review error: {message}")
        self._bus.publish(state.session_id, EventType.ERROR, {"message": f"Review failed: {message}"})
        self._bus.publish(state.session_id, EventType.REVIEW_ERROR, {"error": message})
        return create_error_review_result(message, "")

    @staticmethod
    def _save_debug_output(project_path: Path, output: str) -> None:
        path = project_path / REVIEW_DEBUG_OUTPUT
        try:
            path.write_text(output, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not save review output to {path}: {e}")
