"""Single-flight wrapper around an injected E2E runner."""
from __future__ import annotations

import logging

from loopforge.constants import E2E_FIX_PROMPT_DOCUMENT
from loopforge.e2e.contracts import (
    E2ERunner,
    E2EStatus,
    E2ETestConfig,
    E2ETestResult,
    ScreenshotCapture,
    create_error_e2e_result,
)
from loopforge.e2e.templates import generate_e2e_findings_section, generate_e2e_fix_prompt
from loopforge.errors import E2EInProgressError
from loopforge.loop.events import EventBus, EventType
from loopforge.loop.registry import SessionState
from loopforge.loop.tracking import ProjectDocuments


logger = logging.getLogger(__name__)


class E2EOrchestrator:
    """Runs one E2E pass at a time per session, forwarding runner progress as events."""

    def __init__(self, bus: EventBus, runner: E2ERunner) -> None:
        self._bus = bus
        self._runner = runner

    async def run(self, state: SessionState, config: E2ETestConfig) -> E2ETestResult:
        """Run the E2E pass; runner failures become an ERROR result.

        Raises:
            E2EInProgressError: If an E2E pass is already running for the session
        """
        session_id = state.session_id
        if state.e2e_in_progress:
            raise E2EInProgressError(f"E2E test already in progress for session {session_id}")

        state.e2e_in_progress = True
        self._bus.publish(session_id, EventType.E2E_START, {})
        self._bus.publish(session_id, EventType.SYSTEM, {"message": "Starting E2E visual tests..."})

        def on_status(status: E2EStatus) -> None:
            self._bus.publish(session_id, EventType.E2E_STATUS, status.model_dump(by_alias=True))
            suffix = f" ({status.viewport})" if status.viewport else ""
            self._bus.publish(session_id, EventType.SYSTEM, {"message": f"E2E: {status.phase}{suffix}"})

        def on_screenshot(screenshot: ScreenshotCapture) -> None:
            self._bus.publish(
                session_id,
                EventType.E2E_SCREENSHOT,
                {"screenshot": screenshot.model_dump(by_alias=True, exclude={"base64"})},
            )

        try:
            result = await self._runner.run_tests(config, on_status, on_screenshot)
        except Exception as e:
            logger.exception(f"[{session_id}] E2E run failed")
            result = create_error_e2e_result(str(e) or type(e).__name__, config.base_url)
            state.latest_e2e = result
            self._bus.publish(session_id, EventType.ERROR, {"message": f"E2E test failed: {e}"})
            self._bus.publish(session_id, EventType.E2E_ERROR, {"error": str(e)})
            return result
        finally:
            state.e2e_in_progress = False

        state.latest_e2e = result
        self._bus.publish(
            session_id,
            EventType.SYSTEM,
            {
                "message": (
                    f"E2E test {result.test_status}: Score {result.visual_score:g}/100, "
                    f"{len(result.findings)} findings"
                ),
                "testStatus": result.test_status,
                "visualScore": result.visual_score,
            },
        )
        self._bus.publish(
            session_id, EventType.E2E_COMPLETE, {"result": result.model_dump(by_alias=True)}
        )
        logger.info(f"[{session_id}] E2E finished: {result.test_status}")
        return result

    def write_fix_documents(self, session_id: str, project_path: str, result: E2ETestResult) -> None:
        """Write the fix prompt and append E2E findings to the tracking document."""
        docs = ProjectDocuments(project_path)
        docs.write_document(
            E2E_FIX_PROMPT_DOCUMENT, generate_e2e_fix_prompt(result, docs.project_path.name)
        )
        docs.append_to_tracking(generate_e2e_findings_section(result))
        self._bus.publish(session_id, EventType.SYSTEM, {"message": "Generated E2E fix documents"})
