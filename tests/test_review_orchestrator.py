"""Tests for the review pass orchestration."""

import asyncio
import json
import sys

import pytest

from loopforge.constants import REVIEW_DEBUG_OUTPUT, REVIEW_PROMPT_DOCUMENT, TRACKING_DOCUMENT
from loopforge.errors import ReviewInProgressError
from loopforge.loop.contracts import LoopConfig
from loopforge.loop.events import EventBus, EventType
from loopforge.loop.registry import SessionState
from loopforge.loop.supervisor import ProcessSupervisor
from loopforge.review.orchestrator import ReviewOrchestrator

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake agents are POSIX shell scripts")


REPORT = {
    "reviewStatus": "INCOMPLETE",
    "overallScore": 40,
    "requirements": [{"id": "REQ-1", "description": "API", "status": "PARTIAL"}],
    "missingItems": [{"description": "Error handling", "priority": "HIGH"}],
    "summary": "Needs work",
}


def _review_agent(fake_agent, output):
    return fake_agent(f"cat > .review_prompt\ncat <<'EOF'\n{output}\nEOF\n")


@pytest.fixture
def orchestrator(events):
    bus = EventBus()
    bus.add_listener(events)
    return ReviewOrchestrator(bus, ProcessSupervisor(bus, stop_grace_seconds=0.5), timeout_seconds=5)


def _config(project, script):
    return LoopConfig(
        session_id="s1", project_path=str(project), prompt_file="PROMPT_build.md", agent_cli_path=script
    )


class TestRunReview:
    """Test review runs against fake agents."""

    @pytest.mark.asyncio
    async def test_successful_review(self, orchestrator, events, project, fake_agent):
        script = _review_agent(fake_agent, "```json\n" + json.dumps(REPORT) + "\n```")
        state = SessionState(session_id="s1")

        result = await orchestrator.run_review(state, _config(project, script))

        assert result.review_status == "INCOMPLETE"
        assert result.overall_score == 40
        assert result.review_duration_ms is not None
        assert state.latest_review == result
        assert state.review_in_progress is False

        assert events.types() == [
            EventType.REVIEW_START,
            EventType.SYSTEM,
            EventType.SYSTEM,
            EventType.REVIEW_COMPLETE,
        ]
        assert "Review complete: INCOMPLETE (40/100)" in events.messages()
        payload = events.of_type(EventType.REVIEW_COMPLETE)[0].data["result"]
        assert payload["reviewStatus"] == "INCOMPLETE"
        assert "rawOutput" not in payload

    @pytest.mark.asyncio
    async def test_prompt_and_debug_output_written(self, orchestrator, project, fake_agent):
        script = _review_agent(fake_agent, "```json\n" + json.dumps(REPORT) + "\n```")
        await orchestrator.run_review(SessionState(session_id="s1"), _config(project, script))

        prompt = (project / REVIEW_PROMPT_DOCUMENT).read_text()
        assert "READ-ONLY" in prompt
        assert (project / ".review_prompt").read_text() == prompt
        assert "reviewStatus" in (project / REVIEW_DEBUG_OUTPUT).read_text()

    @pytest.mark.asyncio
    async def test_unparseable_output(self, orchestrator, events, project, fake_agent):
        script = _review_agent(fake_agent, "Looks fine to me.")
        result = await orchestrator.run_review(SessionState(session_id="s1"), _config(project, script))

        assert result.review_status == "ERROR"
        assert result.summary == "Review failed: Failed to parse review output"
        assert result.raw_output == "Looks fine to me.\n"
        assert events.of_type(EventType.REVIEW_COMPLETE)

    @pytest.mark.asyncio
    async def test_missing_artifacts(self, orchestrator, events, project, fake_agent):
        (project / TRACKING_DOCUMENT).unlink()
        script = fake_agent("touch .spawned\n")
        state = SessionState(session_id="s1")

        result = await orchestrator.run_review(state, _config(project, script))

        assert result.review_status == "ERROR"
        assert result.summary == f"Review failed: Missing required files: {TRACKING_DOCUMENT}"
        assert state.latest_review == result
        assert events.types() == [EventType.REVIEW_ERROR]
        assert not (project / ".spawned").exists()

    @pytest.mark.asyncio
    async def test_timeout(self, events, project, fake_agent):
        bus = EventBus()
        bus.add_listener(events)
        orchestrator = ReviewOrchestrator(
            bus, ProcessSupervisor(bus, stop_grace_seconds=0.5), timeout_seconds=0.3
        )
        state = SessionState(session_id="s1")

        result = await orchestrator.run_review(state, _config(project, fake_agent("exec sleep 30\n")))

        assert result.review_status == "ERROR"
        assert "timed out after 0.3 seconds" in result.summary
        assert state.review_in_progress is False
        assert events.of_type(EventType.REVIEW_ERROR)
        assert not events.of_type(EventType.REVIEW_COMPLETE)

    @pytest.mark.asyncio
    async def test_failing_process_without_output(self, orchestrator, events, project, fake_agent):
        script = fake_agent("cat > /dev/null\necho 'auth required' >&2\nexit 2\n")
        result = await orchestrator.run_review(SessionState(session_id="s1"), _config(project, script))

        assert result.review_status == "ERROR"
        assert "exited with code 2: auth required" in result.summary
        assert events.of_type(EventType.ERROR)
        assert not events.of_type(EventType.REVIEW_COMPLETE)

    @pytest.mark.asyncio
    async def test_single_flight(self, orchestrator, project, fake_agent, wait_until):
        script = fake_agent("cat > /dev/null\nexec sleep 30\n")
        state = SessionState(session_id="s1")
        config = _config(project, script)
        first = asyncio.create_task(orchestrator.run_review(state, config))
        await wait_until(lambda: state.review_in_progress)

        with pytest.raises(ReviewInProgressError):
            await orchestrator.run_review(state, config)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert state.review_in_progress is False
