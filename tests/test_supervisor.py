"""Tests for agent process supervision."""

import asyncio
import json
import os
import sys

import pytest

from loopforge.errors import ProcessAlreadyAttachedError, ReviewTimeoutError
from loopforge.loop.events import EventBus, EventType
from loopforge.loop.registry import SessionState
from loopforge.loop.supervisor import ProcessSupervisor, build_agent_command, build_agent_env

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake agents are POSIX shell scripts")


class TestBuildAgentCommand:
    """Test argv construction."""

    def test_loop_invocation(self):
        assert build_agent_command("/bin/agent", "opus") == [
            "/bin/agent",
            "-p",
            "--dangerously-skip-permissions",
            "--output-format=stream-json",
            "--model=opus",
        ]

    def test_verbose_flag(self):
        assert build_agent_command("agent", "sonnet", verbose=True)[-1] == "--verbose"

    def test_read_only_invocation(self):
        argv = build_agent_command("agent", "opus", read_only=True)
        assert argv == ["agent", "-p", "--model=opus"]
        assert "--dangerously-skip-permissions" not in argv

    def test_default_binary(self):
        assert build_agent_command(None, "opus")[0] == "claude"

    def test_env(self, monkeypatch):
        monkeypatch.setenv("SOME_VAR", "kept")
        env = build_agent_env("plan", "s1")
        assert env["RALPH_MODE"] == "plan"
        assert env["RALPH_SESSION_ID"] == "s1"
        assert env["SOME_VAR"] == "kept"


class TestRun:
    """Test spawning and output pumping."""

    @pytest.mark.asyncio
    async def test_streams_are_forwarded(self, tmp_path, fake_agent, events):
        init = json.dumps({"type": "system", "subtype": "init", "session_id": "agent-42"})
        script = fake_agent(
            f"""read prompt
echo "got: $prompt"
echo '{init}'
echo "mode=$RALPH_MODE"
echo "oops" >&2
printf 'no newline'
exit 3
"""
        )
        bus = EventBus()
        bus.add_listener(events)
        state = SessionState(session_id="s1")

        exit_code = await ProcessSupervisor(bus).run(
            state, [script], "hello agent\n", cwd=str(tmp_path), mode="build"
        )

        assert exit_code == 3
        raws = [e.data.get("raw") for e in events.of_type(EventType.STDOUT)]
        assert raws == ["got: hello agent", None, "mode=build", "no newline"]
        structured = events.of_type(EventType.STDOUT)[1].data
        assert structured["session_id"] == "agent-42"
        assert [e.data["message"] for e in events.of_type(EventType.STDERR)] == ["oops"]
        assert state.agent_session_id == "agent-42"
        assert state.handle is None

    @pytest.mark.asyncio
    async def test_status_callback(self, tmp_path, fake_agent):
        script = fake_agent(
            """cat > /dev/null
echo 'RALPH_STATUS:'
echo 'TASK_COMPLETED: "done"'
echo 'EXIT_SIGNAL: true'
"""
        )
        statuses = []
        state = SessionState(session_id="s1")
        await ProcessSupervisor(EventBus()).run(
            state, [script], "", cwd=str(tmp_path), mode="build", on_status=statuses.append
        )
        assert len(statuses) == 1
        assert statuses[0].exit_signal is True

    @pytest.mark.asyncio
    async def test_one_process_per_session(self, tmp_path, fake_agent, wait_until):
        script = fake_agent("cat > /dev/null\nexec sleep 30\n")
        supervisor = ProcessSupervisor(EventBus(), stop_grace_seconds=0.5)
        state = SessionState(session_id="s1")
        task = asyncio.create_task(
            supervisor.run(state, [script], "", cwd=str(tmp_path), mode="build")
        )
        await wait_until(lambda: state.handle is not None)

        with pytest.raises(ProcessAlreadyAttachedError):
            await supervisor.run(state, [script], "", cwd=str(tmp_path), mode="build")

        assert supervisor.stop(state)
        await asyncio.wait_for(task, timeout=5)
        assert state.handle is None

    @pytest.mark.asyncio
    async def test_missing_binary_raises_oserror(self, tmp_path):
        state = SessionState(session_id="s1")
        with pytest.raises(OSError):
            await ProcessSupervisor(EventBus()).run(
                state, [str(tmp_path / "missing")], "", cwd=str(tmp_path), mode="build"
            )
        assert state.handle is None


class TestStop:
    """Test graceful and forced termination."""

    @pytest.mark.asyncio
    async def test_stop_marks_session_and_terminates(self, tmp_path, fake_agent, wait_until):
        script = fake_agent("cat > /dev/null\nexec sleep 30\n")
        supervisor = ProcessSupervisor(EventBus(), stop_grace_seconds=5)
        state = SessionState(session_id="s1", should_continue=True)
        task = asyncio.create_task(
            supervisor.run(state, [script], "", cwd=str(tmp_path), mode="build")
        )
        await wait_until(lambda: state.handle is not None)

        assert supervisor.stop(state) is True
        assert state.should_continue is False
        assert state.stop_requested is True

        exit_code = await asyncio.wait_for(task, timeout=5)
        assert exit_code != 0

    @pytest.mark.asyncio
    async def test_stop_without_process(self):
        state = SessionState(session_id="s1", should_continue=True)
        supervisor = ProcessSupervisor(EventBus())
        assert supervisor.stop(state) is False
        assert supervisor.stop(state) is False
        assert state.should_continue is False

    @pytest.mark.asyncio
    async def test_force_kill_after_grace(self, tmp_path, fake_agent, events, wait_until):
        """Verify a process ignoring SIGTERM is killed after the grace period."""
        script = fake_agent(
            "trap '' TERM\ncat > /dev/null\necho ready\nwhile true; do sleep 0.1; done\n"
        )
        bus = EventBus()
        bus.add_listener(events)
        supervisor = ProcessSupervisor(bus, stop_grace_seconds=0.3)
        state = SessionState(session_id="s1")
        task = asyncio.create_task(
            supervisor.run(state, [script], "", cwd=str(tmp_path), mode="build")
        )
        await wait_until(
            lambda: any(e.data.get("raw") == "ready" for e in events.of_type(EventType.STDOUT))
        )

        supervisor.stop(state)
        exit_code = await asyncio.wait_for(task, timeout=5)
        assert exit_code == -9

    @pytest.mark.asyncio
    @pytest.mark.skipif(os.name != "posix", reason="needs job-control signals")
    async def test_pause_and_resume(self, tmp_path, fake_agent, wait_until):
        script = fake_agent("cat > /dev/null\nexec sleep 30\n")
        supervisor = ProcessSupervisor(EventBus(), stop_grace_seconds=0.5)
        state = SessionState(session_id="s1")
        task = asyncio.create_task(
            supervisor.run(state, [script], "", cwd=str(tmp_path), mode="build")
        )
        await wait_until(lambda: state.handle is not None)

        assert supervisor.pause(state)
        assert supervisor.resume(state)
        supervisor.stop(state)
        await asyncio.wait_for(task, timeout=5)
        assert not supervisor.pause(state)


class TestRunOnce:
    """Test one-shot invocations."""

    @pytest.mark.asyncio
    async def test_collects_output(self, tmp_path, fake_agent):
        script = fake_agent('read line\necho "echo: $line"\necho "warn" >&2\n')
        result = await ProcessSupervisor(EventBus()).run_once(
            [script], cwd=str(tmp_path), env=dict(os.environ), stdin_text="ping\n", timeout=5
        )
        assert result.exit_code == 0
        assert result.stdout == "echo: ping\n"
        assert result.stderr == "warn\n"
        assert result.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path, fake_agent):
        script = fake_agent("exec sleep 30\n")
        supervisor = ProcessSupervisor(EventBus(), stop_grace_seconds=0.5)
        with pytest.raises(ReviewTimeoutError, match="timed out after 0.3 seconds"):
            await supervisor.run_once(
                [script], cwd=str(tmp_path), env=dict(os.environ), stdin_text="", timeout=0.3
            )

    @pytest.mark.asyncio
    async def test_stop_terminates_invocation(self, tmp_path, fake_agent, wait_until):
        """Verify stop() reaches a one-shot process registered on the session."""
        supervisor = ProcessSupervisor(EventBus(), stop_grace_seconds=0.5)
        state = SessionState(session_id="s1")

        def on_spawn(handle):
            state.review_handle = handle

        task = asyncio.create_task(
            supervisor.run_once(
                [fake_agent("exec sleep 30\n")],
                cwd=str(tmp_path),
                env=dict(os.environ),
                stdin_text="",
                timeout=30,
                on_spawn=on_spawn,
            )
        )
        await wait_until(lambda: state.review_handle is not None)

        assert supervisor.stop(state) is True
        result = await asyncio.wait_for(task, timeout=5)
        assert result.exit_code == -15
        assert state.review_handle.stopped is True
        assert state.should_continue is False

    @pytest.mark.asyncio
    async def test_stop_kills_invocation_ignoring_sigterm(self, tmp_path, fake_agent, wait_until):
        supervisor = ProcessSupervisor(EventBus(), stop_grace_seconds=0.3)
        state = SessionState(session_id="s1")

        def on_spawn(handle):
            state.review_handle = handle

        task = asyncio.create_task(
            supervisor.run_once(
                [fake_agent("trap '' TERM\nexec sleep 30\n")],
                cwd=str(tmp_path),
                env=dict(os.environ),
                stdin_text="",
                timeout=30,
                on_spawn=on_spawn,
            )
        )
        await wait_until(lambda: state.review_handle is not None)

        supervisor.stop(state)
        result = await asyncio.wait_for(task, timeout=5)
        assert result.exit_code == -9
