"""Spawning, monitoring and signalling of agent processes."""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import pydantic as pd

from loopforge.constants import (
    DEFAULT_AGENT_CLI,
    ENV_LOOP_MODE,
    ENV_SESSION_ID,
    READ_CHUNK_SIZE,
    STOP_GRACE_SECONDS,
)
from loopforge.errors import ProcessAlreadyAttachedError, ReviewTimeoutError
from loopforge.loop.contracts import StatusBlock
from loopforge.loop.events import EventBus, EventType
from loopforge.loop.parser import LineBuffer, OutputParser
from loopforge.loop.registry import SessionState


logger = logging.getLogger(__name__)


def build_agent_command(
    cli_path: Optional[str],
    model: str,
    verbose: bool = False,
    read_only: bool = False,
) -> List[str]:
    """Build the argv for one agent invocation.

    The prompt is always delivered on stdin. Loop invocations stream
    structured output and run non-interactively; read-only invocations
    omit the permission bypass.
    """
    argv = [cli_path or DEFAULT_AGENT_CLI, "-p"]
    if read_only:
        argv.append(f"--model={model}")
        return argv

    argv.extend(
        [
            "--dangerously-skip-permissions",
            "--output-format=stream-json",
            f"--model={model}",
        ]
    )
    if verbose:
        argv.append("--verbose")
    return argv


def build_agent_env(mode: str, session_id: str) -> Dict[str, str]:
    env = dict(os.environ)
    env[ENV_LOOP_MODE] = mode
    env[ENV_SESSION_ID] = session_id
    return env


class InvocationResult(pd.BaseModel):
    """Result of a one-shot agent invocation."""

    argv: List[str]
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float

    model_config = pd.ConfigDict(extra="forbid")


@dataclass
class ProcessHandle:
    """A live agent process plus its line reassembly buffers."""

    process: asyncio.subprocess.Process
    stdout_buffer: LineBuffer = field(default_factory=LineBuffer)
    stderr_buffer: LineBuffer = field(default_factory=LineBuffer)
    kill_timer: Optional[asyncio.TimerHandle] = None
    stopped: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


class ProcessSupervisor:
    """Runs at most one agent process per session and wires its streams to the bus."""

    def __init__(self, bus: EventBus, stop_grace_seconds: float = STOP_GRACE_SECONDS) -> None:
        self._bus = bus
        self._stop_grace_seconds = stop_grace_seconds

    async def run(
        self,
        state: SessionState,
        argv: List[str],
        prompt: str,
        cwd: str,
        mode: str,
        on_status: Optional[Callable[[StatusBlock], None]] = None,
    ) -> int:
        """Spawn the agent, pump its output until exit and return the exit code.

        Raises:
            ProcessAlreadyAttachedError: If the session already owns a process
            OSError: If the binary cannot be spawned
        """
        if state.handle is not None:
            raise ProcessAlreadyAttachedError(
                f"Session {state.session_id} already has process {state.handle.pid}"
            )

        session_id = state.session_id
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=build_agent_env(mode, session_id),
        )
        handle = ProcessHandle(process=process)
        state.handle = handle
        logger.info(f"[{session_id}] Spawned agent pid={process.pid}: {' '.join(argv)}")

        def on_agent_session(agent_session_id: str) -> None:
            state.agent_session_id = agent_session_id

        parser = OutputParser(
            emit=lambda event_type, data: self._bus.publish(session_id, event_type, data),
            on_status=on_status,
            on_agent_session=on_agent_session,
        )

        try:
            await asyncio.gather(
                self._write_stdin(process, prompt, session_id),
                self._pump_stdout(handle, parser),
                self._pump_stderr(handle, session_id),
            )
            exit_code = await process.wait()
        finally:
            if handle.kill_timer is not None:
                handle.kill_timer.cancel()
            if handle.alive:
                self._signal(handle, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)
                await process.wait()
            state.handle = None

        logger.info(f"[{session_id}] Agent exited with code {exit_code}")
        return exit_code

    def stop(self, state: SessionState) -> bool:
        """Mark the session non-restartable and terminate its processes.

        Covers both the loop agent and a running review invocation. Sends a
        graceful signal now and a forced kill after the grace period. Safe to
        call repeatedly or with no process attached.

        Returns:
            True if a live process was signalled
        """
        state.should_continue = False
        state.stop_requested = True

        signalled = False
        for handle in (state.handle, state.review_handle):
            if handle is not None and handle.alive:
                self._terminate_handle(handle, state.session_id)
                signalled = True
        return signalled

    def _terminate_handle(self, handle: ProcessHandle, session_id: str) -> None:
        handle.stopped = True
        logger.info(f"[{session_id}] Stopping agent pid={handle.pid}")
        self._signal(handle, signal.SIGTERM)
        if hasattr(signal, "SIGCONT"):
            self._signal(handle, signal.SIGCONT)

        if handle.kill_timer is None:
            loop = asyncio.get_running_loop()
            handle.kill_timer = loop.call_later(
                self._stop_grace_seconds, self._force_kill, handle, session_id
            )

    def pause(self, state: SessionState) -> bool:
        """Suspend the session's process where the platform supports it."""
        return self._suspend_signal(state, "SIGSTOP")

    def resume(self, state: SessionState) -> bool:
        """Continue a suspended process where the platform supports it."""
        return self._suspend_signal(state, "SIGCONT")

    async def run_once(
        self,
        argv: List[str],
        cwd: str,
        env: Dict[str, str],
        stdin_text: str,
        timeout: float,
        on_spawn: Optional[Callable[[ProcessHandle], None]] = None,
    ) -> InvocationResult:
        """Run a one-shot invocation with a hard timeout.

        on_spawn receives the process handle so callers can stop the
        invocation early.

        Raises:
            ReviewTimeoutError: If the process does not finish in time
            OSError: If the binary cannot be spawned
        """
        started = time.monotonic()
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
        handle = ProcessHandle(process=process)
        logger.info(f"Spawned one-shot agent pid={process.pid}")
        if on_spawn is not None:
            on_spawn(handle)

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin_text.encode("utf-8")), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"One-shot agent pid={process.pid} timed out after {timeout}s")
            await self._terminate(process)
            raise ReviewTimeoutError(f"Agent invocation timed out after {timeout} seconds")
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        finally:
            if handle.kill_timer is not None:
                handle.kill_timer.cancel()
                handle.kill_timer = None

        return InvocationResult(
            argv=argv,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_seconds=time.monotonic() - started,
        )

    async def _write_stdin(
        self, process: asyncio.subprocess.Process, prompt: str, session_id: str
    ) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(f"[{session_id}] Agent closed stdin before the prompt was written")
        finally:
            process.stdin.close()

    async def _pump_stdout(self, handle: ProcessHandle, parser: OutputParser) -> None:
        stream = handle.process.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in handle.stdout_buffer.append(decoder.decode(chunk)):
                parser.feed_line(line)

        tail = handle.stdout_buffer.append(decoder.decode(b"", final=True))
        remainder = handle.stdout_buffer.flush()
        for line in tail + ([remainder] if remainder else []):
            parser.feed_line(line)
        parser.flush()

    async def _pump_stderr(self, handle: ProcessHandle, session_id: str) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in handle.stderr_buffer.append(decoder.decode(chunk)):
                self._emit_stderr(session_id, line)

        remainder = handle.stderr_buffer.flush()
        if remainder:
            self._emit_stderr(session_id, remainder)

    def _emit_stderr(self, session_id: str, line: str) -> None:
        if line.strip():
            self._bus.publish(session_id, EventType.STDERR, {"message": line})

    def _suspend_signal(self, state: SessionState, name: str) -> bool:
        signum = getattr(signal, name, None)
        handle = state.handle
        if signum is None or handle is None or not handle.alive:
            return False
        self._signal(handle, signum)
        logger.info(f"[{state.session_id}] Sent {name} to pid={handle.pid}")
        return True

    def _force_kill(self, handle: ProcessHandle, session_id: str) -> None:
        handle.kill_timer = None
        if handle.alive:
            logger.warning(f"[{session_id}] Agent pid={handle.pid} ignored SIGTERM, killing")
            self._signal(handle, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._stop_grace_seconds)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    @staticmethod
    def _signal(handle: ProcessHandle, signum: int) -> None:
        try:
            handle.process.send_signal(signum)
        except ProcessLookupError:
            logger.debug(f"Process {handle.pid} already exited")
