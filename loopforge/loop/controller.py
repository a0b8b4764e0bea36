"""Loop controller: drives restart, stop and review decisions per session.

Each started session gets one driving task. The task spawns the agent, waits
for it to exit, asks ``decide`` whether to restart, and on natural completion
optionally hands off to a review pass and a continuation cycle. The loop is
an explicit ``while`` over iterations rather than a chain of restarts.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import List, Optional

import pydantic as pd

from loopforge.config import Settings, get_settings
from loopforge.constants import (
    BANNER_RULE,
    CONTINUATION_PROMPT_DOCUMENT,
    DEFAULT_PROMPT_DOCUMENT,
    E2E_FIX_PROMPT_DOCUMENT,
    TRACKING_DOCUMENT,
)
from loopforge.e2e.contracts import E2ERunner, E2ETestConfig, E2ETestResult
from loopforge.e2e.orchestrator import E2EOrchestrator
from loopforge.errors import (
    LoopForgeError,
    PromptNotFoundError,
    ReviewInProgressError,
    SessionAlreadyRunningError,
)
from loopforge.fsm.loop_state import LoopState
from loopforge.loop.contracts import AutoContinuePolicy, CompletionReason, LoopConfig, StatusBlock
from loopforge.loop.events import EventBus, EventType
from loopforge.loop.registry import SessionRegistry, SessionState
from loopforge.loop.supervisor import ProcessSupervisor, build_agent_command
from loopforge.loop.tracking import ProjectDocuments
from loopforge.review.continuation import ContinuationPlanner
from loopforge.review.contracts import ReviewResult
from loopforge.review.orchestrator import ReviewOrchestrator
from loopforge.utils.git import GitError, get_current_branch, push_branch


logger = logging.getLogger(__name__)

# Exit code reported when the agent binary could not be spawned
SPAWN_FAILURE_EXIT_CODE = -1

COMPLETED_REASONS = frozenset({CompletionReason.PLAN_EXHAUSTED, CompletionReason.MAX_ITERATIONS})

EXIT_SIGNAL_NOTICE = "Exit signal received - loop will stop after this iteration completes."


@dataclass(frozen=True)
class LoopDecision:
    """What to do after an agent process exits."""

    restart: bool
    reason: Optional[CompletionReason] = None


def decide(
    exit_code: int,
    *,
    should_continue: bool,
    exit_signal: bool,
    max_reached: bool,
    plan_exhausted: bool,
) -> LoopDecision:
    """Pure step function mapping one process exit to a restart or a stop reason."""
    if (
        exit_code == 0
        and should_continue
        and not exit_signal
        and not max_reached
        and not plan_exhausted
    ):
        return LoopDecision(restart=True)

    if plan_exhausted:
        reason = CompletionReason.PLAN_EXHAUSTED
    elif exit_signal:
        reason = CompletionReason.EXIT_SIGNAL
    elif max_reached:
        reason = CompletionReason.MAX_ITERATIONS
    elif not should_continue:
        reason = CompletionReason.MANUALLY_STOPPED
    elif exit_code != 0:
        reason = CompletionReason.NONZERO_EXIT
    else:
        reason = CompletionReason.UNKNOWN
    return LoopDecision(restart=False, reason=reason)


def terminal_state(exit_code: int, reason: CompletionReason, exit_signal: bool) -> LoopState:
    """COMPLETED for a clean natural finish, STOPPED for everything else."""
    if exit_code == 0 and not exit_signal and reason in COMPLETED_REASONS:
        return LoopState.COMPLETED
    return LoopState.STOPPED


def max_iterations_reached(iteration: int, max_iterations: int) -> bool:
    """True when the run that just finished was the last one allowed.

    ``iteration`` counts restarts, so the run just finished is number
    ``iteration + 1``.
    """
    return max_iterations > 0 and iteration + 1 >= max_iterations


class SessionStatus(pd.BaseModel):
    """Snapshot of one session for transport consumers joining late."""

    session_id: str
    state: LoopState
    running: bool
    iteration: int
    max_iterations: int = 0
    prompt_file: Optional[str] = None
    branch: Optional[str] = None
    agent_session_id: Optional[str] = None
    review_in_progress: bool = False
    e2e_in_progress: bool = False
    latest_review: Optional[ReviewResult] = None
    latest_e2e: Optional[E2ETestResult] = None

    model_config = pd.ConfigDict(extra="forbid")


class LoopController:
    """Starts, supervises and stops agent loops for many isolated sessions."""

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        registry: Optional[SessionRegistry] = None,
        e2e_runner: Optional[E2ERunner] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.bus = bus or EventBus(buffer_size=self.settings.event_buffer_size)
        self.registry = registry or SessionRegistry()
        self.supervisor = ProcessSupervisor(
            self.bus, stop_grace_seconds=self.settings.stop_grace_seconds
        )
        self.review = ReviewOrchestrator(
            self.bus, self.supervisor, timeout_seconds=self.settings.review_timeout_seconds
        )
        self.planner = ContinuationPlanner(self.bus)
        self.e2e = E2EOrchestrator(self.bus, e2e_runner) if e2e_runner is not None else None

    async def start(self, config: LoopConfig) -> SessionState:
        """Start a loop cycle for config.session_id.

        Raises:
            SessionAlreadyRunningError: If the session already has an active loop
            PromptNotFoundError: If the prompt document does not exist
        """
        session_id = config.session_id
        state = self.registry.get_or_create(session_id)
        if state.fsm.is_active or state.is_running:
            raise SessionAlreadyRunningError(session_id)

        docs = ProjectDocuments(config.project_path)
        if not docs.prompt_exists(config.prompt_file):
            raise PromptNotFoundError(f"Prompt file not found: {docs.prompt_path(config.prompt_file)}")

        if not docs.has_tracking_document():
            self.bus.publish(
                session_id,
                EventType.SYSTEM,
                {
                    "message": f"Warning: {TRACKING_DOCUMENT} not found. "
                    "Plan exhaustion detection disabled."
                },
            )

        state.config = config
        state.should_continue = True
        state.stop_requested = False
        state.exit_signal_received = False
        state.fsm.reset_iterations()
        state.fsm.transition_to(LoopState.RUNNING)
        state.task = asyncio.create_task(self._drive(state), name=f"loopforge-{session_id}")
        logger.info(f"[{session_id}] Loop started ({config.mode}, {config.prompt_file})")
        return state

    async def wait(self, session_id: str) -> None:
        """Wait until the session's driving task has finished."""
        state = self.registry.get(session_id)
        if state is not None and state.task is not None:
            await asyncio.shield(state.task)

    def stop(self, session_id: str) -> bool:
        """Stop the session's loop. Idempotent; unknown sessions are a no-op."""
        state = self.registry.get(session_id)
        if state is None:
            return False
        return self.supervisor.stop(state)

    def pause(self, session_id: str) -> bool:
        state = self.registry.get(session_id)
        return state is not None and self.supervisor.pause(state)

    def resume(self, session_id: str) -> bool:
        state = self.registry.get(session_id)
        return state is not None and self.supervisor.resume(state)

    def is_running(self, session_id: str) -> bool:
        state = self.registry.get(session_id)
        return state is not None and state.is_running

    def running_sessions(self) -> List[str]:
        return self.registry.running_sessions()

    def status(self, session_id: str) -> Optional[SessionStatus]:
        state = self.registry.get(session_id)
        if state is None:
            return None
        config = state.config
        return SessionStatus(
            session_id=session_id,
            state=state.fsm.current_state,
            running=state.is_running,
            iteration=state.iteration,
            max_iterations=config.max_iterations if config else 0,
            prompt_file=config.prompt_file if config else None,
            branch=state.branch,
            agent_session_id=state.agent_session_id,
            review_in_progress=state.review_in_progress,
            e2e_in_progress=state.e2e_in_progress,
            latest_review=state.latest_review,
            latest_e2e=state.latest_e2e,
        )

    async def trigger_review(
        self,
        session_id: str,
        project_path: Optional[str] = None,
        model: Optional[str] = None,
        agent_cli_path: Optional[str] = None,
    ) -> ReviewResult:
        """Run a manual review pass.

        Sessions that never ran a loop get a minimal config built from the
        arguments.

        Raises:
            ReviewInProgressError: If a review is already running for the session
            LoopForgeError: If no project path is known for the session
        """
        state = self.registry.get_or_create(session_id)
        config = state.config
        if config is None:
            if project_path is None:
                raise LoopForgeError(f"No project path known for session {session_id}")
            config = LoopConfig(
                session_id=session_id,
                project_path=project_path,
                prompt_file=DEFAULT_PROMPT_DOCUMENT,
                model=model or self.settings.default_model,
                agent_cli_path=agent_cli_path or self.settings.agent_cli_path,
            )
            state.config = config
        if not state.is_running:
            state.stop_requested = False
        return await self.review.run_review(state, config)

    async def approve_continuation(self, session_id: str) -> SessionState:
        """Start a continuation cycle from the latest review, without auto-continue.

        Raises:
            LoopForgeError: If the session has no review result to continue from
            SessionAlreadyRunningError: If the session is still running
        """
        state = self.registry.get(session_id)
        if state is None or state.config is None or state.latest_review is None:
            raise LoopForgeError(f"No review result to continue from for session {session_id}")
        if state.fsm.is_active or state.is_running:
            raise SessionAlreadyRunningError(session_id)

        result = state.latest_review
        config = state.config
        self.planner.write_documents(session_id, config.project_path, result)
        next_config = config.model_copy(
            update={
                "prompt_file": CONTINUATION_PROMPT_DOCUMENT,
                "auto_continue": AutoContinuePolicy(enabled=False),
            }
        )
        return await self.start(next_config)

    async def run_e2e(self, session_id: str, config: E2ETestConfig) -> E2ETestResult:
        """Run a visual verification pass through the configured runner.

        Raises:
            LoopForgeError: If no E2E runner was configured
            E2EInProgressError: If an E2E pass is already running for the session
        """
        if self.e2e is None:
            raise LoopForgeError("No E2E runner configured")
        state = self.registry.get_or_create(session_id)
        return await self.e2e.run(state, config)

    async def approve_e2e_fix(self, session_id: str) -> SessionState:
        """Write E2E fix documents and start a fix loop with auto-review disabled.

        Raises:
            LoopForgeError: If there is no E2E result or loop config for the session
            SessionAlreadyRunningError: If the session is still running
        """
        state = self.registry.get(session_id)
        if state is None or state.config is None or state.latest_e2e is None:
            raise LoopForgeError(f"No E2E result to fix for session {session_id}")
        if state.fsm.is_active or state.is_running:
            raise SessionAlreadyRunningError(session_id)
        if self.e2e is None:
            raise LoopForgeError("No E2E runner configured")

        config = state.config
        self.e2e.write_fix_documents(session_id, config.project_path, state.latest_e2e)
        next_config = config.model_copy(
            update={
                "prompt_file": E2E_FIX_PROMPT_DOCUMENT,
                "auto_review": False,
                "auto_continue": AutoContinuePolicy(enabled=False),
            }
        )
        return await self.start(next_config)

    async def cleanup(self, session_id: str) -> None:
        """Stop the session, wait for its task to end and forget it."""
        state = self.registry.get(session_id)
        if state is None:
            return
        self.supervisor.stop(state)
        if state.task is not None and not state.task.done():
            state.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await state.task
        self.registry.remove(session_id)

    async def shutdown(self) -> None:
        for session_id in list(self.registry.running_sessions()):
            await self.cleanup(session_id)

    async def _drive(self, state: SessionState) -> None:
        session_id = state.session_id
        exit_code: Optional[int] = None
        try:
            while True:
                config = state.config
                if config is None:
                    raise LoopForgeError(f"Session {session_id} has no loop config")
                exit_code = await self._run_iteration(state, config)
                decision = self._decide(state, config, exit_code)

                if decision.restart:
                    if await self._restart(state, config):
                        continue
                    self._finish(
                        state, config, exit_code, CompletionReason.MANUALLY_STOPPED, state.iteration
                    )
                    break

                reason = decision.reason or CompletionReason.UNKNOWN
                final = self._finish(state, config, exit_code, reason, state.iteration + 1)
                if (
                    final is LoopState.COMPLETED
                    and config.auto_review
                    and await self._review_and_continue(state, config)
                ):
                    continue
                break
        except asyncio.CancelledError:
            logger.info(f"[{session_id}] Driving task cancelled")
            if state.fsm.is_active:
                state.fsm.transition_to(LoopState.STOPPED)
            raise
        except Exception as e:
            logger.exception(f"[{session_id}] Loop failed")
            self.bus.publish(session_id, EventType.ERROR, {"message": f"Loop failed: {e}"})
            if state.fsm.is_active:
                state.fsm.transition_to(LoopState.STOPPED)
        finally:
            state.should_continue = False
            self.bus.publish(session_id, EventType.SESSION_END, {"exitCode": exit_code})
            logger.info(f"[{session_id}] Session ended in state {state.fsm.current_state.value}")

    async def _run_iteration(self, state: SessionState, config: LoopConfig) -> int:
        session_id = state.session_id
        docs = ProjectDocuments(config.project_path)
        state.exit_signal_received = False

        loop = asyncio.get_running_loop()
        state.branch = await loop.run_in_executor(None, get_current_branch, config.project_path)
        self._publish_banner(state, config)

        try:
            prompt = docs.read_prompt(config.prompt_file)
        except (OSError, UnicodeDecodeError) as e:
            self.bus.publish(session_id, EventType.ERROR, {"message": f"Cannot read prompt: {e}"})
            return SPAWN_FAILURE_EXIT_CODE

        argv = build_agent_command(
            config.agent_cli_path or self.settings.agent_cli_path,
            config.model,
            verbose=config.verbose,
        )

        def on_status(status: StatusBlock) -> None:
            if status.exit_signal and not state.exit_signal_received:
                state.exit_signal_received = True
                logger.info(f"[{session_id}] EXIT_SIGNAL received, loop will stop after this run")
                self.bus.publish(session_id, EventType.SYSTEM, {"message": EXIT_SIGNAL_NOTICE})

        try:
            return await self.supervisor.run(
                state,
                argv,
                prompt,
                cwd=config.project_path,
                mode=config.mode,
                on_status=on_status,
            )
        except OSError as e:
            logger.error(f"[{session_id}] Failed to spawn agent: {e}")
            self.bus.publish(session_id, EventType.ERROR, {"message": f"Failed to start agent: {e}"})
            return SPAWN_FAILURE_EXIT_CODE

    def _decide(self, state: SessionState, config: LoopConfig, exit_code: int) -> LoopDecision:
        plan_exhausted = ProjectDocuments(config.project_path).is_plan_exhausted()
        if plan_exhausted:
            self.bus.publish(
                state.session_id,
                EventType.SYSTEM,
                {"message": f"All tasks in {TRACKING_DOCUMENT} completed. Stopping loop."},
            )

        decision = decide(
            exit_code,
            should_continue=state.should_continue,
            exit_signal=state.exit_signal_received,
            max_reached=max_iterations_reached(state.iteration, config.max_iterations),
            plan_exhausted=plan_exhausted,
        )
        logger.debug(
            f"[{state.session_id}] exit={exit_code} iteration={state.iteration} "
            f"continue={state.should_continue} exit_signal={state.exit_signal_received} "
            f"plan_exhausted={plan_exhausted} -> {decision}"
        )
        return decision

    async def _restart(self, state: SessionState, config: LoopConfig) -> bool:
        """Advance to the next iteration; False if the loop was stopped meanwhile."""
        if config.auto_push:
            await self._auto_push(state, config)

        state.fsm.transition_to(LoopState.RESTARTING)
        iteration = state.fsm.advance_iteration()
        self.bus.publish(
            state.session_id,
            EventType.ITERATION_UPDATE,
            {"iteration": iteration, "maxIterations": config.max_iterations},
        )
        self.bus.publish(
            state.session_id,
            EventType.SYSTEM,
            {
                "message": f"\n{'=' * 24} ITERATION {iteration} {'=' * 24}\n",
                "iteration": iteration,
            },
        )

        await asyncio.sleep(self.settings.restart_delay_seconds)
        if not state.should_continue:
            return False

        state.fsm.transition_to(LoopState.RUNNING)
        logger.info(f"[{state.session_id}] Restarting for iteration {iteration}")
        return True

    async def _auto_push(self, state: SessionState, config: LoopConfig) -> None:
        branch = state.branch or "HEAD"
        try:
            await push_branch(config.project_path, branch, timeout=self.settings.push_timeout_seconds)
        except GitError as e:
            logger.warning(f"[{state.session_id}] Git push failed: {e}")
            self.bus.publish(state.session_id, EventType.STDERR, {"message": f"Git push failed: {e}"})
            return
        self.bus.publish(state.session_id, EventType.SYSTEM, {"message": f"Pushed to origin/{branch}"})

    def _finish(
        self,
        state: SessionState,
        config: LoopConfig,
        exit_code: int,
        reason: CompletionReason,
        total_iterations: int,
    ) -> LoopState:
        target = terminal_state(exit_code, reason, state.exit_signal_received)
        state.fsm.transition_to(target)
        self.bus.publish(
            state.session_id,
            EventType.COMPLETE,
            {
                "exitCode": exit_code,
                "reason": reason.describe(max_iterations=config.max_iterations, exit_code=exit_code),
                "reasonCode": reason.value,
                "totalIterations": total_iterations,
                "state": target.value,
            },
        )
        logger.info(f"[{state.session_id}] Loop {target.value}: {reason.value} (exit {exit_code})")
        return target

    async def _review_and_continue(self, state: SessionState, config: LoopConfig) -> bool:
        """Review the finished cycle; True if a continuation cycle is now running."""
        session_id = state.session_id
        state.fsm.transition_to(LoopState.REVIEWING)
        self.bus.publish(
            session_id, EventType.SYSTEM, {"message": "Loop complete. Starting auto-review..."}
        )

        try:
            result = await self.review.run_review(state, config)
        except ReviewInProgressError as e:
            self.bus.publish(session_id, EventType.ERROR, {"message": f"Auto-review failed: {e}"})
            state.fsm.transition_to(LoopState.COMPLETED)
            return False

        if not state.should_continue:
            state.fsm.transition_to(LoopState.STOPPED)
            return False

        decision = self.planner.plan(result, config.auto_continue)
        logger.info(f"[{session_id}] Continuation decision: {decision.reason}")
        if not decision.proceed:
            if decision.cap_reached:
                self.bus.publish(session_id, EventType.SYSTEM, {"message": decision.reason})
            state.fsm.transition_to(LoopState.COMPLETED)
            return False

        try:
            next_config = self.planner.apply(config, result)
        except OSError as e:
            self.bus.publish(
                session_id, EventType.ERROR, {"message": f"Auto-continue failed: {e}"}
            )
            state.fsm.transition_to(LoopState.COMPLETED)
            return False

        auto_iteration = next_config.auto_continue.current_auto_iteration
        self.bus.publish(
            session_id,
            EventType.SYSTEM,
            {
                "message": f"Auto-continue iteration {auto_iteration}/"
                f"{next_config.auto_continue.max_auto_iterations}",
                "autoIteration": auto_iteration,
            },
        )
        state.config = next_config
        state.fsm.reset_iterations()

        await asyncio.sleep(self.settings.continuation_delay_seconds)
        if not state.should_continue:
            state.fsm.transition_to(LoopState.STOPPED)
            return False

        state.fsm.transition_to(LoopState.RUNNING)
        return True

    def _publish_banner(self, state: SessionState, config: LoopConfig) -> None:
        lines = [
            BANNER_RULE,
            f"Mode:   {config.mode}",
            f"Prompt: {config.prompt_file}",
            f"Branch: {state.branch}",
        ]
        if config.max_iterations > 0:
            lines.append(f"Max:    {config.max_iterations} iterations")
        lines.append(BANNER_RULE)
        self.bus.publish(
            state.session_id,
            EventType.SYSTEM,
            {
                "message": "\n".join(lines),
                "branch": state.branch,
                "mode": config.mode,
                "promptFile": config.prompt_file,
            },
        )
