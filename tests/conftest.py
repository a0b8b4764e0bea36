"""Shared pytest fixtures for loopforge tests."""

import asyncio
import stat
from pathlib import Path
from typing import Callable, List

import pytest

from loopforge.config import Settings
from loopforge.constants import DEFAULT_PROMPT_DOCUMENT, TRACKING_DOCUMENT
from loopforge.loop.events import EventType, LoopEvent


OPEN_PLAN = "# Implementation Plan\n\n- [x] scaffold project\n- [ ] add parser\n- [ ] add tests\n"


class EventCollector:
    """Synchronous bus listener that records every published event."""

    def __init__(self) -> None:
        self.events: List[LoopEvent] = []

    def __call__(self, event: LoopEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType, session_id: str = None) -> List[LoopEvent]:
        return [
            e
            for e in self.events
            if e.type == event_type and (session_id is None or e.session_id == session_id)
        ]

    def messages(self, session_id: str = None) -> List[str]:
        return [e.data.get("message", "") for e in self.of_type(EventType.SYSTEM, session_id)]

    def types(self, session_id: str = None) -> List[EventType]:
        return [e.type for e in self.events if session_id is None or e.session_id == session_id]


@pytest.fixture
def events() -> EventCollector:
    return EventCollector()


def _make_project(root: Path, plan: str = OPEN_PLAN, prompt: str = "Build the next task.\n") -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / DEFAULT_PROMPT_DOCUMENT).write_text(prompt, encoding="utf-8")
    if plan is not None:
        (root / TRACKING_DOCUMENT).write_text(plan, encoding="utf-8")
    return root


@pytest.fixture
def project(tmp_path) -> Path:
    """Project directory with a build prompt and an open plan."""
    return _make_project(tmp_path / "project")


@pytest.fixture
def project_factory(tmp_path) -> Callable[..., Path]:
    """Factory creating further project directories under tmp_path."""

    def factory(name: str, plan: str = OPEN_PLAN) -> Path:
        return _make_project(tmp_path / name, plan=plan)

    return factory


@pytest.fixture
def fake_agent(tmp_path) -> Callable[..., str]:
    """Factory writing an executable shell script that stands in for the agent CLI.

    The script runs with the project as its working directory and receives the
    prompt on stdin. Long-running scripts should ``exec`` their final command
    so that SIGTERM reaches it directly.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def factory(body: str, name: str = "agent") -> str:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return factory


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(
        restart_delay_seconds=0,
        continuation_delay_seconds=0,
        stop_grace_seconds=0.5,
        review_timeout_seconds=10,
    )


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


@pytest.fixture
def wait_until():
    """Async helper polling a predicate until it holds or the timeout expires."""
    return _wait_until

