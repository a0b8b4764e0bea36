"""Supervisor for long-running autonomous coding-agent loops."""

__version__ = "0.1.0"

from loopforge.errors import LoopForgeError, SessionAlreadyRunningError
from loopforge.loop.contracts import AutoContinuePolicy, LoopConfig
from loopforge.loop.controller import LoopController
from loopforge.loop.events import EventBus, EventType, LoopEvent

__all__ = [
    "AutoContinuePolicy",
    "EventBus",
    "EventType",
    "LoopConfig",
    "LoopController",
    "LoopEvent",
    "LoopForgeError",
    "SessionAlreadyRunningError",
]
