"""Agent loop core: output parsing, process supervision and the loop controller."""

from loopforge.loop.contracts import AutoContinuePolicy, CompletionReason, LoopConfig, StatusBlock
from loopforge.loop.events import EventBus, EventType, LoopEvent
from loopforge.loop.parser import LineBuffer, OutputParser, parse_status_block

__all__ = [
    "AutoContinuePolicy",
    "CompletionReason",
    "EventBus",
    "EventType",
    "LineBuffer",
    "LoopConfig",
    "LoopEvent",
    "OutputParser",
    "StatusBlock",
    "parse_status_block",
]
