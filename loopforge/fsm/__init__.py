"""Finite state machine package for loopforge.

This package provides the loop state machine used by the loop controller.
"""

from loopforge.fsm.loop_fsm import LoopFSM
from loopforge.fsm.loop_state import LoopState

__all__ = ["LoopFSM", "LoopState"]
