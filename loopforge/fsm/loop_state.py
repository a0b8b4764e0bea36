"""Loop state enumeration for the agent loop controller.

This module provides LoopState enum for tracking the lifecycle of one
session's agent loop.
"""

from enum import Enum


class LoopState(Enum):
    """Agent loop states.

    States represent the phases of a supervised loop cycle:
    - IDLE: Session registered, no process spawned yet
    - RUNNING: An agent process is attached and producing output
    - RESTARTING: Previous iteration exited cleanly, next spawn is pending
    - STOPPED: Loop ended by exit signal, manual stop, or a failed run
    - COMPLETED: Loop ran to natural completion (plan exhausted or cap reached)
    - REVIEWING: A read-only review pass is evaluating the finished work

    Enum values are lowercase strings so they serialize directly into events.
    """

    IDLE = "idle"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    COMPLETED = "completed"
    REVIEWING = "reviewing"
