"""Tolerant decoding of agent output streams.

Agent output mixes self-describing JSON lines with plain text. Every line is
forwarded: JSON objects as structured ``stdout`` payloads and everything else
as ``{"raw": line}``. Text from either kind is scanned for an embedded status
block that signals task completion.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from loopforge.constants import STATUS_MARKER
from loopforge.loop.contracts import StatusBlock
from loopforge.loop.events import EventType


logger = logging.getLogger(__name__)

_BLOCK_END = re.compile(r"\n[ \t]*\n")
_TASK_COMPLETED = re.compile(r'TASK_COMPLETED:\s*"([^"]*)"')
_FILES_CREATED = re.compile(r"FILES_CREATED:\s*\[(.*?)\]", re.DOTALL)
_NEXT_TASK = re.compile(r'NEXT_TASK:\s*"([^"]*)"')
_EXIT_SIGNAL = re.compile(r"EXIT_SIGNAL:\s*(true|false)", re.IGNORECASE)
_NOTES = re.compile(r'NOTES:\s*"([^"]*)"')


def parse_status_block(text: str) -> Optional[StatusBlock]:
    """Extract a status block from free text.

    The block starts at the status marker and ends at the first blank line
    or at the end of the text. Fields that do not match keep their defaults.

    Returns:
        StatusBlock, or None when the marker is absent
    """
    start = text.find(STATUS_MARKER)
    if start < 0:
        return None

    body = text[start + len(STATUS_MARKER):]
    end = _BLOCK_END.search(body)
    if end:
        body = body[: end.start()]

    status = StatusBlock()

    match = _TASK_COMPLETED.search(body)
    if match:
        status.task_completed = match.group(1)

    match = _FILES_CREATED.search(body)
    if match:
        status.files_created = [
            item.strip().strip("\"'").strip()
            for item in match.group(1).split(",")
            if item.strip().strip("\"'").strip()
        ]

    match = _NEXT_TASK.search(body)
    if match:
        status.next_task = match.group(1)

    match = _EXIT_SIGNAL.search(body)
    if match:
        status.exit_signal = match.group(1).lower() == "true"

    match = _NOTES.search(body)
    if match:
        status.notes = match.group(1)

    return status


def extract_event_text(event: Dict[str, Any]) -> str:
    """Pull human-readable text out of one structured output event.

    Handles streaming deltas (top level or wrapped in ``event``) and
    assistant messages with text content blocks.
    """
    for container in (event.get("event"), event):
        if isinstance(container, dict):
            delta = container.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str):
                return delta["text"]

    message = event.get("message")
    if event.get("type") == "assistant" and isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, list):
            return "".join(
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
    return ""


class LineBuffer:
    """Reassembles complete lines from arbitrary stream chunks."""

    def __init__(self) -> None:
        self._partial = ""

    def append(self, chunk: str) -> List[str]:
        """Add a chunk and return the lines it completed.

        The trailing partial line is retained for the next chunk.
        """
        data = self._partial + chunk
        lines = data.split("\n")
        self._partial = lines.pop()
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def flush(self) -> Optional[str]:
        """Return the retained partial line, if any, and clear it."""
        remainder, self._partial = self._partial, ""
        if remainder.endswith("\r"):
            remainder = remainder[:-1]
        return remainder or None

    @property
    def pending(self) -> str:
        return self._partial


StdoutEmitter = Callable[[EventType, Dict[str, Any]], None]
StatusCallback = Callable[[StatusBlock], None]
AgentSessionCallback = Callable[[str], None]


class OutputParser:
    """Line-oriented decoder for one agent process's stdout.

    Never raises on malformed input. Raw status blocks may span several
    lines; they are closed by a blank line, a structured line, a new marker,
    or ``flush`` at stream end.
    """

    def __init__(
        self,
        emit: StdoutEmitter,
        on_status: Optional[StatusCallback] = None,
        on_agent_session: Optional[AgentSessionCallback] = None,
    ) -> None:
        self._emit = emit
        self._on_status = on_status
        self._on_agent_session = on_agent_session
        self._pending_block: Optional[List[str]] = None
        self.agent_session_id: Optional[str] = None
        self.statuses: List[StatusBlock] = []

    def feed_line(self, line: str) -> None:
        if not line.strip():
            self._close_pending_block()
            return

        parsed = self._decode(line)
        if parsed is not None:
            self._close_pending_block()
            self._emit(EventType.STDOUT, parsed)
            self._handle_structured(parsed)
            return

        self._emit(EventType.STDOUT, {"raw": line})
        if STATUS_MARKER in line:
            self._close_pending_block()
            self._pending_block = [line]
        elif self._pending_block is not None:
            self._pending_block.append(line)

    def flush(self) -> None:
        """Close any status block still open at stream end."""
        self._close_pending_block()

    def _decode(self, line: str) -> Optional[Dict[str, Any]]:
        try:
            parsed = json.loads(line)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None

    def _handle_structured(self, event: Dict[str, Any]) -> None:
        if event.get("type") == "system" and event.get("subtype") == "init":
            agent_session_id = event.get("session_id")
            if isinstance(agent_session_id, str) and agent_session_id:
                self.agent_session_id = agent_session_id
                logger.info(f"Captured agent session id: {agent_session_id}")
                if self._on_agent_session:
                    self._on_agent_session(agent_session_id)

        text = extract_event_text(event)
        if text:
            self._report(parse_status_block(text))

    def _close_pending_block(self) -> None:
        if self._pending_block is None:
            return
        block, self._pending_block = self._pending_block, None
        self._report(parse_status_block("\n".join(block)))

    def _report(self, status: Optional[StatusBlock]) -> None:
        if status is None:
            return
        logger.debug(f"Status block: {status.model_dump()}")
        self.statuses.append(status)
        self._emit(EventType.RALPH_STATUS, status.model_dump(by_alias=True))
        if self._on_status:
            self._on_status(status)
