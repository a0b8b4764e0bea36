"""Extraction of structured review reports from free-form agent output.

Strategies run in order and each returns a ParseAttempt:

1. ``FencedJsonStrategy``: a fenced code block holding a JSON object with
   ``reviewStatus``.
2. ``BraceMatchedJsonStrategy``: a bare JSON object found by brace matching
   around the first ``reviewStatus`` key.
3. ``PartialFieldStrategy``: individual ``reviewStatus``, ``overallScore`` and
   ``summary`` values picked out with regexes.

A full payload is validated strictly and repaired field by field when
validation fails. When no strategy matches, ``parse`` returns None.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import pydantic as pd

from loopforge.review.contracts import (
    PRIORITIES,
    REQUIREMENT_STATUSES,
    REVIEW_STATUSES,
    ReviewResult,
    now_ms,
)


logger = logging.getLogger(__name__)

STATUS_KEY = "reviewStatus"
STREAM_EVENT_TYPES = {
    "content_block_delta",
    "content_block_start",
    "message_start",
    "message_delta",
    "message_stop",
    "assistant",
    "result",
    "system",
    "user",
}


@dataclass
class ParseAttempt:
    """Outcome of one extraction strategy."""

    strategy: str
    payload: Optional[Dict[str, Any]] = None
    partial: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


class ReviewParseStrategy(ABC):
    name: str = "base"

    @abstractmethod
    def extract(self, text: str) -> ParseAttempt:
        """Try to pull a review payload out of text."""

    def _fail(self, error: str) -> ParseAttempt:
        return ParseAttempt(strategy=self.name, error=error)


class FencedJsonStrategy(ReviewParseStrategy):
    name = "fenced_json"

    _FENCE = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)

    def extract(self, text: str) -> ParseAttempt:
        errors = []
        for match in self._FENCE.finditer(text):
            body = match.group(1).strip()
            if STATUS_KEY not in body:
                continue
            try:
                payload = json.loads(body)
            except ValueError as e:
                errors.append(str(e))
                continue
            if isinstance(payload, dict):
                return ParseAttempt(strategy=self.name, payload=payload)
            errors.append("fenced JSON is not an object")
        return self._fail("; ".join(errors) or "no fenced JSON block with reviewStatus")


def match_braces(text: str, start: int) -> Optional[int]:
    """Return the index just past the object opening at ``start``.

    String-aware, so braces inside JSON strings do not count. Returns None
    when the object is never closed.
    """
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index + 1
    return None


class BraceMatchedJsonStrategy(ReviewParseStrategy):
    name = "brace_matched_json"

    def extract(self, text: str) -> ParseAttempt:
        key_index = text.find(STATUS_KEY)
        if key_index < 0:
            return self._fail("reviewStatus not found")

        candidate = text.rfind("{", 0, key_index)
        while candidate >= 0:
            end = match_braces(text, candidate)
            if end is not None and end > key_index:
                try:
                    payload = json.loads(text[candidate:end])
                except ValueError:
                    payload = None
                if isinstance(payload, dict) and STATUS_KEY in payload:
                    return ParseAttempt(strategy=self.name, payload=payload)
            candidate = text.rfind("{", 0, candidate)
        return self._fail("no balanced JSON object around reviewStatus")


class PartialFieldStrategy(ReviewParseStrategy):
    name = "partial_fields"

    _STATUS = re.compile(
        r"""reviewStatus["']?\s*[:=]\s*["']?(COMPLETE|PARTIAL|INCOMPLETE)["']?""",
        re.IGNORECASE,
    )
    _SCORE = re.compile(r"""overallScore["']?\s*[:=]\s*(\d+(?:\.\d+)?)""")
    _SUMMARY = re.compile(r"""summary["']?\s*[:=]\s*["']([^"']+)["']""")

    def extract(self, text: str) -> ParseAttempt:
        status = self._STATUS.search(text)
        score = self._SCORE.search(text)
        if not status and not score:
            return self._fail("no recognizable review fields")

        payload: Dict[str, Any] = {
            "reviewStatus": status.group(1).upper() if status else "ERROR",
            "overallScore": float(score.group(1)) if score else 0,
            "summary": "Review output could not be fully parsed. See raw output for details.",
        }
        summary = self._SUMMARY.search(text)
        if summary:
            payload["summary"] = summary.group(1)
        return ParseAttempt(strategy=self.name, payload=payload, partial=True)


DEFAULT_STRATEGIES: Sequence[ReviewParseStrategy] = (
    FencedJsonStrategy(),
    BraceMatchedJsonStrategy(),
    PartialFieldStrategy(),
)


def extract_review_text(output: str) -> str:
    """Collapse stream-json agent output into its text; plain output is returned as is."""
    events: List[Dict[str, Any]] = []
    plain: List[str] = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            event = json.loads(stripped)
        except ValueError:
            event = None
        if isinstance(event, dict) and event.get("type") in STREAM_EVENT_TYPES:
            events.append(event)
        elif not stripped.startswith("{"):
            plain.append(line)

    if not events:
        return output

    parts: List[str] = []
    final_result = ""
    for event in events:
        kind = event.get("type")
        if kind == "content_block_delta":
            text = (event.get("delta") or {}).get("text")
            if isinstance(text, str):
                parts.append(text)
        elif kind == "content_block_start":
            text = (event.get("content_block") or {}).get("text")
            if isinstance(text, str):
                parts.append(text)
        elif kind == "assistant":
            content = (event.get("message") or {}).get("content") or []
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text":
                    parts.append(block.get("text", ""))
        elif kind == "result" and isinstance(event.get("result"), str):
            final_result = event["result"]

    text = "".join(parts) or final_result
    if plain:
        text = "\n".join(plain) + "\n" + text
    logger.debug(f"Extracted {len(text)} chars of text from stream-json review output")
    return text


def _clamp_score(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        score = float(value)
    elif isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value)
        score = float(match.group(0)) if match else 0
    else:
        score = 0
    return max(0.0, min(100.0, score))


def _coerce_review_status(value: Any) -> str:
    status = str(value or "").strip().upper()
    if status in REVIEW_STATUSES:
        return status
    if "INCOMPLETE" in status:
        return "INCOMPLETE"
    if "COMPLETE" in status:
        return "COMPLETE"
    if "PARTIAL" in status:
        return "PARTIAL"
    return "INCOMPLETE"


def _coerce_choice(value: Any, choices: Sequence[str], default: str) -> str:
    candidate = str(value or "").strip().upper()
    return candidate if candidate in choices else default


def _optional_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value]
    return []


def repair_review_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce a review payload that failed validation into a valid one."""
    requirements = []
    raw_requirements = payload.get("requirements")
    if isinstance(raw_requirements, list):
        for index, item in enumerate(raw_requirements, start=1):
            if not isinstance(item, dict):
                item = {"description": str(item)}
            requirements.append(
                {
                    "id": str(item.get("id") or f"REQ-{index}"),
                    "description": str(
                        item.get("description") or item.get("name") or "Unknown requirement"
                    ),
                    "status": _coerce_choice(item.get("status"), REQUIREMENT_STATUSES, "MISSING"),
                    "evidence": _optional_text(item.get("evidence")),
                    "notes": _optional_text(item.get("notes")),
                }
            )

    missing_items = []
    raw_missing = payload.get("missingItems")
    if isinstance(raw_missing, list):
        for item in raw_missing:
            if not isinstance(item, dict):
                item = {"description": str(item)}
            missing_items.append(
                {
                    "description": str(item.get("description") or "Unspecified item"),
                    "priority": _coerce_choice(item.get("priority"), PRIORITIES, "MEDIUM"),
                    "suggestedFix": _optional_text(item.get("suggestedFix")),
                }
            )

    repaired: Dict[str, Any] = {
        "reviewStatus": _coerce_review_status(payload.get("reviewStatus")),
        "overallScore": _clamp_score(payload.get("overallScore")),
        "requirements": requirements,
        "missingItems": missing_items,
        "testingNotes": str(payload.get("testingNotes") or ""),
        "summary": str(payload.get("summary") or "Review completed"),
    }

    setup = payload.get("setupInstructions")
    if isinstance(setup, dict):
        repaired["setupInstructions"] = {
            "envVars": _string_list(setup.get("envVars")),
            "installCommands": _string_list(setup.get("installCommands")),
            "buildCommand": str(setup.get("buildCommand") or ""),
            "testCommand": str(setup.get("testCommand") or ""),
            "runCommand": str(setup.get("runCommand") or ""),
        }
    return repaired


def normalize_partial_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "reviewStatus": _coerce_choice(payload.get("reviewStatus"), REVIEW_STATUSES, "ERROR"),
        "overallScore": _clamp_score(payload.get("overallScore")),
        "requirements": [],
        "missingItems": [],
        "summary": str(payload.get("summary") or "No summary available"),
    }


class ReviewOutputParser:
    """Runs the ordered strategies and turns the first match into a ReviewResult."""

    def __init__(self, strategies: Optional[Sequence[ReviewParseStrategy]] = None) -> None:
        self.strategies = list(strategies or DEFAULT_STRATEGIES)

    def parse(self, output: str) -> Optional[ReviewResult]:
        text = extract_review_text(output)

        for strategy in self.strategies:
            attempt = strategy.extract(text)
            if not attempt.ok:
                logger.debug(f"Review parse strategy {attempt.strategy} failed: {attempt.error}")
                continue

            result = self._build(attempt)
            if result is None:
                continue
            logger.info(
                f"Parsed review via {attempt.strategy}: "
                f"{result.review_status} ({result.overall_score:g})"
            )
            return result.model_copy(update={"timestamp": now_ms(), "raw_output": output})

        logger.warning(f"All review parse strategies failed ({len(text)} chars of output)")
        return None

    def _build(self, attempt: ParseAttempt) -> Optional[ReviewResult]:
        payload = attempt.payload or {}
        if attempt.partial:
            return ReviewResult.model_validate(normalize_partial_payload(payload))

        try:
            return ReviewResult.model_validate(payload)
        except pd.ValidationError as e:
            logger.warning(
                f"Review payload from {attempt.strategy} failed validation "
                f"({e.error_count()} errors), repairing"
            )

        try:
            return ReviewResult.model_validate(repair_review_payload(payload))
        except pd.ValidationError as e:
            logger.warning(f"Repaired review payload still invalid: {e}")
            return None


def parse_review_output(output: str) -> Optional[ReviewResult]:
    return ReviewOutputParser().parse(output)
