"""Tests for review report extraction."""

import json

import pytest

from loopforge.review.contracts import ReviewResult, create_error_review_result
from loopforge.review.parser import (
    BraceMatchedJsonStrategy,
    FencedJsonStrategy,
    PartialFieldStrategy,
    ReviewOutputParser,
    extract_review_text,
    match_braces,
    parse_review_output,
    repair_review_payload,
)


REPORT = {
    "reviewStatus": "COMPLETE",
    "overallScore": 95,
    "requirements": [
        {"id": "REQ-001", "description": "Login", "status": "COMPLETE", "evidence": "src/login.py"}
    ],
    "missingItems": [],
    "setupInstructions": {"envVars": [], "installCommands": ["pip install -e ."], "testCommand": "pytest"},
    "testingNotes": "Run pytest",
    "summary": "All requirements met",
}


class TestStrategies:
    """Test each extraction strategy in isolation."""

    def test_fenced_json(self):
        text = "Here is my report:\n```json\n" + json.dumps(REPORT) + "\n```\nDone."
        attempt = FencedJsonStrategy().extract(text)
        assert attempt.ok
        assert attempt.payload["overallScore"] == 95

    def test_fenced_block_without_status_is_skipped(self):
        text = '```json\n{"other": 1}\n```'
        assert not FencedJsonStrategy().extract(text).ok

    def test_brace_matched_json(self):
        text = "Report follows " + json.dumps(REPORT) + " end"
        attempt = BraceMatchedJsonStrategy().extract(text)
        assert attempt.ok
        assert attempt.payload["summary"] == "All requirements met"

    def test_brace_matching_ignores_braces_in_strings(self):
        text = '{"a": "}{", "b": {"c": 1}} tail'
        assert text[: match_braces(text, 0)] == '{"a": "}{", "b": {"c": 1}}'

    def test_unclosed_object(self):
        assert match_braces('{"a": {"b": 1}', 0) is None

    def test_partial_fields(self):
        text = 'reviewStatus: "partial", overallScore: 72.5, summary: "Half there"'
        attempt = PartialFieldStrategy().extract(text)
        assert attempt.partial
        assert attempt.payload["reviewStatus"] == "PARTIAL"
        assert attempt.payload["overallScore"] == 72.5
        assert attempt.payload["summary"] == "Half there"

    def test_partial_score_only_is_error(self):
        attempt = PartialFieldStrategy().extract("overallScore: 40")
        assert attempt.payload["reviewStatus"] == "ERROR"


class TestReviewOutputParser:
    """Test the full parsing pipeline."""

    def test_fenced_report_round_trip(self):
        output = "Analysis...\n```json\n" + json.dumps(REPORT, indent=2) + "\n```"
        result = parse_review_output(output)
        assert isinstance(result, ReviewResult)
        assert result.review_status == "COMPLETE"
        assert result.overall_score == 95
        assert result.requirements[0].evidence == "src/login.py"
        assert result.setup_instructions.test_command == "pytest"
        assert result.raw_output == output
        assert result.timestamp > 0

    def test_truncated_json_falls_back_to_fields(self):
        """Verify a cut-off report still yields a clamped partial result."""
        output = '{"reviewStatus": "INCOMPLETE", "overallScore": 150, "summary": "Cut off", "requirements": ['
        result = parse_review_output(output)
        assert result is not None
        assert result.review_status == "INCOMPLETE"
        assert result.overall_score == 100
        assert result.summary == "Cut off"
        assert result.requirements == []

    def test_no_report_returns_none(self):
        assert parse_review_output("I looked around and everything seems fine.") is None

    def test_invalid_fields_are_repaired(self):
        payload = dict(REPORT)
        payload.update(
            reviewStatus="mostly complete",
            overallScore="85%",
            missingItems=[{"description": "Docs", "priority": "urgent"}, "Changelog"],
            requirements=[{"name": "Login", "status": "done"}],
        )
        result = parse_review_output("```json\n" + json.dumps(payload) + "\n```")
        assert result.review_status == "COMPLETE"
        assert result.overall_score == 85
        assert [(m.description, m.priority) for m in result.missing_items] == [
            ("Docs", "MEDIUM"),
            ("Changelog", "MEDIUM"),
        ]
        assert result.requirements[0].id == "REQ-1"
        assert result.requirements[0].description == "Login"
        assert result.requirements[0].status == "MISSING"

    def test_stream_json_output(self):
        text = "```json\n" + json.dumps(REPORT) + "\n```"
        lines = [
            json.dumps({"type": "system", "subtype": "init"}),
            json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}),
            json.dumps({"type": "result", "result": text}),
        ]
        result = parse_review_output("\n".join(lines))
        assert result.review_status == "COMPLETE"

    def test_custom_strategies(self):
        parser = ReviewOutputParser(strategies=[FencedJsonStrategy()])
        assert parser.parse(json.dumps(REPORT)) is None


class TestHelpers:
    """Test payload normalization helpers."""

    @pytest.mark.parametrize(
        "status, expected",
        [("INCOMPLETE", "INCOMPLETE"), ("not complete: incomplete", "INCOMPLETE"), ("partial", "PARTIAL"), ("?", "INCOMPLETE")],
    )
    def test_status_coercion(self, status, expected):
        assert repair_review_payload({"reviewStatus": status})["reviewStatus"] == expected

    def test_score_clamped_low(self):
        assert repair_review_payload({"overallScore": -5})["overallScore"] == 0

    def test_extract_plain_text_unchanged(self):
        assert extract_review_text("plain\ntext") == "plain\ntext"

    def test_error_result(self):
        result = create_error_review_result("boom", "raw")
        assert result.review_status == "ERROR"
        assert result.overall_score == 0
        assert result.summary == "Review failed: boom"
        assert "rawOutput" not in result.to_payload()
