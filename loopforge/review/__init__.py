"""Review pass: report parsing, prompts and continuation planning."""

from loopforge.review.contracts import MissingItem, RequirementReview, ReviewResult
from loopforge.review.parser import ReviewOutputParser, parse_review_output

__all__ = [
    "MissingItem",
    "RequirementReview",
    "ReviewOutputParser",
    "ReviewResult",
    "parse_review_output",
]
