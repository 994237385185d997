"""Review-mode output contract and parser.

The model must return JSON matching ReviewResult. Anything that fails to
parse or does not match the shape exactly is surfaced as raw text instead
of reaching the scorecard UI.
"""

import json
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel


Number = Union[int, float]


class _StrictCamelModel(BaseModel):
    # strict: "5" is not a number and 5 is not a string
    model_config = ConfigDict(strict=True, alias_generator=to_camel, populate_by_name=True)


class ReviewBreakdown(_StrictCamelModel):
    business_relevance: Number  # 0-25
    risk_coverage: Number  # 0-25
    design_quality: Number  # 0-20
    level_and_scope: Number  # 0-15
    diagnostic_value: Number  # 0-15


class ReviewResult(_StrictCamelModel):
    score: Number  # 0-100
    verdict: str
    breakdown: ReviewBreakdown
    risk_gaps: list[str]
    anti_patterns: list[str]
    improvements: list[str]


@dataclass
class ReviewParseOutcome:
    review: Optional[ReviewResult] = None
    error: Optional[str] = None


def extract_json_text(raw: str) -> str:
    """Slice from the first '{' to the last '}' to drop stray prose."""
    text = raw.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        return text[start : end + 1]
    return text


def parse_review(raw: str) -> ReviewParseOutcome:
    """Parse and validate model output for review mode."""
    text = extract_json_text(raw)
    try:
        json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return ReviewParseOutcome(error="Failed to parse review JSON")

    try:
        return ReviewParseOutcome(review=ReviewResult.model_validate_json(text))
    except ValidationError:
        return ReviewParseOutcome(error="Invalid review JSON shape")
