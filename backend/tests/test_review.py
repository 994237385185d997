import json

from app.core.review import extract_json_text, parse_review

REVIEW = {
    "score": 81.5,
    "verdict": "Good risk focus.",
    "breakdown": {
        "businessRelevance": 22,
        "riskCoverage": 20,
        "designQuality": 16,
        "levelAndScope": 12,
        "diagnosticValue": 11.5,
    },
    "riskGaps": [],
    "antiPatterns": ["Sleeps instead of waits"],
    "improvements": ["Assert on the refund ledger row"],
}


def test_extract_strips_surrounding_prose() -> None:
    assert extract_json_text('Sure! {"a": {"b": 1}} hope it helps') == '{"a": {"b": 1}}'
    assert extract_json_text("no braces here") == "no braces here"


def test_valid_review_parses() -> None:
    outcome = parse_review("```json\n" + json.dumps(REVIEW) + "\n```")
    assert outcome.error is None
    assert outcome.review.model_dump(by_alias=True) == REVIEW


def test_missing_field_is_rejected() -> None:
    broken = {k: v for k, v in REVIEW.items() if k != "improvements"}
    assert parse_review(json.dumps(broken)).error == "Invalid review JSON shape"


def test_wrong_types_are_rejected() -> None:
    for field, value in (("verdict", 3), ("riskGaps", "one gap"), ("riskGaps", [1, 2])):
        broken = dict(REVIEW, **{field: value})
        assert parse_review(json.dumps(broken)).review is None


def test_non_numeric_breakdown_is_rejected() -> None:
    broken = dict(REVIEW, breakdown=dict(REVIEW["breakdown"], riskCoverage="20"))
    assert parse_review(json.dumps(broken)).error == "Invalid review JSON shape"


def test_garbage_is_a_parse_error() -> None:
    assert parse_review("{not json}").error == "Failed to parse review JSON"
    assert parse_review("").error == "Failed to parse review JSON"
