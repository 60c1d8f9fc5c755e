import pytest

from coach.services.parsing import (
    DailyGoal,
    ParseError,
    extract_json,
    extract_streaming_feedback,
    parse_evaluation_response,
    parse_partial_evaluation,
    parse_wrapped,
)

EVALUATION = """```json
{"isCorrect": true, "score": 85, "strengths": ["clear"], "improvements": ["tests"]}
```
---FEEDBACK---
Nice work on the edge cases.
---END FEEDBACK---
"""


def test_extract_json_prefers_fenced_block():
    text = 'Here you go:\n```json\n{"goal": {"title": "x"}}\n```\nand {"other": 1}'
    assert extract_json(text) == {"goal": {"title": "x"}}


def test_extract_json_falls_back_to_balanced_object_and_array():
    assert extract_json('prefix {"a": {"b": 2}} suffix') == {"a": {"b": 2}}
    assert extract_json("items: [1, 2, 3]") == [1, 2, 3]


def test_extract_json_returns_none_for_prose():
    assert extract_json("no json here") is None
    assert extract_json("") is None


def test_parse_wrapped_validates_model():
    text = '{"goal": {"title": "Ship it", "description": "Finish the PR", "targetDate": "x"}}'
    goal = parse_wrapped(text, "goal", DailyGoal)
    assert goal.title == "Ship it"
    assert goal.id
    dumped = goal.model_dump(by_alias=True)
    assert dumped["targetDate"] == "x"


def test_parse_wrapped_never_substitutes_defaults():
    with pytest.raises(ParseError, match="Failed to parse goal"):
        parse_wrapped("I could not think of a goal", "goal", DailyGoal)
    with pytest.raises(ParseError, match="Invalid goal"):
        parse_wrapped('{"goal": {"description": "missing title"}}', "goal", DailyGoal)


def test_streaming_feedback_and_partial_evaluation():
    partial = parse_partial_evaluation(EVALUATION)
    assert partial["isCorrect"] is True
    assert partial["score"] == 85
    assert extract_streaming_feedback(EVALUATION) == "Nice work on the edge cases."
    assert extract_streaming_feedback("---FEEDBACK---\nStill typ") == "Still typ"
    assert parse_partial_evaluation('```json\n{"isCorr') is None


def test_parse_evaluation_response():
    result = parse_evaluation_response(EVALUATION)
    assert result.is_correct is True
    assert result.feedback == "Nice work on the edge cases."
    assert result.model_dump(by_alias=True)["isCorrect"] is True

    with pytest.raises(ParseError):
        parse_evaluation_response("just prose")
