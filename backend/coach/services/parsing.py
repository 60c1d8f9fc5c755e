import json
import logging
import re
import uuid
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

FEEDBACK_MARKER = "---FEEDBACK---"
FEEDBACK_END_MARKER = "---END FEEDBACK---"

_JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)```")
_CODE_BLOCK = re.compile(r"```\s*([\s\S]*?)```")
_FEEDBACK = re.compile(r"---FEEDBACK---\s*([\s\S]*?)(?:---END FEEDBACK---|$)")


class ParseError(ValueError):
    pass


def _balanced(text: str, opener: str, closer: str) -> Optional[str]:
    start = text.find(opener)
    if start == -1:
        return None
    depth = 0
    for index in range(start, len(text)):
        if text[index] == opener:
            depth += 1
        elif text[index] == closer:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def extract_json(text: str) -> Optional[Any]:
    """Pull the first JSON value out of a model response.

    Tries a ```json fence, then a bare fence, then the first balanced
    object, then the first balanced array. Returns None when nothing parses.
    """
    if not text:
        return None
    candidates: List[str] = []
    match = _JSON_BLOCK.search(text)
    if match:
        candidates.append(match.group(1).strip())
    match = _CODE_BLOCK.search(text)
    if match and match.group(1).strip()[:1] in ("{", "["):
        candidates.append(match.group(1).strip())
    for opener, closer in (("{", "}"), ("[", "]")):
        candidate = _balanced(text, opener, closer)
        if candidate:
            candidates.append(candidate)
    candidates.append(text.strip())
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


def _new_id() -> str:
    return str(uuid.uuid4())


class LearningTopic(_CamelModel):
    id: str = Field(default_factory=_new_id)
    title: str
    description: str
    type: Literal["concept", "pattern", "best-practice"] = "concept"
    related_to: str = ""


class DailyChallenge(_CamelModel):
    id: str = Field(default_factory=_new_id)
    title: str
    description: str
    difficulty: Literal["beginner", "intermediate", "advanced"]
    language: str
    estimated_time: str = ""
    why_this_challenge: List[str] = Field(default_factory=list)


class DailyGoal(_CamelModel):
    id: str = Field(default_factory=_new_id)
    title: str
    description: str
    progress: int = 0
    target: str = ""
    reasoning: str = ""


class EvaluationResult(_CamelModel):
    is_correct: bool
    feedback: str = ""
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    score: Optional[int] = None
    next_steps: Optional[List[str]] = None


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_wrapped(text: str, key: str, model: Type[ModelT]) -> ModelT:
    """Parse ``{"<key>": {...}}`` out of a response; raise ParseError on failure."""
    parsed = extract_json(text)
    if not isinstance(parsed, dict) or not isinstance(parsed.get(key), dict):
        raise ParseError(f"Failed to parse {key} response")
    try:
        return model.model_validate(parsed[key])
    except ValidationError as exc:
        raise ParseError(f"Invalid {key} response: {exc.error_count()} field error(s)") from exc


def extract_streaming_feedback(content: str) -> str:
    start = content.find(FEEDBACK_MARKER)
    if start == -1:
        return ""
    after = content[start + len(FEEDBACK_MARKER) :]
    end = after.find(FEEDBACK_END_MARKER)
    if end == -1:
        return after.strip()
    return after[:end].strip()


def parse_partial_evaluation(content: str) -> Optional[Dict[str, Any]]:
    """Metadata block of an evaluation that is still streaming, once it is complete."""
    parsed = extract_json(content)
    if not isinstance(parsed, dict) or "isCorrect" not in parsed:
        return None
    return {
        "isCorrect": bool(parsed["isCorrect"]),
        "score": parsed.get("score"),
        "strengths": parsed.get("strengths") or [],
        "improvements": parsed.get("improvements") or [],
        "nextSteps": parsed.get("nextSteps"),
    }


def parse_evaluation_response(content: str) -> EvaluationResult:
    parsed = extract_json(content)
    if not isinstance(parsed, dict):
        raise ParseError("Failed to parse evaluation response")
    match = _FEEDBACK.search(content)
    if match and match.group(1).strip():
        parsed["feedback"] = match.group(1).strip()
    try:
        return EvaluationResult.model_validate(parsed)
    except ValidationError as exc:
        raise ParseError(
            f"Invalid evaluation response: {exc.error_count()} field error(s)"
        ) from exc
