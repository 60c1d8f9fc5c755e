from typing import Any, Dict, List, Optional

from coach.core.config import SESSION_MAX_CHARS, SESSION_MAX_MESSAGES
from coach.schemas.jobs import EvaluationFile
from coach.schemas.threads import is_placeholder_id

COACH_SYSTEM_PROMPT = """You are a developer growth coach.

RULES:
1. Consider provided profile context for personalization
2. Target Zone of Proximal Development: not too easy, not too hard
3. Suggest actionable challenges for 15-30 min sessions
4. Be encouraging and specific
5. NEVER suggest reimplementing existing skills
6. Focus on gaps identified in profile"""

CHAT_SYSTEM_PROMPT = """You are a helpful developer assistant.

Be conversational, helpful, and concise. Mention GitHub tools only when asked."""

LEARNING_SYSTEM_PROMPT = """You are a patient developer mentor.

Explain concepts step by step, ask the learner questions to check
understanding, and prefer hints over complete solutions."""

EVALUATION_SYSTEM_PROMPT = """You are a code evaluation assistant for a developer learning platform.

Evaluate coding challenge solutions and give constructive feedback. Do not give
away the full solution.

If the solution meets all requirements: isCorrect true, score 100-150.
Otherwise: isCorrect false, score 0-99.

Format your response EXACTLY like this, JSON metadata FIRST:

```json
{
  "isCorrect": true,
  "score": 0,
  "strengths": ["..."],
  "improvements": ["..."],
  "nextSteps": ["..."]
}
```

---FEEDBACK---
[ONE encouraging sentence, at most 20 words]
---END FEEDBACK---"""

_REGENERATION_SHAPES = {
    "topic": (
        "Generate ONE learning topic for a growth area.",
        '{"learningTopic":{"id":"","title":"","description":"",'
        '"type":"concept|pattern|best-practice","relatedTo":""}}',
    ),
    "challenge": (
        "Generate ONE coding challenge (15-30 min, ZPD-appropriate).",
        '{"challenge":{"id":"","title":"","description":"",'
        '"difficulty":"beginner|intermediate|advanced","language":"",'
        '"estimatedTime":"","whyThisChallenge":[""]}}',
    ),
    "goal": (
        "Generate ONE daily goal (20-30 min, completable TODAY).\n"
        "Pattern: Fix X, Review N PRs, Add N tests, Refactor Y.",
        '{"goal":{"id":"","title":"","description":"","progress":0,'
        '"target":"1 task","reasoning":""}}',
    ),
}


def skill_profile_sections(skill_profile: Optional[Dict[str, Any]]) -> str:
    skills = (skill_profile or {}).get("skills") or []
    calibrated = ",".join(
        f"{skill['skillId']}:{skill.get('level', '')}"
        for skill in skills
        if not skill.get("notInterested")
    )
    excluded = ",".join(skill["skillId"] for skill in skills if skill.get("notInterested"))
    sections: List[str] = []
    if calibrated:
        sections.append(f"SK:{calibrated}")
    if excluded:
        sections.append(f"EX:{excluded}")
    return "\n" + "\n".join(sections) if sections else ""


def build_regeneration_prompt(
    kind: str,
    existing_titles: List[str],
    skill_profile: Optional[Dict[str, Any]] = None,
    profile_context: str = "",
) -> str:
    instruction, shape = _REGENERATION_SHAPES[kind]
    exclude = (
        f"\nDo NOT suggest these {kind}s (already shown): {', '.join(existing_titles)}"
        if existing_titles
        else ""
    )
    profile = profile_context or "not available"
    return (
        f"Developer profile: {profile}{skill_profile_sections(skill_profile)}{exclude}\n\n"
        f"{instruction}\n\nJSON only:\n{shape}"
    )


def trim_history(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    history = [
        message
        for message in messages
        if message.get("content", "").strip() and not is_placeholder_id(message.get("id", ""))
    ]
    history = history[-SESSION_MAX_MESSAGES:]
    total_chars = sum(len(message["content"]) for message in history)
    while total_chars > SESSION_MAX_CHARS and history:
        removed = history.pop(0)
        total_chars -= len(removed["content"])
    return history


def format_chat_prompt(
    messages: List[Dict[str, Any]], prompt: str, repos: Optional[List[str]] = None
) -> str:
    """Render the thread transcript followed by the new prompt.

    ``messages`` is the stored thread, which already ends with ``prompt`` as
    the latest user message; that copy is not repeated.
    """
    history = trim_history(messages)
    if history and history[-1].get("role") == "user" and history[-1]["content"] == prompt:
        history = history[:-1]
    transcript: List[str] = []
    for message in history:
        role_label = "User" if message["role"] == "user" else "Assistant"
        transcript.append(f"{role_label}: {message['content']}")
    if repos:
        repo_list = "\n".join(f"- {repo}" for repo in repos)
        prompt = f"Context: Focus on these repositories when using GitHub tools:\n{repo_list}\n\n{prompt}"
    transcript.append(f"User: {prompt}")
    return "\n\n".join(transcript)


def build_evaluation_prompt(challenge: Dict[str, Any], files: List[EvaluationFile]) -> str:
    language = challenge.get("language", "")
    parts = [
        f"Evaluate this {language} solution for the following challenge:\n\n"
        f"## Challenge: {challenge.get('title', '')}\n"
        f"**Difficulty**: {challenge.get('difficulty', '')}\n\n"
        f"### Instructions\n{challenge.get('description', '')}\n"
    ]
    test_cases = challenge.get("testCases") or []
    if test_cases:
        lines = [
            f"{index}. Input: {case.get('input')} → Expected: {case.get('expectedOutput')}"
            for index, case in enumerate(test_cases, start=1)
        ]
        parts.append("\n### Test Cases\n" + "\n".join(lines) + "\n")
    plural = "" if len(files) == 1 else "s"
    parts.append(f"\n## User's Solution ({len(files)} file{plural})\n")
    for file in files:
        extension = file.name.rsplit(".", 1)[-1].lower() if "." in file.name else language.lower()
        parts.append(f"\n### {file.name}\n```{extension}\n{file.content}\n```\n")
    parts.append(
        "\n## Your Task\nEvaluate this solution using the EXACT format from your "
        "system instructions: the JSON metadata block first, then the feedback "
        "between ---FEEDBACK--- and ---END FEEDBACK--- markers."
    )
    return "".join(parts)
