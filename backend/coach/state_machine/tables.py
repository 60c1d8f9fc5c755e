from typing import Dict, List

from coach.schemas.jobs import JobStatus

JOB_TRANSITIONS: Dict[str, List[str]] = {
    JobStatus.PENDING.value: [
        JobStatus.RUNNING.value,
        JobStatus.FAILED.value,
        JobStatus.CANCELLED.value,
    ],
    JobStatus.RUNNING.value: [
        JobStatus.COMPLETED.value,
        JobStatus.FAILED.value,
        JobStatus.CANCELLED.value,
    ],
    JobStatus.COMPLETED.value: [],
    JobStatus.FAILED.value: [],
    JobStatus.CANCELLED.value: [],
}

OPERATION_TRANSITIONS: Dict[str, List[str]] = {
    "pending": ["in-progress", "failed", "aborted"],
    "in-progress": ["complete", "failed", "aborted"],
    "complete": [],
    "failed": [],
    "aborted": [],
}

STREAM_TRANSITIONS: Dict[str, List[str]] = {
    "pending": ["streaming", "completed", "error", "aborted"],
    "streaming": ["completed", "error", "aborted"],
    "completed": [],
    "error": [],
    "aborted": [],
}

CHALLENGE_TRANSITIONS: Dict[str, List[str]] = {
    "not-started": ["in-progress", "skipped"],
    "in-progress": ["completed", "skipped"],
    "completed": [],
    "skipped": [],
}

GOAL_TRANSITIONS: Dict[str, List[str]] = {
    "not-started": ["in-progress", "completed", "skipped"],
    "in-progress": ["completed", "skipped"],
    "completed": [],
    "skipped": [],
}

TOPIC_TRANSITIONS: Dict[str, List[str]] = {
    "not-explored": ["explored", "skipped"],
    "explored": [],
    "skipped": [],
}

FOCUS_TRANSITIONS: Dict[str, Dict[str, List[str]]] = {
    "challenge": CHALLENGE_TRANSITIONS,
    "goal": GOAL_TRANSITIONS,
    "topic": TOPIC_TRANSITIONS,
}

FOCUS_INITIAL_STATES: Dict[str, str] = {
    "challenge": "not-started",
    "goal": "not-started",
    "topic": "not-explored",
}
