import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from coach.client.api_client import BackendClient
from coach.client.operations import OperationRegistry
from coach.schemas.jobs import JobType
from coach.utils.time import today_key, utc_now_ms

logger = logging.getLogger(__name__)

# job type -> (focus item type, key of the item inside the job result)
REGENERATION_TARGETS: Dict[JobType, Tuple[str, str]] = {
    JobType.TOPIC_REGENERATION: ("topic", "learningTopic"),
    JobType.CHALLENGE_REGENERATION: ("challenge", "challenge"),
    JobType.GOAL_REGENERATION: ("goal", "goal"),
}


def focus_persistence_handler(
    api: BackendClient,
    job_type: JobType,
    date_key: Optional[Callable[[], str]] = None,
) -> Callable[[Any, str], Awaitable[None]]:
    """Build a completion handler that stores a regenerated focus item.

    The item is written even when whoever started the regeneration has gone
    away, with ``operation_state`` marked complete.
    """
    item_type, result_key = REGENERATION_TARGETS[job_type]
    resolve_date = date_key or today_key

    async def handler(result: Any, target_id: str) -> None:
        if not isinstance(result, dict) or not isinstance(result.get(result_key), dict):
            logger.warning(f"No {result_key} in {job_type.value} result for {target_id}")
            return
        data = dict(result[result_key])
        data["id"] = target_id
        await api.write_focus_item(
            item_type,
            target_id,
            resolve_date(),
            data,
            operation_state={"status": "complete", "started_at": utc_now_ms()},
        )
        logger.info(f"Persisted regenerated {item_type} {target_id}")

    return handler


def register_focus_handlers(
    registry: OperationRegistry,
    api: BackendClient,
    date_key: Optional[Callable[[], str]] = None,
) -> None:
    for job_type in REGENERATION_TARGETS:
        registry.register_completion_handler(
            job_type.value, focus_persistence_handler(api, job_type, date_key)
        )
