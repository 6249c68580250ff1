"""Job producers — the enqueue side used by routers and other workers.

Learn: Producers never create queues; they are handed one by the caller
(usually `runtime.queues.get(QueueName.X)`). Each producer derives a
deterministic job id from what the job is about, so pressing "import" twice
on the same URL gives one job, not two:

    add_recipe_import_job(queue, url=..., ...)  → queued
    add_recipe_import_job(queue, url=..., ...)  → duplicate (same id pending)

The result is always one of queued / duplicate / skipped; callers turn that
into a toast or a 409, never an exception.
"""

import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from hearth.config import settings
from hearth.queue.config import SCHEDULED_TASKS_DAILY_AT, Repeat
from hearth.queue.job_queue import DELAYED, WAITING, Job, JobQueue
from hearth.realtime.policy import ViewPolicy

logger = structlog.get_logger()

_UNSAFE = re.compile(r"[^A-Za-z0-9]+")


class EnqueueStatus(str, Enum):
    QUEUED = "queued"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


@dataclass
class EnqueueResult:
    status: EnqueueStatus
    job_id: str
    job: Optional[Job] = None
    reason: Optional[str] = None


# ─── Job ids ───────────────────────────────────────────────


def generate_job_id(*parts: Optional[str]) -> str:
    """Stable short id for a combination of values (None counts as empty)."""
    joined = "\x1f".join(part or "" for part in parts)
    return hashlib.sha256(joined.encode()).hexdigest()[:32]


def sanitize_url_for_job_id(url: str) -> str:
    """Turn a URL into something readable and safe inside a job id."""
    without_scheme = re.sub(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", "", url)
    return _UNSAFE.sub("_", without_scheme).strip("_")


# ─── Generic enqueue ───────────────────────────────────────


async def enqueue_job(queue: JobQueue, name: str, data: Any, job_id: str) -> EnqueueResult:
    """Add a job unless one with the same id is still pending."""
    if await queue.is_job_in_queue(job_id):
        logger.warning("queue.duplicate_job_rejected", queue=queue.name, job_id=job_id)
        return EnqueueResult(EnqueueStatus.DUPLICATE, job_id)

    job = await queue.add(name, data, job_id=job_id)
    if job is None:
        # Lost a race with another producer between the check and the add
        return EnqueueResult(EnqueueStatus.DUPLICATE, job_id)

    logger.info("queue.job_enqueued", queue=queue.name, job_id=job_id, job_name=name)
    return EnqueueResult(EnqueueStatus.QUEUED, job_id, job=job)


# ─── Recipe imports ────────────────────────────────────────


def recipe_import_job_id(
    url: str,
    user_id: str,
    household_key: Optional[str],
    policy: ViewPolicy,
) -> str:
    """Two users may import the same URL only if they can't see each other's recipes."""
    policy = ViewPolicy(policy)
    if policy is ViewPolicy.EVERYONE:
        scope = "everyone"
    elif policy is ViewPolicy.HOUSEHOLD and household_key:
        scope = f"household:{household_key}"
    else:
        scope = f"user:{user_id}"
    return f"import_{generate_job_id(url, scope)}"


async def add_recipe_import_job(
    queue: JobQueue,
    *,
    url: str,
    user_id: str,
    household_key: Optional[str],
    policy: ViewPolicy,
    recipe_id: Optional[str] = None,
) -> EnqueueResult:
    job_id = recipe_import_job_id(url, user_id, household_key, policy)
    data = {
        "url": url,
        "user_id": user_id,
        "household_key": household_key,
        "recipe_id": recipe_id,
    }
    return await enqueue_job(queue, "import", data, job_id)


# ─── AI enrichment ─────────────────────────────────────────


async def _add_recipe_enrichment_job(
    queue: JobQueue,
    *,
    name: str,
    id_prefix: str,
    recipe_id: str,
    user_id: str,
    household_key: Optional[str],
    enabled: bool,
) -> EnqueueResult:
    job_id = f"{id_prefix}-{recipe_id}"
    if not enabled:
        logger.debug("queue.job_skipped", queue=queue.name, job_id=job_id, reason="disabled")
        return EnqueueResult(EnqueueStatus.SKIPPED, job_id, reason="disabled")
    data = {"recipe_id": recipe_id, "user_id": user_id, "household_key": household_key}
    return await enqueue_job(queue, name, data, job_id)


async def add_auto_tagging_job(
    queue: JobQueue,
    *,
    recipe_id: str,
    user_id: str,
    household_key: Optional[str] = None,
    enabled: Optional[bool] = None,
) -> EnqueueResult:
    return await _add_recipe_enrichment_job(
        queue,
        name="auto-tag",
        id_prefix="auto-tag",
        recipe_id=recipe_id,
        user_id=user_id,
        household_key=household_key,
        enabled=settings.auto_tagging_enabled if enabled is None else enabled,
    )


async def add_allergy_detection_job(
    queue: JobQueue,
    *,
    recipe_id: str,
    user_id: str,
    household_key: Optional[str] = None,
    enabled: Optional[bool] = None,
) -> EnqueueResult:
    return await _add_recipe_enrichment_job(
        queue,
        name="allergy-detection",
        id_prefix="allergy-detection",
        recipe_id=recipe_id,
        user_id=user_id,
        household_key=household_key,
        enabled=settings.allergy_detection_enabled if enabled is None else enabled,
    )


async def add_nutrition_estimation_job(
    queue: JobQueue,
    *,
    recipe_id: str,
    user_id: str,
    household_key: Optional[str] = None,
    enabled: Optional[bool] = None,
) -> EnqueueResult:
    return await _add_recipe_enrichment_job(
        queue,
        name="estimate-nutrition",
        id_prefix="nutrition",
        recipe_id=recipe_id,
        user_id=user_id,
        household_key=household_key,
        enabled=settings.nutrition_estimation_enabled if enabled is None else enabled,
    )


async def is_enrichment_job_active(queue: JobQueue, id_prefix: str, recipe_id: str) -> bool:
    return await queue.is_job_in_queue(f"{id_prefix}-{recipe_id}")


# ─── CalDAV sync ───────────────────────────────────────────


def caldav_job_id(caldav_server_url: str, item_id: str) -> str:
    return f"caldav_{sanitize_url_for_job_id(caldav_server_url)}_{item_id}"


async def add_caldav_sync_job(
    queue: JobQueue,
    *,
    caldav_server_url: str,
    item_id: str,
    user_id: str,
    operation: str,
    payload: Optional[dict[str, Any]] = None,
) -> EnqueueResult:
    """Enqueue a sync, superseding a not-yet-started one for the same item.

    Only the latest state of an item needs syncing, so a waiting or delayed
    job is replaced. A job already running is left alone and the new one is
    reported as a duplicate.
    """
    job_id = caldav_job_id(caldav_server_url, item_id)
    state = await queue.get_state(job_id)
    if state in (WAITING, DELAYED) and await queue.remove(job_id):
        logger.debug("queue.caldav_job_superseded", job_id=job_id, item_id=item_id)

    data = {
        "caldav_server_url": caldav_server_url,
        "item_id": item_id,
        "user_id": user_id,
        "operation": operation,
        **(payload or {}),
    }
    return await enqueue_job(queue, "sync", data, job_id)


# ─── Scheduled maintenance ─────────────────────────────────

SCHEDULED_TASK_TYPES = (
    "recurring-grocery-check",
    "image-cleanup",
    "calendar-cleanup",
    "groceries-cleanup",
    "video-temp-cleanup",
)


async def initialize_scheduled_jobs(
    queue: JobQueue, daily_at: str = SCHEDULED_TASKS_DAILY_AT
) -> list[str]:
    """Replace every repeatable job on the queue with the daily task set.

    Called once at startup. Stale schedules from an older deploy are removed
    first so a renamed task doesn't keep running forever.
    """
    for key in await queue.get_repeatables():
        await queue.remove_repeatable(key)

    repeat = Repeat(daily_at=daily_at)
    for task_type in SCHEDULED_TASK_TYPES:
        await queue.add_repeatable(task_type, task_type, {"task_type": task_type}, repeat)
    logger.info(
        "queue.scheduled_jobs_initialized",
        tasks=len(SCHEDULED_TASK_TYPES),
        daily_at=daily_at,
    )
    return list(SCHEDULED_TASK_TYPES)
