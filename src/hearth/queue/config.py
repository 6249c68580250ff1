"""Queue names, per-queue concurrency and default job options.

Learn: Every queue the app uses is declared here, once. The registry creates
exactly these queues; producers and workers look their settings up by name.
Times are in seconds.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


class QueueName(str, Enum):
    RECIPE_IMPORT = "recipe-import"
    IMAGE_IMPORT = "image-recipe-import"
    PASTE_IMPORT = "paste-recipe-import"
    CALDAV_SYNC = "caldav-sync"
    SCHEDULED_TASKS = "scheduled-tasks"
    NUTRITION_ESTIMATION = "nutrition-estimation"
    AUTO_TAGGING = "auto-tagging"
    ALLERGY_DETECTION = "allergy-detection"


@dataclass(frozen=True)
class Backoff:
    """Retry delay: exponential doubles `delay` per attempt, fixed doesn't."""

    type: str = "exponential"
    delay: float = 2.0

    def delay_for(self, attempts_made: int) -> float:
        if self.type == "fixed":
            return self.delay
        return self.delay * 2 ** max(attempts_made - 1, 0)


@dataclass(frozen=True)
class Retention:
    """How long finished jobs are kept. remove=True drops them immediately."""

    remove: bool = False
    age: Optional[float] = None
    count: Optional[int] = None


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 1
    backoff: Backoff = field(default_factory=Backoff)
    delay: float = 0.0
    remove_on_complete: Retention = field(default_factory=Retention)
    remove_on_fail: Retention = field(default_factory=Retention)


# Delay between polls once a worker finds the queue empty
DRAIN_DELAY_SECONDS = 5.0

# A claimed job holds a lock for this long; its worker renews it while running
LOCK_DURATION_SECONDS = 60.0
LOCK_RENEW_SECONDS = 15.0

# A job found without a lock this many times is failed instead of retried
MAX_STALLED_COUNT = 1
DEFAULT_STALLED_INTERVAL_SECONDS = 60.0

# How often each queue looks for jobs whose worker died
STALLED_INTERVAL: dict[QueueName, float] = {
    QueueName.RECIPE_IMPORT: 5.0,  # user waiting
    QueueName.IMAGE_IMPORT: 5.0,
    QueueName.PASTE_IMPORT: 5.0,
    QueueName.CALDAV_SYNC: 120.0,
    QueueName.SCHEDULED_TASKS: 3600.0,  # daily jobs only
    QueueName.NUTRITION_ESTIMATION: 60.0,
    QueueName.AUTO_TAGGING: 60.0,
    QueueName.ALLERGY_DETECTION: 60.0,
}


def stalled_interval_for(queue_name: str) -> float:
    return STALLED_INTERVAL.get(queue_name, DEFAULT_STALLED_INTERVAL_SECONDS)


WORKER_CONCURRENCY: dict[QueueName, int] = {
    QueueName.RECIPE_IMPORT: 2,
    QueueName.IMAGE_IMPORT: 2,
    QueueName.PASTE_IMPORT: 2,
    QueueName.CALDAV_SYNC: 1,
    QueueName.SCHEDULED_TASKS: 1,
    QueueName.NUTRITION_ESTIMATION: 2,
    QueueName.AUTO_TAGGING: 2,
    QueueName.ALLERGY_DETECTION: 2,
}

_KEEP_HOUR_1000 = Retention(age=3600, count=1000)
_KEEP_HOUR_500 = Retention(age=3600, count=500)
_DROP = Retention(remove=True)

JOB_OPTIONS: dict[QueueName, JobOptions] = {
    QueueName.RECIPE_IMPORT: JobOptions(
        attempts=3,
        backoff=Backoff("exponential", 2.0),  # 2s, 4s, 8s
        remove_on_complete=_KEEP_HOUR_1000,
        remove_on_fail=_DROP,
    ),
    # Fewer retries: image imports are expensive AI calls
    QueueName.IMAGE_IMPORT: JobOptions(
        attempts=2,
        backoff=Backoff("exponential", 5.0),
        remove_on_complete=_KEEP_HOUR_500,
        remove_on_fail=_DROP,
    ),
    QueueName.PASTE_IMPORT: JobOptions(
        attempts=3,
        backoff=Backoff("exponential", 2.0),
        remove_on_complete=_KEEP_HOUR_1000,
        remove_on_fail=_DROP,
    ),
    QueueName.CALDAV_SYNC: JobOptions(
        attempts=10,
        backoff=Backoff("exponential", 60.0),  # 1m, 2m, 4m ... ~8.5h
        remove_on_complete=Retention(age=3600, count=2000),
        remove_on_fail=Retention(age=86400, count=1000),
    ),
    QueueName.SCHEDULED_TASKS: JobOptions(
        attempts=3,
        backoff=Backoff("exponential", 5.0),
        remove_on_complete=Retention(age=86400, count=100),
        remove_on_fail=Retention(age=86400, count=50),
    ),
    QueueName.NUTRITION_ESTIMATION: JobOptions(
        attempts=3,
        backoff=Backoff("exponential", 2.0),
        remove_on_complete=_KEEP_HOUR_500,
        remove_on_fail=_DROP,
    ),
    QueueName.AUTO_TAGGING: JobOptions(
        attempts=3,
        backoff=Backoff("exponential", 2.0),
        remove_on_complete=_KEEP_HOUR_500,
        remove_on_fail=_DROP,
    ),
    QueueName.ALLERGY_DETECTION: JobOptions(
        attempts=3,
        backoff=Backoff("exponential", 2.0),
        remove_on_complete=_KEEP_HOUR_500,
        remove_on_fail=_DROP,
    ),
}


@dataclass(frozen=True)
class Repeat:
    """When a repeatable job runs: every N seconds, or daily at "HH:MM" UTC."""

    every: Optional[float] = None
    daily_at: Optional[str] = None

    def __post_init__(self):
        if (self.every is None) == (self.daily_at is None):
            raise ValueError("Repeat needs exactly one of every / daily_at")
        if self.every is not None and self.every <= 0:
            raise ValueError("Repeat.every must be positive")
        if self.daily_at is not None:
            self._hour_minute()

    def _hour_minute(self) -> tuple[int, int]:
        try:
            hour, minute = (int(part) for part in self.daily_at.split(":"))
        except ValueError:
            raise ValueError(f"daily_at must look like HH:MM, got {self.daily_at!r}") from None
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"daily_at out of range: {self.daily_at!r}")
        return hour, minute

    def next_run(self, after: float) -> float:
        """The first due time strictly later than `after` (epoch seconds)."""
        if self.every is not None:
            return after + self.every
        hour, minute = self._hour_minute()
        now = datetime.fromtimestamp(after, tz=timezone.utc)
        due = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if due <= now:
            due += timedelta(days=1)
        return due.timestamp()


# Daily maintenance jobs seeded on the scheduled-tasks queue at startup
SCHEDULED_TASKS_DAILY_AT = "00:00"
