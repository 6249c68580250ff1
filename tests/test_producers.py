"""Job producer tests — deterministic ids and queued / duplicate / skipped."""

import pytest

from hearth.queue.config import QueueName
from hearth.queue.job_queue import ACTIVE, WAITING
from hearth.queue.producers import (
    EnqueueStatus,
    add_allergy_detection_job,
    add_auto_tagging_job,
    add_caldav_sync_job,
    add_nutrition_estimation_job,
    add_recipe_import_job,
    caldav_job_id,
    enqueue_job,
    generate_job_id,
    is_enrichment_job_active,
    sanitize_url_for_job_id,
)
from hearth.realtime import codec
from hearth.realtime.policy import ViewPolicy

URL = "https://example.com/recipes/lentil-soup"


def test_generate_job_id_is_stable_and_short():
    assert generate_job_id("a", "b") == generate_job_id("a", "b")
    assert generate_job_id("a", "b") != generate_job_id("ab", "")
    assert len(generate_job_id("a")) == 32


def test_sanitize_url_for_job_id():
    assert sanitize_url_for_job_id("https://cal.example.com/dav/") == "cal_example_com_dav"
    assert caldav_job_id("https://cal.example.com/dav/", "item-1") == "caldav_cal_example_com_dav_item-1"


@pytest.mark.asyncio
async def test_second_import_of_same_url_is_a_duplicate(queues):
    queue = queues.get(QueueName.RECIPE_IMPORT)
    kwargs = dict(url=URL, user_id="alice", household_key="h1", policy=ViewPolicy.HOUSEHOLD)

    first = await add_recipe_import_job(queue, **kwargs)
    second = await add_recipe_import_job(queue, **kwargs)
    assert first.status is EnqueueStatus.QUEUED
    assert second.status is EnqueueStatus.DUPLICATE
    assert first.job_id == second.job_id
    assert (await queue.get_job_counts(WAITING))[WAITING] == 1


@pytest.mark.asyncio
async def test_import_dedup_follows_the_view_policy(queues):
    queue = queues.get(QueueName.RECIPE_IMPORT)

    # Owner policy: each user imports into their own space
    alice = await add_recipe_import_job(
        queue, url=URL, user_id="alice", household_key="h1", policy=ViewPolicy.OWNER
    )
    bob = await add_recipe_import_job(
        queue, url=URL, user_id="bob", household_key="h1", policy=ViewPolicy.OWNER
    )
    assert alice.status is EnqueueStatus.QUEUED
    assert bob.status is EnqueueStatus.QUEUED

    # Household policy: the household shares one import
    first = await add_recipe_import_job(
        queue, url=URL, user_id="alice", household_key="h1", policy=ViewPolicy.HOUSEHOLD
    )
    second = await add_recipe_import_job(
        queue, url=URL, user_id="bob", household_key="h1", policy=ViewPolicy.HOUSEHOLD
    )
    assert first.status is EnqueueStatus.QUEUED
    assert second.status is EnqueueStatus.DUPLICATE


@pytest.mark.asyncio
async def test_finished_import_can_be_requested_again(queues):
    queue = queues.get(QueueName.RECIPE_IMPORT)
    kwargs = dict(url=URL, user_id="alice", household_key=None, policy=ViewPolicy.OWNER)
    await add_recipe_import_job(queue, **kwargs)
    await queue.complete(await queue.fetch_next())
    assert (await add_recipe_import_job(queue, **kwargs)).status is EnqueueStatus.QUEUED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "producer, queue_name, prefix",
    [
        (add_auto_tagging_job, QueueName.AUTO_TAGGING, "auto-tag"),
        (add_allergy_detection_job, QueueName.ALLERGY_DETECTION, "allergy-detection"),
        (add_nutrition_estimation_job, QueueName.NUTRITION_ESTIMATION, "nutrition"),
    ],
)
async def test_enrichment_jobs(queues, producer, queue_name, prefix):
    queue = queues.get(queue_name)
    result = await producer(queue, recipe_id="r1", user_id="alice", enabled=True)
    assert result.status is EnqueueStatus.QUEUED
    assert result.job_id == f"{prefix}-r1"
    assert await is_enrichment_job_active(queue, prefix, "r1")

    again = await producer(queue, recipe_id="r1", user_id="alice", enabled=True)
    assert again.status is EnqueueStatus.DUPLICATE


@pytest.mark.asyncio
async def test_disabled_enrichment_is_skipped(queues):
    queue = queues.get(QueueName.AUTO_TAGGING)
    result = await add_auto_tagging_job(queue, recipe_id="r1", user_id="alice", enabled=False)
    assert result.status is EnqueueStatus.SKIPPED
    assert result.reason == "disabled"
    assert not await queue.is_job_in_queue(result.job_id)


@pytest.mark.asyncio
async def test_caldav_sync_supersedes_a_waiting_job(queues):
    queue = queues.get(QueueName.CALDAV_SYNC)
    common = dict(caldav_server_url="https://cal.example.com/dav/", item_id="item-1", user_id="alice")

    first = await add_caldav_sync_job(queue, operation="create", **common)
    second = await add_caldav_sync_job(queue, operation="update", **common)
    assert first.status is EnqueueStatus.QUEUED
    assert second.status is EnqueueStatus.QUEUED
    assert (await queue.get_job_counts(WAITING))[WAITING] == 1
    assert (await queue.get_job(second.job_id)).data["operation"] == "update"


@pytest.mark.asyncio
async def test_caldav_sync_does_not_touch_a_running_job(queues):
    queue = queues.get(QueueName.CALDAV_SYNC)
    common = dict(caldav_server_url="https://cal.example.com/dav/", item_id="item-1", user_id="alice")

    await add_caldav_sync_job(queue, operation="create", **common)
    await queue.fetch_next()
    result = await add_caldav_sync_job(queue, operation="delete", **common)
    assert result.status is EnqueueStatus.DUPLICATE
    assert await queue.get_state(result.job_id) == ACTIVE


@pytest.mark.asyncio
async def test_enqueue_job_dedups_on_id(queues):
    queue = queues.get(QueueName.CALDAV_SYNC)

    first = await enqueue_job(queue, "sync", {"item": 1}, job_id="job-1")
    second = await enqueue_job(queue, "sync", {"item": 2}, job_id="job-1")

    assert first.status is EnqueueStatus.QUEUED
    assert first.job.id == "job-1"
    assert second.status is EnqueueStatus.DUPLICATE
    assert (await queue.get_job("job-1")).data == {"item": 1}


@pytest.mark.asyncio
async def test_failed_encode_does_not_block_the_id(queues):
    queue = queues.get(QueueName.AUTO_TAGGING)
    with pytest.raises(codec.SerializationError):
        await enqueue_job(queue, "auto-tag", {"bad": object()}, "auto-tag-r1")

    result = await enqueue_job(queue, "auto-tag", {"recipe_id": "r1"}, "auto-tag-r1")
    assert result.status is EnqueueStatus.QUEUED
    assert (await queue.get_job_counts(WAITING))[WAITING] == 1
