import pytest

from chatblast.core.errors import ValidationError
from chatblast.models.job import ITEM_FAILED, ITEM_PENDING, ITEM_SENT, JOB_PROCESSING, JOB_QUEUED

from .conftest import items_by_recipient


@pytest.mark.asyncio
async def test_create_job_writes_items_and_progress(store):
    job = await store.create_job(
        user_id=7,
        device_id="dev-1",
        type="send-text",
        data={"message": "hi"},
        recipients=["+7 (900) 123-45-67", "111", "79001234567", "group@g.us"],
    )

    assert job.status == JOB_QUEUED
    # "+7 (900) ..." и "79001234567" схлопываются в одного получателя
    assert job.progress == {"total": 3, "sent": 0, "failed": 0}

    items = await store.list_items(job.id)
    assert [i.recipient for i in items] == ["79001234567", "111", "group@g.us"]
    assert all(i.status == ITEM_PENDING for i in items)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"recipients": []},
        {"recipients": ["  ", "111"]},
        {"recipients": [str(n) for n in range(100, 160)]},
        {"type": "send-sticker"},
        {"data": {}},
        {"data": {"message": "hi", "delay": 61}},
        {"data": {"message": "hi", "delay": -1}},
        {"device_id": " "},
        {"recipients": ["111", "9" * 65]},
        {"type": "send-media", "data": {"media": {"media_type": "image", "base64": "!!!not-base64!!!"}}},
    ],
)
async def test_create_job_rejects_bad_input_without_writing(store, kwargs):
    params = {
        "user_id": 1,
        "device_id": "dev-1",
        "type": "send-text",
        "data": {"message": "hi"},
        "recipients": ["111"],
    }
    params.update(kwargs)

    with pytest.raises(ValidationError):
        await store.create_job(**params)

    stats = await store.count_by_status()
    assert stats["total"] == 0


@pytest.mark.asyncio
async def test_find_next_queued_is_fifo(store, make_job):
    first = await make_job(["111"])
    second = await make_job(["222"])

    nxt = await store.find_next_queued()
    assert nxt.id == first.id

    await store.update_job_status(first.id, "paused")
    nxt = await store.find_next_queued()
    assert nxt.id == second.id


@pytest.mark.asyncio
async def test_claim_next_queued_moves_to_processing(store, make_job):
    job = await make_job(["111"])

    claimed = await store.claim_next_queued()
    assert claimed.id == job.id
    assert claimed.status == JOB_PROCESSING
    assert claimed.started_at is not None

    assert await store.claim_next_queued() is None


@pytest.mark.asyncio
async def test_update_job_status_compare_and_set(store, make_job):
    job = await make_job(["111"])

    assert not await store.update_job_status(job.id, "completed", expected=(JOB_PROCESSING,))
    assert await store.get_job_status(job.id) == JOB_QUEUED

    assert await store.update_job_status(job.id, "cancelled", expected=(JOB_QUEUED,))
    cancelled = await store.get_job(job.id)
    assert cancelled.status == "cancelled"
    assert cancelled.completed_at is not None

    with pytest.raises(ValueError):
        await store.update_job_status(job.id, "done")


@pytest.mark.asyncio
async def test_item_leaves_pending_exactly_once(store, make_job):
    job = await make_job(["111"])
    (item,) = await store.list_items(job.id)

    assert await store.update_item_status(item.id, ITEM_SENT, message_id="m1")
    assert not await store.update_item_status(item.id, ITEM_FAILED, error="late")

    (item,) = await store.list_items(job.id)
    assert item.status == ITEM_SENT
    assert item.message_id == "m1"
    assert item.processed_at is not None

    with pytest.raises(ValueError):
        await store.update_item_status(item.id, ITEM_PENDING)


@pytest.mark.asyncio
async def test_record_item_outcome_bumps_progress_once(store, make_job):
    job = await make_job(["111", "222"])
    first, second = await store.list_items(job.id)

    assert await store.record_item_outcome(first, ITEM_SENT, message_id="m1")
    assert await store.record_item_outcome(second, ITEM_FAILED, error="boom")
    # повтор по уже обработанному item ничего не меняет
    assert not await store.record_item_outcome(first, ITEM_SENT, message_id="m2")

    job = await store.get_job(job.id)
    assert job.progress == {"total": 2, "sent": 1, "failed": 1}
    items = await items_by_recipient(store, job.id)
    assert items["111"].message_id == "m1"
    assert items["222"].error == "boom"


@pytest.mark.asyncio
async def test_reconcile_progress_repairs_drift(store, make_job):
    job = await make_job(["111", "222", "333"])
    first, second, _ = await store.list_items(job.id)
    await store.update_item_status(first.id, ITEM_SENT)
    await store.update_item_status(second.id, ITEM_FAILED, error="x")

    assert (await store.get_job(job.id)).progress["sent"] == 0

    progress = await store.reconcile_progress(job.id)
    assert progress == {"total": 3, "sent": 1, "failed": 1}
    assert (await store.get_job(job.id)).progress == progress


@pytest.mark.asyncio
async def test_list_jobs_filters_and_counts(store, make_job):
    a = await make_job(["111"], user_id=1)
    b = await make_job(["222"], user_id=2)
    await store.update_job_status(b.id, "paused")

    assert [j.id for j in await store.list_jobs(user_id=1)] == [a.id]
    assert [j.id for j in await store.list_jobs(status="paused")] == [b.id]
    assert [j.id for j in await store.list_jobs()] == [b.id, a.id]

    stats = await store.count_by_status()
    assert stats["queued"] == 1
    assert stats["paused"] == 1
    assert stats["completed"] == 0
    assert stats["total"] == 2
