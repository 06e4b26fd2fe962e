import asyncio

import pytest

from comms_dispatch.dispatch_queue import DispatchQueue, job_id_for, job_name_for, priority_rank
from comms_dispatch.models import CommType
from comms_dispatch.persistence import Persistence


async def make_queue(tmp_path, **kwargs) -> DispatchQueue:
    p = Persistence(str(tmp_path / "queue.db"))
    await p.init_db()
    return DispatchQueue(p, **kwargs)


def test_job_names():
    assert job_name_for("email") == "sendEmail"
    assert job_name_for(CommType.SMS, bulk=True) == "sendBulkSms"
    assert job_name_for("push", templated=True) == "sendPushWithTemplate"
    assert job_name_for("email", bulk=True, templated=True) == "sendBulkEmailWithTemplate"
    with pytest.raises(ValueError):
        job_name_for("fax")


def test_priority_rank():
    assert priority_rank("urgent") < priority_rank("high") < priority_rank("normal") < priority_rank("low")
    assert priority_rank("bogus") == priority_rank("normal")
    assert priority_rank(None) == priority_rank("normal")
    assert priority_rank(0) == 0


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_per_attempt(tmp_path):
    queue = await make_queue(tmp_path)

    first = await queue.enqueue("sendEmail", {"communicationId": "c1"}, available_ts=10)
    again = await queue.enqueue("sendEmail", {"communicationId": "c1"}, available_ts=99)
    retry = await queue.enqueue("sendEmail", {"communicationId": "c1", "attempt": 1}, available_ts=20)

    assert first.created is True
    assert again.created is False
    assert again.id == first.id == job_id_for("c1", 0)
    assert again.available_ts == 10
    assert retry.id == "c1:1"
    assert await queue.count_ready() == 2

    with pytest.raises(ValueError):
        await queue.enqueue("sendEmail", {})


@pytest.mark.asyncio
async def test_claim_respects_priority_and_availability(tmp_path):
    queue = await make_queue(tmp_path)
    await queue.enqueue("sendEmail", {"communicationId": "low"}, priority="low", available_ts=10)
    await queue.enqueue("sendEmail", {"communicationId": "urgent"}, priority="urgent", available_ts=10)
    await queue.enqueue("sendEmail", {"communicationId": "later"}, priority="urgent", available_ts=500)

    first = await queue.claim("w1", now_ts=100)
    second = await queue.claim("w2", now_ts=100)
    third = await queue.claim("w3", now_ts=100)

    assert first.communication_id == "urgent"
    assert second.communication_id == "low"
    assert third is None


@pytest.mark.asyncio
async def test_claimed_job_is_owned_until_visibility_timeout(tmp_path):
    queue = await make_queue(tmp_path, visibility_timeout=60)
    await queue.enqueue("sendEmail", {"communicationId": "c1"}, available_ts=0)

    job = await queue.claim("w1", now_ts=100)
    assert job is not None
    assert await queue.claim("w2", now_ts=120) is None

    reclaimed = await queue.claim("w2", now_ts=200)
    assert reclaimed.id == job.id

    await queue.complete(job.id, "sent", now_ts=210)
    assert await queue.claim("w3", now_ts=1_000) is None
    assert await queue.count_ready() == 0


@pytest.mark.asyncio
async def test_release_and_cancel(tmp_path):
    queue = await make_queue(tmp_path)
    await queue.enqueue("sendEmail", {"communicationId": "c1"}, available_ts=0)
    await queue.enqueue("sendSms", {"communicationId": "c2"}, available_ts=0)

    job = await queue.claim("w1", now_ts=10)
    await queue.release(job.id, 50)
    assert (await queue.claim("w1", now_ts=20)).communication_id != job.communication_id
    assert (await queue.claim("w1", now_ts=50)).id == job.id

    assert await queue.cancel_for_communication("c1") == 1
    jobs = await queue.persistence.list_jobs_for("c1")
    assert jobs[0]["outcome"] == "cancelled"
    assert await queue.purge_completed_before(10**12) == 1


@pytest.mark.asyncio
async def test_wait_for_work_wakes_on_notify(tmp_path):
    queue = await make_queue(tmp_path)

    waiter = asyncio.create_task(queue.wait_for_work(5))
    await asyncio.sleep(0)
    queue.notify()
    await asyncio.wait_for(waiter, 1)

    await queue.wait_for_work(0.01)
