import pytest

from comms_dispatch.persistence import Persistence


def make_record(comm_id, **extra):
    record = {
        "id": comm_id,
        "type": "email",
        "status": "pending",
        "priority": "normal",
        "to": ["ada@example.com"],
        "content": {"subject": "Hi", "body": "Hello"},
        "settings": {"max_retries": 3},
        "context": {"campaign_id": "spring", "tags": []},
    }
    record.update(extra)
    return record


async def make_persistence(tmp_path) -> Persistence:
    p = Persistence(str(tmp_path / "store.db"))
    await p.init_db()
    return p


@pytest.mark.asyncio
async def test_communication_roundtrip_and_duplicate_ids(tmp_path):
    p = await make_persistence(tmp_path)

    inserted = await p.insert_communications([make_record("c1"), make_record("c2")])
    assert inserted == ["c1", "c2"]
    assert await p.insert_communication(make_record("c1", status="sent")) is False

    record = await p.get_communication("c1")
    assert record["status"] == "pending"
    assert record["to"] == ["ada@example.com"]
    assert record["content"]["subject"] == "Hi"
    assert record["context"]["campaign_id"] == "spring"
    assert record["attempt"] == 0
    assert await p.get_communication("missing") is None


@pytest.mark.asyncio
async def test_transition_is_conditional(tmp_path):
    p = await make_persistence(tmp_path)
    await p.insert_communication(make_record("c1"))

    assert await p.transition("c1", ["pending"], "queued") is True
    assert await p.transition("c1", ["pending"], "queued") is False
    assert await p.transition("c1", [], "sending") is False
    assert await p.transition("c1", ["queued"], "sending", {"provider": "mailer"}) is True

    record = await p.get_communication("c1")
    assert record["status"] == "sending"
    assert record["provider"] == "mailer"

    with pytest.raises(ValueError):
        await p.transition("c1", ["sending"], "sent", {"nope": 1})


@pytest.mark.asyncio
async def test_lifecycle_timestamps_are_written_once(tmp_path):
    p = await make_persistence(tmp_path)
    await p.insert_communication(make_record("c1", status="sending"))

    await p.transition("c1", ["sending"], "sent", {"sent_ts": 100})
    await p.update_communication_fields("c1", {"sent_ts": 200, "cost": 1.5})

    record = await p.get_communication("c1")
    assert record["sent_ts"] == 100
    assert record["cost"] == 1.5


@pytest.mark.asyncio
async def test_lookup_by_provider_message_id(tmp_path):
    p = await make_persistence(tmp_path)
    await p.insert_communication(make_record("c1", provider="mailer", provider_message_id="pm-1"))

    assert (await p.find_by_provider_message_id("pm-1"))["id"] == "c1"
    assert (await p.find_by_provider_message_id("pm-1", provider="mailer"))["id"] == "c1"
    assert await p.find_by_provider_message_id("pm-1", provider="other") is None


@pytest.mark.asyncio
async def test_filters_and_counts(tmp_path):
    p = await make_persistence(tmp_path)
    await p.insert_communications(
        [
            make_record("c1", bulk_id="b1"),
            make_record("c2", bulk_id="b1", status="sent"),
            make_record("c3", type="sms", priority="high", context={"campaign_id": "autumn"}),
        ]
    )

    assert await p.count_communications() == 3
    assert await p.count_communications({"type": "sms"}) == 1
    assert await p.count_communications({"campaign_id": "spring"}) == 2
    assert await p.status_counts("b1") == {"pending": 1, "sent": 1}
    assert await p.list_communication_ids_for_bulk("b1", ["pending"]) == ["c1"]

    page = await p.list_communications({"priority": "high"}, limit=10)
    assert [row["id"] for row in page] == ["c3"]


@pytest.mark.asyncio
async def test_expirable_only_returns_overdue_scheduled_pending(tmp_path):
    p = await make_persistence(tmp_path)
    await p.insert_communications(
        [
            make_record("old", scheduled_ts=100),
            make_record("future", scheduled_ts=10_000),
            make_record("queued", scheduled_ts=100, status="queued"),
            make_record("unscheduled"),
        ]
    )

    rows = await p.list_expirable(1_000)
    assert [row["id"] for row in rows] == ["old"]


@pytest.mark.asyncio
async def test_bulk_records(tmp_path):
    p = await make_persistence(tmp_path)
    await p.insert_bulk(
        {
            "id": "b1",
            "name": "News",
            "type": "email",
            "communication_ids": ["c1", "c2"],
            "status": "sending",
            "progress": {"total": 2},
        }
    )

    await p.update_bulk("b1", {"status": "completed", "completed_ts": 10})
    await p.update_bulk("b1", {"completed_ts": 20})
    bulk = await p.get_bulk("b1")
    assert bulk["communication_ids"] == ["c1", "c2"]
    assert bulk["status"] == "completed"
    assert bulk["completed_ts"] == 10

    with pytest.raises(ValueError):
        await p.update_bulk("b1", {"bogus": True})


@pytest.mark.asyncio
async def test_events_are_unique_per_key(tmp_path):
    p = await make_persistence(tmp_path)

    assert await p.add_event(
        communication_id="c1", event_key="k1", event_type="delivery", event_ts=5, metadata={"a": 1}
    )
    assert not await p.add_event(communication_id="c1", event_key="k1", event_type="delivery", event_ts=6)
    assert await p.add_event(communication_id="c1", event_key="k2", event_type="open", event_ts=4)

    events = await p.list_events("c1")
    assert [e["event_type"] for e in events] == ["open", "delivery"]
    assert events[1]["metadata"] == {"a": 1}


@pytest.mark.asyncio
async def test_send_log(tmp_path):
    p = await make_persistence(tmp_path)
    await p.log_send("mailer", 100)
    await p.log_send("mailer", 160)
    await p.log_send("other", 160)

    assert await p.count_sends_since("mailer", 100) == 2
    assert await p.count_sends_since("mailer", 101) == 1
    assert await p.purge_send_log_before(150) == 1
    assert await p.count_sends_since("mailer", 0) == 1
