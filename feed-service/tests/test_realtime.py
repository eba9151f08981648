from types import SimpleNamespace

import pytest

from feed_service.config import settings
from feed_service.realtime import RealtimeConsumer
from feed_service.schemas import ChangePayload, EventKind


class Recorder:
    def __init__(self, error=None):
        self.payloads = []
        self.error = error

    async def __call__(self, payload):
        self.payloads.append(payload)
        if self.error:
            raise self.error


@pytest.fixture
def consumer():
    return RealtimeConsumer()


def like_change(user_id, post_id="p1"):
    return ChangePayload(kind="INSERT", table="likes", record={"post_id": post_id, "user_id": user_id})


async def test_likes_are_filtered_by_user(consumer):
    mine = Recorder()
    consumer.subscribe("viewer", mine)

    await consumer.dispatch(like_change("viewer"))
    await consumer.dispatch(like_change("stranger"))

    assert [p.row["user_id"] for p in mine.payloads] == ["viewer"]


async def test_post_changes_reach_every_subscriber(consumer):
    first, second = Recorder(), Recorder()
    consumer.subscribe("viewer", first)
    consumer.subscribe(None, second)

    await consumer.dispatch(ChangePayload(kind="delete", table="posts", old_record={"id": "p1"}))

    assert len(first.payloads) == len(second.payloads) == 1


async def test_unsubscribe_stops_delivery(consumer):
    recorder = Recorder()
    subscription = consumer.subscribe(None, recorder)
    assert subscription.active is True

    subscription.unsubscribe()
    subscription.unsubscribe()
    await consumer.dispatch(like_change("viewer"))

    assert subscription.active is False
    assert recorder.payloads == []


async def test_failing_handler_does_not_block_others(consumer):
    broken, healthy = Recorder(error=RuntimeError("boom")), Recorder()
    consumer.subscribe(None, broken)
    consumer.subscribe(None, healthy)

    await consumer.dispatch(like_change("viewer"))

    assert len(healthy.payloads) == 1


async def test_message_table_taken_from_topic(consumer):
    recorder = Recorder()
    consumer.subscribe(None, recorder)
    message = SimpleNamespace(
        topic=settings.KAFKA_TOPIC_LIKES_CHANGES,
        value={"kind": "DELETE", "old_record": {"post_id": 7, "user_id": "viewer"}},
    )

    await consumer._process_message(message)

    payload = recorder.payloads[0]
    assert payload.table == "likes"
    assert payload.kind == EventKind.DELETE
    assert payload.row["post_id"] == 7


async def test_invalid_message_is_dropped(consumer):
    recorder = Recorder()
    consumer.subscribe(None, recorder)
    message = SimpleNamespace(topic=settings.KAFKA_TOPIC_POSTS_CHANGES, value={"kind": "truncate"})

    await consumer._process_message(message)

    assert recorder.payloads == []


async def test_start_is_noop_when_kafka_disabled(consumer, monkeypatch):
    monkeypatch.setattr(settings, "KAFKA_ENABLED", False)

    await consumer.start()

    assert consumer.connected is False
    await consumer.stop()
