"""Tests for queue topology, reconnection and publishing."""

from __future__ import annotations

import base64
import json
import threading

import pytest
from pydantic import ValidationError

from app.ingestion.importers import EntityType
from app.utils.backoff import BackoffState
from app.workers import publisher as publisher_module
from app.workers.broker import (
    DLX_EXCHANGE_NAME,
    QUEUE_NAMES,
    BrokerUnavailableError,
    declare_topology,
)
from app.workers.publisher import RETRY_HEADER, JobMessage, JobPublisher, retry_count_from
from conftest import ConnectionFactory, FakeChannel, make_broker


class TestTopology:
    def test_work_queues_dead_letter_to_matching_dlq(self):
        channel = FakeChannel()

        declare_topology(channel)

        assert channel.exchanges[DLX_EXCHANGE_NAME] == {"type": "direct", "durable": True}
        for queue_name in QUEUE_NAMES:
            assert channel.queues[queue_name]["durable"] is True
            assert channel.queues[queue_name]["arguments"] == {
                "x-dead-letter-exchange": DLX_EXCHANGE_NAME,
                "x-dead-letter-routing-key": queue_name,
            }
            assert channel.queues[f"{queue_name}.dlq"]["durable"] is True
            assert (f"{queue_name}.dlq", DLX_EXCHANGE_NAME, queue_name) in channel.bindings

    def test_queue_per_entity_type(self):
        assert set(QUEUE_NAMES) == {
            "class_import",
            "subject_import",
            "room_import",
            "student_import",
            "teacher_import",
            "timetable_import",
        }


class TestBrokerConnection:
    def test_channel_is_lazy_and_reused(self):
        factory = ConnectionFactory()
        broker = make_broker(factory)
        assert factory.created == []

        first = broker.acquire_channel()
        second = broker.acquire_channel()

        assert first is second
        assert len(factory.created) == 1

    def test_reconnect_replays_every_registration(self):
        factory = ConnectionFactory()
        broker = make_broker(factory)
        seen = []
        broker.register_consumer(lambda channel: seen.append(("a", channel)) or "consumer-a")
        broker.register_consumer(lambda channel: seen.append(("b", channel)) or "consumer-b")

        assert broker.reconnect() is True

        new_channel = factory.created[-1].channels[-1]
        assert seen[-2:] == [("a", new_channel), ("b", new_channel)]
        assert factory.created[0].released

    def test_reconnect_backs_off_exponentially(self):
        sleeps = []
        factory = ConnectionFactory(failures=3)
        broker = make_broker(factory, sleeps, reconnect_max_attempts=5)

        assert broker.reconnect() is True
        assert len(sleeps) == 4
        # 1s, 2s, 4s, then capped at 4s (+/- 10% jitter)
        for actual, expected in zip(sleeps, [1.0, 2.0, 4.0, 4.0]):
            assert expected * 0.9 <= actual <= expected * 1.1

    def test_reconnect_gives_up_after_max_attempts(self):
        factory = ConnectionFactory(failures=100)
        broker = make_broker(factory, reconnect_max_attempts=3)

        with pytest.raises(BrokerUnavailableError):
            broker.reconnect()
        assert len(factory.created) == 3

    def test_shutdown_suppresses_reconnect(self):
        factory = ConnectionFactory()
        broker = make_broker(factory)
        broker.acquire_channel()

        broker.shutdown()

        assert broker.reconnect() is False
        assert len(factory.created) == 1
        with pytest.raises(BrokerUnavailableError):
            broker.acquire_channel()


def test_backoff_without_jitter_doubles_until_capped():
    backoff = BackoffState(initial_delay=5.0, max_delay=60.0, jitter=0)
    delays = []
    for _ in range(6):
        delays.append(backoff.next_delay())
        backoff.record_failure()

    assert delays == [5.0, 10.0, 20.0, 40.0, 60.0, 60.0]
    assert backoff.exhausted(6)


class FakeProducer:
    sent = []

    def __init__(self, channel):
        self.channel = channel

    def publish(self, body, **kwargs):
        FakeProducer.sent.append((self.channel, body, kwargs))


class StubBroker:
    def __init__(self, failures=0):
        self.lock = threading.RLock()
        self.failures = failures
        self.invalidated = 0

    def acquire_channel(self):
        if self.failures:
            self.failures -= 1
            raise ConnectionResetError("gone")
        return "channel"

    def invalidate(self):
        self.invalidated += 1


class TestPublisher:
    @pytest.fixture(autouse=True)
    def producer(self, monkeypatch):
        FakeProducer.sent = []
        monkeypatch.setattr(publisher_module, "Producer", FakeProducer)

    def test_publish_routes_to_entity_queue(self):
        message = JobMessage.for_upload("job-1", EntityType.STUDENT_IMPORT, 2, b"a,b\n1,2\n")

        JobPublisher(StubBroker()).publish(message)

        (channel, body, kwargs), = FakeProducer.sent
        assert channel == "channel"
        assert kwargs["exchange"] == ""
        assert kwargs["routing_key"] == "student_import"
        assert kwargs["headers"] == {RETRY_HEADER: 0}
        assert kwargs["content_type"] == "application/json"
        assert kwargs["delivery_mode"] == 2
        assert json.loads(body) == {
            "jobId": "job-1",
            "entityType": "STUDENT_IMPORT",
            "totalRows": 2,
            "csvPayload": base64.b64encode(b"a,b\n1,2\n").decode(),
        }

    def test_republish_keeps_body_and_bumps_header(self):
        JobPublisher(StubBroker()).republish(b"raw-body", "ROOM_IMPORT", 2)

        (_, body, kwargs), = FakeProducer.sent
        assert body == b"raw-body"
        assert kwargs["routing_key"] == "room_import"
        assert kwargs["headers"] == {RETRY_HEADER: 2}

    def test_stale_connection_is_retried_once(self):
        broker = StubBroker(failures=1)

        JobPublisher(broker).republish(b"x", "CLASS_IMPORT", 0)

        assert broker.invalidated == 1
        assert len(FakeProducer.sent) == 1

    def test_unknown_entity_type_is_rejected(self):
        with pytest.raises(ValueError):
            JobPublisher(StubBroker()).republish(b"x", "LIBRARY_IMPORT", 0)


class TestJobMessage:
    def test_round_trips_payload(self):
        message = JobMessage.for_upload("job-1", EntityType.CLASS_IMPORT, 1, b"class_name,batch\n")
        parsed = JobMessage.from_body(message.to_body())

        assert parsed == message
        assert parsed.decode_payload() == b"class_name,batch\n"

    def test_rejects_bad_base64(self):
        body = b'{"jobId": "j", "entityType": "CLASS_IMPORT", "totalRows": 1, "csvPayload": "***"}'
        with pytest.raises(ValidationError):
            JobMessage.from_body(body)

    def test_message_is_immutable(self):
        message = JobMessage.for_upload("job-1", EntityType.CLASS_IMPORT, 1, b"")
        with pytest.raises(ValidationError):
            message.total_rows = 5

    @pytest.mark.parametrize(
        "headers, expected",
        [(None, 0), ({}, 0), ({RETRY_HEADER: 2}, 2), ({RETRY_HEADER: "1"}, 1), ({RETRY_HEADER: "x"}, 0)],
    )
    def test_retry_count_from_headers(self, headers, expected):
        assert retry_count_from(headers) == expected
