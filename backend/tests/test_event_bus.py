"""
Tests for EventBus delivery semantics.
"""

from datetime import datetime, timezone

import pytest

from mediajobs.jobs.events import EventBus, JobEventType, make_event


def _event(job_id="job_1", event_type=JobEventType.PROGRESS, **payload):
    return make_event(event_type, job_id, **payload)


class TestPublish:

    def test_listeners_receive_in_registration_order(self):
        bus = EventBus()
        received = []
        bus.subscribe(lambda e: received.append(("a", e.job_id)))
        bus.subscribe(lambda e: received.append(("b", e.job_id)))

        delivered = bus.publish(_event())

        assert delivered == 2
        assert received == [("a", "job_1"), ("b", "job_1")]

    def test_failing_listener_does_not_block_others(self, caplog):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        delivered = bus.publish(_event())

        assert delivered == 1
        assert len(received) == 1
        assert "listener bug" in caplog.text

    def test_publish_without_listeners(self):
        assert EventBus().publish(_event()) == 0

    def test_subscribe_rejects_non_callable(self):
        with pytest.raises(TypeError):
            EventBus().subscribe("not a function")


class TestSubscription:

    def test_unsubscribe_stops_delivery(self):
        bus = EventBus()
        received = []
        subscription = bus.subscribe(received.append)

        bus.publish(_event())
        assert subscription.unsubscribe() is True
        bus.publish(_event())

        assert len(received) == 1
        assert not subscription.active
        assert subscription.unsubscribe() is False

    def test_subscription_is_callable_and_context_manager(self):
        bus = EventBus()
        received = []

        with bus.subscribe(received.append) as subscription:
            assert subscription.active
            bus.publish(_event())
        bus.publish(_event())

        assert len(received) == 1
        assert bus.listener_count == 0

        handle = bus.subscribe(received.append)
        handle()
        assert bus.listener_count == 0

    def test_unsubscribe_during_dispatch_affects_next_publish_only(self):
        bus = EventBus()
        received = []
        handles = {}

        def first(event):
            received.append("first")
            handles["second"].unsubscribe()

        bus.subscribe(first)
        handles["second"] = bus.subscribe(lambda e: received.append("second"))

        bus.publish(_event())
        bus.publish(_event())

        assert received == ["first", "second", "first"]

    def test_subscribe_during_dispatch_starts_with_next_publish(self):
        bus = EventBus()
        received = []

        def spawner(event):
            if event.payload.get("spawn"):
                bus.subscribe(lambda e: received.append("late"))
            received.append("spawner")

        bus.subscribe(spawner)
        bus.publish(_event(spawn=True))
        bus.publish(_event())

        assert received == ["spawner", "spawner", "late"]

    def test_clear(self):
        bus = EventBus()
        bus.subscribe(lambda e: None)
        bus.subscribe(lambda e: None)
        bus.clear()
        assert bus.listener_count == 0


class TestJobEvent:

    def test_wire_shape(self):
        stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        event = make_event(
            JobEventType.STAGE_CHANGED, "job_9", stamp, oldStatus="PENDING", newStatus="DOWNLOADING"
        )

        assert event.to_wire() == {
            "type": "job:stage-changed",
            "jobId": "job_9",
            "oldStatus": "PENDING",
            "newStatus": "DOWNLOADING",
            "timestamp": "2024-01-02T03:04:05+00:00",
        }

    def test_events_are_immutable(self):
        event = _event()
        with pytest.raises(Exception):
            event.job_id = "other"

    def test_timestamp_defaults_to_now(self):
        before = datetime.now(timezone.utc)
        event = _event()
        assert event.timestamp >= before
