"""Tests for the transactional outbox, the dispatcher and delivery sinks."""

import json
import threading
import uuid
from datetime import datetime, timezone

import httpx
import pytest

from careslot.config import Settings
from careslot.core.repository import OutboxRepository
from careslot.notifications import (
    EventType,
    JsonlSink,
    LoggingSink,
    OutboxDispatcher,
    SchedulingEvent,
    WebhookSink,
    create_sink_from_settings,
)
from careslot.scheduling.clock import as_utc
from careslot.scheduling.errors import RescheduleFailedError


class RecordingSink:
    name = "recording"

    def __init__(self):
        self.events = []

    async def deliver(self, event):
        self.events.append(event)


class FailingSink:
    name = "failing"

    async def deliver(self, event):
        raise RuntimeError("notification service unavailable")


async def _events_for(database, appointment_id):
    async with database.transaction() as session:
        rows = await OutboxRepository(session).list_for_appointment(appointment_id)
        return [(row.event_type, row.status, row.attempts, row.delivered_at, row.last_error) for row in rows]


# ------------------------------------------------------------------ recording

class TestOutboxRecording:
    async def test_booking_records_event(self, database, slots, book):
        appointment = await book(slots[0].id)
        events = await _events_for(database, appointment.id)
        assert [(e[0], e[1]) for e in events] == [("appointment.booked", "scheduled")]

    async def test_failed_operation_records_nothing(self, database, service, slots, book, doctor):
        appointment = await book(slots[0].id)
        await book(slots[1].id, patient_id=uuid.uuid4())
        with pytest.raises(RescheduleFailedError):
            await service.reschedule_with_slot(doctor, appointment.id, slots[1].id, "Move")

        events = await _events_for(database, appointment.id)
        assert [e[0] for e in events] == ["appointment.booked"]

    async def test_lifecycle_event_sequence(self, database, service, slots, book, doctor):
        appointment = await book(slots[0].id)
        await service.confirm(doctor, appointment.id)
        await service.reschedule_with_slot(doctor, appointment.id, slots[2].id, "Clinic change")

        events = await _events_for(database, appointment.id)
        assert [e[0] for e in events] == [
            "appointment.booked",
            "appointment.confirmed",
            "appointment.rescheduled",
        ]


# ------------------------------------------------------------------ dispatch

class TestDispatcher:
    async def test_delivers_each_event_once(self, database, service, slots, book, doctor):
        appointment = await book(slots[0].id)
        await service.confirm(doctor, appointment.id)
        sink = RecordingSink()
        dispatcher = OutboxDispatcher(database, sink)

        report = await dispatcher.dispatch_pending()
        assert len(report.delivered) == 2
        assert [e.event_type for e in sink.events] == [
            EventType.APPOINTMENT_BOOKED,
            EventType.APPOINTMENT_CONFIRMED,
        ]
        assert sink.events[1].metadata["previous_status"] == "scheduled"

        again = await dispatcher.dispatch_pending()
        assert again.total == 0

    async def test_event_timestamp_follows_service_clock(self, database, service, slots, book, doctor, clock):
        appointment = await book(slots[0].id)
        clock.advance(hours=2)
        await service.confirm(doctor, appointment.id)
        sink = RecordingSink()

        await OutboxDispatcher(database, sink).dispatch_pending()
        stamps = {e.event_type: as_utc(e.timestamp) for e in sink.events}
        assert stamps[EventType.APPOINTMENT_BOOKED] == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
        assert stamps[EventType.APPOINTMENT_CONFIRMED] == datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

    async def test_failing_sink_leaves_scheduling_state_alone(self, database, service, slots, book):
        appointment = await book(slots[0].id)

        report = await OutboxDispatcher(database, FailingSink(), max_attempts=2).dispatch_pending()
        assert len(report.failed) == 1

        (event,) = await _events_for(database, appointment.id)
        assert event[2] == 1
        assert event[3] is None
        assert "unavailable" in event[4]

        still_booked = await service.get_appointment(appointment.id)
        assert still_booked.status == "scheduled"

    async def test_event_parked_after_max_attempts(self, database, slots, book):
        await book(slots[0].id)
        dispatcher = OutboxDispatcher(database, FailingSink(), max_attempts=2)
        await dispatcher.dispatch_pending()
        await dispatcher.dispatch_pending()

        report = await dispatcher.dispatch_pending()
        assert report.total == 0

    async def test_row_round_trip(self):
        event = SchedulingEvent(
            event_type=EventType.RESCHEDULE_REQUESTED,
            appointment_id=uuid.uuid4(),
            request_id=uuid.uuid4(),
            status="pending",
            metadata={"requester_role": "patient"},
        )
        restored = SchedulingEvent.from_row(event.to_row())
        assert restored.event_id == event.event_id
        assert restored.metadata == {"requester_role": "patient"}


# ------------------------------------------------------------------ sinks

class TestSinks:
    async def test_jsonl_sink_appends(self, tmp_path):
        sink = JsonlSink(tmp_path / "events")
        event = SchedulingEvent(event_type=EventType.APPOINTMENT_BOOKED, status="scheduled")
        await sink.deliver(event)
        await sink.deliver(event)

        lines = sink.path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["event_type"] == "appointment.booked"

    async def test_jsonl_sink_writes_off_the_event_loop(self, tmp_path, monkeypatch):
        writers = []
        append = JsonlSink._append

        def recording_append(self, line):
            writers.append(threading.get_ident())
            append(self, line)

        monkeypatch.setattr(JsonlSink, "_append", recording_append)
        sink = JsonlSink(tmp_path / "events")
        await sink.deliver(SchedulingEvent(event_type=EventType.APPOINTMENT_BOOKED, status="scheduled"))

        assert len(writers) == 1
        assert writers[0] != threading.get_ident()
        assert len(sink.path.read_text().splitlines()) == 1

    async def test_webhook_sink_posts_json(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sink = WebhookSink("https://notify.example/hooks/scheduling", client=client)
            event = SchedulingEvent(event_type=EventType.APPOINTMENT_CANCELLED, status="cancelled")
            await sink.deliver(event)

        assert len(seen) == 1
        assert seen[0].headers["X-Event-Type"] == "appointment.cancelled"
        assert json.loads(seen[0].content)["event_id"] == str(event.event_id)

    async def test_webhook_sink_raises_on_server_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        async with httpx.AsyncClient(transport=transport) as client:
            sink = WebhookSink("https://notify.example/hooks/scheduling", client=client)
            with pytest.raises(httpx.HTTPStatusError):
                await sink.deliver(SchedulingEvent(event_type=EventType.APPOINTMENT_BOOKED, status="scheduled"))

    def test_sink_from_settings(self, tmp_path):
        assert isinstance(create_sink_from_settings(Settings(_env_file=None)), LoggingSink)
        jsonl = create_sink_from_settings(
            Settings(_env_file=None, notification_sink="jsonl", notification_log_dir=tmp_path)
        )
        assert isinstance(jsonl, JsonlSink)

    def test_webhook_without_url_falls_back_to_log(self):
        settings = Settings(_env_file=None, notification_sink="webhook", notification_webhook_url="")
        assert isinstance(create_sink_from_settings(settings), LoggingSink)
