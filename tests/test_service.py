"""Tests for the sync service facade: lifecycle, events and notifications."""

import asyncio

import pytest

from medsync.errors import ConfigurationError, EntityNotConfiguredError, SyncInProgressError
from medsync.reconciliation.records import SourceType
from medsync.services.persistence import InMemoryMedicationStore
from medsync.services.sources import StaticSourceAdapter
from medsync.sync.events import EventType
from medsync.sync.jobs import JobStatus, SyncConfig
from medsync.sync.service import MedicationSyncService

SLOW = {"realtime": 600, "standard": 600, "maintenance": 600}


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, entity_id, event_type, payload):
        self.sent.append((entity_id, event_type, payload))


class BrokenNotifier:
    async def notify(self, entity_id, event_type, payload):
        raise RuntimeError("SMTP down")


def _make_service(ehr=None, pharmacy=None, notifier=None, intervals=SLOW):
    ehr = ehr or StaticSourceAdapter(
        {("P1", "epic"): [{"ndc": "123", "name": "Lisinopril", "dosage": "10mg"}]}
    )
    pharmacy = pharmacy or StaticSourceAdapter(
        {("P1", "cvs"): [{"ndc": "123", "name": "Lisinopril", "dosage": "20mg"}]}
    )
    return MedicationSyncService(
        adapters={SourceType.EHR: ehr, SourceType.PHARMACY: pharmacy},
        persistence=InMemoryMedicationStore(),
        intervals=intervals,
        notifier=notifier,
    )


def _config(**overrides):
    values = {"ehr_systems": ("epic",), "pharmacies": ("cvs",), "resolution_policy": "ehr_priority"}
    values.update(overrides)
    return SyncConfig(**values)


def test_initialize_runs_initial_pass_and_schedules():
    notifier = RecordingNotifier()
    service = _make_service(notifier=notifier)

    async def scenario():
        result = await service.initialize("P1", _config())
        status = service.status("P1")
        await service.shutdown()
        return result, status

    result, status = asyncio.run(scenario())

    assert result.initial_pass.success
    assert result.initial_pass.report.conflicts == 1
    assert status.job.status == JobStatus.ACTIVE
    assert status.next_sync_at is not None
    assert status.history.successful_runs == 1
    assert status.sources == {"ehr": 1, "pharmacy": 1}

    event_types = [e.type for e in service.events.recent("P1")]
    assert event_types[0] == EventType.SYNC_INITIALIZED
    assert EventType.SYNC_COMPLETED in event_types

    sent = {event_type: payload for _, event_type, payload in notifier.sent}
    assert sent["initial_sync_complete"]["medications_found"] == 2
    assert sent["conflicts_detected"]["conflict_count"] == 1


def test_invalid_policy_fails_at_configuration_time():
    with pytest.raises(ConfigurationError):
        _config(resolution_policy="coin_flip")
    with pytest.raises(ConfigurationError):
        _config(sync_frequency="hourly")


def test_stop_then_stop_again_raises():
    service = _make_service()

    async def scenario():
        await service.initialize("P1", _config())
        await service.stop("P1")
        assert service.status("P1").job.status == JobStatus.STOPPED
        assert service.status("P1").next_sync_at is None
        with pytest.raises(EntityNotConfiguredError):
            await service.stop("P1")
        with pytest.raises(EntityNotConfiguredError):
            await service.stop("unknown")

        await service.start("P1")
        await service.start("P1")
        assert service.status("P1").job.status == JobStatus.ACTIVE
        await service.shutdown()

    asyncio.run(scenario())
    assert EventType.SYNC_STOPPED in [e.type for e in service.events.recent("P1")]


def test_manual_trigger_on_stopped_entity_still_runs():
    service = _make_service()

    async def scenario():
        await service.initialize("P1", _config())
        await service.stop("P1")
        result = await service.trigger_manual_sync("P1")
        await service.shutdown()
        return result

    assert asyncio.run(scenario()).success


def test_scheduled_tick_skips_while_manual_pass_runs():
    gate = {}

    class GatedAdapter(StaticSourceAdapter):
        async def fetch_records(self, entity_id, system):
            if "event" in gate:
                gate["entered"].set()
                await gate["event"].wait()
            return await super().fetch_records(entity_id, system)

    ehr = GatedAdapter({("P1", "epic"): [{"ndc": "123", "dosage": "10mg"}]})
    service = _make_service(ehr=ehr)

    async def scenario():
        await service.initialize("P1", _config())
        gate["event"] = asyncio.Event()
        gate["entered"] = asyncio.Event()
        manual = asyncio.create_task(service.trigger_manual_sync("P1"))
        await gate["entered"].wait()

        skipped = await service._scheduled_tick("P1")
        with pytest.raises(SyncInProgressError):
            await service.run_once("P1")

        gate["event"].set()
        result = await manual
        await service.shutdown()
        return skipped, result

    skipped, result = asyncio.run(scenario())
    assert skipped is None
    assert result.success
    assert service.status("P1").history.total_runs == 2


def test_scheduled_passes_run_on_their_own():
    service = _make_service(intervals={"realtime": 0.02, "standard": 0.02, "maintenance": 0.02})

    async def scenario():
        await service.initialize("P1", _config(sync_frequency="realtime"))
        await asyncio.sleep(0.15)
        await service.shutdown()

    asyncio.run(scenario())
    assert service.status("P1").history.total_runs >= 3


def test_failed_pass_notifies_with_retry_time():
    class ExplodingStore(InMemoryMedicationStore):
        async def apply_resolved(self, entity_id, outcomes):
            raise RuntimeError("write failed")

    notifier = RecordingNotifier()
    service = MedicationSyncService(
        adapters={SourceType.EHR: StaticSourceAdapter({("P1", "epic"): [{"ndc": "1"}]})},
        persistence=ExplodingStore(),
        intervals=SLOW,
        notifier=notifier,
    )

    async def scenario():
        result = await service.initialize("P1", _config(pharmacies=()))
        await service.shutdown()
        return result

    result = asyncio.run(scenario())

    assert not result.initial_pass.success
    sent = {event_type: payload for _, event_type, payload in notifier.sent}
    assert "write failed" in sent["sync_failed"]["error"]
    assert "retry_at" in sent["sync_failed"]
    assert "initial_sync_failed" in sent
    # Still scheduled for the next tick
    assert service.status("P1").job.status == JobStatus.ACTIVE


def test_notification_failures_are_swallowed():
    service = _make_service(notifier=BrokenNotifier())

    async def scenario():
        result = await service.initialize("P1", _config())
        await service.shutdown()
        return result

    assert asyncio.run(scenario()).initial_pass.success


def test_notification_preferences_disable_types():
    notifier = RecordingNotifier()
    service = _make_service(notifier=notifier)

    async def scenario():
        await service.initialize(
            "P1", _config(notification_preferences={"conflicts_detected": False})
        )
        await service.shutdown()

    asyncio.run(scenario())
    assert "conflicts_detected" not in [event_type for _, event_type, _ in notifier.sent]


def test_subscribers_receive_events():
    service = _make_service()

    async def scenario():
        queue = service.events.subscribe()
        await service.initialize("P1", _config())
        await service.shutdown()
        received = []
        while not queue.empty():
            received.append(queue.get_nowait().type)
        return received

    received = asyncio.run(scenario())
    assert received[:2] == [EventType.SYNC_INITIALIZED, EventType.SYNC_STARTED]
    assert EventType.CONFLICT_DETECTED in received


def test_status_of_unknown_entity_raises():
    with pytest.raises(EntityNotConfiguredError):
        _make_service().status("nobody")
