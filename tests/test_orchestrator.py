"""End-to-end tests for the emergency orchestrator.

Real store, composer and gateway; the SMS relay is an
``httpx.MockTransport`` stub and location comes from scripted sources.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from datetime import timedelta
from unittest.mock import MagicMock

import httpx
import pytest

from src.models.alert import AlertReason, LocationSample
from src.models.enums import AlertStatus, OrchestratorState, OutcomeKind
from src.models.profile import SubjectProfile
from src.pipeline.orchestrator import EmergencyOrchestrator
from src.services.alert_store import AlertNotFound, AlertStore, InMemoryAlertBackend
from src.services.composer import AlertComposer
from src.services.dialer import LoggingDialer
from src.services.location import ClientReportedLocationSource, LocationProvider
from src.services.profiles import InMemoryProfileDirectory
from src.services.sms_gateway import HttpRelayChannel, NotificationGateway

RELAY_URL = "https://relay.example.test/send-emergency-sms"


class RelayStub:
    """Collects relay requests and answers with a configurable body."""

    def __init__(self, body: dict | None = None) -> None:
        self.body = body or {"success": True, "messageId": "abc"}
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        return httpx.Response(200, json=self.body)


class GatedRelay(RelayStub):
    """Holds the alert SMS in flight until ``gate`` is set."""

    def __init__(self, body: dict | None = None) -> None:
        super().__init__(body)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        if payload["emergencyType"] != "Emergency Resolved":
            self.entered.set()
            await self.gate.wait()
        return httpx.Response(200, json=self.body)


class BlockingSource:
    """LocationSource that waits until released."""

    def __init__(self, sample: LocationSample) -> None:
        self.sample = sample
        self.release = asyncio.Event()

    async def get_last_known(self):
        await self.release.wait()
        return self.sample

    async def request_fresh(self, timeout_s: float):
        return None


class FailingBackend(InMemoryAlertBackend):
    async def put_if_absent(self, alert):
        raise RuntimeError("ledger unavailable")


class Harness:
    def __init__(
        self, triggered_at, profiles, relay: RelayStub, backend=None, dialer=None, location_timeout_ms: int = 5_000,
    ) -> None:
        self.relay = relay
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(relay))
        self.store = AlertStore(backend or InMemoryAlertBackend(), clock=lambda: triggered_at + timedelta(minutes=4))
        self.dialer = dialer or LoggingDialer()
        ids = itertools.count(1)
        self.orchestrator = EmergencyOrchestrator(
            location=LocationProvider(clock=lambda: triggered_at),
            composer=AlertComposer("Asia/Manila"),
            gateway=NotificationGateway(HttpRelayChannel(RELAY_URL, client=self.client)),
            store=self.store,
            profiles=profiles,
            dialer=self.dialer,
            location_timeout_ms=location_timeout_ms,
            clock=lambda: triggered_at,
            id_factory=lambda: f"alert-{next(ids)}",
        )


@pytest.fixture
def profiles(maria_profile) -> InMemoryProfileDirectory:
    return InMemoryProfileDirectory([maria_profile])


@pytest.fixture
async def harness(triggered_at, profiles):
    h = Harness(triggered_at, profiles, RelayStub())
    yield h
    await h.orchestrator.aclose()
    await h.client.aclose()


@pytest.fixture
async def failing_harness(triggered_at, profiles):
    h = Harness(triggered_at, profiles, RelayStub({"success": False, "error": "timeout"}))
    yield h
    await h.orchestrator.aclose()
    await h.client.aclose()


# -----------------------------------------------------------------------
# start_emergency
# -----------------------------------------------------------------------


class TestStartEmergency:
    async def test_maria_cruz_alert_is_sent(self, harness, davao_fix) -> None:
        outcome = await harness.orchestrator.start_emergency(
            "senior-001",
            AlertReason.sos(),
            "Maria Cruz",
            location_source=ClientReportedLocationSource(davao_fix),
        )

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.status == AlertStatus.SENT
        assert outcome.delivery_id == "abc"
        assert outcome.call_placed is True
        assert harness.dialer.calls == ["911"]

        stored = await harness.store.get(outcome.alert_id)
        assert stored.status == AlertStatus.SENT
        assert stored.delivery_id == "abc"
        assert "Maria Cruz" in stored.message
        assert "7.0731,125.6128" in stored.message
        assert stored.destination_phone == "+639123456789"

        (request,) = harness.relay.requests
        assert request["emergencyContactPhone"] == "+639123456789"
        assert request["emergencyType"] == "SOS Button"
        assert request["smsMessage"] == stored.message

    async def test_provider_failure_still_places_call(self, failing_harness) -> None:
        outcome = await failing_harness.orchestrator.start_emergency("senior-001", "sos", "Maria Cruz")

        assert outcome.kind == OutcomeKind.PARTIAL
        assert outcome.status == AlertStatus.SEND_FAILED
        assert outcome.error_reason == "timeout"
        assert outcome.call_placed is True
        assert failing_harness.dialer.calls == ["911"]
        assert outcome.user_message == "SMS failed, but emergency call placed to 911."

        stored = await failing_harness.store.get(outcome.alert_id)
        assert stored.status == AlertStatus.SEND_FAILED
        assert stored.error_reason == "timeout"

    async def test_no_location_still_sends(self, harness) -> None:
        outcome = await harness.orchestrator.start_emergency("senior-001", "fall")
        assert outcome.kind == OutcomeKind.SUCCESS
        assert "Location unavailable" in outcome.alert.message
        assert "Fall Detected" in outcome.alert.message

    async def test_location_timeout_sends_without_location(self, triggered_at, profiles, davao_fix) -> None:
        h = Harness(triggered_at, profiles, RelayStub(), location_timeout_ms=50)
        never = BlockingSource(davao_fix)

        outcome = await h.orchestrator.start_emergency("senior-001", "sos", location_source=never)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.alert.location is None
        assert "📍 Location: Location unavailable" in outcome.alert.message
        await h.client.aclose()

    async def test_name_comes_from_profile(self, harness) -> None:
        outcome = await harness.orchestrator.start_emergency("senior-001", "sos")
        assert outcome.alert.subject_name == "Maria Cruz"

    async def test_duplicate_trigger_reuses_alert(self, harness) -> None:
        first, second = await asyncio.gather(
            harness.orchestrator.start_emergency("senior-001", "sos"),
            harness.orchestrator.start_emergency("senior-001", "sos"),
        )

        assert first.alert_id == second.alert_id
        assert second.duplicate is True
        assert len(harness.relay.requests) == 1, "only one SMS may go out per active alert"

        third = await harness.orchestrator.start_emergency("senior-001", "panic")
        assert third.alert_id == first.alert_id
        assert len(harness.relay.requests) == 1

    async def test_other_subjects_are_independent(self, harness, profiles, maria_profile) -> None:
        await profiles.upsert(maria_profile.model_copy(update={"subject_id": "senior-002"}))

        first = await harness.orchestrator.start_emergency("senior-001", "sos")
        second = await harness.orchestrator.start_emergency("senior-002", "sos")

        assert first.alert_id != second.alert_id
        assert len(harness.relay.requests) == 2

    async def test_missing_contact_is_precondition_failure(self, harness, profiles) -> None:
        await profiles.upsert(SubjectProfile(subject_id="senior-003", full_name="Pedro"))

        outcome = await harness.orchestrator.start_emergency("senior-003", "sos")

        assert outcome.kind == OutcomeKind.PRECONDITION_FAILED
        assert outcome.call_placed is True
        assert "No emergency contact phone number found" in outcome.user_message
        assert harness.relay.requests == []
        assert await harness.store.find_by_subject("senior-003") == []
        assert harness.orchestrator.state_of("senior-003") == OrchestratorState.IDLE

    async def test_unknown_subject_is_precondition_failure(self, harness) -> None:
        outcome = await harness.orchestrator.start_emergency("ghost", "sos")
        assert outcome.kind == OutcomeKind.PRECONDITION_FAILED

    async def test_dialer_failure_does_not_block_sms(self, triggered_at, profiles) -> None:
        dialer = MagicMock()
        dialer.place_call.side_effect = RuntimeError("no telephony")
        h = Harness(triggered_at, profiles, RelayStub(), dialer=dialer)

        outcome = await h.orchestrator.start_emergency("senior-001", "sos")

        assert outcome.call_placed is False
        assert outcome.sms_sent is True
        await h.client.aclose()

    async def test_ledger_outage_does_not_block_sms(self, triggered_at, profiles) -> None:
        h = Harness(triggered_at, profiles, RelayStub(), backend=FailingBackend())

        outcome = await h.orchestrator.start_emergency("senior-001", "sos")

        assert outcome.sms_sent is True
        assert len(h.relay.requests) == 1

        resolution = await h.orchestrator.stop_emergency(outcome.alert_id)
        assert resolution.resolved is True
        assert resolution.persisted is False
        await h.client.aclose()

    async def test_caller_cancellation_does_not_abort_flow(self, harness, davao_fix) -> None:
        source = BlockingSource(davao_fix)
        caller = asyncio.create_task(
            harness.orchestrator.start_emergency("senior-001", "sos", location_source=source),
        )
        for _ in range(5):
            await asyncio.sleep(0)
        alert_id = harness.orchestrator.active_alert_id("senior-001")
        assert alert_id is not None

        caller.cancel()
        source.release.set()
        await harness.orchestrator.aclose()

        stored = await harness.store.get(alert_id)
        assert stored.status == AlertStatus.SENT


# -----------------------------------------------------------------------
# stop_emergency
# -----------------------------------------------------------------------


class TestStopEmergency:
    async def test_resolve_notifies_contact(self, harness) -> None:
        outcome = await harness.orchestrator.start_emergency("senior-001", "sos", "Maria Cruz")

        resolution = await harness.orchestrator.stop_emergency(outcome.alert_id)

        assert resolution.resolved is True
        assert resolution.persisted is True
        assert resolution.notification_sent is True
        stored = await harness.store.get(outcome.alert_id)
        assert stored.status == AlertStatus.RESOLVED
        assert stored.delivery_id == "abc"
        notice = harness.relay.requests[-1]["smsMessage"]
        assert notice == (
            "✅ EMERGENCY RESOLVED: Maria Cruz's emergency alert has been resolved. "
            "Duration: 4 minutes."
        )
        assert harness.orchestrator.state_of("senior-001") == OrchestratorState.IDLE

    async def test_resolved_subject_can_trigger_again(self, harness) -> None:
        first = await harness.orchestrator.start_emergency("senior-001", "sos")
        await harness.orchestrator.stop_emergency(first.alert_id)

        second = await harness.orchestrator.start_emergency("senior-001", "sos")

        assert second.alert_id != first.alert_id
        assert second.duplicate is False

    async def test_failed_alert_can_be_resolved(self, failing_harness) -> None:
        outcome = await failing_harness.orchestrator.start_emergency("senior-001", "sos")

        resolution = await failing_harness.orchestrator.stop_emergency(outcome.alert_id)

        assert resolution.persisted is True
        assert resolution.notification_sent is False
        assert resolution.notification_error == "timeout"
        stored = await failing_harness.store.get(outcome.alert_id)
        assert stored.status == AlertStatus.RESOLVED

    async def test_second_stop_reports_already_resolved(self, harness) -> None:
        outcome = await harness.orchestrator.start_emergency("senior-001", "sos")
        await harness.orchestrator.stop_emergency(outcome.alert_id)
        sent_before = len(harness.relay.requests)

        again = await harness.orchestrator.stop_emergency(outcome.alert_id)

        assert again.already_resolved is True
        assert len(harness.relay.requests) == sent_before

    async def test_unknown_alert(self, harness) -> None:
        with pytest.raises(AlertNotFound):
            await harness.orchestrator.stop_emergency("nope")

    async def test_stop_during_start_is_deferred(self, harness, davao_fix) -> None:
        source = BlockingSource(davao_fix)
        start = asyncio.create_task(
            harness.orchestrator.start_emergency("senior-001", "sos", location_source=source),
        )
        for _ in range(5):
            await asyncio.sleep(0)
        alert_id = harness.orchestrator.active_alert_id("senior-001")
        assert harness.orchestrator.state_of("senior-001") == OrchestratorState.LOCATING

        resolution = await harness.orchestrator.stop_emergency(alert_id)
        assert resolution.deferred is True

        source.release.set()
        outcome = await start

        assert outcome.status == AlertStatus.RESOLVED
        stored = await harness.store.get(alert_id)
        assert stored.status == AlertStatus.RESOLVED
        assert stored.delivery_id == "abc"

    async def test_stop_while_sending_waits_for_write_back(self, triggered_at, profiles) -> None:
        relay = GatedRelay()
        h = Harness(triggered_at, profiles, relay)
        start = asyncio.create_task(h.orchestrator.start_emergency("senior-001", "sos"))
        await relay.entered.wait()
        alert_id = h.orchestrator.active_alert_id("senior-001")
        assert h.orchestrator.state_of("senior-001") == OrchestratorState.SENDING

        resolution = await h.orchestrator.stop_emergency(alert_id)
        again = await h.orchestrator.stop_emergency(alert_id)

        assert resolution.deferred is True, "the alert SMS is still in flight"
        assert again.deferred is True
        assert [r["emergencyType"] for r in relay.requests] == ["SOS Button"]

        relay.gate.set()
        outcome = await start

        assert outcome.kind == OutcomeKind.SUCCESS, "SENT write-back must land before RESOLVED"
        assert outcome.sms_sent is True
        assert outcome.status == AlertStatus.RESOLVED
        assert outcome.delivery_id == "abc"
        stored = await h.store.get(alert_id)
        assert stored.status == AlertStatus.RESOLVED
        assert stored.delivery_id == "abc"
        assert [r["emergencyType"] for r in relay.requests] == ["SOS Button", "Emergency Resolved"]
        await h.orchestrator.aclose()
        await h.client.aclose()

    async def test_deferred_stop_notifies_when_ledger_is_down(self, triggered_at, profiles, davao_fix) -> None:
        h = Harness(triggered_at, profiles, RelayStub(), backend=FailingBackend())
        source = BlockingSource(davao_fix)
        start = asyncio.create_task(
            h.orchestrator.start_emergency("senior-001", "sos", location_source=source),
        )
        for _ in range(5):
            await asyncio.sleep(0)
        alert_id = h.orchestrator.active_alert_id("senior-001")

        resolution = await h.orchestrator.stop_emergency(alert_id)
        assert resolution.deferred is True

        source.release.set()
        outcome = await start

        assert outcome.sms_sent is True
        assert [r["emergencyType"] for r in h.relay.requests] == ["SOS Button", "Emergency Resolved"], (
            "the contact must hear the alert is over even without a ledger entry"
        )
        assert h.orchestrator.state_of("senior-001") == OrchestratorState.IDLE
        await h.orchestrator.aclose()
        await h.client.aclose()


# -----------------------------------------------------------------------
# send_location_update
# -----------------------------------------------------------------------


class TestLocationUpdate:
    async def test_update_sent_for_active_alert(self, harness, davao_fix) -> None:
        outcome = await harness.orchestrator.start_emergency("senior-001", "sos")

        result = await harness.orchestrator.send_location_update(outcome.alert_id, davao_fix)

        assert result is not None and result.success
        update = harness.relay.requests[-1]
        assert update["smsMessage"].startswith("📍 Emergency location update:")
        assert update["emergencyType"] == "Location Update"

    async def test_no_update_after_resolution(self, harness, davao_fix) -> None:
        outcome = await harness.orchestrator.start_emergency("senior-001", "sos")
        await harness.orchestrator.stop_emergency(outcome.alert_id)

        assert await harness.orchestrator.send_location_update(outcome.alert_id, davao_fix) is None

    async def test_no_fix_sends_nothing(self, harness) -> None:
        outcome = await harness.orchestrator.start_emergency("senior-001", "sos")
        sent_before = len(harness.relay.requests)

        result = await harness.orchestrator.send_location_update(outcome.alert_id)

        assert result is None
        assert len(harness.relay.requests) == sent_before
