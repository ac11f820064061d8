"""Emergency alert orchestrator.

Coordinates one alert lifecycle per subject::

    IDLE -> LOCATING -> COMPOSING -> SENDING -> ACTIVE -> RESOLVING -> IDLE

On ``start_emergency`` the emergency number is dialled first and
unconditionally; location lookup and profile resolution then run
concurrently, the message is composed with whatever location arrived in
time, recorded as PENDING, and handed to the SMS gateway.  The final
status (SENT or SEND_FAILED) is written back to the store and reported
to the caller.

Each sub-step degrades on its own: no location still yields an alert, a
failed SMS still leaves the call placed, and a ledger outage does not
stop the SMS.  A started flow runs to completion even if the caller goes
away; ``stop_emergency`` is the only way to end an alert.
"""

from __future__ import annotations

import asyncio
import inspect
from datetime import UTC, datetime
from typing import Any, Callable
from uuid import uuid4

import structlog

from src.models.alert import (
    AlertReason,
    DeliveryResult,
    EmergencyAlert,
    EmergencyOutcome,
    LocationSample,
    ResolutionOutcome,
)
from src.models.enums import AlertStatus, OrchestratorState, OutcomeKind
from src.services.alert_store import AlertNotFound, AlertStore, InvalidTransition
from src.services.composer import AlertComposer
from src.services.dialer import Dialer
from src.services.location import LocationProvider, LocationSource
from src.services.profiles import ProfileDirectory
from src.services.sms_gateway import InvalidPhoneNumber, NotificationGateway, normalize_phone

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class PreconditionError(Exception):
    """The alert cannot be delivered at all (e.g. no emergency contact)."""


class _Flow:
    """Book-keeping for one in-flight or active alert."""

    __slots__ = (
        "alert",
        "alert_id",
        "recorded",
        "resolve_requested",
        "state",
        "subject_id",
        "task",
    )

    def __init__(self, alert_id: str, subject_id: str) -> None:
        self.alert_id = alert_id
        self.subject_id = subject_id
        self.state = OrchestratorState.LOCATING
        self.alert: EmergencyAlert | None = None
        self.recorded = False
        self.resolve_requested = False
        self.task: asyncio.Task[EmergencyOutcome] | None = None


class EmergencyOrchestrator:
    """Runs the emergency alert pipeline.

    All collaborators are injected; the orchestrator owns no I/O of its
    own.  At most one alert is active per subject: a second
    ``start_emergency`` for the same subject returns the first alert's
    outcome with ``duplicate=True`` instead of sending again.

    Parameters
    ----------
    location:
        Bounded location lookup.
    composer:
        Builds alert, resolution and location-update texts.
    gateway:
        Single-attempt SMS delivery.
    store:
        Alert ledger enforcing the status state machine.
    profiles:
        Resolves the subject's name and emergency contact.
    dialer:
        Fire-and-forget emergency call capability.
    emergency_number:
        Number dialled for every alert.
    location_timeout_ms:
        Time budget for the location lookup.
    """

    __slots__ = (
        "_background",
        "_clock",
        "_composer",
        "_dialer",
        "_emergency_number",
        "_flows_by_alert",
        "_flows_by_subject",
        "_gateway",
        "_id_factory",
        "_location",
        "_location_timeout_ms",
        "_profiles",
        "_store",
    )

    def __init__(
        self,
        *,
        location: LocationProvider,
        composer: AlertComposer,
        gateway: NotificationGateway,
        store: AlertStore,
        profiles: ProfileDirectory,
        dialer: Dialer,
        emergency_number: str = "911",
        location_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._location = location
        self._composer = composer
        self._gateway = gateway
        self._store = store
        self._profiles = profiles
        self._dialer = dialer
        self._emergency_number = emergency_number
        self._location_timeout_ms = location_timeout_ms
        self._clock = clock or (lambda: datetime.now(UTC))
        self._id_factory = id_factory or (lambda: str(uuid4()))

        self._flows_by_subject: dict[str, _Flow] = {}
        self._flows_by_alert: dict[str, _Flow] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_emergency(
        self,
        subject_id: str,
        reason: AlertReason | str,
        subject_name: str = "",
        *,
        location_source: LocationSource | None = None,
    ) -> EmergencyOutcome:
        """Raise an alert for ``subject_id`` and report how it went.

        The returned outcome is always determinate: ``success``,
        ``partial`` (call placed, SMS failed) or ``precondition_failed``
        (no usable emergency contact; nothing recorded or sent).
        """
        if isinstance(reason, str):
            reason = AlertReason.parse(reason)

        # Registration happens before the first await so that concurrent
        # starts for one subject always see each other.
        existing = self._flows_by_subject.get(subject_id)
        if existing is not None and existing.task is not None:
            logger.info(
                "orchestrator.duplicate_suppressed",
                subject_id=subject_id,
                alert_id=existing.alert_id,
                state=existing.state,
            )
            outcome = await asyncio.shield(existing.task)
            return outcome.model_copy(update={"duplicate": True})

        flow = _Flow(self._id_factory(), subject_id)
        self._flows_by_subject[subject_id] = flow
        self._flows_by_alert[flow.alert_id] = flow
        flow.task = asyncio.create_task(
            self._run(flow, reason, subject_name, location_source),
            name=f"emergency:{flow.alert_id}",
        )
        self._track(flow.task)

        return await asyncio.shield(flow.task)

    async def stop_emergency(self, alert_id: str) -> ResolutionOutcome:
        """Resolve an alert, then best-effort notify the contact.

        Accepted immediately even while the start flow is still running:
        resolution is then applied right after the flow writes the
        delivery status, so the resolution notice never overtakes the
        alert itself.

        Raises
        ------
        AlertNotFound
            If neither the orchestrator nor the store knows ``alert_id``.
        """
        log = logger.bind(alert_id=alert_id)
        flow = self._flows_by_alert.get(alert_id)

        if flow is not None and flow.task is not None and not flow.task.done():
            # The flow applies the resolution once its delivery status is
            # written; the subject is free to raise a new alert right away.
            flow.resolve_requested = True
            self._release_subject(flow)
            log.info("orchestrator.resolution_deferred", state=flow.state)
            return ResolutionOutcome(alert_id=alert_id, deferred=True)

        if flow is not None and not flow.recorded:
            self._detach(flow)
            # The flow finished but the ledger never accepted the alert.
            log.warning("orchestrator.resolving_unrecorded_alert")
            sent, error = (
                await self._notify_resolution(flow.alert, log)
                if flow.alert is not None
                else (False, None)
            )
            return ResolutionOutcome(
                alert_id=alert_id,
                persisted=False,
                notification_sent=sent,
                notification_error=error,
            )

        alert = await self._store.get(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return await self._resolve(alert, flow, log)

    async def send_location_update(
        self,
        alert_id: str,
        sample: LocationSample | None = None,
        *,
        location_source: LocationSource | None = None,
    ) -> DeliveryResult | None:
        """Send the latest position to the contact of an active alert.

        Returns ``None`` when the alert is not active or no position is
        available; otherwise the delivery result.  Never raises for
        delivery failures.
        """
        alert = await self._store.get(alert_id)
        if alert is None or not alert.is_active:
            logger.info("orchestrator.location_update_skipped", alert_id=alert_id)
            return None

        if sample is None:
            sample = await self._location.get_location(
                self._location_timeout_ms, source=location_source,
            )
        if sample is None:
            logger.info("orchestrator.location_update_no_fix", alert_id=alert_id)
            return None

        return await self._gateway.send(
            alert.destination_phone,
            self._composer.compose_location_update(sample),
            subject_name=alert.subject_name,
            reason="Location Update",
        )

    def state_of(self, subject_id: str) -> OrchestratorState:
        flow = self._flows_by_subject.get(subject_id)
        return flow.state if flow is not None else OrchestratorState.IDLE

    def active_alert_id(self, subject_id: str) -> str | None:
        flow = self._flows_by_subject.get(subject_id)
        return flow.alert_id if flow is not None else None

    async def aclose(self) -> None:
        """Wait for in-flight flows and side-effect tasks to finish."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal: start flow
    # ------------------------------------------------------------------

    async def _run(
        self,
        flow: _Flow,
        reason: AlertReason,
        subject_name: str,
        location_source: LocationSource | None,
    ) -> EmergencyOutcome:
        log = logger.bind(alert_id=flow.alert_id, subject_id=flow.subject_id)
        triggered_at = self._clock()
        log.info("orchestrator.emergency_started", reason=reason.kind)

        # Reaching a dispatcher comes first; nothing below waits on it.
        call_placed = self._dial(log)

        try:
            return await self._deliver(flow, reason, subject_name, location_source, triggered_at, call_placed, log)
        except BaseException:
            self._detach(flow)
            raise

    async def _deliver(
        self,
        flow: _Flow,
        reason: AlertReason,
        subject_name: str,
        location_source: LocationSource | None,
        triggered_at: datetime,
        call_placed: bool,
        log: Any,
    ) -> EmergencyOutcome:
        flow.state = OrchestratorState.LOCATING
        location, profile = await asyncio.gather(
            self._location.get_location(self._location_timeout_ms, source=location_source),
            self._profiles.get_profile(flow.subject_id),
            return_exceptions=True,
        )
        if isinstance(location, BaseException):
            log.error("orchestrator.location_failed", error=str(location))
            location = None
        if isinstance(profile, BaseException):
            log.error("orchestrator.profile_lookup_failed", error=str(profile))
            profile = None

        flow.state = OrchestratorState.COMPOSING
        name = self._composer.resolve_name(subject_name or (profile.full_name if profile else ""))
        composed = self._composer.compose(reason, name, location, triggered_at)

        try:
            destination = self._resolve_destination(profile)
        except PreconditionError as exc:
            log.warning("orchestrator.precondition_failed", error=str(exc))
            self._detach(flow)
            return EmergencyOutcome(
                kind=OutcomeKind.PRECONDITION_FAILED,
                alert_id=flow.alert_id,
                call_placed=call_placed,
                error_reason=str(exc),
                user_message=(
                    "No emergency contact phone number found. "
                    "Add one to your profile so we can send SMS alerts."
                ),
            )

        alert = EmergencyAlert(
            id=flow.alert_id,
            subject_id=flow.subject_id,
            subject_name=name,
            reason=reason,
            triggered_at=triggered_at,
            location=location,
            destination_phone=destination,
            message=composed.message,
        )
        flow.alert = alert

        try:
            await self._store.record(alert)
            flow.recorded = True
        except Exception as exc:
            # Delivery matters more than the ledger entry.
            log.error("orchestrator.record_failed", error=str(exc), exc_info=True)

        flow.state = OrchestratorState.SENDING
        try:
            delivery = await self._gateway.send(
                destination,
                composed.message,
                subject_name=name,
                reason=composed.display_reason,
            )
        except ValueError as exc:
            log.error("orchestrator.send_rejected", error=str(exc))
            delivery = DeliveryResult(success=False, error_reason=str(exc))

        status, error_reason = await self._record_delivery(flow, alert, delivery, log)
        flow.state = OrchestratorState.ACTIVE

        if flow.resolve_requested:
            stored = await self._store.get(flow.alert_id) if flow.recorded else None
            if stored is not None:
                resolution = await self._resolve(stored, flow, log)
                status = AlertStatus.RESOLVED if resolution.persisted else status
            else:
                log.warning("orchestrator.resolving_unrecorded_alert")
                self._detach(flow)
                await self._notify_resolution(alert, log)

        stored_alert = alert.model_copy(update={
            "status": status or alert.status,
            "delivery_id": delivery.provider_message_id if delivery.success else None,
            "error_reason": error_reason,
        })

        if delivery.success and status != AlertStatus.SEND_FAILED and error_reason is None:
            kind = OutcomeKind.SUCCESS
            user_message = f"Emergency contact notified by SMS. Calling {self._emergency_number}."
        else:
            kind = OutcomeKind.PARTIAL
            if call_placed:
                user_message = f"SMS failed, but emergency call placed to {self._emergency_number}."
            else:
                user_message = "SMS failed and the emergency call could not be started."

        log.info(
            "orchestrator.emergency_outcome",
            kind=kind,
            status=status,
            call_placed=call_placed,
            sms_sent=delivery.success,
        )
        return EmergencyOutcome(
            kind=kind,
            alert_id=flow.alert_id,
            call_placed=call_placed,
            sms_sent=delivery.success,
            status=status,
            delivery_id=stored_alert.delivery_id,
            error_reason=error_reason,
            alert=stored_alert,
            user_message=user_message,
        )

    async def _record_delivery(
        self,
        flow: _Flow,
        alert: EmergencyAlert,
        delivery: DeliveryResult,
        log: Any,
    ) -> tuple[AlertStatus | None, str | None]:
        """Write SENT/SEND_FAILED back; returns (stored status, error)."""
        if delivery.success:
            target, kwargs = AlertStatus.SENT, {"delivery_id": delivery.provider_message_id}
        else:
            target, kwargs = AlertStatus.SEND_FAILED, {"error_reason": delivery.error_reason}
        error_reason = None if delivery.success else delivery.error_reason

        if not flow.recorded:
            return target, error_reason

        try:
            updated = await self._store.update_status(alert.id, target, **kwargs)
        except InvalidTransition as exc:
            # Typically a stop that landed while the SMS was in flight.
            log.error("orchestrator.invalid_transition", current=exc.current, requested=exc.requested)
            return exc.current, error_reason or "invalid_transition"
        except Exception as exc:
            log.error("orchestrator.status_update_failed", error=str(exc), exc_info=True)
            return target, error_reason
        return updated.status, error_reason

    def _resolve_destination(self, profile: Any) -> str:
        if profile is None:
            raise PreconditionError("Subject profile not found")
        contact = profile.primary_contact
        if contact is None or not contact.phone_number.strip():
            raise PreconditionError("No emergency contact phone number available")
        try:
            return normalize_phone(contact.phone_number)
        except InvalidPhoneNumber as exc:
            raise PreconditionError(str(exc)) from exc

    def _dial(self, log: Any) -> bool:
        try:
            result = self._dialer.place_call(self._emergency_number)
        except Exception:
            log.error("orchestrator.dial_failed", exc_info=True)
            return False
        if inspect.isawaitable(result):
            self._track(asyncio.ensure_future(result))
        log.info("orchestrator.call_placed", number=self._emergency_number)
        return True

    # ------------------------------------------------------------------
    # Internal: resolution
    # ------------------------------------------------------------------

    async def _resolve(
        self,
        alert: EmergencyAlert,
        flow: _Flow | None,
        log: Any,
    ) -> ResolutionOutcome:
        if flow is not None:
            flow.state = OrchestratorState.RESOLVING

        if alert.status == AlertStatus.RESOLVED:
            if flow is not None:
                self._detach(flow)
            return ResolutionOutcome(alert_id=alert.id, already_resolved=True)

        persisted = True
        try:
            alert = await self._store.update_status(alert.id, AlertStatus.RESOLVED)
        except InvalidTransition:
            if flow is not None:
                self._detach(flow)
            return ResolutionOutcome(alert_id=alert.id, already_resolved=True)
        except Exception as exc:
            log.error("orchestrator.resolve_persist_failed", error=str(exc), exc_info=True)
            persisted = False

        if flow is not None:
            self._detach(flow)
        log.info("orchestrator.emergency_resolved", persisted=persisted)

        sent, error = await self._notify_resolution(alert, log)
        return ResolutionOutcome(
            alert_id=alert.id,
            persisted=persisted,
            notification_sent=sent,
            notification_error=error,
        )

    async def _notify_resolution(self, alert: EmergencyAlert, log: Any) -> tuple[bool, str | None]:
        message = self._composer.compose_resolution(
            alert.subject_name,
            alert.triggered_at,
            alert.resolved_at or self._clock(),
        )
        try:
            result = await self._gateway.send(
                alert.destination_phone,
                message,
                subject_name=alert.subject_name,
                reason="Emergency Resolved",
            )
        except Exception as exc:
            log.warning("orchestrator.resolution_notice_failed", error=str(exc))
            return False, str(exc)
        if not result.success:
            log.warning("orchestrator.resolution_notice_failed", error=result.error_reason)
        return result.success, result.error_reason

    # ------------------------------------------------------------------
    # Internal: book-keeping
    # ------------------------------------------------------------------

    def _release_subject(self, flow: _Flow) -> None:
        if self._flows_by_subject.get(flow.subject_id) is flow:
            del self._flows_by_subject[flow.subject_id]

    def _detach(self, flow: _Flow) -> None:
        flow.state = OrchestratorState.IDLE
        self._release_subject(flow)
        if self._flows_by_alert.get(flow.alert_id) is flow:
            del self._flows_by_alert[flow.alert_id]

    def _track(self, task: asyncio.Future[Any]) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Future[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("orchestrator.background_task_failed", error=str(exc))
