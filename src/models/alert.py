"""Emergency alert data model.

``EmergencyAlert`` is the audit record of one alert lifecycle.  Its
identity and composed message are frozen at trigger time; only the
status-related fields move, and only through the alert store.
"""

from __future__ import annotations

from datetime import datetime
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import AlertStatus, OutcomeKind, ReasonKind

# Human labels for the fixed trigger kinds.  SERVICE_CALL and CUSTOM
# render caller-supplied text instead.
_REASON_LABELS: Final[dict[ReasonKind, str]] = {
    ReasonKind.SOS: "SOS Button",
    ReasonKind.MEDICAL: "Medical Emergency",
    ReasonKind.FALL: "Fall Detected",
    ReasonKind.PANIC: "Panic Alert",
}

_REASON_ALIASES: Final[dict[str, ReasonKind]] = {
    "sos": ReasonKind.SOS,
    "sos button": ReasonKind.SOS,
    "medical": ReasonKind.MEDICAL,
    "fall": ReasonKind.FALL,
    "panic": ReasonKind.PANIC,
}


class LocationSample(BaseModel):
    """A single position fix.  Never persisted on its own."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    accuracy_meters: float | None = Field(default=None, ge=0.0)
    obtained_at: datetime


class AlertReason(BaseModel):
    """What triggered the alert.

    ``service_name`` is only meaningful for ``SERVICE_CALL``; ``raw`` holds
    the untouched text of a ``CUSTOM`` reason.
    """

    model_config = ConfigDict(frozen=True)

    kind: ReasonKind
    service_name: str | None = None
    raw: str | None = None

    @classmethod
    def sos(cls) -> AlertReason:
        return cls(kind=ReasonKind.SOS)

    @classmethod
    def service_call(cls, service_name: str) -> AlertReason:
        return cls(kind=ReasonKind.SERVICE_CALL, service_name=service_name)

    @classmethod
    def parse(cls, raw: str, service_name: str | None = None) -> AlertReason:
        """Map free text (e.g. from a UI button tag) onto a reason.

        Any text containing "SOS" (e.g. "SOS Alert") is an SOS reason.
        Unrecognised text becomes a ``CUSTOM`` reason carrying the input
        verbatim.
        """
        key = raw.strip().lower()
        if key == ReasonKind.SERVICE_CALL.value and service_name:
            return cls.service_call(service_name)
        kind = _REASON_ALIASES.get(key)
        if kind is not None:
            return cls(kind=kind)
        if "SOS" in raw:
            return cls.sos()
        return cls(kind=ReasonKind.CUSTOM, raw=raw)

    @property
    def label(self) -> str:
        if self.kind == ReasonKind.SERVICE_CALL:
            return self.service_name or ""
        if self.kind == ReasonKind.CUSTOM:
            return self.raw or ""
        return _REASON_LABELS[self.kind]


class EmergencyAlert(BaseModel):
    """One alert lifecycle, keyed by a client-generated id."""

    id: str
    subject_id: str
    subject_name: str
    reason: AlertReason
    triggered_at: datetime
    location: LocationSample | None = None
    destination_phone: str
    message: str
    status: AlertStatus = AlertStatus.PENDING
    delivery_id: str | None = None
    error_reason: str | None = None
    resolved_at: datetime | None = None

    def immutable_fields(self) -> dict:
        """The fields fixed at creation, used for idempotent re-recording."""
        return self.model_dump(
            mode="json",
            include={
                "id",
                "subject_id",
                "subject_name",
                "reason",
                "triggered_at",
                "location",
                "destination_phone",
                "message",
            },
        )

    @property
    def is_active(self) -> bool:
        return self.status in (AlertStatus.SENT, AlertStatus.SEND_FAILED)


class DeliveryResult(BaseModel):
    """Outcome of exactly one send attempt."""

    success: bool
    provider_message_id: str | None = None
    error_reason: str | None = None


class EmergencyOutcome(BaseModel):
    """What the UI shows once ``start_emergency`` returns."""

    kind: OutcomeKind
    alert_id: str
    call_placed: bool
    sms_sent: bool = False
    status: AlertStatus | None = None
    delivery_id: str | None = None
    error_reason: str | None = None
    duplicate: bool = False
    alert: EmergencyAlert | None = None
    user_message: str = ""


class ResolutionOutcome(BaseModel):
    """Result of ``stop_emergency``.  Resolution itself always succeeds."""

    alert_id: str
    resolved: bool = True
    persisted: bool = True
    deferred: bool = False
    already_resolved: bool = False
    notification_sent: bool = False
    notification_error: str | None = None
