from __future__ import annotations

from enum import StrEnum


class ReasonKind(StrEnum):
    __slots__ = ()

    SOS = "sos"
    MEDICAL = "medical"
    FALL = "fall"
    PANIC = "panic"
    SERVICE_CALL = "service_call"
    CUSTOM = "custom"


class AlertStatus(StrEnum):
    __slots__ = ()

    PENDING = "pending"
    SENT = "sent"
    SEND_FAILED = "send_failed"
    RESOLVED = "resolved"


class OrchestratorState(StrEnum):
    __slots__ = ()

    IDLE = "idle"
    LOCATING = "locating"
    COMPOSING = "composing"
    SENDING = "sending"
    ACTIVE = "active"
    RESOLVING = "resolving"


class OutcomeKind(StrEnum):
    __slots__ = ()

    SUCCESS = "success"
    PARTIAL = "partial"
    PRECONDITION_FAILED = "precondition_failed"
