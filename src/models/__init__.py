from src.models.alert import (
    AlertReason,
    DeliveryResult,
    EmergencyAlert,
    EmergencyOutcome,
    LocationSample,
    ResolutionOutcome,
)
from src.models.enums import AlertStatus, OrchestratorState, OutcomeKind, ReasonKind
from src.models.profile import EmergencyContact, SubjectProfile

__all__ = [
    "AlertReason",
    "AlertStatus",
    "DeliveryResult",
    "EmergencyAlert",
    "EmergencyContact",
    "EmergencyOutcome",
    "LocationSample",
    "OrchestratorState",
    "OutcomeKind",
    "ReasonKind",
    "ResolutionOutcome",
    "SubjectProfile",
]
