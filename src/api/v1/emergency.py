"""Emergency alert API endpoints for SeniorHub.

Thin HTTP layer over :class:`~src.pipeline.orchestrator.EmergencyOrchestrator`.
The mobile client reports its last-known position with each request; the
server never positions the device itself.
"""

from __future__ import annotations

from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from src.models.alert import (
    AlertReason,
    DeliveryResult,
    EmergencyAlert,
    EmergencyOutcome,
    LocationSample,
    ResolutionOutcome,
)
from src.models.profile import EmergencyContact, SubjectProfile
from src.services.alert_store import AlertNotFound
from src.services.location import ClientReportedLocationSource

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/emergency", tags=["emergency"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class ReportedFix(BaseModel):
    """Optional client-side position fields shared by several requests."""

    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    accuracy_meters: float | None = Field(default=None, ge=0.0)
    obtained_at: datetime | None = None

    def to_sample(self) -> LocationSample | None:
        if self.latitude is None or self.longitude is None:
            return None
        return LocationSample(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy_meters=self.accuracy_meters,
            obtained_at=self.obtained_at or datetime.now(UTC),
        )


class StartEmergencyRequest(ReportedFix):
    subject_id: str = Field(..., min_length=1, max_length=128)
    subject_name: str = Field(default="", max_length=200)
    reason: str = Field(default="sos", min_length=1, max_length=200)
    service_name: str | None = Field(default=None, max_length=200)


class LocationUpdateRequest(ReportedFix):
    pass


class ContactIn(BaseModel):
    name: str = Field(default="", max_length=200)
    phone_number: str = Field(..., min_length=1, max_length=32)
    relationship: str = Field(default="", max_length=100)
    is_primary: bool = False


class ProfileRequest(BaseModel):
    full_name: str = Field(default="", max_length=200)
    emergency_contacts: list[ContactIn] = Field(default_factory=list, max_length=10)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Emergency service is not available.")
    return orchestrator


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/start", response_model=EmergencyOutcome)
async def start_emergency(body: StartEmergencyRequest, request: Request) -> EmergencyOutcome:
    """Trigger an emergency for a subject.

    Always answers with a determinate outcome; a missing emergency
    contact is reported as ``precondition_failed`` rather than an HTTP
    error so the app can show its guidance text.
    """
    orchestrator = _orchestrator(request)
    reason = AlertReason.parse(body.reason, service_name=body.service_name)
    source = ClientReportedLocationSource(body.to_sample())

    outcome = await orchestrator.start_emergency(
        body.subject_id,
        reason,
        body.subject_name,
        location_source=source,
    )
    logger.info(
        "api.emergency.started",
        alert_id=outcome.alert_id,
        kind=outcome.kind,
        duplicate=outcome.duplicate,
    )
    return outcome


@router.post("/{alert_id}/resolve", response_model=ResolutionOutcome)
async def resolve_emergency(alert_id: str, request: Request) -> ResolutionOutcome:
    """Mark an alert as resolved and notify the emergency contact."""
    orchestrator = _orchestrator(request)
    try:
        return await orchestrator.stop_emergency(alert_id)
    except AlertNotFound:
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found.")


@router.post("/{alert_id}/location", response_model=DeliveryResult | None)
async def send_location_update(
    alert_id: str, body: LocationUpdateRequest, request: Request,
) -> DeliveryResult | None:
    """Forward a fresh client position to the contact of an active alert.

    Returns ``null`` when the alert is no longer active.
    """
    orchestrator = _orchestrator(request)
    store = request.app.state.store
    if await store.get(alert_id) is None:
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found.")

    sample = body.to_sample()
    if sample is None:
        raise HTTPException(status_code=400, detail="latitude and longitude are required.")
    return await orchestrator.send_location_update(alert_id, sample)


@router.get("/subjects/{subject_id}/alerts", response_model=list[EmergencyAlert])
async def list_alerts(subject_id: str, request: Request) -> list[EmergencyAlert]:
    """Alert history for a subject, newest first."""
    return await request.app.state.store.find_by_subject(subject_id)


@router.put("/subjects/{subject_id}/profile", response_model=SubjectProfile)
async def put_profile(subject_id: str, body: ProfileRequest, request: Request) -> SubjectProfile:
    """Register or replace the subject's name and emergency contacts."""
    profile = SubjectProfile(
        subject_id=subject_id,
        full_name=body.full_name,
        emergency_contacts=[
            EmergencyContact(**contact.model_dump()) for contact in body.emergency_contacts
        ],
    )
    await request.app.state.profiles.upsert(profile)
    return profile
