"""Shared fixtures for the SeniorHub alert tests.

All tests run WITHOUT network access: SMS providers are stubbed with
``httpx.MockTransport`` and the alert store uses the in-memory backend.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime

import pytest

# Settings are read once at import time; keep the limiter out of the way
# of the API tests and force the offline channel.
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "10000")
os.environ.setdefault("SENIORHUB_RELAY_RATE_LIMIT_PER_MINUTE", "10000")
os.environ.setdefault("SENIORHUB_SMS_CHANNEL", "mock")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SEMAPHORE_API_KEY", "")

from src.models.alert import AlertReason, EmergencyAlert, LocationSample  # noqa: E402
from src.models.profile import EmergencyContact, SubjectProfile  # noqa: E402

# 2024-03-15 10:30 in Manila.
TRIGGERED_AT = datetime(2024, 3, 15, 2, 30, tzinfo=UTC)


@pytest.fixture
def triggered_at() -> datetime:
    return TRIGGERED_AT


@pytest.fixture
def davao_fix() -> LocationSample:
    return LocationSample(
        latitude=7.0731,
        longitude=125.6128,
        accuracy_meters=12.0,
        obtained_at=TRIGGERED_AT,
    )


@pytest.fixture
def maria_profile() -> SubjectProfile:
    return SubjectProfile(
        subject_id="senior-001",
        full_name="Maria Cruz",
        emergency_contacts=[
            EmergencyContact(name="Juan Cruz", phone_number="+639123456789", relationship="son"),
        ],
    )


@pytest.fixture
def make_alert():
    """Factory for PENDING alerts with sensible defaults."""

    def _make(alert_id: str = "alert-1", **overrides) -> EmergencyAlert:
        fields = {
            "id": alert_id,
            "subject_id": "senior-001",
            "subject_name": "Maria Cruz",
            "reason": AlertReason.sos(),
            "triggered_at": TRIGGERED_AT,
            "location": None,
            "destination_phone": "+639123456789",
            "message": "🚨 SOS ALERT 🚨\n",
        }
        fields.update(overrides)
        return EmergencyAlert(**fields)

    return _make
