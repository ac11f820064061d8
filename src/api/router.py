"""Main API router combining all route modules.

Versioned endpoints live under ``/api/v1``.  The SMS relay function keeps
its unversioned ``/send-emergency-sms`` path because deployed mobile
clients call it directly.
"""

from __future__ import annotations

from fastapi import APIRouter

from src.api.v1 import emergency, health, relay

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health.router)
api_router.include_router(emergency.router)

relay_router = relay.router
