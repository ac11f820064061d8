"""SeniorHub service layer -- location, composition, SMS delivery, alert ledger.

Every service here is I/O-bound and async; the orchestrator in
:mod:`src.pipeline.orchestrator` composes them.
"""

from __future__ import annotations

from src.services.alert_store import (
    AlertConflict,
    AlertNotFound,
    AlertStore,
    AlertStoreError,
    InMemoryAlertBackend,
    InvalidTransition,
    RedisAlertBackend,
)
from src.services.composer import AlertComposer, ComposedAlert, format_timestamp, map_link
from src.services.dialer import Dialer, LoggingDialer
from src.services.location import (
    ClientReportedLocationSource,
    LocationPermissionDenied,
    LocationProvider,
    LocationSource,
    LocationUnavailableError,
)
from src.services.profiles import InMemoryProfileDirectory, ProfileDirectory
from src.services.sms_gateway import (
    HttpRelayChannel,
    InvalidPhoneNumber,
    MockChannel,
    NotificationGateway,
    SemaphoreChannel,
    create_channel,
    normalize_phone,
)

__all__ = [
    "AlertComposer",
    "AlertConflict",
    "AlertNotFound",
    "AlertStore",
    "AlertStoreError",
    "ClientReportedLocationSource",
    "ComposedAlert",
    "Dialer",
    "HttpRelayChannel",
    "InMemoryAlertBackend",
    "InMemoryProfileDirectory",
    "InvalidPhoneNumber",
    "InvalidTransition",
    "LocationPermissionDenied",
    "LocationProvider",
    "LocationSource",
    "LocationUnavailableError",
    "LoggingDialer",
    "MockChannel",
    "NotificationGateway",
    "ProfileDirectory",
    "RedisAlertBackend",
    "SemaphoreChannel",
    "create_channel",
    "format_timestamp",
    "map_link",
    "normalize_phone",
]
