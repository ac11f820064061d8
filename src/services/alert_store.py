"""Alert ledger with an enforced status state machine.

The store is the only state shared between alert flows.  It never
decides a transition on its own; it applies the ones the orchestrator
asks for, and only if they are legal from the alert's *current* status:

    PENDING -> SENT | SEND_FAILED
    PENDING | SENT | SEND_FAILED -> RESOLVED

Every update is a compare-and-swap against the status it was validated
from, so two flows racing on one alert can never overwrite each other.
Serialisation is per alert id; unrelated alerts never wait on each
other.

Two backends are provided:

* ``InMemoryAlertBackend`` -- dict plus one ``asyncio.Lock`` per id.
* ``RedisAlertBackend`` -- orjson documents under ``alert:{id}`` with a
  per-subject sorted-set index; create and CAS both run under
  ``WATCH``/``MULTI``.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from typing import Callable, Final, Protocol, runtime_checkable

import orjson
import redis.asyncio as aioredis
import structlog
from redis.exceptions import WatchError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from src.models.alert import EmergencyAlert
from src.models.enums import AlertStatus

logger = structlog.get_logger(__name__)

_ALLOWED_TRANSITIONS: Final[dict[AlertStatus, frozenset[AlertStatus]]] = {
    AlertStatus.PENDING: frozenset({
        AlertStatus.SENT,
        AlertStatus.SEND_FAILED,
        AlertStatus.RESOLVED,
    }),
    AlertStatus.SENT: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.SEND_FAILED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AlertStoreError(Exception):
    """Base class for alert ledger errors."""


class AlertNotFound(AlertStoreError):
    def __init__(self, alert_id: str) -> None:
        super().__init__(f"No alert with id {alert_id!r}")
        self.alert_id = alert_id


class InvalidTransition(AlertStoreError):
    def __init__(self, alert_id: str, current: AlertStatus, requested: AlertStatus) -> None:
        super().__init__(
            f"Alert {alert_id!r}: transition {current.value} -> {requested.value} is not allowed"
        )
        self.alert_id = alert_id
        self.current = current
        self.requested = requested


class AlertConflict(AlertStoreError):
    """An alert id was re-recorded with different immutable fields."""


def is_allowed(current: AlertStatus, requested: AlertStatus) -> bool:
    return requested in _ALLOWED_TRANSITIONS[current]


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class AlertBackend(Protocol):
    """Persistence capability behind :class:`AlertStore`."""

    async def put_if_absent(self, alert: EmergencyAlert) -> EmergencyAlert | None:
        """Insert ``alert``; return the already-stored alert if the id exists."""
        ...

    async def get(self, alert_id: str) -> EmergencyAlert | None: ...

    async def compare_and_swap_status(
        self,
        alert_id: str,
        expected: AlertStatus,
        updated: EmergencyAlert,
    ) -> bool:
        """Replace the alert with ``updated`` iff its status is ``expected``."""
        ...

    async def query_by_subject(self, subject_id: str) -> list[EmergencyAlert]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryAlertBackend:
    """Process-local ledger.  Copies on the way in and out."""

    __slots__ = ("_alerts", "_by_subject", "_locks")

    def __init__(self) -> None:
        self._alerts: dict[str, EmergencyAlert] = {}
        self._by_subject: dict[str, list[str]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, alert_id: str) -> asyncio.Lock:
        lock = self._locks.get(alert_id)
        if lock is None:
            lock = self._locks[alert_id] = asyncio.Lock()
        return lock

    async def put_if_absent(self, alert: EmergencyAlert) -> EmergencyAlert | None:
        async with self._lock_for(alert.id):
            existing = self._alerts.get(alert.id)
            if existing is not None:
                return existing.model_copy(deep=True)
            self._alerts[alert.id] = alert.model_copy(deep=True)
            self._by_subject.setdefault(alert.subject_id, []).append(alert.id)
            return None

    async def get(self, alert_id: str) -> EmergencyAlert | None:
        alert = self._alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert is not None else None

    async def compare_and_swap_status(
        self,
        alert_id: str,
        expected: AlertStatus,
        updated: EmergencyAlert,
    ) -> bool:
        async with self._lock_for(alert_id):
            current = self._alerts.get(alert_id)
            if current is None or current.status != expected:
                return False
            self._alerts[alert_id] = updated.model_copy(deep=True)
            return True

    async def query_by_subject(self, subject_id: str) -> list[EmergencyAlert]:
        ids = self._by_subject.get(subject_id, [])
        # Insertion order breaks ties between identical timestamps.
        ordered = sorted(
            enumerate(ids),
            key=lambda pair: (self._alerts[pair[1]].triggered_at, pair[0]),
            reverse=True,
        )
        return [self._alerts[alert_id].model_copy(deep=True) for _, alert_id in ordered]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    @property
    def size(self) -> int:
        return len(self._alerts)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


def _dumps(alert: EmergencyAlert) -> bytes:
    return orjson.dumps(alert.model_dump(mode="json"))


def _loads(raw: bytes) -> EmergencyAlert:
    return EmergencyAlert.model_validate(orjson.loads(raw))


_retry_on_watch = retry(
    retry=retry_if_exception_type(WatchError),
    stop=stop_after_attempt(5),
    wait=wait_random(min=0, max=0.05),
    reraise=True,
)


class RedisAlertBackend:
    """Redis-backed ledger using ``redis.asyncio`` with connection pooling.

    Pass ``client`` to reuse an existing connection instead of opening a
    pool from ``url``.
    """

    __slots__ = ("_pool", "_prefix", "_redis")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        max_connections: int = 20,
        key_prefix: str = "seniorhub:",
        client: aioredis.Redis | None = None,
    ) -> None:
        if client is not None:
            self._pool = None
            self._redis = client
        else:
            self._pool = aioredis.ConnectionPool.from_url(
                url,
                max_connections=max_connections,
                decode_responses=False,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)
        self._prefix = key_prefix

    def _alert_key(self, alert_id: str) -> str:
        return f"{self._prefix}alert:{alert_id}"

    def _subject_key(self, subject_id: str) -> str:
        return f"{self._prefix}subject:{subject_id}:alerts"

    @_retry_on_watch
    async def put_if_absent(self, alert: EmergencyAlert) -> EmergencyAlert | None:
        key = self._alert_key(alert.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            raw = await pipe.get(key)
            if raw is not None:
                # The index entry belongs to whoever created the record.
                await pipe.unwatch()
                return _loads(raw)
            pipe.multi()
            pipe.set(key, _dumps(alert))
            pipe.zadd(
                self._subject_key(alert.subject_id),
                {alert.id: alert.triggered_at.timestamp()},
            )
            await pipe.execute()
        return None

    async def get(self, alert_id: str) -> EmergencyAlert | None:
        raw = await self._redis.get(self._alert_key(alert_id))
        return _loads(raw) if raw is not None else None

    @_retry_on_watch
    async def compare_and_swap_status(
        self,
        alert_id: str,
        expected: AlertStatus,
        updated: EmergencyAlert,
    ) -> bool:
        key = self._alert_key(alert_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            raw = await pipe.get(key)
            if raw is None or _loads(raw).status != expected:
                await pipe.unwatch()
                return False
            pipe.multi()
            pipe.set(key, _dumps(updated))
            await pipe.execute()
        return True

    async def query_by_subject(self, subject_id: str) -> list[EmergencyAlert]:
        ids = await self._redis.zrevrange(self._subject_key(subject_id), 0, -1)
        if not ids:
            return []
        keys = [self._alert_key(i.decode() if isinstance(i, bytes) else i) for i in ids]
        raws = await self._redis.mget(keys)
        return [_loads(raw) for raw in raws if raw is not None]

    async def ping(self) -> bool:
        """Return *True* if the Redis server is reachable."""
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        if self._pool is not None:
            await self._pool.aclose()


# ---------------------------------------------------------------------------
# AlertStore  --  public API
# ---------------------------------------------------------------------------


class AlertStore:
    """State-machine-enforcing facade over an :class:`AlertBackend`.

    Parameters
    ----------
    backend:
        Persistence backend.  Defaults to :class:`InMemoryAlertBackend`.
    clock:
        Returns the current aware datetime; stamps ``resolved_at``.
    """

    __slots__ = ("_backend", "_clock")

    def __init__(
        self,
        backend: AlertBackend | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._backend: AlertBackend = backend or InMemoryAlertBackend()
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def backend(self) -> AlertBackend:
        return self._backend

    async def record(self, alert: EmergencyAlert) -> str:
        """Persist a new alert.  Re-recording an identical alert is a no-op.

        Raises
        ------
        AlertConflict
            If the id exists with different immutable fields.
        """
        existing = await self._backend.put_if_absent(alert)
        if existing is None:
            logger.info(
                "alert_store.recorded",
                alert_id=alert.id,
                subject_id=alert.subject_id,
                status=alert.status,
            )
            return alert.id

        if existing.immutable_fields() != alert.immutable_fields():
            raise AlertConflict(f"Alert {alert.id!r} already recorded with different contents")
        logger.debug("alert_store.record_duplicate_ignored", alert_id=alert.id)
        return alert.id

    async def update_status(
        self,
        alert_id: str,
        new_status: AlertStatus,
        *,
        delivery_id: str | None = None,
        error_reason: str | None = None,
    ) -> EmergencyAlert:
        """Move an alert to ``new_status`` and return the stored result.

        Raises
        ------
        AlertNotFound
            If the alert was never recorded.
        InvalidTransition
            If the move is not allowed from the current status.  The
            stored record is left untouched.
        """
        if delivery_id is not None and new_status != AlertStatus.SENT:
            raise ValueError("delivery_id may only accompany a SENT transition")

        while True:
            current = await self._backend.get(alert_id)
            if current is None:
                raise AlertNotFound(alert_id)
            if not is_allowed(current.status, new_status):
                logger.warning(
                    "alert_store.transition_rejected",
                    alert_id=alert_id,
                    current=current.status,
                    requested=new_status,
                )
                raise InvalidTransition(alert_id, current.status, new_status)

            changes: dict[str, object] = {"status": new_status}
            if new_status == AlertStatus.SENT:
                changes["delivery_id"] = delivery_id
            elif new_status == AlertStatus.SEND_FAILED:
                changes["error_reason"] = error_reason
            elif new_status == AlertStatus.RESOLVED:
                changes["resolved_at"] = self._clock()
            updated = current.model_copy(update=changes)

            if await self._backend.compare_and_swap_status(alert_id, current.status, updated):
                logger.info(
                    "alert_store.status_updated",
                    alert_id=alert_id,
                    previous=current.status,
                    status=new_status,
                )
                return updated
            # Lost a race: re-read and re-validate against the new status.
            logger.debug("alert_store.cas_retry", alert_id=alert_id)

    async def get(self, alert_id: str) -> EmergencyAlert | None:
        return await self._backend.get(alert_id)

    async def find_by_subject(self, subject_id: str) -> list[EmergencyAlert]:
        """All alerts for ``subject_id``, newest first."""
        return await self._backend.query_by_subject(subject_id)

    async def ping(self) -> bool:
        return await self._backend.ping()

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self._backend.close()
