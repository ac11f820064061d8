"""Best-effort location lookup for emergency alerts.

The provider never blocks an alert on positioning: it tries a cheap
last-known read, falls back to one fresh request, and gives up with
``None`` once the time budget is spent.  Denied permissions and missing
providers are ordinary outcomes here, not errors.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime, timedelta
from typing import Callable, Protocol, runtime_checkable

import structlog

from src.models.alert import LocationSample

logger = structlog.get_logger(__name__)


class LocationPermissionDenied(Exception):
    """The platform refused access to location."""


class LocationUnavailableError(Exception):
    """No location provider is available on this device."""


@runtime_checkable
class LocationSource(Protocol):
    """Platform location capability consumed by :class:`LocationProvider`."""

    async def get_last_known(self) -> LocationSample | None: ...

    async def request_fresh(self, timeout_s: float) -> LocationSample | None: ...


class ClientReportedLocationSource:
    """A fix reported by the mobile client alongside its request.

    The server has no positioning hardware, so a fresh request cannot be
    satisfied and always yields ``None``.
    """

    __slots__ = ("_sample",)

    def __init__(self, sample: LocationSample | None = None) -> None:
        self._sample = sample

    async def get_last_known(self) -> LocationSample | None:
        return self._sample

    async def request_fresh(self, timeout_s: float) -> LocationSample | None:
        return None


class LocationProvider:
    """Bounded location lookup over a :class:`LocationSource`.

    Parameters
    ----------
    source:
        Default source; callers may pass another per lookup.
    freshness_seconds:
        Maximum age of a last-known fix before a fresh request is issued.
    clock:
        Returns the current aware datetime.  Injected for tests.
    """

    __slots__ = ("_clock", "_freshness", "_source")

    def __init__(
        self,
        source: LocationSource | None = None,
        *,
        freshness_seconds: float = 120.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._freshness = timedelta(seconds=freshness_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def get_location(
        self,
        timeout_ms: int,
        source: LocationSource | None = None,
    ) -> LocationSample | None:
        """Return a position within ``timeout_ms`` or ``None``.

        Never raises for permission, provider, or timeout failures.
        """
        src = source or self._source
        if src is None:
            logger.info("location.no_source")
            return None

        start = time.perf_counter()
        try:
            async with asyncio.timeout(timeout_ms / 1000):
                sample = await self._lookup(src, timeout_ms / 1000)
        except TimeoutError:
            logger.warning("location.timeout", timeout_ms=timeout_ms)
            return None
        except LocationPermissionDenied:
            logger.warning("location.permission_denied")
            return None
        except LocationUnavailableError:
            logger.warning("location.provider_unavailable")
            return None

        logger.info(
            "location.resolved",
            found=sample is not None,
            elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return sample

    async def _lookup(self, src: LocationSource, budget_s: float) -> LocationSample | None:
        try:
            last = await src.get_last_known()
        except (LocationPermissionDenied, LocationUnavailableError):
            raise
        except Exception as exc:
            # A broken cached read should still allow the fresh request.
            logger.warning("location.last_known_failed", error=str(exc))
            last = None

        if last is not None and self._is_fresh(last):
            return last

        try:
            fresh = await src.request_fresh(budget_s)
        except (LocationPermissionDenied, LocationUnavailableError):
            raise
        except Exception as exc:
            logger.warning("location.fresh_request_failed", error=str(exc))
            fresh = None

        # A stale fix still beats no fix at all.
        return fresh if fresh is not None else last

    def _is_fresh(self, sample: LocationSample) -> bool:
        obtained = sample.obtained_at
        if obtained.tzinfo is None:
            obtained = obtained.replace(tzinfo=UTC)
        return self._clock() - obtained <= self._freshness
