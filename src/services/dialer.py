"""Phone-call side effect for emergencies.

Placing the call is fire-and-forget: the orchestrator never waits on it
and never reads a result from it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@runtime_checkable
class Dialer(Protocol):
    """May be implemented with a plain or an ``async`` method."""

    def place_call(self, number: str) -> Any: ...


class LoggingDialer:
    """Records call requests.

    The server cannot dial; the mobile client opens its own dialer when
    the outcome reports ``call_placed``.  The request log is kept for
    auditing.
    """

    __slots__ = ("_calls",)

    def __init__(self) -> None:
        self._calls: list[tuple[str, datetime]] = []

    def place_call(self, number: str) -> None:
        self._calls.append((number, datetime.now(UTC)))
        logger.info("dialer.call_requested", number=number)

    @property
    def calls(self) -> list[str]:
        return [number for number, _ in self._calls]
