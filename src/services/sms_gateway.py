"""SMS delivery for emergency alerts.

``NotificationGateway`` is the only thing the orchestrator talks to; it
wraps exactly one outbound channel:

* **mock** -- logs the message and returns a synthetic id.  Default for
  local development.
* **relay** -- POSTs a JSON request to the SeniorHub SMS relay function,
  which owns the provider credentials.
* **semaphore** -- calls the Semaphore v4 messages API directly.  The
  relay endpoint uses this channel server-side.

Each ``send`` is a single attempt bounded by the request timeout.
Network and provider failures come back as ``DeliveryResult`` values;
only caller mistakes (empty message, unusable number) raise.
"""

from __future__ import annotations

import re
import time
from typing import Any, Final
from uuid import uuid4

import httpx
import structlog

from src.models.alert import DeliveryResult

logger = structlog.get_logger(__name__)

_NON_DIGITS_RE: Final[re.Pattern[str]] = re.compile(r"\D+")

_DEFAULT_TIMEOUT: Final[float] = 10.0


class InvalidPhoneNumber(ValueError):
    """The destination has no digits left after normalisation."""


# ---------------------------------------------------------------------------
# Phone number utilities
# ---------------------------------------------------------------------------


def normalize_phone(number: str) -> str:
    """Strip everything except digits and a leading ``+``.

    ``"(082) 222-8000 "`` becomes ``"0822228000"`` and
    ``"+63 912 345 6789"`` becomes ``"+639123456789"``.

    Raises
    ------
    InvalidPhoneNumber
        If no digits remain.
    """
    stripped = number.strip()
    digits = _NON_DIGITS_RE.sub("", stripped)
    if not digits:
        raise InvalidPhoneNumber(f"Phone number has no digits: {number!r}")
    return f"+{digits}" if stripped.startswith("+") else digits


def mask_phone(number: str) -> str:
    """Keep only the last four digits for logging."""
    if len(number) <= 4:
        return "****"
    return "*" * (len(number) - 4) + number[-4:]


# ---------------------------------------------------------------------------
# Channel implementations
# ---------------------------------------------------------------------------


class _SMSChannelBase:
    """Abstract base for outbound SMS channels."""

    name: str = "base"

    def __init__(
        self,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = client

    async def send(
        self,
        to: str,
        message: str,
        *,
        subject_name: str = "",
        reason: str = "",
    ) -> DeliveryResult:
        raise NotImplementedError

    async def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, timeout=self._timeout)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, json=payload)


class MockChannel(_SMSChannelBase):
    """Logs instead of sending.  For local development and tests."""

    name = "mock"

    async def send(
        self,
        to: str,
        message: str,
        *,
        subject_name: str = "",
        reason: str = "",
    ) -> DeliveryResult:
        logger.info(
            "mock_sms.sent",
            to=mask_phone(to),
            message_preview=message[:80],
            length=len(message),
        )
        return DeliveryResult(success=True, provider_message_id=f"mock_{uuid4().hex[:12]}")


class HttpRelayChannel(_SMSChannelBase):
    """Sends through the SeniorHub SMS relay function.

    Request body: ``seniorName``, ``emergencyType``,
    ``emergencyContactPhone``, ``smsMessage``.  Response body:
    ``{"success": bool, "messageId"?: str, "error"?: str}``.
    """

    name = "relay"

    def __init__(self, url: str, **kwargs: Any) -> None:
        if not url:
            raise ValueError("SMS relay channel requires a relay URL.")
        super().__init__(**kwargs)
        self._url = url

    async def send(
        self,
        to: str,
        message: str,
        *,
        subject_name: str = "",
        reason: str = "",
    ) -> DeliveryResult:
        payload = {
            "seniorName": subject_name,
            "emergencyType": reason,
            "emergencyContactPhone": to,
            "smsMessage": message,
        }
        response = await self._post(self._url, payload)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_success and data.get("success") is True:
            return DeliveryResult(
                success=True,
                provider_message_id=str(data.get("messageId") or "") or None,
            )
        return DeliveryResult(
            success=False,
            error_reason=str(data.get("error") or f"HTTP {response.status_code}"),
        )


class SemaphoreChannel(_SMSChannelBase):
    """Semaphore (semaphore.co) SMS gateway integration.

    Numbers without a ``+`` are treated as national numbers: one leading
    ``0`` is dropped and ``default_country_code`` is prepended.
    """

    name = "semaphore"

    def __init__(
        self,
        api_key: str,
        *,
        sender_name: str = "SeniorHub",
        url: str = "https://api.semaphore.co/api/v4/messages",
        default_country_code: str = "+63",
        **kwargs: Any,
    ) -> None:
        if not api_key:
            raise ValueError("Semaphore channel requires an API key.")
        super().__init__(**kwargs)
        self._api_key = api_key
        self._sender_name = sender_name
        self._url = url
        self._country_code = default_country_code

    def format_number(self, number: str) -> str:
        if number.startswith("+"):
            return number
        return f"{self._country_code}{number.removeprefix('0')}"

    async def send(
        self,
        to: str,
        message: str,
        *,
        subject_name: str = "",
        reason: str = "",
    ) -> DeliveryResult:
        payload = {
            "apikey": self._api_key,
            "number": self.format_number(to),
            "message": message,
            "sendername": self._sender_name,
        }
        response = await self._post(self._url, payload)

        if not response.is_success:
            return DeliveryResult(
                success=False,
                error_reason=f"HTTP {response.status_code}: {response.text[:200]}",
            )

        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, list) and data and isinstance(data[0], dict):
            return DeliveryResult(
                success=True,
                provider_message_id=str(data[0].get("message_id") or "unknown"),
            )
        return DeliveryResult(success=False, error_reason="Invalid response from Semaphore API")


_CHANNELS: Final[dict[str, type[_SMSChannelBase]]] = {
    "mock": MockChannel,
    "relay": HttpRelayChannel,
    "semaphore": SemaphoreChannel,
}


def create_channel(name: str, **options: Any) -> _SMSChannelBase:
    """Instantiate a channel by name (``mock``, ``relay``, ``semaphore``)."""
    if name not in _CHANNELS:
        raise ValueError(
            f"Unknown SMS channel {name!r}. "
            f"Supported: {', '.join(sorted(_CHANNELS))}."
        )
    return _CHANNELS[name](**options)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class NotificationGateway:
    """Channel-agnostic SMS delivery with a single attempt per call.

    Usage::

        gateway = NotificationGateway(create_channel("mock"))
        result = await gateway.send("(082) 222-8000", "Test alert")
        # result.success => True
    """

    __slots__ = ("_channel",)

    def __init__(self, channel: _SMSChannelBase) -> None:
        self._channel = channel

    @property
    def channel_name(self) -> str:
        return self._channel.name

    async def send(
        self,
        destination_phone: str,
        message: str,
        *,
        subject_name: str = "",
        reason: str = "",
    ) -> DeliveryResult:
        """Deliver ``message`` to ``destination_phone``.

        Raises
        ------
        ValueError
            If ``message`` is empty.
        InvalidPhoneNumber
            If the destination normalises to nothing.
        """
        if not message or not message.strip():
            raise ValueError("Refusing to send an empty message.")
        phone = normalize_phone(destination_phone)

        log = logger.bind(channel=self._channel.name, to=mask_phone(phone))
        start = time.perf_counter()

        try:
            result = await self._channel.send(
                phone, message, subject_name=subject_name, reason=reason,
            )
        except httpx.TimeoutException as exc:
            log.error("sms_gateway.timeout", error=str(exc))
            result = DeliveryResult(success=False, error_reason="timeout")
        except Exception as exc:
            log.error("sms_gateway.send_failed", error=str(exc), exc_info=True)
            result = DeliveryResult(success=False, error_reason=str(exc) or type(exc).__name__)

        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        if result.success:
            log.info("sms_gateway.sent", provider_id=result.provider_message_id, elapsed_ms=elapsed_ms)
        else:
            log.warning("sms_gateway.not_delivered", error=result.error_reason, elapsed_ms=elapsed_ms)
        return result
