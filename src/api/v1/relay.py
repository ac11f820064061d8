"""SMS relay function.

Mobile clients that must not hold provider credentials POST here; the
server forwards the message through its own channel (normally
Semaphore).  The body format is shared with
:class:`~src.services.sms_gateway.HttpRelayChannel`.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, ConfigDict, Field

from src.services.sms_gateway import InvalidPhoneNumber, mask_phone

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["sms-relay"])

_MISSING_FIELDS_ERROR = "Missing required fields: emergencyContactPhone and smsMessage"


class RelaySMSRequest(BaseModel):
    """Relay request body.  Field names follow the mobile client's JSON."""

    model_config = ConfigDict(populate_by_name=True)

    senior_name: str = Field(default="", alias="seniorName")
    emergency_type: str = Field(default="", alias="emergencyType")
    emergency_contact_phone: str = Field(default="", alias="emergencyContactPhone")
    emergency_contact_name: str = Field(default="", alias="emergencyContactName")
    sms_message: str = Field(default="", alias="smsMessage")
    service_name: str = Field(default="", alias="serviceName")
    service_phone: str = Field(default="", alias="servicePhone")


@router.post("/send-emergency-sms")
async def send_emergency_sms(body: RelaySMSRequest, request: Request) -> ORJSONResponse:
    """Send one emergency SMS on behalf of a client.

    Returns 400 when the phone or message is missing, 200 with the
    provider message id on success, and 500 with the provider error
    otherwise.
    """
    if not body.emergency_contact_phone.strip() or not body.sms_message.strip():
        return ORJSONResponse(
            status_code=400,
            content={"success": False, "error": _MISSING_FIELDS_ERROR},
        )

    gateway = request.app.state.relay_gateway
    log = logger.bind(
        to=mask_phone(body.emergency_contact_phone),
        emergency_type=body.emergency_type,
        channel=gateway.channel_name,
    )

    try:
        result = await gateway.send(
            body.emergency_contact_phone,
            body.sms_message,
            subject_name=body.senior_name,
            reason=body.emergency_type,
        )
    except InvalidPhoneNumber as exc:
        log.warning("relay.invalid_phone")
        return ORJSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    if not result.success:
        log.error("relay.send_failed", error=result.error_reason)
        return ORJSONResponse(
            status_code=500,
            content={"success": False, "error": result.error_reason or "Failed to send SMS"},
        )

    log.info("relay.sent", message_id=result.provider_message_id)
    return ORJSONResponse(
        status_code=200,
        content={
            "success": True,
            "messageId": result.provider_message_id,
            "message": "Emergency SMS sent successfully",
        },
    )
