"""Alert text composition.

Builds the SMS body that reaches the emergency contact.  The layout is
read by people on plain feature phones and by the relay's logs, so its
line order and markers are fixed:

1. Alert header.
2. "<name> may need immediate help" line.
3. Location line (coordinates, or the unavailable placeholder).
4. Emergency type line.
5. Timestamp line in local time.
6. Google Maps link, only when a location is known.

Everything here is pure: the same inputs always yield the same bytes.
Month names are spelled from a fixed table rather than ``%b`` so the
output does not depend on the process locale.
"""

from __future__ import annotations

from datetime import datetime, tzinfo
from typing import Final, NamedTuple
from zoneinfo import ZoneInfo

from src.models.alert import AlertReason, LocationSample

ALERT_HEADER: Final[str] = "🚨 SOS ALERT 🚨"
LOCATION_UNAVAILABLE: Final[str] = "Location unavailable"
DEFAULT_SUBJECT_NAME: Final[str] = "Senior User"
MAPS_URL: Final[str] = "https://maps.google.com/?q={lat},{lng}"

_MONTHS: Final[tuple[str, ...]] = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


class ComposedAlert(NamedTuple):
    message: str
    display_reason: str


def format_timestamp(moment: datetime, tz: tzinfo) -> str:
    """Render ``moment`` as ``"MMM dd, yyyy at h:mm AM"`` in ``tz``.

    Naive datetimes are taken to already be in ``tz``.
    """
    local = moment.astimezone(tz) if moment.tzinfo is not None else moment
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return (
        f"{_MONTHS[local.month - 1]} {local.day:02d}, {local.year} "
        f"at {hour}:{local.minute:02d} {meridiem}"
    )


def map_link(location: LocationSample) -> str:
    return MAPS_URL.format(lat=location.latitude, lng=location.longitude)


class AlertComposer:
    """Turns alert inputs into the canonical SMS text.

    Parameters
    ----------
    tz:
        Zone used for the timestamp line.  Accepts an IANA name.
    default_subject_name:
        Substituted when the caller has no name for the subject.
    """

    __slots__ = ("_default_name", "_tz")

    def __init__(
        self,
        tz: tzinfo | str = "Asia/Manila",
        default_subject_name: str = DEFAULT_SUBJECT_NAME,
    ) -> None:
        self._tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self._default_name = default_subject_name or DEFAULT_SUBJECT_NAME

    def resolve_name(self, subject_name: str) -> str:
        return subject_name.strip() or self._default_name

    def compose(
        self,
        reason: AlertReason,
        subject_name: str,
        location: LocationSample | None,
        triggered_at: datetime,
    ) -> ComposedAlert:
        """Build the alert message.

        Returns
        -------
        ComposedAlert
            ``message`` is the full SMS body; ``display_reason`` is the
            human label used on the emergency type line.
        """
        name = self.resolve_name(subject_name)
        display_reason = reason.label

        if location is not None:
            location_text = f"Lat: {location.latitude}, Lng: {location.longitude}"
        else:
            location_text = LOCATION_UNAVAILABLE

        lines = [
            ALERT_HEADER,
            f"Emergency Alert: {name} may need immediate help. Please Try To Reach her/him.",
            "",
            f"📍 Location: {location_text}",
            f"🩺 Emergency Type: {display_reason}",
            f"⏰ Timestamp: {format_timestamp(triggered_at, self._tz)}",
        ]
        if location is not None:
            lines.extend([
                "",
                "🗺️ Click this Google Maps link for exact location:",
                map_link(location),
            ])

        return ComposedAlert(message="\n".join(lines) + "\n", display_reason=display_reason)

    def compose_resolution(
        self,
        subject_name: str,
        triggered_at: datetime,
        resolved_at: datetime,
    ) -> str:
        minutes = max(int((resolved_at - triggered_at).total_seconds() // 60), 0)
        name = self.resolve_name(subject_name)
        return (
            f"✅ EMERGENCY RESOLVED: {name}'s emergency alert has been resolved. "
            f"Duration: {minutes} minutes."
        )

    @staticmethod
    def compose_location_update(location: LocationSample) -> str:
        text = f"📍 Emergency location update: {map_link(location)}"
        if location.accuracy_meters is not None:
            text += f" (Accuracy: ±{int(location.accuracy_meters)}m)"
        return text
