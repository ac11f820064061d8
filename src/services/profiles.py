"""Subject profile lookup for emergency contact resolution."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import structlog

from src.models.profile import SubjectProfile

logger = structlog.get_logger(__name__)


@runtime_checkable
class ProfileDirectory(Protocol):
    async def get_profile(self, subject_id: str) -> SubjectProfile | None: ...


class InMemoryProfileDirectory:
    """Profiles pushed by the mobile client; production would read the user store."""

    __slots__ = ("_profiles",)

    def __init__(self, profiles: list[SubjectProfile] | None = None) -> None:
        self._profiles: dict[str, SubjectProfile] = {p.subject_id: p for p in profiles or []}

    async def get_profile(self, subject_id: str) -> SubjectProfile | None:
        return self._profiles.get(subject_id)

    async def upsert(self, profile: SubjectProfile) -> None:
        self._profiles[profile.subject_id] = profile
        logger.info(
            "profiles.upserted",
            subject_id=profile.subject_id,
            contacts=len(profile.emergency_contacts),
        )
