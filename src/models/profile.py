from __future__ import annotations

from pydantic import BaseModel, Field


class EmergencyContact(BaseModel):
    """A person to notify when the subject raises an alert."""

    name: str = ""
    phone_number: str
    relationship: str = ""
    is_primary: bool = False


class SubjectProfile(BaseModel):
    """The slice of a senior's profile the alert pipeline needs."""

    subject_id: str
    full_name: str = ""
    emergency_contacts: list[EmergencyContact] = Field(default_factory=list)

    @property
    def primary_contact(self) -> EmergencyContact | None:
        for contact in self.emergency_contacts:
            if contact.is_primary:
                return contact
        return self.emergency_contacts[0] if self.emergency_contacts else None
