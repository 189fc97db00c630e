"""Pydantic request models for strict input validation.

Shape checks only; event and roster rules are enforced by ``festpass.rules``
so the API and the CLI reject the same payloads with the same reason codes.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------

class ParticipantBody(BaseModel):
    name: str = ""
    email: str = ""
    phone: str | None = None
    college: str | None = None
    photo: str | None = Field(default=None, description="Base64-encoded image")


class EventSelectionBody(BaseModel):
    event: str = Field(..., min_length=1)
    participants: list[ParticipantBody] = Field(default_factory=list)


class RegistrationBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    phone: str | None = None
    college: str | None = None
    photo: str | None = Field(default=None, description="Base64-encoded profile photo")
    events: list[EventSelectionBody | str] = Field(default_factory=list)

    def selections(self) -> list[EventSelectionBody]:
        return [
            EventSelectionBody(event=e) if isinstance(e, str) else e
            for e in self.events
        ]


class ReprocessResponse(BaseModel):
    registration_id: str
    status: str
    job: dict[str, Any] | None = None
