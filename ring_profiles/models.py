from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class ProfileForm(BaseModel):
    # Everything is optional at the schema level; ring_profiles.profiles.validation
    # turns bad input into per-field messages instead of a bare 422.
    name: str = ""
    email: str = ""
    username: str = Field(default="", description="Optional public handle, 3-32 chars of [A-Za-z0-9_-]")
    bio: str = ""
    company: str = ""
    position: str = ""
    location: str = ""
    website: str = ""
    linkedin: str = ""
    twitter: str = ""
    github: str = ""


class ProfileUpdateResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    field_errors: dict[str, str] = Field(default_factory=dict)
    username: Optional[str] = None
    username_confirmed: bool = False


UnavailableReason = Literal["invalid", "taken", "temporarily_reserved"]


class UsernameAvailability(BaseModel):
    username: str
    key: str
    available: bool
    reason: Optional[UnavailableReason] = None


class SweepResponse(BaseModel):
    cleaned: int = Field(ge=0)
