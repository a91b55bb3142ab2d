"""
session.py — Conversation Session and the user profile it mirrors.

One Session per conversation (chat). It is created on the first inbound event,
mutated by every wizard step and by background sync reconciliation, and
evicted after the inactivity TTL (see store.py).

`profile` is the locally-visible profile: it may be ahead of the server while
`sync_pending` is True (optimistic write-behind), and is replaced by the server
representation once the queued mutation is confirmed.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taxhelp.models.wizard_state import WizardState


class SessionMode(str, Enum):
    idle = "idle"
    registration = "registration"
    login = "login"
    filing = "filing"
    profile_edit = "profile_edit"
    reminder = "reminder"
    ai = "ai"


# Modes that are driven by a step wizard (ai and idle are not)
WIZARD_MODES = frozenset({
    SessionMode.registration,
    SessionMode.login,
    SessionMode.filing,
    SessionMode.profile_edit,
    SessionMode.reminder,
})


class UserProfile(BaseModel):
    """Backend user representation (GET/PATCH /users/me, auth responses)."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: Optional[str] = None             # None until the server has confirmed the account
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    dob: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None
    filing_status: Optional[str] = None
    income_type: Optional[str] = None
    language: str = "en"
    onboarding_complete: Optional[bool] = None
    last_synced_at: Optional[str] = None


class UiState(BaseModel):
    """Keyboard pagination cursors, keyed by the step field they belong to."""
    pages: dict[str, int] = Field(default_factory=dict)


class Session(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    conversation_id: int
    identity: int                        # messenger user id (telegramId on the wire)
    language: str = "en"
    token: Optional[str] = None          # backend bearer token
    profile: Optional[UserProfile] = None
    sync_pending: bool = False           # local profile ahead of the server
    mode: SessionMode = SessionMode.idle
    wizard: Optional[WizardState] = None
    last_activity: float = 0.0
    ui: UiState = Field(default_factory=UiState)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)
