"""
models/__init__.py — re-exports the conversation data model so callers can
`from taxhelp.models import Session, SessionMode, ...`.
"""
from taxhelp.models.session import (
    WIZARD_MODES,
    Session,
    SessionMode,
    UiState,
    UserProfile,
)
from taxhelp.models.wizard_state import (
    FilingData,
    FilingState,
    LoginData,
    LoginState,
    ProfileEditData,
    ProfileEditState,
    RegistrationData,
    RegistrationState,
    ReminderData,
    ReminderState,
    WizardState,
)

__all__ = [
    "WIZARD_MODES",
    "Session",
    "SessionMode",
    "UiState",
    "UserProfile",
    "FilingData",
    "FilingState",
    "LoginData",
    "LoginState",
    "ProfileEditData",
    "ProfileEditState",
    "RegistrationData",
    "RegistrationState",
    "ReminderData",
    "ReminderState",
    "WizardState",
]
