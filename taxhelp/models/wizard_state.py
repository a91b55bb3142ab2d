"""
wizard_state.py — Per-wizard progress records owned by a Session.

Each wizard kind has its own strongly-typed partial record of exactly the fields
it collects. The variants form a discriminated union on `kind`, so a Session can
only ever hold one wizard and it always matches the current mode.

Invariant: 0 <= cursor <= step count. cursor == step count means the wizard is
awaiting finalization.
"""
from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Record(BaseModel):
    # camelCase on the wire (fullName, w2Income, ...), snake_case in Python
    model_config = ConfigDict(
        validate_assignment=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Collected field records
# ---------------------------------------------------------------------------

class RegistrationData(_Record):
    phone: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    dob: Optional[str] = None            # ISO date YYYY-MM-DD
    country: Optional[str] = None
    state: Optional[str] = None          # enumerated code or free-text region
    filing_status: Optional[str] = None
    income_type: Optional[str] = None


class LoginData(_Record):
    email: Optional[str] = None
    password: Optional[str] = None


class FilingData(_Record):
    w2_income: Optional[str] = None
    form_1099_income: Optional[str] = None
    schedule_c_details: Optional[str] = None
    deductions: Optional[str] = None
    dependents: Optional[str] = None
    education_credits: Optional[str] = None
    medical_expenses: Optional[str] = None
    mileage: Optional[str] = None


class ProfileEditData(_Record):
    field: Optional[str] = None          # one of catalog.EDITABLE_PROFILE_FIELDS
    value: Optional[str] = None


class ReminderData(_Record):
    reminder_type: Optional[str] = None
    due_date: Optional[str] = None


# ---------------------------------------------------------------------------
# Wizard state variants
# ---------------------------------------------------------------------------

class _WizardBase(_Record):
    cursor: int = Field(default=0, ge=0)
    # Invalid-input counter per field, diagnostics only
    retries: dict[str, int] = Field(default_factory=dict)

    def note_retry(self, field: str) -> int:
        self.retries = {**self.retries, field: self.retries.get(field, 0) + 1}
        return self.retries[field]


class RegistrationState(_WizardBase):
    kind: Literal["registration"] = "registration"
    data: RegistrationData = Field(default_factory=RegistrationData)
    phone_verified: bool = False  # phone arrived as a shared contact, not typed


class LoginState(_WizardBase):
    kind: Literal["login"] = "login"
    data: LoginData = Field(default_factory=LoginData)


class FilingState(_WizardBase):
    kind: Literal["filing"] = "filing"
    filing_id: str
    data: FilingData = Field(default_factory=FilingData)
    resumed: bool = False


class ProfileEditState(_WizardBase):
    kind: Literal["profile_edit"] = "profile_edit"
    data: ProfileEditData = Field(default_factory=ProfileEditData)


class ReminderState(_WizardBase):
    kind: Literal["reminder"] = "reminder"
    data: ReminderData = Field(default_factory=ReminderData)


WizardState = Annotated[
    Union[RegistrationState, LoginState, FilingState, ProfileEditState, ReminderState],
    Field(discriminator="kind"),
]
