"""
steps.py — Immutable step definitions for every wizard.

A StepDefinition names the field it fills, the prompt the front-end renders,
the kind of value it accepts and, for selects, its option set. Steps are never
mutated at runtime; the only dynamic part is which list applies (profile edit
picks the value step from the field being edited) and which options a
dependent step offers (state/region options depend on the chosen country).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from taxhelp.catalog import (
    COUNTRIES,
    EDITABLE_PROFILE_FIELDS,
    FILING_STATUSES,
    INCOME_TYPES,
    REMINDER_TYPES,
    Option,
)
from taxhelp.models import (
    FilingState,
    LoginState,
    ProfileEditState,
    RegistrationState,
    ReminderState,
)


class ValueKind(str, Enum):
    text = "text"
    email = "email"
    password = "password"
    date = "date"
    phone = "phone"
    single_select = "single_select"
    paginated_select = "paginated_select"
    optional = "optional"              # free text that may be skipped


@dataclass(frozen=True)
class StepDefinition:
    field: str
    prompt_key: str
    kind: ValueKind
    options: Optional[tuple[Option, ...]] = None
    # Field whose value selects this step's options (state depends on country)
    depends_on: Optional[str] = None

    @property
    def skippable(self) -> bool:
        return self.kind == ValueKind.optional

    @property
    def is_select(self) -> bool:
        return self.kind in (ValueKind.single_select, ValueKind.paginated_select)


# ---------------------------------------------------------------------------
# Registration — 8 steps
# ---------------------------------------------------------------------------

REGISTRATION_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition("phone", "registration.ask_phone", ValueKind.phone),
    StepDefinition("full_name", "registration.ask_full_name", ValueKind.text),
    StepDefinition("email", "registration.ask_email", ValueKind.email),
    StepDefinition("dob", "registration.ask_dob", ValueKind.date),
    StepDefinition("country", "registration.ask_country", ValueKind.paginated_select, COUNTRIES),
    StepDefinition(
        "state", "registration.ask_state", ValueKind.paginated_select, depends_on="country"
    ),
    StepDefinition(
        "filing_status", "registration.ask_filing_status", ValueKind.single_select, FILING_STATUSES
    ),
    StepDefinition(
        "income_type", "registration.ask_income_type", ValueKind.single_select, INCOME_TYPES
    ),
)

LOGIN_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition("email", "login.ask_email", ValueKind.email),
    StepDefinition("password", "login.ask_password", ValueKind.password),
)

FILING_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition("w2_income", "filing.prompt_w2", ValueKind.text),
    StepDefinition("form_1099_income", "filing.prompt_1099", ValueKind.text),
    StepDefinition("schedule_c_details", "filing.prompt_schedule_c", ValueKind.text),
    StepDefinition("deductions", "filing.prompt_deductions", ValueKind.text),
    StepDefinition("dependents", "filing.prompt_dependents", ValueKind.text),
    StepDefinition("education_credits", "filing.prompt_education", ValueKind.optional),
    StepDefinition("medical_expenses", "filing.prompt_medical", ValueKind.optional),
    StepDefinition("mileage", "filing.prompt_mileage", ValueKind.optional),
)

REMINDER_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition(
        "reminder_type", "reminder.prompt_type", ValueKind.single_select, REMINDER_TYPES
    ),
    StepDefinition("due_date", "reminder.choose_deadline", ValueKind.date),
)

# ---------------------------------------------------------------------------
# Profile edit — pick a field, then a value step shaped by that field
# ---------------------------------------------------------------------------

PROFILE_FIELD_STEP = StepDefinition(
    "field", "profile.choose_field", ValueKind.single_select, EDITABLE_PROFILE_FIELDS
)

PROFILE_VALUE_STEPS: dict[str, StepDefinition] = {
    "full_name": StepDefinition("value", "profile.update_prompt", ValueKind.text),
    "phone": StepDefinition("value", "profile.update_prompt", ValueKind.phone),
    "filing_status": StepDefinition(
        "value", "profile.update_prompt", ValueKind.single_select, FILING_STATUSES
    ),
    "income_type": StepDefinition(
        "value", "profile.update_prompt", ValueKind.single_select, INCOME_TYPES
    ),
    "state": StepDefinition("value", "profile.update_prompt", ValueKind.text),
}

# Until a field is chosen the value step is a plain text placeholder
_PROFILE_VALUE_PLACEHOLDER = StepDefinition("value", "profile.update_prompt", ValueKind.text)


def steps_for(wizard: object) -> Sequence[StepDefinition]:
    """Ordered step list for a wizard state."""
    if isinstance(wizard, RegistrationState):
        return REGISTRATION_STEPS
    if isinstance(wizard, LoginState):
        return LOGIN_STEPS
    if isinstance(wizard, FilingState):
        return FILING_STEPS
    if isinstance(wizard, ReminderState):
        return REMINDER_STEPS
    if isinstance(wizard, ProfileEditState):
        value_step = PROFILE_VALUE_STEPS.get(wizard.data.field or "", _PROFILE_VALUE_PLACEHOLDER)
        return (PROFILE_FIELD_STEP, value_step)
    raise TypeError(f"Unknown wizard state: {type(wizard).__name__}")


def step_index(steps: Sequence[StepDefinition], field: str) -> Optional[int]:
    return next((i for i, step in enumerate(steps) if step.field == field), None)
