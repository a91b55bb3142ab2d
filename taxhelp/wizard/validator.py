"""
Wizard step input validator.

Turns raw user input for one step into the value stored in the wizard record,
or raises ValidationFailure naming the field and the message key the front-end
shows before re-prompting. Validation never touches the Session.
"""
from __future__ import annotations

import logging
import re
from datetime import date
from typing import Optional, Sequence

from taxhelp.catalog import Option, match_option
from taxhelp.wizard.steps import StepDefinition, ValueKind

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# Free-text region: letters with inner spaces, dots, apostrophes or hyphens
_REGION_RE = re.compile(r"^[^\W\d_](?:[^\W\d_]|[ .'\-])*[^\W\d_]$")

MIN_PHONE_DIGITS = 7
MIN_PASSWORD_LENGTH = 6
MAX_REGION_LENGTH = 64


class ValidationFailure(ValueError):
    """Field-level input rejection — recovered by re-prompting the same step."""

    def __init__(self, field: str, message_key: str) -> None:
        super().__init__(f"{field}: {message_key}")
        self.field = field
        self.message_key = message_key


# ---------------------------------------------------------------------------
# Primitive checks
# ---------------------------------------------------------------------------

def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def is_valid_date(value: str) -> bool:
    """Strict YYYY-MM-DD that names a real calendar day."""
    if not _DATE_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def normalize_phone(value: str) -> str:
    """Keep digits and '+' only."""
    return re.sub(r"[^\d+]", "", value)


def is_valid_phone(value: str) -> bool:
    digits = re.sub(r"\D", "", value)
    return len(digits) >= MIN_PHONE_DIGITS


def is_valid_region(value: str) -> bool:
    return 2 <= len(value) <= MAX_REGION_LENGTH and bool(_REGION_RE.match(value))


# ---------------------------------------------------------------------------
# Step validation
# ---------------------------------------------------------------------------

def validate_step(
    step: StepDefinition,
    raw: Optional[str],
    options: Sequence[Option] = (),
) -> Optional[str]:
    """
    Validate input for `step` and return the normalized value to store.

    `options` are the choices currently offered for a select step (already
    resolved for dependent steps). A dependent select with no options is a
    free-text region entry.

    Raises:
        ValidationFailure: input is missing or malformed for this step.
    """
    text = (raw or "").strip()
    kind = step.kind

    if kind == ValueKind.optional:
        return text or None

    if not text:
        raise ValidationFailure(step.field, "error.required")

    if kind == ValueKind.text:
        return text

    if kind == ValueKind.email:
        if not is_valid_email(text):
            raise ValidationFailure(step.field, "registration.invalid_email")
        return text.lower()

    if kind == ValueKind.password:
        if len(text) < MIN_PASSWORD_LENGTH:
            raise ValidationFailure(step.field, "registration.invalid_password")
        return text

    if kind == ValueKind.date:
        if not is_valid_date(text):
            raise ValidationFailure(step.field, "registration.invalid_date")
        return text

    if kind == ValueKind.phone:
        if not is_valid_phone(text):
            raise ValidationFailure(step.field, "registration.invalid_phone")
        return normalize_phone(text)

    if step.is_select:
        if step.depends_on and not options:
            if not is_valid_region(text):
                raise ValidationFailure(step.field, "registration.invalid_state")
            return text
        option = match_option(options, text)
        if option is None:
            raise ValidationFailure(step.field, "error.choose_option")
        return option.value

    logger.error("No validator for step kind=%s field=%s", kind.value, step.field)
    raise ValidationFailure(step.field, "error.generic")
