"""
schemas.py — Pydantic v2 contracts for backend responses.

Field names are snake_case in Python and camelCase on the wire. A 2xx body that
does not fit its contract is reported by the client as invalid_response.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taxhelp.models import FilingData, UserProfile


class _Wire(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class AuthResult(_Wire):
    """POST /auth/register, POST /auth/login, GET /auth/telegram/{id}"""
    token: str
    user: UserProfile


class FilingSession(_Wire):
    """POST /tax/filings {action: start_or_resume}"""
    filing_id: str
    data: Optional[FilingData] = None
    step: Optional[int] = Field(default=None, ge=0)


class FilingSummary(_Wire):
    filing_id: str
    data: FilingData = Field(default_factory=FilingData)


class SubmissionReceipt(_Wire):
    status: str = "submitted"


class TaxForm(_Wire):
    id: str
    name: str
    year: int
    status: Literal["draft", "submitted", "completed"]
    updated_at: Optional[str] = None


class PaymentSession(_Wire):
    checkout_url: str
    session_id: str


class AiAnswer(_Wire):
    answer: str
    references: List[str] = Field(default_factory=list)


class ReminderReceipt(_Wire):
    id: str


class CalendarLink(_Wire):
    url: str
