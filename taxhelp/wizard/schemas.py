"""
schemas.py — Wizard Engine request/reply contracts.

The engine never renders text: replies carry message keys plus parameters for
the translation layer, and a StepView describing the step to prompt (visible
options of the current page, pagination, skip/back availability).
"""
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from taxhelp.models import SessionMode
from taxhelp.wizard.steps import ValueKind


class WizardKind(str, Enum):
    registration = "registration"
    login = "login"
    filing = "filing"
    profile_edit = "profile_edit"
    reminder = "reminder"
    ai = "ai"


class NavAction(str, Enum):
    back = "back"
    cancel = "cancel"
    skip = "skip"
    prev_page = "prev_page"
    next_page = "next_page"
    submit = "submit"


class NavigationDirective(BaseModel):
    action: NavAction
    # Named step for back-jumps (e.g. "country", or a filing field from the summary)
    target: Optional[str] = None


class ReplyMessage(BaseModel):
    key: str
    params: dict[str, Any] = Field(default_factory=dict)


class OptionView(BaseModel):
    value: str
    label_key: str


class StepView(BaseModel):
    field: str
    prompt_key: str
    prompt_params: dict[str, Any] = Field(default_factory=dict)
    kind: ValueKind
    position: int                      # 1-based
    total: int
    options: List[OptionView] = Field(default_factory=list)
    page: int = 0
    total_pages: int = 1
    can_skip: bool = False
    can_go_back: bool = False
    current_value: Optional[str] = None


class WizardReply(BaseModel):
    conversation_id: int
    mode: SessionMode
    messages: List[ReplyMessage] = Field(default_factory=list)
    step: Optional[StepView] = None
    # Flow-specific extras: AI answer references, calendar link, filing summary
    data: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# HTTP request bodies (routes.py)
# ---------------------------------------------------------------------------

class ConversationEvent(BaseModel):
    identity: int = Field(..., description="Messenger user id of the sender.")
    language: Optional[str] = None


class StartRequest(ConversationEvent):
    kind: WizardKind
    field: Optional[str] = Field(default=None, description="Profile field to edit directly.")


class InputRequest(ConversationEvent):
    text: Optional[str] = None
    contact_phone: Optional[str] = Field(default=None, description="Phone from a shared contact.")


class NavigateRequest(ConversationEvent):
    action: NavAction
    target: Optional[str] = None


class LanguageRequest(ConversationEvent):
    language: str
