"""
engine.py — Session-driven wizard engine.

Drives the multi-step flows (registration, login, filing, profile edit,
reminder) plus the free-form AI mode, one inbound event at a time:

  start()             — enter a wizard (or ai mode) and prompt its first step
  advance()           — validate input for the current step and commit it
  handle_navigation() — back / jump, cancel, skip, prev/next page, submit
  begin_onboarding()  — returning-user lookup, then login or registration
  change_language()   — session language + backend sync

State machine per wizard: the ordered steps plus two pseudo-states,
awaiting-finalization (cursor == step count) and cancelled (wizard cleared,
mode idle). Valid input moves the cursor forward by exactly one; invalid input
never moves it.

Backend failures arrive already classified by the API client; the engine only
branches on transient / conflict / terminal:
  - transient at finalization → local optimistic update + write-behind queue,
    the wizard stays at its final step
  - conflict at registration  → redirect into the login wizard
  - anything else             → generic error, rest of the Session untouched

No HTTPException anywhere — the HTTP layer is routes.py.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from taxhelp.catalog import (
    EDITABLE_PROFILE_FIELDS,
    LANGUAGES,
    Option,
    describe_reminder_type,
    find_option,
    paginate,
    states_for,
)
from taxhelp.models import (
    WIZARD_MODES,
    FilingData,
    FilingState,
    LoginState,
    ProfileEditState,
    RegistrationState,
    ReminderState,
    Session,
    SessionMode,
    UiState,
    UserProfile,
)
from taxhelp.services.api_client import ApiClient
from taxhelp.services.errors import ApiError, FailureClass
from taxhelp.store import SessionStore
from taxhelp.sync_queue import MutationKind, SyncQueue
from taxhelp.wizard.schemas import (
    NavAction,
    NavigationDirective,
    OptionView,
    ReplyMessage,
    StepView,
    WizardKind,
    WizardReply,
)
from taxhelp.wizard.steps import (
    FILING_STEPS,
    StepDefinition,
    ValueKind,
    step_index,
    steps_for,
)
from taxhelp.wizard.validator import ValidationFailure, validate_step

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 8
GENERIC_ERROR = "error.generic"
NETWORK_RETRY = "error.network_retry"


class SessionNotFoundError(LookupError):
    """The conversation has no live Session (never created or expired)."""

    def __init__(self, conversation_id: int) -> None:
        super().__init__(f"No active session for conversation {conversation_id}")
        self.conversation_id = conversation_id


def _msg(key: str, **params: Any) -> ReplyMessage:
    return ReplyMessage(key=key, params=params)


class WizardEngine:
    def __init__(
        self,
        client: ApiClient,
        store: SessionStore,
        queue: SyncQueue,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._client = client
        self._store = store
        self._queue = queue
        self._page_size = page_size

    # =======================================================================
    # Public API
    # =======================================================================

    async def begin_onboarding(self, conversation_id: int) -> WizardReply:
        """
        First contact (/start): signed-in users get the menu, users the backend
        already knows are sent to login, everyone else starts registration.
        A failed lookup falls through to registration.
        """
        session = self._session(conversation_id)
        if session.is_authenticated:
            return self._reply(session, _msg("start.welcome"), _msg("menu.title"))

        try:
            existing = await self._client.lookup_by_telegram_id(session.identity)
        except ApiError as error:
            logger.warning(
                "Returning-user lookup failed conversation_id=%s code=%s",
                conversation_id, error.code,
            )
            existing = None

        if existing is not None:
            self._store.update(conversation_id, {
                "mode": SessionMode.login,
                "wizard": LoginState(),
                "ui": UiState(),
                "language": existing.user.language,
                "token": None,
                "profile": None,
            })
            return self._reply(
                session,
                _msg("start.welcome"),
                _msg("login.prompt_returning", name=existing.user.full_name),
            )

        reply = await self.start(conversation_id, WizardKind.registration)
        reply.messages.insert(0, _msg("start.welcome"))
        return reply

    async def start(
        self,
        conversation_id: int,
        kind: WizardKind,
        field: Optional[str] = None,
    ) -> WizardReply:
        """Enter a wizard (or ai mode) and prompt its first step."""
        session = self._session(conversation_id)
        kind = WizardKind(kind)

        if kind == WizardKind.registration:
            if session.is_authenticated:
                return self._reply(session, _msg("registration.already_registered"), _msg("menu.title"))
            self._enter(session, SessionMode.registration, RegistrationState())
            return self._reply(session, _msg("registration.intro"))

        if kind == WizardKind.login:
            self._enter(session, SessionMode.login, LoginState())
            return self._reply(session, _msg("login.intro"))

        if kind == WizardKind.ai:
            self._store.update(conversation_id, {"mode": SessionMode.ai})
            return self._reply(session, _msg("ai.prompt"))

        if not session.is_authenticated:
            return self._reply(session, _msg("auth.required"))

        if kind == WizardKind.filing:
            return await self._start_filing(session)

        if kind == WizardKind.reminder:
            self._enter(session, SessionMode.reminder, ReminderState())
            return self._reply(session)

        wizard = ProfileEditState()
        if field and find_option(EDITABLE_PROFILE_FIELDS, field):
            wizard.data.field = field
            wizard.cursor = 1
        self._enter(session, SessionMode.profile_edit, wizard)
        profile = session.profile.model_dump(by_alias=True) if session.profile else {}
        return self._reply(session, _msg("profile.title"), data={"profile": profile})

    async def advance(
        self,
        conversation_id: int,
        text: Optional[str] = None,
        *,
        contact_phone: Optional[str] = None,
    ) -> WizardReply:
        """Handle one message (typed text or a shared contact) for the current mode."""
        session = self._session(conversation_id)

        if session.mode == SessionMode.ai:
            return await self._ask_ai(session, text)

        wizard = session.wizard
        if session.mode not in WIZARD_MODES or wizard is None:
            return self._reply(session, _msg("menu.title"))

        steps = steps_for(wizard)
        if wizard.cursor >= len(steps):
            return await self._at_finalization(session, wizard)

        redirected = self._redirect_if_unmet(session, wizard)
        if redirected:
            return self._reply(session, *redirected)

        step = steps[wizard.cursor]
        from_contact = (
            step.kind == ValueKind.phone and bool(contact_phone) and not (text or "").strip()
        )
        raw = contact_phone if from_contact else text

        try:
            value = validate_step(step, raw, self._options_for(step, wizard))
        except ValidationFailure as failure:
            retries = wizard.note_retry(step.field)
            self._store.update(conversation_id, {"wizard": wizard})
            logger.info(
                "Invalid input conversation_id=%s field=%s retries=%d",
                conversation_id, step.field, retries,
            )
            return self._reply(session, _msg(failure.message_key))

        if isinstance(wizard, FilingState):
            return await self._commit_filing_step(session, wizard, step, value)

        self._assign(session, wizard, step, value)
        if isinstance(wizard, RegistrationState) and step.field == "phone":
            wizard.phone_verified = from_contact
        wizard.cursor += 1
        self._store.update(conversation_id, {"wizard": wizard})

        # Profile edit swaps its value step once the field is known
        if wizard.cursor >= len(steps_for(wizard)):
            return await self._finalize(session, wizard)
        return self._reply(session)

    async def handle_navigation(
        self, conversation_id: int, directive: NavigationDirective
    ) -> WizardReply:
        session = self._session(conversation_id)
        action = directive.action

        if action == NavAction.cancel:
            return self._cancel(session)

        wizard = session.wizard
        if session.mode not in WIZARD_MODES or wizard is None:
            return self._reply(session, _msg("menu.title"))

        steps = steps_for(wizard)
        if action == NavAction.back:
            return self._back(session, wizard, steps, directive.target)

        if action == NavAction.submit:
            if isinstance(wizard, FilingState) and wizard.cursor >= len(steps):
                return await self._submit_filing(session, wizard)
            return self._reply(session, _msg("navigation.not_available"))

        if wizard.cursor >= len(steps):
            return self._reply(session, _msg("navigation.not_available"))
        step = steps[wizard.cursor]

        if action == NavAction.skip:
            if not step.skippable:
                return self._reply(session, _msg("navigation.cannot_skip"))
            setattr(wizard.data, step.field, None)
            wizard.cursor += 1
            self._store.update(conversation_id, {"wizard": wizard})
            if wizard.cursor >= len(steps):
                return await self._finalize(session, wizard)
            return self._reply(session)

        return self._turn_page(session, wizard, step, action)

    async def change_language(self, conversation_id: int, language: str) -> WizardReply:
        session = self._session(conversation_id)
        option = find_option(LANGUAGES, language)
        if option is None:
            return self._reply(session, _msg("language.unsupported"))

        self._store.update(conversation_id, {"language": option.value})
        if session.is_authenticated:
            await self._sync_language(session, option.value)
        return self._reply(session, _msg("language.updated", language=option.label_key))

    # =======================================================================
    # Session / reply helpers
    # =======================================================================

    def _session(self, conversation_id: int) -> Session:
        session = self._store.get(conversation_id)
        if session is None:
            raise SessionNotFoundError(conversation_id)
        return session

    def _enter(self, session: Session, mode: SessionMode, wizard: Any) -> None:
        self._store.update(session.conversation_id, {"mode": mode, "wizard": wizard, "ui": UiState()})

    def _reply(
        self,
        session: Session,
        *messages: ReplyMessage,
        data: Optional[dict[str, Any]] = None,
    ) -> WizardReply:
        return WizardReply(
            conversation_id=session.conversation_id,
            mode=session.mode,
            messages=list(messages),
            step=self._step_view(session),
            data=data or {},
        )

    def _options_for(self, step: StepDefinition, wizard: Any) -> Sequence[Option]:
        if step.options is not None:
            return step.options
        if step.depends_on:
            return states_for(getattr(wizard.data, step.depends_on, None))
        return ()

    def _step_view(self, session: Session) -> Optional[StepView]:
        wizard = session.wizard
        if session.mode not in WIZARD_MODES or wizard is None:
            return None
        steps = steps_for(wizard)
        if wizard.cursor >= len(steps):
            return None

        step = steps[wizard.cursor]
        options = list(self._options_for(step, wizard))
        kind, page, total_pages = step.kind, 0, 1
        if step.kind == ValueKind.paginated_select:
            if options:
                options, total_pages, page = paginate(
                    options, session.ui.pages.get(step.field, 0), self._page_size
                )
            else:
                # No enumerated regions for this parent: free-text entry
                kind = ValueKind.text

        prompt_params: dict[str, Any] = {}
        if isinstance(wizard, ProfileEditState) and wizard.data.field:
            chosen = find_option(EDITABLE_PROFILE_FIELDS, wizard.data.field)
            prompt_params["field"] = chosen.label_key if chosen else wizard.data.field
        if isinstance(wizard, FilingState):
            prompt_params.update(current=wizard.cursor + 1, total=len(steps))

        current = getattr(wizard.data, step.field, None)
        return StepView(
            field=step.field,
            prompt_key=step.prompt_key,
            prompt_params=prompt_params,
            kind=kind,
            position=wizard.cursor + 1,
            total=len(steps),
            options=[OptionView(value=o.value, label_key=o.label_key) for o in options],
            page=page,
            total_pages=total_pages,
            can_skip=step.skippable,
            can_go_back=wizard.cursor > 0,
            current_value=None if step.kind == ValueKind.password else current,
        )

    def _redirect_if_unmet(self, session: Session, wizard: Any) -> list[ReplyMessage]:
        """
        A dependent step whose parent has no value sends the cursor back to the
        parent step (e.g. state before a country is chosen).
        """
        steps = steps_for(wizard)
        if wizard.cursor >= len(steps):
            return []
        step = steps[wizard.cursor]
        if not step.depends_on or getattr(wizard.data, step.depends_on, None):
            return []
        parent = step_index(steps, step.depends_on)
        if parent is None:
            return []
        wizard.cursor = parent
        self._store.update(session.conversation_id, {"wizard": wizard})
        logger.info(
            "Redirected to parent step conversation_id=%s field=%s",
            session.conversation_id, step.depends_on,
        )
        return [_msg("wizard.choose_parent_first", field=step.depends_on)]

    def _assign(self, session: Session, wizard: Any, step: StepDefinition, value: Optional[str]) -> None:
        previous = getattr(wizard.data, step.field, None)
        setattr(wizard.data, step.field, value)
        if previous == value:
            return
        # Changing a parent invalidates its dependents
        if isinstance(wizard, RegistrationState) and step.field == "country":
            wizard.data.state = None
            pages = {k: v for k, v in session.ui.pages.items() if k != "state"}
            self._store.update(session.conversation_id, {"ui": UiState(pages=pages)})
        if isinstance(wizard, ProfileEditState) and step.field == "field":
            wizard.data.value = None

    # =======================================================================
    # Navigation
    # =======================================================================

    def _cancel(self, session: Session) -> WizardReply:
        self._store.update(session.conversation_id, {
            "mode": SessionMode.idle,
            "wizard": None,
            "ui": UiState(),
        })
        logger.info("Wizard cancelled conversation_id=%s", session.conversation_id)
        return self._reply(session, _msg("wizard.cancelled"), _msg("menu.title"))

    def _back(
        self,
        session: Session,
        wizard: Any,
        steps: Sequence[StepDefinition],
        target: Optional[str],
    ) -> WizardReply:
        if target:
            index = step_index(steps, target)
            if index is None or index > wizard.cursor:
                return self._reply(session, _msg("navigation.unknown_step", field=target))
            wizard.cursor = index
        else:
            wizard.cursor = max(0, wizard.cursor - 1)
        self._store.update(session.conversation_id, {"wizard": wizard})
        return self._reply(session, *self._redirect_if_unmet(session, wizard))

    def _turn_page(
        self,
        session: Session,
        wizard: Any,
        step: StepDefinition,
        action: NavAction,
    ) -> WizardReply:
        options = self._options_for(step, wizard)
        if step.kind != ValueKind.paginated_select or not options:
            return self._reply(session, _msg("navigation.not_available"))

        current = session.ui.pages.get(step.field, 0)
        delta = 1 if action == NavAction.next_page else -1
        _, total_pages, _ = paginate(options, current, self._page_size)
        page = min(max(current + delta, 0), total_pages - 1)
        self._store.update(
            session.conversation_id,
            {"ui": UiState(pages={**session.ui.pages, step.field: page})},
        )
        return self._reply(session)

    # =======================================================================
    # Finalization
    # =======================================================================

    async def _at_finalization(self, session: Session, wizard: Any) -> WizardReply:
        """Input arriving while the wizard already awaits finalization."""
        if isinstance(wizard, FilingState):
            return self._filing_summary(session, wizard)
        if self._queue.is_pending(session.conversation_id) and isinstance(
            wizard, (RegistrationState, ProfileEditState)
        ):
            return self._reply(session, _msg("sync.pending"))
        return await self._finalize(session, wizard)

    async def _finalize(self, session: Session, wizard: Any) -> WizardReply:
        if isinstance(wizard, RegistrationState):
            return await self._finalize_registration(session, wizard)
        if isinstance(wizard, LoginState):
            return await self._finalize_login(session, wizard)
        if isinstance(wizard, ProfileEditState):
            return await self._finalize_profile_edit(session, wizard)
        if isinstance(wizard, ReminderState):
            return await self._finalize_reminder(session, wizard)
        return self._filing_summary(session, wizard)

    def _defer(
        self,
        session: Session,
        kind: MutationKind,
        payload: dict[str, Any],
        local_profile: UserProfile,
    ) -> WizardReply:
        """Transient failure: keep the wizard where it is, show the change locally, queue it."""
        self._queue.enqueue(session.conversation_id, kind, payload)
        self._store.update(session.conversation_id, {"profile": local_profile, "sync_pending": True})
        return self._reply(session, _msg("sync.saving_in_background"))

    def _sign_in(self, session: Session, token: str, profile: UserProfile) -> None:
        self._store.update(session.conversation_id, {
            "token": token,
            "profile": profile,
            "language": profile.language,
            "mode": SessionMode.idle,
            "sync_pending": self._queue.is_pending(session.conversation_id),
        })

    async def _finalize_registration(
        self, session: Session, wizard: RegistrationState
    ) -> WizardReply:
        conversation_id = session.conversation_id
        payload = wizard.data.model_dump(by_alias=True, exclude_none=True)
        payload.update(language=session.language, telegramId=session.identity)

        try:
            result = await self._client.register(payload)
        except ApiError as error:
            if error.failure == FailureClass.conflict:
                logger.warning("Registration conflict conversation_id=%s", conversation_id)
                self._store.update(conversation_id, {
                    "mode": SessionMode.login,
                    "wizard": LoginState(),
                    "ui": UiState(),
                })
                return self._reply(session, _msg("registration.duplicate"))
            if error.failure == FailureClass.transient:
                logger.warning(
                    "Registration deferred conversation_id=%s code=%s", conversation_id, error.code
                )
                local = UserProfile(
                    **wizard.data.model_dump(exclude_none=True), language=session.language
                )
                return self._defer(session, MutationKind.create_registration, payload, local)
            logger.error(
                "Registration failed conversation_id=%s code=%s status=%d",
                conversation_id, error.code, error.status,
            )
            return self._reply(session, _msg(GENERIC_ERROR))

        self._sign_in(session, result.token, result.user)
        logger.info("Registration completed conversation_id=%s", conversation_id)
        return self._reply(session, _msg("registration.completed"), _msg("menu.title"))

    async def _finalize_login(self, session: Session, wizard: LoginState) -> WizardReply:
        conversation_id = session.conversation_id
        try:
            result = await self._client.login(
                wizard.data.email or "", wizard.data.password or "", session.identity
            )
        except ApiError as error:
            if error.failure == FailureClass.transient:
                logger.warning("Login deferred conversation_id=%s code=%s", conversation_id, error.code)
                return self._reply(session, _msg(NETWORK_RETRY))
            logger.warning(
                "Login rejected conversation_id=%s status=%d", conversation_id, error.status
            )
            self._store.update(conversation_id, {"wizard": LoginState()})
            return self._reply(session, _msg("login.failed"))

        self._sign_in(session, result.token, result.user)
        logger.info("Login completed conversation_id=%s", conversation_id)
        return self._reply(session, _msg("login.completed"), _msg("menu.title"))

    async def _finalize_profile_edit(
        self, session: Session, wizard: ProfileEditState
    ) -> WizardReply:
        conversation_id = session.conversation_id
        field, value = wizard.data.field or "", wizard.data.value
        patch = UserProfile(**{field: value}).model_dump(by_alias=True, include={field})
        local = (session.profile or UserProfile(language=session.language)).model_copy(
            update={field: value}
        )

        # Keep same-field edits ordered behind anything already queued
        if self._queue.is_pending(conversation_id):
            return self._defer(session, MutationKind.patch_profile, patch, local)

        try:
            profile = await self._client.update_profile(patch, session.token)
        except ApiError as error:
            if error.failure == FailureClass.transient:
                logger.warning(
                    "Profile update deferred conversation_id=%s field=%s", conversation_id, field
                )
                return self._defer(session, MutationKind.patch_profile, patch, local)
            logger.error(
                "Profile update failed conversation_id=%s field=%s status=%d",
                conversation_id, field, error.status,
            )
            wizard.cursor = len(steps_for(wizard)) - 1
            self._store.update(conversation_id, {"wizard": wizard})
            return self._reply(session, _msg(GENERIC_ERROR))

        self._store.update(conversation_id, {
            "profile": profile,
            "language": profile.language,
            "sync_pending": False,
            "mode": SessionMode.idle,
        })
        logger.info("Profile updated conversation_id=%s field=%s", conversation_id, field)
        return self._reply(session, _msg("profile.updated"), _msg("menu.title"))

    async def _finalize_reminder(self, session: Session, wizard: ReminderState) -> WizardReply:
        conversation_id = session.conversation_id
        reminder_type = wizard.data.reminder_type or ""
        due_date = wizard.data.due_date or ""
        try:
            receipt = await self._client.schedule_reminder(reminder_type, due_date, session.token)
        except ApiError as error:
            logger.error(
                "Reminder failed conversation_id=%s code=%s status=%d",
                conversation_id, error.code, error.status,
            )
            key = NETWORK_RETRY if error.failure == FailureClass.transient else GENERIC_ERROR
            return self._reply(session, _msg(key))

        self._store.update(conversation_id, {"mode": SessionMode.idle})
        messages = [_msg(
            "reminder.saved", type=describe_reminder_type(reminder_type), due_date=due_date
        )]
        extra: dict[str, Any] = {"reminder_id": receipt.id}
        try:
            link = await self._client.create_calendar_link(due_date, reminder_type, session.token)
        except ApiError as error:
            logger.warning(
                "Calendar link failed conversation_id=%s code=%s", conversation_id, error.code
            )
        else:
            extra["calendar_url"] = link.url
            messages.append(_msg("reminder.add_calendar"))
        messages.append(_msg("menu.title"))
        return self._reply(session, *messages, data=extra)

    # =======================================================================
    # Filing
    # =======================================================================

    async def _start_filing(self, session: Session) -> WizardReply:
        conversation_id = session.conversation_id
        try:
            filing = await self._client.start_or_resume_filing(session.token)
        except ApiError as error:
            logger.error(
                "Filing start failed conversation_id=%s code=%s status=%d",
                conversation_id, error.code, error.status,
            )
            return self._reply(session, _msg(GENERIC_ERROR))

        cursor = min(filing.step or 0, len(FILING_STEPS))
        wizard = FilingState(
            filing_id=filing.filing_id,
            data=filing.data or FilingData(),
            cursor=cursor,
            resumed=bool(filing.step),
        )
        self._enter(session, SessionMode.filing, wizard)
        logger.info(
            "Filing started conversation_id=%s filing_id=%s step=%d",
            conversation_id, filing.filing_id, cursor,
        )
        if cursor >= len(FILING_STEPS):
            return self._filing_summary(session, wizard)
        key = "filing.resume_prompt" if wizard.resumed else "filing.start"
        return self._reply(session, _msg(key))

    async def _commit_filing_step(
        self,
        session: Session,
        wizard: FilingState,
        step: StepDefinition,
        value: Optional[str],
    ) -> WizardReply:
        """Persist one filing answer; the cursor moves only once the backend confirmed it."""
        conversation_id = session.conversation_id
        setattr(wizard.data, step.field, value)
        payload = wizard.data.model_dump(by_alias=True, include={step.field})
        try:
            await self._client.save_filing_step(
                wizard.filing_id, wizard.cursor, payload, session.token
            )
        except ApiError as error:
            # Keep the typed value so the re-prompt shows it
            self._store.update(conversation_id, {"wizard": wizard})
            if error.failure == FailureClass.transient:
                logger.warning(
                    "Filing step deferred conversation_id=%s step=%d", conversation_id, wizard.cursor
                )
                return self._reply(session, _msg("filing.save_retry"))
            logger.error(
                "Filing step rejected conversation_id=%s step=%d status=%d",
                conversation_id, wizard.cursor, error.status,
            )
            return self._reply(session, _msg(GENERIC_ERROR))

        wizard.cursor += 1
        self._store.update(conversation_id, {"wizard": wizard})
        if wizard.cursor >= len(FILING_STEPS):
            return self._filing_summary(session, wizard, _msg("filing.saved"))
        return self._reply(session, _msg("filing.saved"))

    def _filing_summary(
        self, session: Session, wizard: FilingState, *messages: ReplyMessage
    ) -> WizardReply:
        summary = [
            {
                "field": step.field,
                "prompt_key": step.prompt_key,
                "value": getattr(wizard.data, step.field),
            }
            for step in FILING_STEPS
        ]
        return self._reply(
            session,
            *messages,
            _msg("filing.summary_title"),
            data={"filing_id": wizard.filing_id, "summary": summary},
        )

    async def _submit_filing(self, session: Session, wizard: FilingState) -> WizardReply:
        conversation_id = session.conversation_id
        try:
            await self._client.submit_filing(wizard.filing_id, session.token)
        except ApiError as error:
            logger.error(
                "Filing submit failed conversation_id=%s filing_id=%s status=%d",
                conversation_id, wizard.filing_id, error.status,
            )
            key = NETWORK_RETRY if error.failure == FailureClass.transient else GENERIC_ERROR
            return self._reply(session, _msg(key))

        self._store.update(conversation_id, {"mode": SessionMode.idle})
        logger.info("Filing submitted conversation_id=%s filing_id=%s", conversation_id, wizard.filing_id)
        return self._reply(session, _msg("filing.submitted"), _msg("menu.title"))

    # =======================================================================
    # AI mode and language
    # =======================================================================

    async def _ask_ai(self, session: Session, text: Optional[str]) -> WizardReply:
        question = (text or "").strip()
        if not question:
            return self._reply(session, _msg("ai.prompt"))
        try:
            answer = await self._client.ask_ai(question, session.language, session.token)
        except ApiError as error:
            logger.error(
                "AI query failed conversation_id=%s code=%s", session.conversation_id, error.code
            )
            return self._reply(session, _msg("ai.error"))
        self._store.update(session.conversation_id, {})
        return self._reply(
            session,
            _msg("ai.answer", answer=answer.answer),
            data={"references": answer.references},
        )

    async def _sync_language(self, session: Session, language: str) -> None:
        conversation_id = session.conversation_id
        patch = {"language": language}
        local = (session.profile or UserProfile()).model_copy(update={"language": language})
        if self._queue.is_pending(conversation_id):
            self._defer(session, MutationKind.patch_profile, patch, local)
            return
        try:
            profile = await self._client.update_language(language, session.token)
        except ApiError as error:
            if error.failure == FailureClass.transient:
                self._defer(session, MutationKind.patch_profile, patch, local)
                return
            logger.warning(
                "Language update rejected conversation_id=%s status=%d",
                conversation_id, error.status,
            )
            return
        self._store.set_profile(conversation_id, profile)
