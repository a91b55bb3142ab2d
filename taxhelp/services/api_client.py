"""
api_client.py — Resilient async client for the TaxHelp backend REST API.

Components:
  RequestOptions      — per-call auth/timeout/retry knobs (defaults from settings)
  retry_delay_for()   — exponential backoff: base_delay * 2**attempt
  ApiClient.request() — JSON call with per-attempt deadline + bounded retries
  ApiClient.download()— same retry loop, returns raw bytes (PDF forms)
  ApiClient.health_check() — short liveness probe, no retries
  typed operations    — one method per backend endpoint

The client holds no credentials: every authenticated operation receives the
bearer token of the conversation it runs for, so one instance is shared safely
by all concurrently handled conversations.

No HTTPException anywhere — this is pure outbound I/O, the HTTP layer is routes.py.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from taxhelp.config import Settings
from taxhelp.models import FilingData, UserProfile
from taxhelp.services.errors import (
    ApiError,
    ErrorKind,
    classify_exception,
    is_retryable_status,
)
from taxhelp.services.schemas import (
    AiAnswer,
    AuthResult,
    CalendarLink,
    FilingSession,
    FilingSummary,
    PaymentSession,
    ReminderReceipt,
    SubmissionReceipt,
    TaxForm,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_RETRY_ATTEMPTS = 2       # beyond the first attempt
DEFAULT_RETRY_DELAY_SECONDS = 0.5
HEALTH_TIMEOUT_SECONDS = 5.0
TOLERATED_HEALTH_STATUSES = frozenset({401, 403, 404})

_TAX_FORMS = TypeAdapter(list[TaxForm])


@dataclass(frozen=True)
class RequestOptions:
    auth: bool = True
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS
    retry_invalid_response: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "RequestOptions":
        return cls(
            timeout=settings.api_timeout_seconds,
            retry_attempts=settings.api_retry_attempts,
            retry_delay=settings.api_retry_delay_seconds,
            retry_invalid_response=settings.retry_invalid_response,
        )


class _NoContent:
    """Result of a 2xx call whose body was empty."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_CONTENT"


NO_CONTENT = _NoContent()


def retry_delay_for(base_delay: float, attempt: int) -> float:
    """Delay before retrying after 0-indexed `attempt`: base_delay * 2**attempt."""
    return base_delay * (2 ** attempt)


class ApiClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        defaults: Optional[RequestOptions] = None,
        *,
        health_timeout: float = HEALTH_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._http = http
        self._defaults = defaults or RequestOptions()
        self._health_timeout = health_timeout
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # Core request loop
    # -----------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        query: Optional[dict[str, Any]] = None,
        token: Optional[str] = None,
        auth: Optional[bool] = None,
        options: Optional[RequestOptions] = None,
    ) -> Any:
        """
        Perform a JSON call. Returns the decoded body, or NO_CONTENT for an empty 2xx.

        Raises:
            ApiError: classified failure after the retry budget is spent, or
                immediately for a terminal failure.
        """
        opts = options or self._defaults
        if auth is not None:
            opts = replace(opts, auth=auth)
        return await self._send(method, path, json_body, query, token, opts, binary=False)

    async def download(
        self,
        path: str,
        *,
        token: Optional[str] = None,
        options: Optional[RequestOptions] = None,
    ) -> bytes:
        """GET an opaque binary payload with the same retry/backoff rules."""
        opts = options or self._defaults
        return await self._send("GET", path, None, None, token, opts, binary=True)

    async def _send(
        self,
        method: str,
        path: str,
        json_body: Any,
        query: Optional[dict[str, Any]],
        token: Optional[str],
        opts: RequestOptions,
        *,
        binary: bool,
    ) -> Any:
        headers = {"Accept": "application/octet-stream" if binary else "application/json"}
        # No token: sent unauthenticated, the backend answers 401
        if opts.auth and token:
            headers["Authorization"] = f"Bearer {token}"
        params = {k: v for k, v in (query or {}).items() if v is not None}
        total = opts.retry_attempts + 1

        for attempt in range(total):
            is_last = attempt == opts.retry_attempts
            try:
                # Deadline covers this attempt only; a later attempt may still succeed
                response = await asyncio.wait_for(
                    self._http.request(
                        method,
                        path,
                        json=json_body,
                        params=params or None,
                        headers=headers,
                        timeout=opts.timeout,
                    ),
                    timeout=opts.timeout,
                )
            except Exception as exc:
                error = classify_exception(exc)
                if error is None:
                    raise
                if not is_last and error.is_transient:
                    await self._backoff(path, error.kind.value, attempt, total, opts)
                    continue
                logger.warning(
                    "%s %s failed: %s after %d attempt(s)",
                    method, path, error.kind.value, attempt + 1,
                )
                raise error from exc

            if response.is_success:
                if binary:
                    return response.content
                try:
                    return self._decode(response, path)
                except ApiError:
                    if opts.retry_invalid_response and not is_last:
                        await self._backoff(path, "invalid_response", attempt, total, opts)
                        continue
                    raise

            if not is_last and is_retryable_status(response.status_code):
                await self._backoff(path, f"HTTP {response.status_code}", attempt, total, opts)
                continue

            raise self._error_from_response(response, path, binary)

        # Unreachable: the final attempt always returns or raises
        raise ApiError("Request failed", 500, kind=ErrorKind.network_error)

    async def _backoff(
        self, path: str, reason: str, attempt: int, total: int, opts: RequestOptions
    ) -> None:
        wait = retry_delay_for(opts.retry_delay, attempt)
        logger.warning(
            "Retrying %s due to %s (attempt %d/%d) in %.0fms",
            path, reason, attempt + 1, total, wait * 1000,
        )
        if wait > 0:
            await self._sleep(wait)

    @staticmethod
    def _decode(response: httpx.Response, path: str) -> Any:
        if not response.content.strip():
            return NO_CONTENT
        try:
            return json.loads(response.content)
        except ValueError:
            logger.error("Failed to parse JSON response from %s (status %d)", path, response.status_code)
            raise ApiError(
                "Invalid server response",
                response.status_code,
                kind=ErrorKind.invalid_response,
            ) from None

    @staticmethod
    def _error_from_response(response: httpx.Response, path: str, binary: bool) -> ApiError:
        text = response.text
        if binary:
            message = text or "Failed to download file"
            logger.warning("Download error %s (status %d)", path, response.status_code)
            return ApiError(message, response.status_code)

        body: Any = None
        if text:
            try:
                body = json.loads(text)
            except ValueError:
                body = None
        if not isinstance(body, dict):
            body = {}
        message = body.get("message") or response.reason_phrase or "Request failed"
        code = body.get("code") if isinstance(body.get("code"), str) else None
        logger.warning("API error %s -> %s (status %d)", path, message, response.status_code)
        return ApiError(message, response.status_code, code=code)

    @staticmethod
    def _parse(
        contract: Union[type[BaseModel], TypeAdapter],
        body: Any,
        path: str,
        *,
        allow_empty: bool = False,
    ) -> Any:
        """Validate a decoded body against its contract; a mismatch is invalid_response."""
        if body is NO_CONTENT:
            if allow_empty:
                return None
            raise ApiError("Empty server response", 200, kind=ErrorKind.invalid_response)
        try:
            if isinstance(contract, TypeAdapter):
                return contract.validate_python(body)
            return contract.model_validate(body)
        except ValidationError as exc:
            logger.error("Unexpected response shape from %s: %d error(s)", path, exc.error_count())
            raise ApiError(
                "Invalid server response", 200, kind=ErrorKind.invalid_response
            ) from exc

    # -----------------------------------------------------------------------
    # Liveness probe
    # -----------------------------------------------------------------------

    async def health_check(self, timeout: Optional[float] = None) -> int:
        """
        Probe GET /health once with a short deadline.

        401/403/404 mean the service answered but denied or lacks the route —
        it is reachable, so they count as success. Returns the HTTP status.

        Raises:
            ApiError(kind=health_check_failed): unreachable, timed out or 5xx.
        """
        deadline = timeout or self._health_timeout
        try:
            response = await asyncio.wait_for(
                self._http.get(
                    "/health", headers={"Accept": "application/json"}, timeout=deadline
                ),
                timeout=deadline,
            )
        except Exception as exc:
            error = classify_exception(
                exc,
                timeout_kind=ErrorKind.health_check_failed,
                network_kind=ErrorKind.health_check_failed,
            )
            if error is None:
                raise
            logger.warning("Health check failed: %s", error.message)
            raise error from exc

        if response.is_success:
            return response.status_code
        if response.status_code in TOLERATED_HEALTH_STATUSES:
            logger.warning("API health endpoint returned %d", response.status_code)
            return response.status_code
        message = response.text or f"Health check failed with status {response.status_code}"
        raise ApiError(message, response.status_code, kind=ErrorKind.health_check_failed)

    # -----------------------------------------------------------------------
    # Auth
    # -----------------------------------------------------------------------

    async def register(self, payload: dict[str, Any]) -> AuthResult:
        body = await self.request("POST", "/auth/register", json_body=payload, auth=False)
        return self._parse(AuthResult, body, "/auth/register")

    async def login(self, email: str, password: str, telegram_id: int) -> AuthResult:
        body = await self.request(
            "POST",
            "/auth/login",
            json_body={"email": email, "password": password, "telegramId": telegram_id},
            auth=False,
        )
        return self._parse(AuthResult, body, "/auth/login")

    async def lookup_by_telegram_id(self, telegram_id: int) -> Optional[AuthResult]:
        """Returning-user lookup. None when the backend has no account (404)."""
        path = f"/auth/telegram/{telegram_id}"
        try:
            body = await self.request("GET", path, auth=False)
        except ApiError as error:
            if error.kind == ErrorKind.http_error and error.status == 404:
                return None
            raise
        return self._parse(AuthResult, body, path)

    # -----------------------------------------------------------------------
    # Profile
    # -----------------------------------------------------------------------

    async def fetch_profile(self, token: Optional[str]) -> UserProfile:
        body = await self.request("GET", "/users/me", token=token)
        return self._parse(UserProfile, body, "/users/me")

    async def update_profile(self, patch: dict[str, Any], token: Optional[str]) -> UserProfile:
        body = await self.request("PATCH", "/users/me", json_body=patch, token=token)
        return self._parse(UserProfile, body, "/users/me")

    async def update_language(self, language: str, token: Optional[str]) -> UserProfile:
        body = await self.request(
            "PATCH", "/users/me/language", json_body={"language": language}, token=token
        )
        return self._parse(UserProfile, body, "/users/me/language")

    # -----------------------------------------------------------------------
    # Tax filing
    # -----------------------------------------------------------------------

    async def start_or_resume_filing(self, token: Optional[str]) -> FilingSession:
        body = await self.request(
            "POST", "/tax/filings", json_body={"action": "start_or_resume"}, token=token
        )
        return self._parse(FilingSession, body, "/tax/filings")

    async def save_filing_step(
        self,
        filing_id: str,
        step: int,
        payload: dict[str, Any],
        token: Optional[str],
    ) -> Optional[FilingData]:
        path = f"/tax/filings/{filing_id}/steps/{step}"
        body = await self.request("PUT", path, json_body=payload, token=token)
        return self._parse(FilingData, body, path, allow_empty=True)

    async def fetch_filing_summary(self, filing_id: str, token: Optional[str]) -> FilingSummary:
        path = f"/tax/filings/{filing_id}"
        body = await self.request("GET", path, token=token)
        return self._parse(FilingSummary, body, path)

    async def submit_filing(self, filing_id: str, token: Optional[str]) -> SubmissionReceipt:
        path = f"/tax/filings/{filing_id}/submit"
        body = await self.request("POST", path, token=token)
        return self._parse(SubmissionReceipt, body, path, allow_empty=True) or SubmissionReceipt()

    async def list_tax_forms(self, token: Optional[str]) -> list[TaxForm]:
        body = await self.request("GET", "/tax/forms", token=token)
        return self._parse(_TAX_FORMS, body, "/tax/forms")

    async def download_tax_form(self, form_id: str, token: Optional[str]) -> bytes:
        return await self.download(f"/tax/forms/{form_id}/pdf", token=token)

    # -----------------------------------------------------------------------
    # Payments, AI, reminders
    # -----------------------------------------------------------------------

    async def create_payment_session(self, token: Optional[str]) -> PaymentSession:
        body = await self.request(
            "POST", "/payments/checkout", json_body={"provider": "stripe"}, token=token
        )
        return self._parse(PaymentSession, body, "/payments/checkout")

    async def ask_ai(self, question: str, language: str, token: Optional[str]) -> AiAnswer:
        body = await self.request(
            "POST", "/ai/query", json_body={"question": question, "language": language}, token=token
        )
        return self._parse(AiAnswer, body, "/ai/query")

    async def schedule_reminder(
        self, reminder_type: str, due_date: str, token: Optional[str]
    ) -> ReminderReceipt:
        body = await self.request(
            "POST",
            "/reminders",
            json_body={"type": reminder_type, "dueDate": due_date},
            token=token,
        )
        return self._parse(ReminderReceipt, body, "/reminders")

    async def create_calendar_link(
        self, due_date: str, title: str, token: Optional[str]
    ) -> CalendarLink:
        body = await self.request(
            "POST",
            "/integrations/calendar",
            json_body={"dueDate": due_date, "title": title},
            token=token,
        )
        return self._parse(CalendarLink, body, "/integrations/calendar")
