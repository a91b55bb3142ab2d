"""
Unit tests for the resilient backend client.

Run: pytest taxhelp/tests/test_api_client.py -v

The backend is the scripted FakeBackend; backoff sleeps are recorded instead of
awaited, so the retry schedule is asserted exactly.
"""
from __future__ import annotations

import asyncio
import errno

import httpx
import pytest

from taxhelp.main import build_http_client
from taxhelp.services.api_client import NO_CONTENT, RequestOptions, retry_delay_for
from taxhelp.services.errors import ApiError, ErrorKind, FailureClass, classify_exception
from taxhelp.tests.fake_backend import Delay, auth_json


# ---------------------------------------------------------------------------
# Successful calls
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_register_parses_auth_result_without_bearer(api_client, backend) -> None:
    backend.script("POST", "/auth/register", (201, auth_json(token="tok-9")))

    result = await api_client.register({"email": "ada@example.com"})

    assert result.token == "tok-9"
    assert result.user.full_name == "Ada Lovelace"
    assert result.user.filing_status == "single"
    (request,) = backend.calls("POST", "/auth/register")
    assert "authorization" not in request.headers


@pytest.mark.asyncio
async def test_authenticated_call_sends_bearer_token(api_client, backend) -> None:
    backend.script("GET", "/users/me", (200, auth_json()["user"]))

    profile = await api_client.fetch_profile("tok-1")

    assert profile.email == "ada@example.com"
    (request,) = backend.calls("GET", "/users/me")
    assert request.headers["authorization"] == "Bearer tok-1"
    assert request.headers["accept"] == "application/json"


@pytest.mark.asyncio
async def test_empty_success_body_is_no_content(api_client, backend) -> None:
    backend.script("PUT", "/tax/filings/f-1/steps/0", (204, None))

    body = await api_client.request("PUT", "/tax/filings/f-1/steps/0", json_body={}, token="t")
    saved = await api_client.save_filing_step("f-1", 0, {"w2Income": "50000"}, "t")

    assert body is NO_CONTENT
    assert saved is None


@pytest.mark.asyncio
async def test_filing_summary_and_empty_submit(api_client, backend) -> None:
    backend.script("GET", "/tax/filings/f-1", (200, {
        "filingId": "f-1", "data": {"w2Income": "50000", "form1099Income": "0"},
    }))
    backend.script("POST", "/tax/filings/f-1/submit", (204, None))

    summary = await api_client.fetch_filing_summary("f-1", "t")
    receipt = await api_client.submit_filing("f-1", "t")

    assert summary.data.w2_income == "50000"
    assert summary.data.form_1099_income == "0"
    assert receipt.status == "submitted"


@pytest.mark.asyncio
async def test_query_parameters_drop_none_values(api_client, backend) -> None:
    backend.script("GET", "/tax/forms", (200, []))

    await api_client.request("GET", "/tax/forms", query={"year": 2024, "status": None}, token="t")

    (request,) = backend.calls("GET", "/tax/forms")
    assert dict(request.url.params) == {"year": "2024"}


@pytest.mark.asyncio
async def test_list_and_download_tax_forms(api_client, backend) -> None:
    backend.script("GET", "/tax/forms", (200, [
        {"id": "1040", "name": "Form 1040", "year": 2024, "status": "draft"},
    ]))
    backend.script("GET", "/tax/forms/1040/pdf", (200, b"%PDF-1.7 fake"))

    forms = await api_client.list_tax_forms("t")
    pdf = await api_client.download_tax_form("1040", "t")

    assert [f.name for f in forms] == ["Form 1040"]
    assert pdf == b"%PDF-1.7 fake"


@pytest.mark.asyncio
async def test_explicit_options_without_auth_send_no_bearer(api_client, backend) -> None:
    backend.script("GET", "/tax/forms", (200, []))

    await api_client.request(
        "GET", "/tax/forms", token="tok-1", options=RequestOptions(auth=False)
    )

    (request,) = backend.calls("GET", "/tax/forms")
    assert "authorization" not in request.headers


# ---------------------------------------------------------------------------
# Retry and backoff
# ---------------------------------------------------------------------------

def test_retry_delay_doubles_per_attempt() -> None:
    assert [retry_delay_for(0.5, n) for n in range(3)] == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_retryable_status_then_success(api_client, backend, sleeps) -> None:
    backend.script(
        "POST", "/auth/login",
        (503, {"message": "down"}),
        (503, {"message": "down"}),
        (200, auth_json()),
    )

    result = await api_client.login("ada@example.com", "secret1", 42)

    assert result.token == "tok-1"
    assert len(backend.calls("POST", "/auth/login")) == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_budget_exhausted_raises_transient_error(api_client, backend, sleeps) -> None:
    backend.script("POST", "/auth/register", (503, {"message": "Service unavailable"}))

    with pytest.raises(ApiError) as info:
        await api_client.register({"email": "ada@example.com"})

    error = info.value
    assert error.status == 503
    assert error.kind == ErrorKind.http_error
    assert error.failure == FailureClass.transient
    assert error.message == "Service unavailable"
    assert len(backend.calls("POST", "/auth/register")) == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_rate_limit_is_retried(api_client, backend) -> None:
    backend.script("GET", "/users/me", (429, None), (200, auth_json()["user"]))

    await api_client.fetch_profile("t")

    assert len(backend.calls("GET", "/users/me")) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("status, failure", [
    (400, FailureClass.terminal),
    (401, FailureClass.terminal),
    (404, FailureClass.terminal),
    (409, FailureClass.conflict),
    (422, FailureClass.terminal),
])
async def test_client_errors_fail_immediately(api_client, backend, sleeps, status, failure) -> None:
    backend.script("POST", "/auth/register", (status, {"message": "nope", "code": "E_X"}))

    with pytest.raises(ApiError) as info:
        await api_client.register({})

    assert info.value.status == status
    assert info.value.code == "E_X"
    assert info.value.failure == failure
    assert len(backend.calls("POST", "/auth/register")) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_error_without_json_body_uses_reason_phrase(api_client, backend) -> None:
    backend.script("GET", "/users/me", (403, "<html>forbidden</html>"))

    with pytest.raises(ApiError) as info:
        await api_client.fetch_profile("t")

    assert info.value.message == "Forbidden"
    assert info.value.code == ErrorKind.http_error.value


@pytest.mark.asyncio
async def test_connection_failure_is_network_error_after_retries(api_client, backend, sleeps) -> None:
    backend.script("GET", "/users/me", httpx.ConnectError("Connection refused"))

    with pytest.raises(ApiError) as info:
        await api_client.fetch_profile("t")

    assert info.value.kind == ErrorKind.network_error
    assert info.value.status == 503
    assert info.value.is_transient
    assert isinstance(info.value.__cause__, httpx.ConnectError)
    assert len(backend.calls("GET", "/users/me")) == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_per_attempt_deadline_raises_timeout(api_client, backend) -> None:
    backend.script("GET", "/users/me", Delay(5.0, (200, {})))
    options = RequestOptions(timeout=0.05, retry_attempts=0)

    with pytest.raises(ApiError) as info:
        await api_client.request("GET", "/users/me", token="t", options=options)

    assert info.value.kind == ErrorKind.timeout
    assert info.value.status == 504
    assert info.value.failure == FailureClass.transient


@pytest.mark.asyncio
async def test_attempt_deadline_is_passed_to_the_transport(api_client, backend) -> None:
    backend.script("GET", "/users/me", (200, auth_json()["user"]))
    backend.script("GET", "/health", (200, {}))

    await api_client.request(
        "GET", "/users/me", token="t", options=RequestOptions(timeout=12.0)
    )
    await api_client.health_check(timeout=0.25)

    (request,) = backend.calls("GET", "/users/me")
    assert request.extensions["timeout"]["read"] == 12.0
    (probe_request,) = backend.calls("GET", "/health")
    assert probe_request.extensions["timeout"]["read"] == 0.25


@pytest.mark.asyncio
async def test_shared_pool_leaves_deadlines_to_request_options() -> None:
    http = build_http_client()
    try:
        assert http.timeout.read is None
        assert http.timeout.connect is None
    finally:
        await http.aclose()


@pytest.mark.asyncio
async def test_slow_first_attempt_does_not_doom_the_retry(api_client, backend) -> None:
    backend.script("GET", "/users/me", Delay(5.0, (200, {})), (200, auth_json()["user"]))
    options = RequestOptions(timeout=0.05, retry_attempts=1, retry_delay=0)

    body = await api_client.request("GET", "/users/me", token="t", options=options)

    assert body["email"] == "ada@example.com"


@pytest.mark.asyncio
async def test_malformed_success_body_is_terminal_by_default(api_client, backend, sleeps) -> None:
    backend.script("GET", "/users/me", (200, "{not json"))

    with pytest.raises(ApiError) as info:
        await api_client.fetch_profile("t")

    assert info.value.kind == ErrorKind.invalid_response
    assert info.value.failure == FailureClass.terminal
    assert len(backend.calls("GET", "/users/me")) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_malformed_success_body_retried_when_enabled(api_client, backend) -> None:
    backend.script("GET", "/users/me", (200, "{not json"), (200, auth_json()["user"]))
    options = RequestOptions(retry_attempts=2, retry_delay=0, retry_invalid_response=True)

    body = await api_client.request("GET", "/users/me", token="t", options=options)

    assert body["fullName"] == "Ada Lovelace"
    assert len(backend.calls("GET", "/users/me")) == 2


@pytest.mark.asyncio
async def test_body_that_breaks_the_contract_is_invalid_response(api_client, backend) -> None:
    backend.script("POST", "/auth/login", (200, {"user": {}}))   # token missing

    with pytest.raises(ApiError) as info:
        await api_client.login("ada@example.com", "secret1", 42)

    assert info.value.kind == ErrorKind.invalid_response


@pytest.mark.asyncio
async def test_unclassified_exception_propagates_unwrapped(api_client, backend) -> None:
    backend.script("GET", "/users/me", RuntimeError("boom"))

    with pytest.raises(RuntimeError, match="boom"):
        await api_client.fetch_profile("t")

    assert len(backend.calls("GET", "/users/me")) == 1


# ---------------------------------------------------------------------------
# Health check and lookups
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("status", [200, 401, 403, 404])
async def test_health_check_treats_reachable_statuses_as_up(api_client, backend, status) -> None:
    backend.script("GET", "/health", (status, {"status": "ok"}))

    assert await api_client.health_check() == status


@pytest.mark.asyncio
async def test_health_check_server_error_fails(api_client, backend) -> None:
    backend.script("GET", "/health", (500, "boom"))

    with pytest.raises(ApiError) as info:
        await api_client.health_check()

    assert info.value.kind == ErrorKind.health_check_failed
    assert info.value.status == 500


@pytest.mark.asyncio
async def test_health_check_unreachable_is_not_retried(api_client, backend, sleeps) -> None:
    backend.script("GET", "/health", httpx.ConnectError("Connection refused"))

    with pytest.raises(ApiError) as info:
        await api_client.health_check()

    assert info.value.kind == ErrorKind.health_check_failed
    assert len(backend.calls("GET", "/health")) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_lookup_unknown_user_returns_none(api_client, backend) -> None:
    assert await api_client.lookup_by_telegram_id(42) is None
    assert len(backend.calls("GET", "/auth/telegram/42")) == 1


# ---------------------------------------------------------------------------
# Exception classification
# ---------------------------------------------------------------------------

def test_classify_connection_errno() -> None:
    error = classify_exception(OSError(errno.ECONNREFUSED, "refused"))
    assert error is not None
    assert error.kind == ErrorKind.network_error


def test_classify_looks_one_level_into_the_cause() -> None:
    try:
        try:
            raise asyncio.TimeoutError()
        except asyncio.TimeoutError as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        error = classify_exception(outer)

    assert error is not None
    assert error.kind == ErrorKind.timeout


def test_classify_unrelated_exception_returns_none() -> None:
    assert classify_exception(ValueError("bad literal")) is None


def test_api_error_failure_classes() -> None:
    assert ApiError("x", 500).failure == FailureClass.transient
    assert ApiError("x", 409).failure == FailureClass.conflict
    assert ApiError("x", 200, kind=ErrorKind.invalid_response).failure == FailureClass.terminal
    assert ApiError("x", 503, kind=ErrorKind.network_error).code == "network_error"
