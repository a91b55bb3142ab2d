"""
Scripted stand-in for the TaxHelp backend REST API.

Routes are keyed by (METHOD, path). Each route holds a script of outcomes
consumed one per request; the last outcome repeats once the script runs out.
An outcome is one of:
  (status, body)     — body is a dict/list (JSON), str (text), bytes or None
  Exception instance — raised from the transport, as a dropped connection would be
  Delay(seconds, outcome) — waits before producing `outcome`

Unscripted routes answer 404. Every request is recorded for assertions.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional

import httpx

BASE_URL = "http://backend.test"


@dataclass
class Delay:
    seconds: float
    outcome: Any


def user_json(**overrides: Any) -> dict[str, Any]:
    user = {
        "id": "u-1",
        "fullName": "Ada Lovelace",
        "email": "ada@example.com",
        "phone": "+15551234567",
        "country": "United States",
        "state": "CA",
        "filingStatus": "single",
        "incomeType": "w2",
        "language": "en",
    }
    user.update(overrides)
    return user


def auth_json(token: str = "tok-1", **user_overrides: Any) -> dict[str, Any]:
    return {"token": token, "user": user_json(**user_overrides)}


class FakeBackend:
    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], list[Any]] = {}
        self.requests: list[httpx.Request] = []

    def script(self, method: str, path: str, *outcomes: Any) -> "FakeBackend":
        self._routes[(method.upper(), path)] = list(outcomes)
        return self

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method.upper() and r.url.path == path
        ]

    def bodies(self, method: str, path: str) -> list[Any]:
        return [json.loads(r.content) if r.content else None for r in self.calls(method, path)]

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), base_url=BASE_URL)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        script = self._routes.get((request.method, request.url.path))
        if not script:
            return httpx.Response(404, json={"message": "Not found", "code": "NOT_FOUND"})
        outcome = script.pop(0) if len(script) > 1 else script[0]
        return await self._produce(outcome)

    async def _produce(self, outcome: Any) -> httpx.Response:
        if isinstance(outcome, Delay):
            await asyncio.sleep(outcome.seconds)
            return await self._produce(outcome.outcome)
        if isinstance(outcome, Exception):
            raise outcome
        status, body = outcome
        return _response(status, body)


def _response(status: int, body: Optional[Any]) -> httpx.Response:
    if body is None:
        return httpx.Response(status)
    if isinstance(body, bytes):
        return httpx.Response(status, content=body)
    if isinstance(body, str):
        return httpx.Response(status, text=body)
    return httpx.Response(status, json=body)
