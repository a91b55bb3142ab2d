"""
Unit tests for the in-memory Session Store — TTL, merge semantics, mode changes.

Run: pytest taxhelp/tests/test_session_store.py -v
"""
from __future__ import annotations

import pytest

from taxhelp.models import (
    LoginState,
    RegistrationState,
    SessionMode,
    UiState,
    UserProfile,
)
from taxhelp.store import SESSION_TTL, SessionStore


def test_ttl_is_twelve_hours() -> None:
    assert SESSION_TTL == 43_200


def test_create_then_get(store) -> None:
    created = store.create(7, identity=42, language="es")

    session = store.get(7)
    assert session is created
    assert session.identity == 42
    assert session.language == "es"
    assert session.mode == SessionMode.idle
    assert session.wizard is None
    assert not session.is_authenticated


def test_unknown_conversation_is_none(store) -> None:
    assert store.get(999) is None
    assert store.update(999, {"language": "ru"}) is None


def test_session_expires_after_inactivity(store, clock) -> None:
    store.create(7, identity=42, language="en")

    clock.advance(SESSION_TTL + 1)

    assert store.get(7) is None
    assert len(store) == 0


def test_create_after_expiry_starts_fresh(store, clock) -> None:
    store.create(7, identity=42, language="en")
    store.update(7, {"mode": SessionMode.registration, "wizard": RegistrationState(cursor=5)})
    clock.advance(SESSION_TTL + 1)

    assert store.get(7) is None
    session = store.upsert(7, identity=42)

    assert session.mode == SessionMode.idle
    assert session.wizard is None


def test_update_refreshes_the_sliding_window(store, clock) -> None:
    store.create(7, identity=42, language="en")
    clock.advance(SESSION_TTL - 10)
    store.update(7, {"language": "ru"})
    clock.advance(SESSION_TTL - 10)

    session = store.get(7)
    assert session is not None
    assert session.language == "ru"


def test_update_is_a_shallow_in_place_merge(store) -> None:
    original = store.create(7, identity=42, language="en")
    store.update(7, {"token": "tok-1"})
    store.update(7, {"sync_pending": True})

    session = store.get(7)
    assert session is original
    assert session.token == "tok-1"
    assert session.sync_pending is True
    assert session.language == "en"


def test_update_rejects_unknown_values(store) -> None:
    store.create(7, identity=42, language="en")

    with pytest.raises(ValueError):
        store.update(7, {"mode": "dancing"})


def test_mode_change_without_wizard_clears_wizard_and_pages(store) -> None:
    store.create(7, identity=42, language="en")
    store.update(7, {
        "mode": SessionMode.registration,
        "wizard": RegistrationState(cursor=4),
        "ui": UiState(pages={"country": 2}),
    })

    session = store.update(7, {"mode": SessionMode.idle})

    assert session.wizard is None
    assert session.ui.pages == {}


def test_mode_change_keeps_the_wizard_it_brings(store) -> None:
    store.create(7, identity=42, language="en")
    store.update(7, {"mode": SessionMode.registration, "wizard": RegistrationState(cursor=4)})

    session = store.update(7, {"mode": SessionMode.login, "wizard": LoginState()})

    assert isinstance(session.wizard, LoginState)
    assert session.wizard.cursor == 0


def test_same_mode_update_keeps_wizard(store) -> None:
    store.create(7, identity=42, language="en")
    store.update(7, {"mode": SessionMode.registration, "wizard": RegistrationState(cursor=3)})

    session = store.update(7, {"mode": SessionMode.registration, "language": "es"})

    assert session.wizard.cursor == 3


def test_upsert_creates_then_keeps_language(store) -> None:
    store.upsert(7, identity=42, language="ru")
    session = store.upsert(7, identity=42)

    assert session.language == "ru"
    assert len(store) == 1


def test_upsert_uses_configured_default_language(clock) -> None:
    store = SessionStore(clock=clock, default_language="de")

    assert store.upsert(7, identity=42).language == "de"
    assert store.upsert(8, identity=43, language="fr").language == "fr"


def test_set_profile_adopts_profile_language(store) -> None:
    store.create(7, identity=42, language="en")
    store.update(7, {"sync_pending": True})

    session = store.set_profile(7, UserProfile(full_name="Ada", language="es"))

    assert session.profile.full_name == "Ada"
    assert session.language == "es"
    assert session.sync_pending is False


def test_evict_expired_drops_only_stale_sessions(store, clock) -> None:
    store.create(1, identity=1, language="en")
    clock.advance(SESSION_TTL - 60)
    store.create(2, identity=2, language="en")
    clock.advance(120)

    assert store.evict_expired() == 1
    assert store.get(1) is None
    assert store.get(2) is not None
