"""
store.py — Session Store facade for TaxHelp.

Keeps one Session per conversation in process memory with a sliding inactivity
TTL. The Wizard Engine and the Sync Queue only ever go through get/create/update
(plus the upsert/set_profile conveniences), so the backing can later move to an
external store without touching either of them.

Design principles:
  - Lazy eviction: an expired Session is dropped the next time it is read
  - update() is a shallow merge applied IN PLACE on the stored Session, so a
    foreground step and a background reconciliation touching different keys
    of the same conversation never clobber each other
  - A mode change that does not bring its own wizard clears the old wizard and
    pagination cursors (only the wizard matching the mode is meaningful)
  - Logs only conversation ids and key names — never field values
  - No cross-conversation locking: each conversation is owned by the task
    currently handling its event
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from taxhelp.models import Session, SessionMode, UiState, UserProfile

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# TTL constant (seconds)
# ---------------------------------------------------------------------------
SESSION_TTL: int = 60 * 60 * 12   # 12 hours


class SessionStore:
    def __init__(
        self,
        ttl_seconds: float = SESSION_TTL,
        clock: Callable[[], float] = time.time,
        default_language: str = "en",
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._default_language = default_language
        self._sessions: dict[int, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, session: Session) -> bool:
        return self._clock() - session.last_activity > self._ttl

    # -----------------------------------------------------------------------
    # Core contract
    # -----------------------------------------------------------------------

    def get(self, conversation_id: int) -> Optional[Session]:
        """
        Return the live Session for a conversation.
        Returns None if it never existed or has been idle longer than the TTL
        (the expired entry is evicted on the way out).
        """
        session = self._sessions.get(conversation_id)
        if session is None:
            return None
        if self._expired(session):
            del self._sessions[conversation_id]
            logger.info("Session expired conversation_id=%s", conversation_id)
            return None
        return session

    def create(self, conversation_id: int, identity: int, language: str) -> Session:
        """Start a fresh idle Session, replacing anything stored for the conversation."""
        session = Session(
            conversation_id=conversation_id,
            identity=identity,
            language=language,
            last_activity=self._clock(),
        )
        self._sessions[conversation_id] = session
        logger.info("Session created conversation_id=%s", conversation_id)
        return session

    def update(self, conversation_id: int, partial: dict[str, Any]) -> Optional[Session]:
        """
        Shallow-merge `partial` into the stored Session and refresh last_activity.
        No-op returning None when the Session is absent or expired.

        Raises:
            ValueError: a key is not a Session field or a value fails validation.
        """
        session = self.get(conversation_id)
        if session is None:
            return None

        changes = dict(partial)
        new_mode = changes.get("mode")
        if new_mode is not None and SessionMode(new_mode) != session.mode:
            changes.setdefault("wizard", None)
            changes.setdefault("ui", UiState())

        for key, value in changes.items():
            setattr(session, key, value)
        session.last_activity = self._clock()
        logger.debug(
            "Session updated conversation_id=%s keys=%s",
            conversation_id,
            ",".join(sorted(changes)),
        )
        return session

    # -----------------------------------------------------------------------
    # Conveniences built on the core contract
    # -----------------------------------------------------------------------

    def upsert(
        self,
        conversation_id: int,
        identity: int,
        language: Optional[str] = None,
    ) -> Session:
        """
        Get-or-create used on every inbound event.
        An existing Session keeps its language unless one is given explicitly.
        """
        existing = self.get(conversation_id)
        if existing is None:
            return self.create(conversation_id, identity, language or self._default_language)
        partial: dict[str, Any] = {"identity": identity}
        if language:
            partial["language"] = language
        return self.update(conversation_id, partial)  # type: ignore[return-value]

    def set_profile(self, conversation_id: int, profile: UserProfile) -> Optional[Session]:
        """Replace the confirmed profile; the profile's language becomes the session language."""
        return self.update(
            conversation_id,
            {"profile": profile, "language": profile.language, "sync_pending": False},
        )

    def evict_expired(self) -> int:
        """Drop every expired Session. Returns how many were evicted."""
        expired = [cid for cid, session in self._sessions.items() if self._expired(session)]
        for conversation_id in expired:
            del self._sessions[conversation_id]
        if expired:
            logger.info("Evicted %d expired sessions", len(expired))
        return len(expired)
