"""
sync_queue.py — Write-behind queue for mutations the backend could not take yet.

When a wizard finalization fails transiently the engine applies the change
locally and hands the payload here. A background task drains the queue on a
fixed interval (plus one eager pass at startup) through the same API client.

Rules:
  - At most one pending entry per conversation. A new enqueue merges
    field-by-field into the pending payload, last write wins. A profile patch
    merged into a pending registration keeps it a registration.
  - Entries are popped while in flight. On transient failure they go back
    UNDER any edit that arrived meanwhile, so newer values still win.
  - Success reconciles the server representation into the Session.
    A registration conflict (409) redirects the Session into the login wizard.
    Other terminal failures drop the entry.
  - One entry failing never stops the rest of the pass.
  - Logs conversation ids, kinds and field names only — never values.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from taxhelp.models import LoginState, SessionMode
from taxhelp.services.api_client import ApiClient
from taxhelp.services.errors import ApiError, FailureClass
from taxhelp.store import SessionStore
from taxhelp.wizard.steps import steps_for

logger = logging.getLogger(__name__)

SYNC_INTERVAL: float = 30.0   # seconds


class MutationKind(str, Enum):
    create_registration = "create_registration"
    patch_profile = "patch_profile"


class PendingMutation(BaseModel):
    target_id: int                     # conversation id
    kind: MutationKind
    payload: dict[str, Any]            # camelCase wire fields
    attempts: int = Field(default=0, ge=0)


@dataclass
class DrainReport:
    synced: int = 0
    deferred: int = 0
    dropped: int = 0

    @property
    def total(self) -> int:
        return self.synced + self.deferred + self.dropped


_SYNCED, _DEFERRED, _DROPPED = "synced", "deferred", "dropped"


def _merged_kind(first: MutationKind, second: MutationKind) -> MutationKind:
    if MutationKind.create_registration in (first, second):
        return MutationKind.create_registration
    return MutationKind.patch_profile


class SyncQueue:
    def __init__(
        self,
        client: ApiClient,
        store: SessionStore,
        *,
        interval: float = SYNC_INTERVAL,
    ) -> None:
        self._client = client
        self._store = store
        self._interval = interval
        self._entries: dict[int, PendingMutation] = {}
        self._in_flight: set[int] = set()
        self._drain_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    # -----------------------------------------------------------------------
    # Queue contents
    # -----------------------------------------------------------------------

    def pending(self, target_id: int) -> Optional[PendingMutation]:
        return self._entries.get(target_id)

    def is_pending(self, target_id: int) -> bool:
        """True while a mutation for the target is queued or being sent."""
        return target_id in self._entries or target_id in self._in_flight

    def enqueue(
        self, target_id: int, kind: MutationKind, payload: dict[str, Any]
    ) -> Optional[PendingMutation]:
        """
        Queue a mutation, coalescing with whatever is already pending for the target.
        Returns the resulting entry, or None for an empty payload.
        """
        if not payload:
            return None
        existing = self._entries.get(target_id)
        if existing is None:
            entry = PendingMutation(target_id=target_id, kind=kind, payload=dict(payload))
        else:
            entry = existing.model_copy(update={
                "kind": _merged_kind(existing.kind, kind),
                "payload": {**existing.payload, **payload},
            })
        self._entries[target_id] = entry
        logger.info(
            "Queued %s conversation_id=%s fields=%s",
            entry.kind.value, target_id, ",".join(sorted(payload)),
        )
        return entry

    def discard(self, target_id: int) -> Optional[PendingMutation]:
        return self._entries.pop(target_id, None)

    def _requeue(self, entry: PendingMutation) -> None:
        """Put a failed in-flight entry back beneath any newer edit for the target."""
        newer = self._entries.get(entry.target_id)
        attempts = entry.attempts + 1
        if newer is None:
            self._entries[entry.target_id] = entry.model_copy(update={"attempts": attempts})
            return
        self._entries[entry.target_id] = newer.model_copy(update={
            "kind": _merged_kind(entry.kind, newer.kind),
            "payload": {**entry.payload, **newer.payload},
            "attempts": attempts,
        })

    # -----------------------------------------------------------------------
    # Draining
    # -----------------------------------------------------------------------

    async def drain(self) -> DrainReport:
        """Try every pending entry once. Overlapping calls return an empty report."""
        report = DrainReport()
        if self._drain_lock.locked():
            logger.debug("Drain already running — skipped")
            return report

        async with self._drain_lock:
            for target_id in list(self._entries):
                entry = self._entries.pop(target_id, None)
                if entry is None:
                    continue
                self._in_flight.add(target_id)
                try:
                    outcome = await self._flush(entry)
                except Exception:
                    logger.exception(
                        "Unexpected error flushing %s conversation_id=%s",
                        entry.kind.value, target_id,
                    )
                    self._requeue(entry)
                    outcome = _DEFERRED
                finally:
                    self._in_flight.discard(target_id)
                setattr(report, outcome, getattr(report, outcome) + 1)

        if report.total:
            logger.info(
                "Sync drain synced=%d deferred=%d dropped=%d",
                report.synced, report.deferred, report.dropped,
            )
        return report

    async def _flush(self, entry: PendingMutation) -> str:
        if entry.kind == MutationKind.create_registration:
            return await self._flush_registration(entry)
        return await self._flush_profile_patch(entry)

    async def _flush_registration(self, entry: PendingMutation) -> str:
        target_id = entry.target_id
        try:
            result = await self._client.register(entry.payload)
        except ApiError as error:
            if error.failure == FailureClass.transient:
                logger.warning(
                    "Registration flush deferred conversation_id=%s attempts=%d",
                    target_id, entry.attempts + 1,
                )
                self._requeue(entry)
                return _DEFERRED
            if error.failure == FailureClass.conflict:
                logger.warning("Registration flush conflict conversation_id=%s", target_id)
                self._store.update(target_id, {
                    "mode": SessionMode.login,
                    "wizard": LoginState(),
                    "profile": None,
                    "sync_pending": False,
                })
                return _DROPPED
            logger.error(
                "Registration flush failed conversation_id=%s code=%s status=%d",
                target_id, error.code, error.status,
            )
            self._store.update(target_id, {"sync_pending": False})
            return _DROPPED

        session = self._store.get(target_id)
        if session is not None:
            partial: dict[str, Any] = {
                "token": result.token,
                "profile": result.user,
                "language": result.user.language,
                "sync_pending": target_id in self._entries,
            }
            if session.mode == SessionMode.registration:
                partial["mode"] = SessionMode.idle
            self._store.update(target_id, partial)
        logger.info("Registration flush succeeded conversation_id=%s", target_id)
        return _SYNCED

    async def _flush_profile_patch(self, entry: PendingMutation) -> str:
        target_id = entry.target_id
        session = self._store.get(target_id)
        if session is None:
            logger.warning("Profile patch dropped, session gone conversation_id=%s", target_id)
            return _DROPPED
        if not session.token:
            # Not signed in yet (registration still pending)
            self._requeue(entry)
            return _DEFERRED

        try:
            profile = await self._client.update_profile(entry.payload, session.token)
        except ApiError as error:
            if error.failure == FailureClass.transient:
                logger.warning(
                    "Profile patch flush deferred conversation_id=%s attempts=%d",
                    target_id, entry.attempts + 1,
                )
                self._requeue(entry)
                return _DEFERRED
            logger.error(
                "Profile patch flush failed conversation_id=%s code=%s status=%d",
                target_id, error.code, error.status,
            )
            self._store.update(target_id, {"sync_pending": False})
            return _DROPPED

        partial: dict[str, Any] = {
            "profile": profile,
            "language": profile.language,
            "sync_pending": target_id in self._entries,
        }
        wizard = session.wizard
        if (
            session.mode == SessionMode.profile_edit
            and wizard is not None
            and wizard.cursor >= len(steps_for(wizard))
        ):
            partial["mode"] = SessionMode.idle
        self._store.update(target_id, partial)
        logger.info(
            "Profile patch flushed conversation_id=%s fields=%s",
            target_id, ",".join(sorted(entry.payload)),
        )
        return _SYNCED

    # -----------------------------------------------------------------------
    # Background loop
    # -----------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Eager drain, then one drain per interval until cancelled."""
        logger.info("Sync loop started interval=%.0fs", self._interval)
        while True:
            try:
                await self.drain()
                self._store.evict_expired()
            except Exception:
                logger.exception("Sync loop error")
            await asyncio.sleep(self._interval)
