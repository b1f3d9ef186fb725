"""
Conversation State Store
========================

Single source of truth for in-progress sessions. Session fields live in one
hash per session and are written as field-level merges; transcripts live in a
sequence-scored set so reads come back ordered no matter how appends
interleave. Organization and identity indexes are recency-scored sets.

Every write refreshes TTL. Expiry is permanent: once a key lapses the session
is gone and ``get`` returns ``None``.
"""

from __future__ import annotations

import asyncio
import json
import weakref
from typing import Any

from pydantic_core import to_jsonable_python
from utils.ml_logging import get_logger

from callrelay.clock import Clock, SystemClock
from callrelay.errors import ImmutableFieldError, StateNotFoundError
from callrelay.state.backends import StateBackend
from callrelay.state.models import (
    ConversationSession,
    SessionStatus,
    TranscriptEntry,
)

logger = get_logger(__name__)

SESSION_TTL_SECONDS = 24 * 60 * 60
ORG_INDEX_TTL_SECONDS = 7 * 24 * 60 * 60
EPHEMERAL_TTL_SECONDS = 5 * 60
TRANSCRIPT_MAX_ENTRIES = 100
ORG_INDEX_MAX_ENTRIES = 1000

KEY_PREFIX = "callrelay"

_SESSION_FIELDS = frozenset(ConversationSession.model_fields) - {"transcript"}
_IMMUTABLE_FIELDS = ("id", "organization_id", "started_at")


def session_key(session_id: str) -> str:
    return f"{KEY_PREFIX}:session:{session_id}"


def sequence_key(session_id: str) -> str:
    return f"{KEY_PREFIX}:session:{session_id}:seq"


def transcript_key(session_id: str) -> str:
    return f"{KEY_PREFIX}:session:{session_id}:transcript"


def org_index_key(organization_id: str) -> str:
    return f"{KEY_PREFIX}:org:{organization_id}:sessions"


def identity_index_key(identity: str) -> str:
    return f"{KEY_PREFIX}:identity:{identity}:sessions"


def ephemeral_key(name: str) -> str:
    return f"{KEY_PREFIX}:ephemeral:{name}"


def _encode_fields(fields: dict[str, Any]) -> dict[str, str]:
    return {name: json.dumps(to_jsonable_python(value)) for name, value in fields.items()}


def _decode_fields(raw: dict[str, str]) -> dict[str, Any]:
    decoded: dict[str, Any] = {}
    for name, value in raw.items():
        if name not in _SESSION_FIELDS:
            continue
        try:
            decoded[name] = json.loads(value)
        except (TypeError, ValueError):
            decoded[name] = value
    return decoded


class ConversationStateStore:
    """Session state with TTL, field-level merges and recency indexes.

    Guarded fields (``organization_id`` and terminal ``status``) are checked
    under a per-session lock so concurrent writers in this process cannot race
    the read-check-merge sequence. Plain field writes rely on the backend's
    atomic hash merge.
    """

    def __init__(
        self,
        backend: StateBackend,
        *,
        clock: Clock | None = None,
        session_ttl_seconds: int = SESSION_TTL_SECONDS,
        org_index_ttl_seconds: int = ORG_INDEX_TTL_SECONDS,
        ephemeral_ttl_seconds: int = EPHEMERAL_TTL_SECONDS,
        transcript_max_entries: int = TRANSCRIPT_MAX_ENTRIES,
    ):
        self.backend = backend
        self.clock = clock or SystemClock()
        self.session_ttl_seconds = session_ttl_seconds
        self.org_index_ttl_seconds = org_index_ttl_seconds
        self.ephemeral_ttl_seconds = ephemeral_ttl_seconds
        self.transcript_max_entries = transcript_max_entries
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    # ------------------------------------------------------------------ #
    # Session hash
    # ------------------------------------------------------------------ #
    async def create_session(
        self,
        session_id: str,
        organization_id: str,
        *,
        lead_id: str | None = None,
        channel_identity: str | None = None,
        channel_config: dict[str, Any] | None = None,
    ) -> ConversationSession:
        """Create a session in ``initiated`` / AI-controlled state and index it."""
        now = self.clock.now()
        session = ConversationSession(
            id=session_id,
            organization_id=organization_id,
            lead_id=lead_id,
            channel_identity=channel_identity,
            started_at=now,
            last_event_at=now,
            control_changed_at=now,
            channel_config=channel_config or {},
        )
        await self.put(session_id, session.model_dump(exclude={"transcript"}))
        await self.add_to_org_index(organization_id, session_id, score=now)
        if channel_identity:
            await self.index_identity(channel_identity, session_id, score=now)
        logger.info(
            "Session created",
            extra={"session_id": session_id, "organization_id": organization_id},
        )
        return session

    async def put(
        self, session_id: str, partial: dict[str, Any], *, create: bool = True
    ) -> None:
        """Merge ``partial`` into the session hash and refresh TTL.

        Creates the session when absent (``create=True``); a new session needs
        ``organization_id``. Raises :class:`ImmutableFieldError` when an
        existing ``organization_id`` would change. A write that would move a
        completed/errored session back to a live status keeps the stored status.
        """
        unknown = set(partial) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")

        fields = dict(partial)
        async with self._lock_for(session_id):
            current = _decode_fields(await self.backend.get_hash(session_key(session_id)))
            if not current:
                if not create:
                    raise StateNotFoundError(session_id)
                if not fields.get("organization_id"):
                    raise ValueError("organization_id is required to create a session")
                fields.setdefault("id", session_id)
                fields.setdefault("started_at", self.clock.now())
                fields.setdefault("status", SessionStatus.INITIATED)
                fields.setdefault("control_owner", "ai")
            else:
                self._check_immutable(session_id, current, fields)
                self._guard_status(session_id, current, fields)

            fields.setdefault("last_event_at", self.clock.now())
            await self.backend.merge_hash(
                session_key(session_id), _encode_fields(fields), self.session_ttl_seconds
            )
            await self.backend.expire_keys(
                [sequence_key(session_id), transcript_key(session_id)],
                self.session_ttl_seconds,
            )

    @staticmethod
    def _check_immutable(
        session_id: str, current: dict[str, Any], fields: dict[str, Any]
    ) -> None:
        for name in _IMMUTABLE_FIELDS:
            if name not in fields or name not in current:
                continue
            new_value = to_jsonable_python(fields[name])
            if new_value != current[name]:
                raise ImmutableFieldError(
                    f"Session {session_id}: {name} cannot change once set",
                )
            del fields[name]

    @staticmethod
    def _guard_status(session_id: str, current: dict[str, Any], fields: dict[str, Any]) -> None:
        if "status" not in fields or "status" not in current:
            return
        stored = SessionStatus(current["status"])
        requested = SessionStatus(fields["status"])
        if stored.is_terminal and not requested.is_terminal:
            logger.warning(
                "Ignoring status regression %s -> %s",
                stored.value,
                requested.value,
                extra={"session_id": session_id},
            )
            del fields["status"]

    async def get(
        self, session_id: str, *, include_transcript: bool = False
    ) -> ConversationSession | None:
        """Return the merged session, or ``None`` when absent or expired."""
        raw = await self.backend.get_hash(session_key(session_id))
        if not raw:
            return None
        session = ConversationSession.model_validate(_decode_fields(raw))
        if include_transcript:
            session.transcript = await self.get_transcript(session_id)
        return session

    async def require(
        self, session_id: str, *, include_transcript: bool = False
    ) -> ConversationSession:
        session = await self.get(session_id, include_transcript=include_transcript)
        if session is None:
            raise StateNotFoundError(session_id)
        return session

    # ------------------------------------------------------------------ #
    # Transcript
    # ------------------------------------------------------------------ #
    async def append_transcript(self, session_id: str, entry: TranscriptEntry) -> TranscriptEntry:
        """Append ``entry`` with the next per-session sequence number.

        Raises :class:`StateNotFoundError` if the session has expired.
        """
        if not await self.backend.get_hash(session_key(session_id)):
            raise StateNotFoundError(session_id)

        sequence = await self.backend.incr(sequence_key(session_id), self.session_ttl_seconds)
        stored = entry.model_copy(update={"sequence": sequence})
        await self.backend.zadd_bounded(
            transcript_key(session_id),
            json.dumps(stored.to_wire()),
            float(sequence),
            ttl_seconds=self.session_ttl_seconds,
            max_len=self.transcript_max_entries,
        )
        await self.put(session_id, {"last_event_at": stored.timestamp}, create=False)
        return stored

    async def get_transcript(self, session_id: str) -> list[TranscriptEntry]:
        members = await self.backend.zrange(transcript_key(session_id))
        entries = [TranscriptEntry.model_validate(json.loads(m)) for m in members]
        entries.sort(key=lambda e: e.sequence)
        return entries

    # ------------------------------------------------------------------ #
    # Indexes
    # ------------------------------------------------------------------ #
    async def add_to_org_index(
        self, organization_id: str, session_id: str, score: float | None = None
    ) -> None:
        await self.backend.zadd_bounded(
            org_index_key(organization_id),
            session_id,
            self.clock.now() if score is None else score,
            ttl_seconds=self.org_index_ttl_seconds,
            max_len=ORG_INDEX_MAX_ENTRIES,
        )

    async def list_by_org(self, organization_id: str, limit: int = 50) -> list[ConversationSession]:
        """Most recent sessions for ``organization_id``; expired entries are pruned."""
        key = org_index_key(organization_id)
        session_ids = await self.backend.zrange(key, limit=limit, desc=True)
        sessions = await asyncio.gather(*(self.get(sid) for sid in session_ids))
        result: list[ConversationSession] = []
        for sid, session in zip(session_ids, sessions):
            if session is None:
                await self.backend.zrem(key, sid)
            elif session.organization_id == organization_id:
                result.append(session)
        return result

    async def index_identity(
        self, identity: str, session_id: str, score: float | None = None
    ) -> None:
        await self.backend.zadd_bounded(
            identity_index_key(identity),
            session_id,
            self.clock.now() if score is None else score,
            ttl_seconds=self.session_ttl_seconds,
            max_len=20,
        )

    async def latest_for_identity(self, identity: str) -> ConversationSession | None:
        """Most recently started live session for a channel identity."""
        key = identity_index_key(identity)
        for session_id in await self.backend.zrange(key, desc=True):
            session = await self.get(session_id)
            if session is not None:
                return session
            await self.backend.zrem(key, session_id)
        return None

    # ------------------------------------------------------------------ #
    # Ephemeral sub-keys
    # ------------------------------------------------------------------ #
    async def set_ephemeral(self, name: str, value: str, ttl_seconds: int | None = None) -> None:
        await self.backend.set_value(
            ephemeral_key(name), value, ttl_seconds or self.ephemeral_ttl_seconds
        )

    async def get_ephemeral(self, name: str) -> str | None:
        return await self.backend.get_value(ephemeral_key(name))

    async def ping(self) -> bool:
        return await self.backend.ping()
