"""
Context Assembler
=================

Builds the history text seeded into a new engine session. Summaries, recent
turns and the lead profile are read in parallel, each under its own timeout.
A failed or slow read contributes nothing; the session still starts.

Snapshots are cached per lead in the state store for a short TTL. Invalidation
is expiry only.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from utils.ml_logging import get_logger

from callrelay.clock import Clock, SystemClock
from callrelay.collaborators import HistorySource, HistoryTurn
from callrelay.state.models import DynamicContextSnapshot
from callrelay.state.store import ConversationStateStore

logger = get_logger(__name__)

T = TypeVar("T")

CONTEXT_CACHE_TTL_SECONDS = 60
CONTEXT_READ_TIMEOUT_SECONDS = 2.0
NO_HISTORY_TEXT = "No previous interactions"
RECENT_MESSAGE_COUNT = 3
MESSAGE_PREVIEW_CHARS = 100


def _preview(text: str) -> str:
    text = " ".join(text.split())
    if len(text) <= MESSAGE_PREVIEW_CHARS:
        return text
    return text[:MESSAGE_PREVIEW_CHARS] + "..."


def render_context(
    summaries: list[str], turns: list[HistoryTurn], profile: dict[str, Any]
) -> str:
    """Deterministic text for the given history; same input, same output."""
    lines: list[str] = []

    for key in sorted(profile):
        value = profile[key]
        if value in (None, "", [], {}):
            continue
        lines.append(f"Customer {key.replace('_', ' ')}: {value}")

    for summary in summaries:
        if summary and summary.strip():
            lines.append(f"Previous Summary: {summary.strip()}")

    ordered = sorted(turns, key=lambda t: (t.timestamp, t.session_id, t.speaker, t.text))
    voice_calls = {t.session_id for t in ordered if t.channel == "voice"}
    sms_messages = [t for t in ordered if t.channel == "sms"]
    if voice_calls:
        lines.append(f"Voice Calls: {len(voice_calls)} calls")
    if sms_messages:
        lines.append(f"SMS Exchanges: {len(sms_messages)} messages")

    recent = ordered[-RECENT_MESSAGE_COUNT:]
    if recent:
        lines.append("Recent Messages:")
        for turn in recent:
            lines.append(f"- [{turn.channel}] {turn.speaker}: {_preview(turn.text)}")

    return "\n".join(lines) if lines else NO_HISTORY_TEXT


class ContextAssembler:
    def __init__(
        self,
        store: ConversationStateStore,
        history: HistorySource,
        *,
        clock: Clock | None = None,
        ttl_seconds: int = CONTEXT_CACHE_TTL_SECONDS,
        read_timeout_seconds: float = CONTEXT_READ_TIMEOUT_SECONDS,
        summary_limit: int = 3,
        turn_limit: int = 20,
    ):
        self.store = store
        self.history = history
        self.clock = clock or SystemClock()
        self.ttl_seconds = ttl_seconds
        self.read_timeout_seconds = read_timeout_seconds
        self.summary_limit = summary_limit
        self.turn_limit = turn_limit

    @staticmethod
    def _cache_name(lead_id: str, organization_id: str | None) -> str:
        return f"context:{organization_id or '-'}:{lead_id}"

    async def build(
        self, lead_id: str | None, organization_id: str | None = None
    ) -> DynamicContextSnapshot:
        """Return the context snapshot for ``lead_id``, from cache when fresh.

        Cache entries are scoped to ``organization_id`` so tenants that reuse a
        lead id never share context.
        """
        now = self.clock.now()
        if not lead_id:
            return DynamicContextSnapshot(
                lead_id="", text=NO_HISTORY_TEXT, built_at=now, expires_at=now
            )

        cache_name = self._cache_name(lead_id, organization_id)
        cached = await self._read_cache(cache_name, lead_id)
        if cached is not None and cached.expires_at > now:
            logger.debug("Context cache hit", extra={"lead_id": lead_id})
            return cached

        summaries, turns, profile = await asyncio.gather(
            self._bounded(
                "summaries", lead_id, self.history.get_summaries(lead_id, self.summary_limit), []
            ),
            self._bounded(
                "recent_turns", lead_id, self.history.get_recent_turns(lead_id, self.turn_limit), []
            ),
            self._bounded("lead_profile", lead_id, self.history.get_lead_profile(lead_id), {}),
        )
        degraded = any(value is None for value in (summaries, turns, profile))

        snapshot = DynamicContextSnapshot(
            lead_id=lead_id,
            text=render_context(summaries or [], turns or [], profile or {}),
            built_at=now,
            expires_at=now + self.ttl_seconds,
        )
        if degraded:
            logger.warning(
                "Context assembled with missing history; not caching",
                extra={"lead_id": lead_id},
            )
        else:
            await self._write_cache(cache_name, snapshot)
        return snapshot

    async def _bounded(
        self, label: str, lead_id: str, read: Awaitable[T], empty: T
    ) -> T | None:
        """Await one history read under the per-read timeout; ``None`` on failure."""
        try:
            result = await asyncio.wait_for(read, timeout=self.read_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "History read %s timed out after %.1fs",
                label,
                self.read_timeout_seconds,
                extra={"lead_id": lead_id},
            )
            return None
        except Exception as exc:
            logger.warning(
                "History read %s failed: %s", label, exc, extra={"lead_id": lead_id}
            )
            return None
        return result if result is not None else empty

    async def _read_cache(self, name: str, lead_id: str) -> DynamicContextSnapshot | None:
        try:
            raw = await self.store.get_ephemeral(name)
        except Exception as exc:
            logger.warning("Context cache read failed: %s", exc, extra={"lead_id": lead_id})
            return None
        if not raw:
            return None
        try:
            return DynamicContextSnapshot.model_validate_json(raw)
        except ValueError:
            logger.warning("Discarding unreadable context cache entry", extra={"lead_id": lead_id})
            return None

    async def _write_cache(self, name: str, snapshot: DynamicContextSnapshot) -> None:
        try:
            await self.store.set_ephemeral(
                name,
                snapshot.model_dump_json(by_alias=True),
                ttl_seconds=self.ttl_seconds,
            )
        except Exception as exc:
            logger.warning(
                "Context cache write failed: %s", exc, extra={"lead_id": snapshot.lead_id}
            )
