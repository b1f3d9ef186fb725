"""
Default collaborators for a standalone deployment.

- ``DirectoryLeadResolver``: channel identity -> lead, from a JSON directory file
  with an optional default organization for walk-in callers
- ``SessionArchive``: keeps finished sessions per lead in the state backend and
  serves them back as conversation history for context assembly
- ``LoggingChannelGateway``: records outbound customer messages in the log

Production deployments replace these with CRM, system-of-record and telephony
adapters that satisfy the same protocols.
"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from utils.ml_logging import get_logger

from callrelay.collaborators import HistoryTurn, LeadIdentity
from callrelay.state.backends import StateBackend
from callrelay.state.models import ConversationSession, Speaker
from callrelay.state.store import KEY_PREFIX

logger = get_logger(__name__)

ARCHIVE_TTL_SECONDS = 30 * 24 * 60 * 60
MAX_ARCHIVED_SUMMARIES = 20
MAX_ARCHIVED_TURNS = 200


def normalize_identity(identity: str) -> str:
    """Strip formatting from phone-style identities: ``(555) 123-4567`` -> ``5551234567``."""
    identity = identity.strip()
    if re.fullmatch(r"[+\d\s().-]+", identity):
        digits = re.sub(r"[^\d+]", "", identity)
        return digits
    return identity


# ═══════════════════════════════════════════════════════════════════════════════
# LEAD RESOLUTION
# ═══════════════════════════════════════════════════════════════════════════════


class DirectoryLeadResolver:
    """
    Resolves identities against an in-memory directory.

    Identities missing from the directory resolve to a synthetic lead in
    ``default_organization_id`` when one is configured, otherwise to None.
    """

    def __init__(
        self,
        directory: dict[str, LeadIdentity] | None = None,
        *,
        default_organization_id: str | None = None,
    ):
        self.directory = {normalize_identity(k): v for k, v in (directory or {}).items()}
        self.default_organization_id = default_organization_id

    @classmethod
    def from_json_file(
        cls, path: str | Path, *, default_organization_id: str | None = None
    ) -> DirectoryLeadResolver:
        """Load ``{identity: {organizationId, leadId, displayName?, attributes?}}``."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        directory = {
            identity: LeadIdentity(
                organization_id=entry["organizationId"],
                lead_id=entry["leadId"],
                display_name=entry.get("displayName"),
                attributes=entry.get("attributes", {}),
            )
            for identity, entry in raw.items()
        }
        logger.info("Loaded %d leads from %s", len(directory), path)
        return cls(directory, default_organization_id=default_organization_id)

    async def resolve(self, channel_identity: str) -> LeadIdentity | None:
        key = normalize_identity(channel_identity)
        if not key:
            return None
        lead = self.directory.get(key)
        if lead is not None:
            return lead
        if self.default_organization_id:
            return LeadIdentity(organization_id=self.default_organization_id, lead_id=f"lead-{key}")
        logger.info("No lead found for channel identity")
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION ARCHIVE (persistence + history)
# ═══════════════════════════════════════════════════════════════════════════════


def _summaries_key(lead_id: str) -> str:
    return f"{KEY_PREFIX}:archive:lead:{lead_id}:summaries"


def _turns_key(lead_id: str) -> str:
    return f"{KEY_PREFIX}:archive:lead:{lead_id}:turns"


def _profile_key(lead_id: str) -> str:
    return f"{KEY_PREFIX}:archive:lead:{lead_id}:profile"


def _session_channel(session: ConversationSession) -> str:
    return "sms" if str(session.channel_config.get("channel", "")).lower() == "sms" else "voice"


def summarize_session(session: ConversationSession) -> str:
    """One-line recap used as the session's summary in later context."""
    channel = _session_channel(session)
    started = datetime.fromtimestamp(session.started_at, tz=UTC).strftime("%Y-%m-%d %H:%M")
    authoritative = [e for e in session.transcript if e.authoritative]
    parts = [f"{channel} conversation on {started} UTC, {len(authoritative)} messages"]
    if session.human_agent_id:
        parts.append(f"handled by human agent {session.human_agent_id}")
    last_customer = next(
        (e.text for e in reversed(authoritative) if e.speaker == Speaker.CUSTOMER), None
    )
    if last_customer:
        parts.append(f"customer last said: {last_customer[:120]}")
    return "; ".join(parts)


class SessionArchive:
    """Per-lead archive of finished sessions, stored beside live state."""

    def __init__(self, backend: StateBackend, *, ttl_seconds: int = ARCHIVE_TTL_SECONDS):
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    async def save_session(self, session: ConversationSession) -> None:
        if not session.lead_id:
            logger.debug("Session has no lead; not archived", extra={"session_id": session.id})
            return
        lead_id = session.lead_id
        channel = _session_channel(session)
        ended_at = session.ended_at or session.last_event_at or session.started_at

        await self.backend.zadd_bounded(
            _summaries_key(lead_id),
            json.dumps({"sessionId": session.id, "summary": summarize_session(session)}),
            ended_at,
            ttl_seconds=self.ttl_seconds,
            max_len=MAX_ARCHIVED_SUMMARIES,
        )
        for entry in session.transcript:
            if not entry.authoritative:
                continue
            turn = {
                "sessionId": session.id,
                "sequence": entry.sequence,
                "channel": channel,
                "speaker": entry.speaker.value,
                "text": entry.text,
                "timestamp": entry.timestamp,
            }
            await self.backend.zadd_bounded(
                _turns_key(lead_id),
                json.dumps(turn),
                entry.timestamp,
                ttl_seconds=self.ttl_seconds,
                max_len=MAX_ARCHIVED_TURNS,
            )
        logger.info(
            "Archived session with %d transcript entries",
            len(session.transcript),
            extra={"session_id": session.id, "lead_id": lead_id},
        )

    async def save_profile(self, lead_id: str, profile: dict[str, Any]) -> None:
        await self.backend.merge_hash(
            _profile_key(lead_id),
            {k: json.dumps(v) for k, v in profile.items() if v is not None},
            self.ttl_seconds,
        )

    async def get_summaries(self, lead_id: str, limit: int) -> list[str]:
        members = await self.backend.zrange(_summaries_key(lead_id), limit=limit, desc=True)
        return [json.loads(m)["summary"] for m in members]

    async def get_recent_turns(self, lead_id: str, limit: int) -> list[HistoryTurn]:
        members = await self.backend.zrange(_turns_key(lead_id), limit=limit, desc=True)
        turns = []
        for member in reversed(members):
            data = json.loads(member)
            turns.append(
                HistoryTurn(
                    session_id=data["sessionId"],
                    channel=data["channel"],
                    speaker=data["speaker"],
                    text=data["text"],
                    timestamp=data["timestamp"],
                )
            )
        return turns

    async def get_lead_profile(self, lead_id: str) -> dict[str, Any]:
        raw = await self.backend.get_hash(_profile_key(lead_id))
        return {k: json.loads(v) for k, v in raw.items()}


# ═══════════════════════════════════════════════════════════════════════════════
# CHANNEL GATEWAY
# ═══════════════════════════════════════════════════════════════════════════════


class LoggingChannelGateway:
    """Stand-in gateway: writes the outbound message to the log instead of a carrier."""

    def __init__(self) -> None:
        self.delivered = 0

    async def deliver(self, session: ConversationSession, text: str, speaker: Speaker) -> None:
        self.delivered += 1
        logger.info(
            "Outbound %s message (%d chars)",
            speaker.value,
            len(text),
            extra={"session_id": session.id, "organization_id": session.organization_id},
        )
