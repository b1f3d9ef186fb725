import asyncio

import pytest

from callrelay.collaborators import HistoryTurn
from callrelay.context.assembler import (
    CONTEXT_CACHE_TTL_SECONDS,
    NO_HISTORY_TEXT,
    ContextAssembler,
    render_context,
)


class FakeHistory:
    def __init__(self, summaries=None, turns=None, profile=None):
        self.summaries = summaries or []
        self.turns = turns or []
        self.profile = profile or {}
        self.failing: set[str] = set()
        self.hanging: set[str] = set()
        self.calls = 0

    async def _read(self, name, value):
        self.calls += 1
        if name in self.failing:
            raise ConnectionError(f"{name} store unavailable")
        if name in self.hanging:
            await asyncio.sleep(10)
        return value

    async def get_summaries(self, lead_id, limit):
        return await self._read("summaries", self.summaries[:limit])

    async def get_recent_turns(self, lead_id, limit):
        return await self._read("turns", self.turns[-limit:])

    async def get_lead_profile(self, lead_id):
        return await self._read("profile", self.profile)


def _turn(session_id, channel, speaker, text, ts):
    return HistoryTurn(session_id=session_id, channel=channel, speaker=speaker, text=text, timestamp=ts)


TURNS = [
    _turn("call-1", "voice", "customer", "I want to reschedule", 100.0),
    _turn("call-1", "voice", "ai", "Sure, which day works?", 101.0),
    _turn("sms-1", "sms", "customer", "Tuesday please", 200.0),
    _turn("call-2", "voice", "customer", "x" * 150, 300.0),
]


@pytest.fixture
def history():
    return FakeHistory(
        summaries=["Rescheduled appointment to Tuesday"],
        turns=list(TURNS),
        profile={"name": "Ada", "plan": "gold", "notes": ""},
    )


@pytest.fixture
def assembler(store, history, clock):
    return ContextAssembler(store, history, clock=clock, read_timeout_seconds=0.05)


def test_render_without_history():
    assert render_context([], [], {}) == NO_HISTORY_TEXT


def test_render_lists_profile_summaries_counts_and_recent_messages():
    text = render_context(["Rescheduled appointment to Tuesday"], TURNS, {"name": "Ada", "notes": ""})

    assert text.splitlines() == [
        "Customer name: Ada",
        "Previous Summary: Rescheduled appointment to Tuesday",
        "Voice Calls: 2 calls",
        "SMS Exchanges: 1 messages",
        "Recent Messages:",
        "- [voice] ai: Sure, which day works?",
        "- [sms] customer: Tuesday please",
        "- [voice] customer: " + "x" * 100 + "...",
    ]


def test_render_is_independent_of_input_order():
    assert render_context([], list(reversed(TURNS)), {}) == render_context([], TURNS, {})


async def test_build_reads_history_and_caches_snapshot(assembler, history, clock):
    first = await assembler.build("lead-1")
    second = await assembler.build("lead-1")

    assert "Customer name: Ada" in first.text
    assert first.expires_at == clock.now() + CONTEXT_CACHE_TTL_SECONDS
    assert second == first
    assert history.calls == 3


async def test_cache_expires_after_ttl(assembler, history, clock):
    await assembler.build("lead-1")
    clock.advance(CONTEXT_CACHE_TTL_SECONDS + 1)
    history.profile = {"name": "Ada Lovelace"}

    rebuilt = await assembler.build("lead-1")

    assert "Customer name: Ada Lovelace" in rebuilt.text
    assert history.calls == 6


async def test_cache_is_scoped_to_organization(assembler, history):
    first = await assembler.build("lead-1", "org-a")
    history.profile = {"name": "Grace"}

    other_tenant = await assembler.build("lead-1", "org-b")
    same_tenant = await assembler.build("lead-1", "org-a")

    assert "Customer name: Grace" in other_tenant.text
    assert same_tenant == first
    assert history.calls == 6


async def test_failed_read_degrades_without_caching(assembler, history):
    history.failing.add("summaries")

    snapshot = await assembler.build("lead-1")

    assert "Previous Summary" not in snapshot.text
    assert "Tuesday please" in snapshot.text

    history.failing.clear()
    retried = await assembler.build("lead-1")
    assert "Previous Summary: Rescheduled appointment to Tuesday" in retried.text


async def test_slow_read_is_bounded_by_timeout(assembler, history):
    history.hanging.add("turns")

    snapshot = await asyncio.wait_for(assembler.build("lead-1"), timeout=1.0)

    assert "Recent Messages" not in snapshot.text
    assert "Customer name: Ada" in snapshot.text


async def test_missing_lead_gets_default_context(assembler, history):
    snapshot = await assembler.build(None)

    assert snapshot.text == NO_HISTORY_TEXT
    assert history.calls == 0


async def test_lead_without_history_gets_default_context(store, clock):
    assembler = ContextAssembler(store, FakeHistory(), clock=clock)
    snapshot = await assembler.build("lead-new")
    assert snapshot.text == NO_HISTORY_TEXT
