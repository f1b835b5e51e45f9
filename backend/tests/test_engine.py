"""Tests for phased matching, pairing and leaving."""
import asyncio
import time
from collections import Counter

import pytest

from chatitnow.chat.schemas import PoolPhase, SessionStatus
from helpers import PHASE1, PHASE2, connect, pair, search, wait_until

# Timers may fire a hair early relative to time.monotonic()
SLACK = 0.02


# =============================================================================
# Phase 1: same-topic priority
# =============================================================================


class TestPriorityMatching:

    @pytest.mark.asyncio
    async def test_same_topic_pair_matched(self, engine, supervisor):
        ws_a, conn_a, ws_b, conn_b = await pair(engine, supervisor, field="python")

        matched_a = ws_a.first("matched")
        matched_b = ws_b.first("matched")
        assert matched_a["name"] == "Bob"
        assert matched_b["name"] == "Alice"
        assert matched_a["field"] == matched_b["field"] == "python"
        assert matched_a["roomID"] == matched_b["roomID"] == f"{conn_a}#{conn_b}"

        a, b = engine.sessions.get("tok-a"), engine.sessions.get("tok-b")
        assert a.partner_token == "tok-b" and b.partner_token == "tok-a"
        assert a.room_id == b.room_id
        assert len(engine.pool) == 0
        assert a.search_timer is None and b.search_timer is None

    @pytest.mark.asyncio
    async def test_no_match_before_phase_one_delay(self, engine, supervisor):
        ws_a, _ = await connect(supervisor, "tok-a")
        ws_b, _ = await connect(supervisor, "tok-b")
        started = time.monotonic()
        await search(engine, "tok-a", "Alice", "python")
        await search(engine, "tok-b", "Bob", "python")

        await asyncio.sleep(PHASE1 / 2)
        assert ws_a.events("matched") == []
        assert engine.status_of(engine.sessions.get("tok-a")) == SessionStatus.SEARCHING

        await wait_until(lambda: ws_a.first("matched"))
        matched_at = ws_a.sent_at[ws_a.types().index("matched")]
        assert matched_at - started >= PHASE1 - SLACK

    @pytest.mark.asyncio
    async def test_blank_username_gets_default_name(self, engine, supervisor):
        ws_a, _ = await connect(supervisor, "tok-a")
        ws_b, _ = await connect(supervisor, "tok-b")
        await search(engine, "tok-a", "", "python")
        await search(engine, "tok-b", "Bob", "python")
        await wait_until(lambda: ws_b.first("matched"))
        assert ws_b.first("matched")["name"] == "Stranger"


# =============================================================================
# Phase 2: open to any
# =============================================================================


class TestOpenMatching:

    @pytest.mark.asyncio
    async def test_specific_and_generic_wait_for_both_phases(self, engine, supervisor):
        ws_a, _ = await connect(supervisor, "tok-a")
        ws_b, _ = await connect(supervisor, "tok-b")
        started = time.monotonic()
        await search(engine, "tok-a", "Alice", "python")
        await search(engine, "tok-b", "Bob", "")

        await asyncio.sleep(PHASE1 + PHASE2 / 2)
        assert ws_a.events("matched") == [] and ws_b.events("matched") == []
        assert engine.pool.get("tok-a").phase == PoolPhase.OPEN_TO_ANY
        assert engine.pool.get("tok-b").phase == PoolPhase.OPEN_TO_ANY

        await wait_until(lambda: ws_a.first("matched") and ws_b.first("matched"))
        matched_at = ws_a.sent_at[ws_a.types().index("matched")]
        assert matched_at - started >= PHASE1 + PHASE2 - SLACK
        assert ws_b.first("matched")["field"] == "python"
        assert ws_a.first("matched")["field"] == ""

    @pytest.mark.asyncio
    async def test_different_topics_matched_after_phase_two(self, engine, supervisor):
        ws_a, _ = await connect(supervisor, "tok-a")
        ws_b, _ = await connect(supervisor, "tok-b")
        await search(engine, "tok-a", "Alice", "python")
        await search(engine, "tok-b", "Bob", "music")
        await wait_until(lambda: ws_a.first("matched") and ws_b.first("matched"))
        assert ws_a.first("matched")["roomID"] == ws_b.first("matched")["roomID"]

    @pytest.mark.asyncio
    async def test_generic_latecomer_picked_up_by_open_scan(self, engine, supervisor):
        """A's phase-2 scan takes B even though B has not reached phase 2."""
        ws_a, _ = await connect(supervisor, "tok-a")
        ws_b, _ = await connect(supervisor, "tok-b")
        await search(engine, "tok-a", "Alice", "")
        await asyncio.sleep(PHASE1 + PHASE2 / 2)
        b_started = time.monotonic()
        await search(engine, "tok-b", "Bob", "Others")

        await wait_until(lambda: ws_a.first("matched") and ws_b.first("matched"))
        matched_at = ws_b.sent_at[ws_b.types().index("matched")]
        assert matched_at - b_started < PHASE1
        assert ws_a.first("matched")["name"] == "Bob"

    @pytest.mark.asyncio
    async def test_lone_searcher_stays_in_pool(self, engine, supervisor):
        ws_a, _ = await connect(supervisor, "tok-a")
        await search(engine, "tok-a", "Alice", "python")
        await asyncio.sleep(PHASE1 + PHASE2 + 0.1)
        entry = engine.pool.get("tok-a")
        assert entry is not None and entry.open_to_any
        assert engine.sessions.get("tok-a").search_timer is None

        # Still a target for newcomers
        ws_c, _ = await connect(supervisor, "tok-c")
        await search(engine, "tok-c", "Carol", "chess")
        await wait_until(lambda: ws_c.first("matched"))
        assert ws_c.first("matched")["name"] == "Alice"


# =============================================================================
# Exclusive pairing
# =============================================================================


class TestExclusivePairing:

    @pytest.mark.asyncio
    async def test_many_searchers_paired_at_most_once(self, engine, supervisor):
        topics = ["python", "python", "", "music", "python", "Others", "music"]
        sockets = {}
        for i, topic in enumerate(topics):
            token = f"tok-{i}"
            sockets[token], _ = await connect(supervisor, token)
            await search(engine, token, f"user{i}", topic)

        await wait_until(lambda: len(engine.pool) <= 1, timeout=3.0)
        await asyncio.sleep(0.05)

        rooms = Counter()
        for token, ws in sockets.items():
            matched = ws.events("matched")
            assert len(matched) <= 1
            if matched:
                rooms[matched[0]["roomID"]] += 1
                session = engine.sessions.get(token)
                partner = engine.sessions.get(session.partner_token)
                assert partner.partner_token == token
                assert partner.room_id == session.room_id == matched[0]["roomID"]

        assert all(count == 2 for count in rooms.values())
        assert sum(rooms.values()) == 6
        assert len(engine.pool) == 1

    @pytest.mark.asyncio
    async def test_simultaneous_scans_do_not_share_a_candidate(self, engine, supervisor):
        for token in ("tok-a", "tok-b", "tok-c"):
            await connect(supervisor, token)
        entries = [await search(engine, t, t, "python") for t in ("tok-a", "tok-b", "tok-c")]
        for token in ("tok-a", "tok-b", "tok-c"):
            engine.sessions.get(token).cancel_search_timer()

        await asyncio.gather(*(engine._run_phase_one(entry) for entry in entries))

        partners = {t: engine.sessions.get(t).partner_token for t in ("tok-a", "tok-b", "tok-c")}
        assert partners == {"tok-a": "tok-b", "tok-b": "tok-a", "tok-c": None}
        assert engine.pool.tokens() == ["tok-c"]


# =============================================================================
# Re-search and leaving
# =============================================================================


class TestLeaving:

    @pytest.mark.asyncio
    async def test_new_search_forfeits_room(self, engine, supervisor):
        ws_a, _, ws_b, _ = await pair(engine, supervisor)
        await search(engine, "tok-a", "Alice", "music")

        a, b = engine.sessions.get("tok-a"), engine.sessions.get("tok-b")
        assert a.room_id is None and b.room_id is None
        assert b.partner_token is None
        assert "tok-a" in engine.pool
        assert engine.status_of(b) == SessionStatus.IDLE
        assert ws_b.types().count("partner_disconnected") == 1
        assert "partner_disconnected" not in ws_a.types()

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self, engine, supervisor):
        ws_a, _, ws_b, _ = await pair(engine, supervisor)

        assert await engine.leave_partner("tok-a") is True
        assert await engine.leave_partner("tok-a") is False

        assert ws_b.types().count("partner_disconnected") == 1
        assert "partner_disconnected" not in ws_a.types()
        assert "tok-a" in engine.sessions and "tok-b" in engine.sessions
        assert not engine.sessions.get("tok-b").paired

    @pytest.mark.asyncio
    async def test_leave_while_searching_cancels_search(self, engine, supervisor):
        ws_a, _ = await connect(supervisor, "tok-a")
        await search(engine, "tok-a", "Alice", "python")
        assert await engine.leave_partner("tok-a") is True
        assert len(engine.pool) == 0
        assert engine.sessions.get("tok-a").search_timer is None
        assert engine.scheduler.pending_count == 0
        assert ws_a.sent == []

    @pytest.mark.asyncio
    async def test_leave_unknown_session(self, engine):
        assert await engine.leave_partner("nobody") is False

    @pytest.mark.asyncio
    async def test_partners_can_search_again(self, engine, supervisor):
        ws_a, _, ws_b, _ = await pair(engine, supervisor)
        await engine.leave_partner("tok-a")
        await search(engine, "tok-a", "Alice", "python")
        await search(engine, "tok-b", "Bob", "python")
        await wait_until(lambda: len(ws_a.events("matched")) == 2 and len(ws_b.events("matched")) == 2)


# =============================================================================
# Abandoned pairings
# =============================================================================


class TestAbandonedPairing:

    @pytest.mark.asyncio
    async def test_unreachable_partner_aborts_and_unlocks(self, engine, supervisor):
        ws_a, _ = await connect(supervisor, "tok-a")
        ws_b, conn_b = await connect(supervisor, "tok-b")
        entry_a = await search(engine, "tok-a", "Alice", "python")
        await search(engine, "tok-b", "Bob", "python")

        pair_entries = engine.matcher.select_priority(entry_a)
        engine.connections.disconnect(conn_b)

        assert await engine.execute_match(*pair_entries) is None
        assert not entry_a.match_lock
        assert engine.pool.is_current(entry_a)
        assert not engine.sessions.get("tok-a").paired
        assert ws_a.events("matched") == [] and ws_b.events("matched") == []

    @pytest.mark.asyncio
    async def test_survivor_moves_on_to_phase_two(self, engine, supervisor):
        await connect(supervisor, "tok-a")
        _, conn_b = await connect(supervisor, "tok-b")
        entry_a = await search(engine, "tok-a", "Alice", "python")
        await search(engine, "tok-b", "Bob", "python")
        engine.sessions.get("tok-a").cancel_search_timer()
        engine.sessions.get("tok-b").cancel_search_timer()
        engine.connections.disconnect(conn_b)

        await engine._run_phase_one(entry_a)

        assert entry_a.phase == PoolPhase.OPEN_TO_ANY
        assert engine.pool.is_current(entry_a)
        assert engine.sessions.get("tok-a").search_timer.active

    @pytest.mark.asyncio
    async def test_deleted_session_entry_removed(self, engine, supervisor):
        await connect(supervisor, "tok-a")
        await connect(supervisor, "tok-b")
        entry_a = await search(engine, "tok-a", "Alice", "python")
        await search(engine, "tok-b", "Bob", "python")

        pair_entries = engine.matcher.select_priority(entry_a)
        engine.sessions.delete("tok-b")

        assert await engine.execute_match(*pair_entries) is None
        assert engine.pool.tokens() == ["tok-a"]


# =============================================================================
# Blocking and preferences
# =============================================================================


class TestBlocking:

    @pytest.mark.asyncio
    async def test_blocked_pair_never_rematched(self, engine, supervisor):
        ws_a, _, ws_b, _ = await pair(engine, supervisor)
        assert await engine.block_partner("tok-a") is True
        assert ws_b.types().count("partner_disconnected") == 1

        await search(engine, "tok-a", "Alice", "python")
        await search(engine, "tok-b", "Bob", "python")
        await asyncio.sleep(PHASE1 + PHASE2 + 0.1)
        assert len(ws_a.events("matched")) == 1
        assert len(ws_b.events("matched")) == 1

        ws_c, _ = await connect(supervisor, "tok-c")
        await search(engine, "tok-c", "Carol", "python")
        await wait_until(lambda: ws_c.first("matched"))
        assert ws_c.first("matched")["name"] == "Alice"

    @pytest.mark.asyncio
    async def test_block_without_partner(self, engine, supervisor):
        await connect(supervisor, "tok-a")
        assert await engine.block_partner("tok-a") is False


class TestFindPartnerDetails:

    @pytest.mark.asyncio
    async def test_read_receipt_preference_applied(self, engine, supervisor):
        await connect(supervisor, "tok-a")
        await search(engine, "tok-a", "Alice", "python", readReceipts=False)
        assert engine.sessions.get("tok-a").read_receipts is False

    @pytest.mark.asyncio
    async def test_unknown_session_ignored(self, engine):
        assert await search(engine, "ghost", "Ghost", "python") is None
        assert len(engine.pool) == 0

    @pytest.mark.asyncio
    async def test_repeat_search_replaces_entry(self, engine, supervisor):
        await connect(supervisor, "tok-a")
        first = await search(engine, "tok-a", "Alice", "python")
        second = await search(engine, "tok-a", "Alice", "music")
        assert engine.pool.get("tok-a") is second
        assert not engine.pool.is_current(first)
        assert engine.scheduler.pending_count == 1

    @pytest.mark.asyncio
    async def test_stats(self, engine, supervisor):
        await pair(engine, supervisor)
        await connect(supervisor, "tok-c")
        await search(engine, "tok-c", "Carol", "chess")
        assert engine.stats() == {"online": 3, "sessions": 3, "searching": 1, "openToAny": 0, "paired": 2}
