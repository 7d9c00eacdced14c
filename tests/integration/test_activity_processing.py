"""End-to-end processing of activities against a real (SQLite) database."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.orm.exc import StaleDataError

from conquest.activities.service import mark_pending
from conquest.config import Settings
from conquest.db.models import (
    Activity,
    CellInteraction,
    FeedEntry,
    GameplayConfigRecord,
    Notification,
    TerritoryCell,
    UserBadge,
    UserProfile,
    VengeanceTarget,
)
from conquest.processing import orchestrator
from conquest.processing.orchestrator import ActivityProcessor
from conquest.territory.reconciler import OwnershipReconciler

pytestmark = pytest.mark.asyncio

# Matches the default end time of the make_activity fixture
ACTIVITY_END = datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def processor(session_factory) -> ActivityProcessor:
    return ActivityProcessor(session_factory, None, Settings(processing_max_conflict_retries=3))


async def _activity(session_factory, activity_id: str) -> Activity:
    async with session_factory() as db:
        return await db.get(Activity, activity_id)


async def _profile(session_factory, user_id: str) -> UserProfile:
    async with session_factory() as db:
        return await db.get(UserProfile, user_id)


async def _cell(session_factory, cell: str) -> TerritoryCell | None:
    async with session_factory() as db:
        return await db.get(TerritoryCell, cell)


async def _count(session_factory, model, *where) -> int:
    async with session_factory() as db:
        result = await db.execute(select(func.count()).select_from(model).where(*where))
        return result.scalar_one()


async def _notification_types(session_factory, user_id: str) -> list[str]:
    async with session_factory() as db:
        result = await db.execute(
            select(Notification.type).where(Notification.user_id == user_id).order_by(Notification.id)
        )
        return list(result.scalars())


class TestNewConquest:
    async def test_five_new_cells(self, session_factory, processor, make_activity, straight_route):
        points, cells = straight_route(5)
        await make_activity("a1", "alice", points)

        assert await processor.process("a1") == "completed"

        activity = await _activity(session_factory, "a1")
        assert activity.processing_status == "completed"
        assert activity.aggregates_applied is True
        assert activity.config_version == 1
        assert activity.territory_stats["newCellsCount"] == 5
        assert activity.xp_breakdown == {
            "xpBase": 60,
            "xpTerritory": 40,
            "xpStreak": 0,
            "xpWeeklyRecord": 0,
            "xpBadges": 0,
            "total": 100,
        }
        assert [m["name"] for m in activity.missions] == ["Expedition"]

        profile = await _profile(session_factory, "alice")
        assert profile.xp == 100
        assert profile.total_activities == 1
        assert profile.total_distance_km == pytest.approx(5.0)
        assert profile.total_conquered_territories == 5

        for cell in cells:
            stored = await _cell(session_factory, cell)
            assert stored.owner_id == "alice"
            assert stored.activity_id == "a1"
            assert stored.first_conquered_at == ACTIVITY_END
            assert stored.expires_at == ACTIVITY_END + timedelta(days=7)
            assert stored.last_interaction == "conquer"

    async def test_feed_entries(self, session_factory, processor, make_activity, straight_route, home_cell):
        points, _ = straight_route(5)
        await make_activity("a1", "alice", points, location_label="Retiro")
        await processor.process("a1")

        async with session_factory() as db:
            result = await db.execute(
                select(FeedEntry.event_type, FeedEntry.title).where(FeedEntry.activity_id == "a1").order_by(FeedEntry.id)
            )
            entries = result.all()
        assert [e.event_type for e in entries] == ["mission_completed", "activity_summary"]
        assert entries[1].title == "Run completed in Retiro"
        assert (await _cell(session_factory, home_cell)).location_label == "Retiro"

    async def test_same_day_cap_uses_earlier_activities(self, session_factory, processor, make_activity, straight_route):
        points, _ = straight_route(1)
        await make_activity(
            "long", "alice", points,
            end=ACTIVITY_END - timedelta(hours=1), distance_meters=25000, duration_seconds=9000,
        )
        await processor.process("long")
        assert (await _activity(session_factory, "long")).xp_breakdown["xpBase"] == 300

        await make_activity("short", "alice", points)
        await processor.process("short")
        assert (await _activity(session_factory, "short")).xp_breakdown["xpBase"] == 0


class TestTheft:
    async def _steal_home(self, session_factory, processor, make_activity, seed_cell, home_cell, straight_route, **bob):
        await seed_cell(
            home_cell, "bob",
            first_conquered_at=ACTIVITY_END - timedelta(days=10),
            expires_at=ACTIVITY_END + timedelta(days=2),
            **bob,
        )
        points, _ = straight_route(1)
        await make_activity("theft", "alice", points)
        return await processor.process("theft")

    async def test_steal_live_cell(self, session_factory, processor, make_activity, seed_cell, home_cell, straight_route):
        assert await self._steal_home(
            session_factory, processor, make_activity, seed_cell, home_cell, straight_route
        ) == "completed"

        activity = await _activity(session_factory, "theft")
        assert activity.territory_stats["stolenCellsCount"] == 1
        assert activity.territory_stats["totalLootXP"] == 20
        assert activity.conquered_victims == ["bob"]
        # 60 base + 20 steal + 20 loot
        assert activity.xp_breakdown["total"] == 100

        cell = await _cell(session_factory, home_cell)
        assert cell.owner_id == "alice"
        assert cell.first_conquered_at == ACTIVITY_END
        assert cell.defense_count == 0
        assert cell.expires_at == ACTIVITY_END + timedelta(days=7)

        async with session_factory() as db:
            target = (await db.execute(select(VengeanceTarget))).scalar_one()
        assert target.victim_id == "bob"
        assert target.thief_id == "alice"
        assert target.cell_id == home_cell
        assert target.xp_reward == 25
        assert target.stolen_at == ACTIVITY_END

        assert await _notification_types(session_factory, "bob") == ["territory_lost"]
        assert await _notification_types(session_factory, "alice") == ["territory_stolen_success"]
        assert (await _profile(session_factory, "bob")).total_lost_territories == 1
        assert (await _profile(session_factory, "alice")).total_stolen_territories == 1

    async def test_interrupting_a_streak(self, session_factory, processor, make_activity, seed_cell, home_cell, straight_route):
        await self._steal_home(
            session_factory, processor, make_activity, seed_cell, home_cell, straight_route, streak_weeks=3
        )
        activity = await _activity(session_factory, "theft")
        assert activity.territory_stats["streakInterruptionXP"] == 15
        assert activity.xp_breakdown["total"] == 115

    async def test_vengeance_reclaim(self, session_factory, processor, make_activity, seed_cell, home_cell, straight_route):
        await self._steal_home(session_factory, processor, make_activity, seed_cell, home_cell, straight_route)

        points, _ = straight_route(1)
        await make_activity("revenge", "bob", points, end=ACTIVITY_END + timedelta(minutes=30))
        assert await processor.process("revenge") == "completed"

        activity = await _activity(session_factory, "revenge")
        assert activity.territory_stats["stolenCellsCount"] == 1
        assert activity.territory_stats["vengeanceCellsCount"] == 1
        assert activity.unlocked_badges == ["human_boomerang"]
        # 60 base + 20 steal + 25 vengeance + 75 badge
        assert activity.xp_breakdown["total"] == 180

        assert (await _cell(session_factory, home_cell)).owner_id == "bob"
        assert await _count(session_factory, VengeanceTarget, VengeanceTarget.victim_id == "bob") == 0
        assert await _count(session_factory, VengeanceTarget, VengeanceTarget.victim_id == "alice") == 1
        assert await _count(session_factory, UserBadge, UserBadge.user_id == "bob") == 1

    async def test_reprocessing_restores_resolved_vengeance(
        self, session_factory, processor, make_activity, seed_cell, home_cell, straight_route
    ):
        await self._steal_home(session_factory, processor, make_activity, seed_cell, home_cell, straight_route)
        points, _ = straight_route(1)
        await make_activity("revenge", "bob", points, end=ACTIVITY_END + timedelta(minutes=30))
        await processor.process("revenge")

        async with session_factory() as db:
            await mark_pending(db, "revenge")
        assert await processor.process("revenge") == "completed"

        activity = await _activity(session_factory, "revenge")
        assert activity.territory_stats["vengeanceCellsCount"] == 1
        assert await _count(session_factory, VengeanceTarget, VengeanceTarget.victim_id == "bob") == 0
        assert await _count(session_factory, UserBadge, UserBadge.user_id == "bob") == 1
        assert (await _profile(session_factory, "bob")).xp == 180


class TestOwnCells:
    async def test_expired_cell_is_recaptured(self, session_factory, processor, make_activity, seed_cell, home_cell, straight_route):
        first = ACTIVITY_END - timedelta(days=20)
        await seed_cell(home_cell, "alice", first, ACTIVITY_END - timedelta(days=1), defense_count=2)
        points, _ = straight_route(1)
        await make_activity("back", "alice", points)
        await processor.process("back")

        activity = await _activity(session_factory, "back")
        assert activity.territory_stats["recapturedCellsCount"] == 1
        assert activity.xp_breakdown["xpTerritory"] == 12
        assert [m["name"] for m in activity.missions] == ["Reconquest"]

        cell = await _cell(session_factory, home_cell)
        assert cell.first_conquered_at == first
        assert cell.defense_count == 3
        assert cell.last_interaction == "recapture"
        assert (await _profile(session_factory, "alice")).total_recaptured_territories == 1

    async def test_last_minute_defense(self, session_factory, processor, make_activity, seed_cell, home_cell, straight_route):
        await seed_cell(home_cell, "alice", ACTIVITY_END - timedelta(days=20), ACTIVITY_END + timedelta(hours=12))
        points, _ = straight_route(1)
        await make_activity("guard", "alice", points)
        await processor.process("guard")

        activity = await _activity(session_factory, "guard")
        stats = activity.territory_stats
        assert stats["defendedCellsCount"] == 1
        assert stats["lastMinuteDefenseCount"] == 1
        assert stats["totalConsolidationXP"] == 5
        # 3 defense + 2 last minute + 5 consolidation
        assert activity.xp_breakdown["xpTerritory"] == 10
        assert await _notification_types(session_factory, "alice") == ["territory_defended"]
        assert (await _cell(session_factory, home_cell)).expires_at == ACTIVITY_END + timedelta(days=7)


class TestZeroEffectActivities:
    async def test_empty_route(self, session_factory, processor, make_activity):
        await make_activity("empty", "alice", None)
        assert await processor.process("empty") == "completed"

        activity = await _activity(session_factory, "empty")
        assert activity.territory_stats["newCellsCount"] == 0
        assert activity.xp_breakdown["total"] == 0
        assert activity.aggregates_applied is False
        assert await _count(session_factory, TerritoryCell) == 0

        profile = await _profile(session_factory, "alice")
        assert profile.xp == 0
        assert profile.total_activities == 0
        assert profile.total_distance_km == 0

    async def test_too_short(self, session_factory, processor, make_activity, straight_route):
        points, _ = straight_route(3)
        await make_activity("short", "alice", points, duration_seconds=120)
        assert await processor.process("short") == "completed"

        activity = await _activity(session_factory, "short")
        assert activity.xp_breakdown["total"] == 0
        assert activity.aggregates_applied is False
        assert await _count(session_factory, TerritoryCell) == 0

        profile = await _profile(session_factory, "alice")
        assert profile.xp == 0
        assert profile.total_activities == 0

    async def test_indoor_session_claims_no_cells(self, session_factory, processor, make_activity, straight_route):
        points, _ = straight_route(3)
        await make_activity(
            "gym", "alice", points, activity_type="indoor", distance_meters=0, duration_seconds=3600
        )
        await processor.process("gym")

        activity = await _activity(session_factory, "gym")
        assert activity.xp_breakdown["xpBase"] == 90
        assert await _count(session_factory, TerritoryCell) == 0


class TestIdempotency:
    async def test_reprocess_does_not_double_count(self, session_factory, processor, make_activity, straight_route):
        points, _ = straight_route(5)
        await make_activity("a1", "alice", points)
        await processor.process("a1")

        async with session_factory() as db:
            await mark_pending(db, "a1")
        assert await processor.process("a1") == "completed"

        profile = await _profile(session_factory, "alice")
        assert profile.xp == 100
        assert profile.total_activities == 1
        assert profile.total_conquered_territories == 5
        assert await _count(session_factory, CellInteraction, CellInteraction.activity_id == "a1") == 5
        assert await _count(session_factory, FeedEntry, FeedEntry.activity_id == "a1") == 2
        assert (await _activity(session_factory, "a1")).processing_attempts == 2

    async def test_second_trigger_is_a_noop(self, session_factory, processor, make_activity, straight_route):
        points, _ = straight_route(2)
        await make_activity("a1", "alice", points)
        assert await processor.process("a1") == "completed"
        assert await processor.process("a1") is None
        assert (await _profile(session_factory, "alice")).total_activities == 1

    async def test_uploading_activity_is_not_claimed(self, session_factory, processor, make_activity, straight_route):
        points, _ = straight_route(2)
        await make_activity("a1", "alice", points, submit=False)
        assert await processor.process("a1") is None
        assert (await _activity(session_factory, "a1")).processing_status == "uploading"


class TestFailures:
    async def test_conflict_is_retried(self, session_factory, processor, make_activity, straight_route, monkeypatch):
        original = OwnershipReconciler._apply_once
        calls = {"n": 0}

        async def flaky(self, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleDataError("simulated concurrent write")
            return await original(self, *args, **kwargs)

        monkeypatch.setattr(OwnershipReconciler, "_apply_once", flaky)
        points, _ = straight_route(1)
        await make_activity("a1", "alice", points)

        assert await processor.process("a1") == "completed"
        assert calls["n"] == 2
        assert await _count(session_factory, TerritoryCell) == 1

    async def test_exhausted_conflicts_fail_the_run(self, session_factory, processor, make_activity, straight_route, monkeypatch):
        async def always_stale(self, *args, **kwargs):
            raise StaleDataError("simulated concurrent write")

        monkeypatch.setattr(OwnershipReconciler, "_apply_once", always_stale)
        points, _ = straight_route(1)
        await make_activity("a1", "alice", points)

        assert await processor.process("a1") == "error"
        activity = await _activity(session_factory, "a1")
        assert activity.processing_status == "error"
        assert activity.processing_error.startswith("ProcessingError")
        assert activity.aggregates_applied is False
        assert (await _profile(session_factory, "alice")).xp == 0

    async def test_missing_config_fails_the_run(self, session_factory, processor, make_activity):
        async with session_factory() as db:
            await db.execute(delete(GameplayConfigRecord))
            await db.commit()
        await make_activity("a1", "alice", None)

        assert await processor.process("a1") == "error"
        assert (await _activity(session_factory, "a1")).processing_error.startswith("ConfigurationError")

    async def test_failed_activity_can_be_reprocessed(self, session_factory, processor, make_activity, straight_route, monkeypatch):
        async def always_stale(self, *args, **kwargs):
            raise StaleDataError("simulated concurrent write")

        points, _ = straight_route(1)
        await make_activity("a1", "alice", points)
        with monkeypatch.context() as m:
            m.setattr(OwnershipReconciler, "_apply_once", always_stale)
            assert await processor.process("a1") == "error"

        async with session_factory() as db:
            await mark_pending(db, "a1")
        assert await processor.process("a1") == "completed"
        assert (await _activity(session_factory, "a1")).processing_error is None

    async def test_failed_theft_gives_the_cell_back(
        self, session_factory, processor, make_activity, seed_cell, home_cell, straight_route, monkeypatch
    ):
        first = ACTIVITY_END - timedelta(days=10)
        await seed_cell(home_cell, "bob", first, ACTIVITY_END + timedelta(days=2))
        points, _ = straight_route(1)
        await make_activity("theft", "alice", points)

        def broken(*args, **kwargs):
            raise RuntimeError("calculator exploded")

        monkeypatch.setattr(orchestrator, "calculate", broken)
        assert await processor.process("theft") == "error"

        cell = await _cell(session_factory, home_cell)
        assert cell.owner_id == "bob"
        assert cell.first_conquered_at == first
        assert await _count(session_factory, CellInteraction) == 0
        assert await _count(session_factory, VengeanceTarget) == 0
        assert await _count(session_factory, Notification) == 0
        assert (await _profile(session_factory, "bob")).total_lost_territories == 0
        assert (await _profile(session_factory, "alice")).xp == 0

    async def test_failed_reprocess_restores_replaced_vengeance(
        self, session_factory, processor, make_activity, seed_cell, home_cell, straight_route, monkeypatch
    ):
        await seed_cell(home_cell, "bob", ACTIVITY_END - timedelta(days=10), ACTIVITY_END + timedelta(days=2))
        async with session_factory() as db:
            db.add(
                VengeanceTarget(
                    victim_id="bob", cell_id=home_cell, thief_id="dave", activity_id="older",
                    center_latitude=0.0, center_longitude=0.0,
                    stolen_at=ACTIVITY_END - timedelta(days=20), xp_reward=25,
                )
            )
            await db.commit()
        points, _ = straight_route(1)
        await make_activity("theft", "alice", points)
        assert await processor.process("theft") == "completed"

        async with session_factory() as db:
            target = (await db.execute(select(VengeanceTarget))).scalar_one()
        assert target.thief_id == "alice"

        async with session_factory() as db:
            await mark_pending(db, "theft")
        monkeypatch.setattr(orchestrator, "calculate", lambda *a, **k: 1 / 0)
        assert await processor.process("theft") == "error"

        async with session_factory() as db:
            target = (await db.execute(select(VengeanceTarget))).scalar_one()
        assert target.thief_id == "dave"
        assert target.activity_id == "older"
        assert (await _cell(session_factory, home_cell)).owner_id == "bob"
        assert (await _profile(session_factory, "alice")).xp == 0


class TestCellVersioning:
    async def test_concurrent_cell_write_is_detected(self, session_factory, seed_cell, home_cell):
        await seed_cell(home_cell, "bob", ACTIVITY_END, ACTIVITY_END + timedelta(days=7))

        async with session_factory() as first, session_factory() as second:
            mine = await first.get(TerritoryCell, home_cell)
            theirs = await second.get(TerritoryCell, home_cell)

            theirs.owner_id = "carol"
            await second.commit()

            mine.owner_id = "alice"
            with pytest.raises(StaleDataError):
                await first.commit()


class TestBadgeUnlocks:
    async def test_badge_won_by_a_concurrent_activity_is_not_paid_twice(
        self, session_factory, processor, make_activity, straight_route, monkeypatch
    ):
        # Both runs read the user's badges before either unlock is committed
        async def no_badges_yet(db, user_id):
            return frozenset()

        monkeypatch.setattr(orchestrator, "get_badge_slugs", no_badges_yet)
        points, _ = straight_route(1)
        dawn = datetime(2026, 3, 4, 6, 40, tzinfo=timezone.utc)
        await make_activity("e1", "alice", points, end=dawn, distance_meters=6000)
        await make_activity("e2", "alice", points, end=dawn + timedelta(minutes=10), distance_meters=6000)

        assert await processor.process("e1") == "completed"
        assert await processor.process("e2") == "completed"

        first = await _activity(session_factory, "e1")
        second = await _activity(session_factory, "e2")
        assert first.unlocked_badges == ["early_bird"]
        assert first.xp_breakdown["xpBadges"] == 50
        assert second.unlocked_badges == []
        assert second.xp_breakdown["xpBadges"] == 0

        assert await _count(session_factory, UserBadge, UserBadge.user_id == "alice") == 1
        assert await _count(session_factory, FeedEntry, FeedEntry.event_type == "badge_unlocked") == 1
        assert (await _notification_types(session_factory, "alice")).count("achievement") == 1
        profile = await _profile(session_factory, "alice")
        assert profile.xp == first.xp_breakdown["total"] + second.xp_breakdown["total"]
