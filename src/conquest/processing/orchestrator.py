"""Activity processing orchestrator.

Drives one activity from ``pending`` to ``completed`` or ``error``:

1. Claim: compare-and-set pending -> processing (a second trigger is a no-op)
2. Revert whatever an earlier run of the same activity left behind
3. Reduce the route, reconcile cells (per-cell transactions with retries)
4. Calculate XP, missions and badges from a snapshot of the user's history
5. In one transaction: derived fields, aggregate increments, badges,
   notifications and feed, status ``completed``
6. After commit: push notifications over Redis

Any failure undoes the cell changes of the run from the journal and marks
the activity ``error`` without touching user aggregates.
Re-triggering ``pending`` is always safe because step 2 undoes the previous
run from the cell interaction journal.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, time, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conquest.config import Settings, get_settings
from conquest.db.models import (
    Activity,
    CellInteraction,
    FeedEntry,
    Notification,
    RouteChunk,
    TerritoryCell,
    UserBadge,
    VengeanceTarget,
)
from conquest.errors import ConflictError, ProcessingError, ValidationError
from conquest.gamification.config import GameplayConfig, load_gameplay_config
from conquest.gamification.context import ActivityMetrics, ActivityType, XPContext
from conquest.gamification.profile_service import (
    apply_aggregate_deltas,
    award_badges,
    get_badge_slugs,
    get_or_create_profile,
    refresh_level,
)
from conquest.gamification.streaks import week_bounds
from conquest.gamification.xp_calculator import CalculationResult, XPBreakdown, calculate, validate_activity
from conquest.notifications.emitter import emit_activity_outcome, load_open_targets, target_from_dict
from conquest.notifications.service import push_notifications
from conquest.processing.state_machine import COMPLETED, ERROR, PENDING, PROCESSING, validate_transition
from conquest.territory.reconciler import CellSnapshot, OwnershipReconciler, TerritoryStats
from conquest.territory.route import reduce_chunks

logger = structlog.get_logger()


def metrics_for(activity: Activity) -> ActivityMetrics:
    try:
        activity_type = ActivityType(activity.activity_type)
    except ValueError:
        activity_type = ActivityType.OTHER
    return ActivityMetrics(
        activity_id=activity.id,
        user_id=activity.user_id,
        activity_type=activity_type,
        start_date=activity.start_date,
        end_date=activity.end_date,
        distance_meters=activity.distance_meters or 0.0,
        duration_seconds=activity.duration_seconds or 0.0,
        tz_name=activity.timezone or "UTC",
    )


def aggregate_deltas(
    territory_stats: dict[str, Any] | None,
    xp_breakdown: dict[str, Any] | None,
    distance_meters: float,
) -> dict[str, float]:
    """User counter increments implied by one counted activity."""
    stats = territory_stats or {}
    xp = xp_breakdown or {}
    return {
        "xp": int(xp.get("total", 0)),
        "total_activities": 1,
        "total_distance_km": (distance_meters or 0.0) / 1000.0,
        "total_conquered_territories": int(stats.get("newCellsCount", 0)),
        "total_defended_territories": int(stats.get("defendedCellsCount", 0)),
        "total_recaptured_territories": int(stats.get("recapturedCellsCount", 0)),
        "total_stolen_territories": int(stats.get("stolenCellsCount", 0)),
    }


async def _restore_target(session: AsyncSession, target: dict[str, Any]) -> None:
    """Put back a vengeance target a reverted run removed, unless one is open again."""
    existing = await session.execute(
        select(VengeanceTarget.id).where(
            VengeanceTarget.victim_id == target["victim_id"],
            VengeanceTarget.cell_id == target["cell_id"],
        )
    )
    if existing.scalar_one_or_none() is None:
        session.add(target_from_dict(target))
        await session.flush()


class ActivityProcessor:
    """Processes activities; one instance can serve many activities concurrently."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: object | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis
        self._settings = settings or get_settings()

    async def process(
        self,
        activity_id: str,
        now: datetime | None = None,
        config_version: int | None = None,
    ) -> str | None:
        """Process one pending activity. Returns the terminal status, or None if not claimed.

        ``config_version`` pins an older gameplay config; by default the active
        one is used.
        """
        now = now or datetime.now(timezone.utc)
        log = logger.bind(activity_id=activity_id)

        if not await self._claim(activity_id, now):
            log.info("activity_claim_skipped")
            return None
        log.info("activity_processing_started")

        try:
            notifications = await self._run(activity_id, now, log, config_version)
        except Exception as exc:
            if isinstance(exc, ConflictError):
                exc = ProcessingError(f"Gave up on cell {exc.cell_id} after {exc.attempts} conflicting writes")
            log.error("activity_processing_failed", error=str(exc), exc_info=True)
            try:
                await self._revert_previous_run(activity_id)
            except Exception:
                log.exception("activity_failed_run_revert_failed")
            await self._mark_error(activity_id, exc)
            return ERROR

        await push_notifications(self._redis, notifications)
        log.info("activity_processing_completed", notifications=len(notifications))
        return COMPLETED

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def _claim(self, activity_id: str, now: datetime) -> bool:
        validate_transition(PENDING, PROCESSING)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Activity)
                .where(Activity.id == activity_id, Activity.processing_status == PENDING)
                .values(
                    processing_status=PROCESSING,
                    processing_started_at=now,
                    processing_attempts=Activity.processing_attempts + 1,
                    processing_error=None,
                    updated_at=now,
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def _mark_error(self, activity_id: str, exc: Exception) -> None:
        validate_transition(PROCESSING, ERROR)
        message = f"{type(exc).__name__}: {exc}"[:1000]
        async with self._session_factory() as session:
            await session.execute(
                update(Activity)
                .where(Activity.id == activity_id, Activity.processing_status == PROCESSING)
                .values(
                    processing_status=ERROR,
                    processing_error=message,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(
        self, activity_id: str, now: datetime, log: Any, config_version: int | None = None
    ) -> list[Notification]:
        async with self._session_factory() as session:
            activity = await session.get(Activity, activity_id)
            if activity is None:
                raise ProcessingError(f"Activity {activity_id} disappeared after claim")
            config = await load_gameplay_config(session, config_version)
            chunks = (
                await session.execute(
                    select(RouteChunk.order, RouteChunk.points).where(RouteChunk.activity_id == activity_id)
                )
            ).all()
            user_id = activity.user_id
            metrics = metrics_for(activity)
            location_label = activity.location_label
            log = log.bind(user_id=user_id, config_version=config.version)

        await self._revert_previous_run(activity_id)

        async with self._session_factory() as session, session.begin():
            await get_or_create_profile(session, user_id)

        counted = True
        cells: set[str] = set()
        try:
            validate_activity(metrics, config)
            if not metrics.is_indoor:
                cells = reduce_chunks((order, points) for order, points in chunks)
                if not cells:
                    raise ValidationError("empty route")
        except ValidationError as e:
            counted = False
            log.info("activity_not_counted", reason=e.reason)

        stats = TerritoryStats()
        if cells:
            async with self._session_factory() as session:
                targets = await load_open_targets(session, user_id)
            reconciler = OwnershipReconciler(
                self._session_factory, config, self._settings.processing_max_conflict_retries
            )
            stats = await reconciler.reconcile(
                activity_id, user_id, cells, metrics.end_date,
                vengeance_targets=targets, location_label=location_label,
            )

        async with self._session_factory() as session:
            context = await self._build_context(session, activity_id, metrics)
        result = calculate(metrics, stats, context, config) if counted else CalculationResult(XPBreakdown())

        return await self._persist(activity_id, metrics, stats, result, config, counted, now)

    async def _build_context(
        self, session: AsyncSession, activity_id: str, metrics: ActivityMetrics
    ) -> XPContext:
        """Snapshot of the user's history as of just before this activity."""
        profile = await get_or_create_profile(session, metrics.user_id)
        zone = metrics.zone
        local_end = metrics.end_date.astimezone(zone)

        week_start, week_end = week_bounds(local_end)
        day_start = datetime.combine(local_end.date(), time.min, tzinfo=zone)
        window_start = min(week_start, day_start)

        result = await session.execute(
            select(Activity.end_date, Activity.distance_meters, Activity.xp_breakdown).where(
                Activity.user_id == metrics.user_id,
                Activity.id != activity_id,
                Activity.processing_status == COMPLETED,
                Activity.aggregates_applied.is_(True),
                Activity.end_date >= window_start,
                Activity.end_date < metrics.end_date,
            )
        )
        week_km = 0.0
        today_base = 0
        today_total = 0
        for end_date, distance_meters, breakdown in result.all():
            if week_start <= end_date < week_end:
                week_km += (distance_meters or 0.0) / 1000.0
            if day_start <= end_date < day_start + timedelta(days=1):
                today_base += int((breakdown or {}).get("xpBase", 0))
                today_total += int((breakdown or {}).get("total", 0))

        return XPContext(
            current_week_distance_km=week_km,
            best_weekly_distance_km=profile.best_weekly_distance_km,
            current_streak_weeks=profile.current_streak_weeks,
            today_base_xp_earned=today_base,
            today_total_xp_earned=today_total,
            total_recaptured_territories=profile.total_recaptured_territories,
            max_post_reactions=profile.max_post_reactions,
            unlocked_badges=await get_badge_slugs(session, metrics.user_id),
        )

    async def _persist(
        self,
        activity_id: str,
        metrics: ActivityMetrics,
        stats: TerritoryStats,
        result: CalculationResult,
        config: GameplayConfig,
        counted: bool,
        now: datetime,
    ) -> list[Notification]:
        async with self._session_factory() as session, session.begin():
            activity = await session.get(Activity, activity_id)
            if counted:
                awarded = await award_badges(session, metrics.user_id, [b.slug for b in result.badges], activity_id)
                result.keep_badges(awarded)
            activity.territory_stats = stats.to_dict()
            activity.xp_breakdown = result.breakdown.to_dict()
            activity.missions = [m.to_dict() for m in result.missions]
            activity.unlocked_badges = [b.slug for b in result.badges]
            activity.conquered_victims = list(stats.victims)
            activity.config_version = config.version

            notifications: list[Notification] = []
            if counted:
                deltas = aggregate_deltas(activity.territory_stats, activity.xp_breakdown, metrics.distance_meters)
                await apply_aggregate_deltas(session, metrics.user_id, deltas)
                lost = Counter(o.victim_id for o in stats.outcomes if o.victim_id)
                for victim_id, count in lost.items():
                    await apply_aggregate_deltas(session, victim_id, {"total_lost_territories": count})
                await refresh_level(session, metrics.user_id)
                notifications = await emit_activity_outcome(
                    session, activity, stats, result, config, metrics.end_date
                )
            activity.aggregates_applied = counted

            validate_transition(activity.processing_status, COMPLETED)
            activity.processing_status = COMPLETED
            activity.processing_error = None
            activity.processed_at = now
            activity.updated_at = now
        return notifications

    # ------------------------------------------------------------------
    # Reprocessing
    # ------------------------------------------------------------------

    async def _revert_previous_run(self, activity_id: str) -> None:
        """Undo every effect an earlier run of this activity recorded."""
        async with self._session_factory() as session, session.begin():
            activity = await session.get(Activity, activity_id)
            if activity is None:
                return
            interactions = list(
                (
                    await session.execute(
                        select(CellInteraction)
                        .where(CellInteraction.activity_id == activity_id)
                        .order_by(CellInteraction.id)
                    )
                ).scalars()
            )
            if not interactions and not activity.aggregates_applied and activity.xp_breakdown is None:
                return

            if activity.aggregates_applied:
                deltas = aggregate_deltas(activity.territory_stats, activity.xp_breakdown, activity.distance_meters)
                await apply_aggregate_deltas(session, activity.user_id, deltas, sign=-1)
                lost = Counter(i.victim_id for i in interactions if i.victim_id)
                for victim_id, count in lost.items():
                    await apply_aggregate_deltas(session, victim_id, {"total_lost_territories": count}, sign=-1)
                await session.execute(
                    delete(UserBadge).where(
                        UserBadge.user_id == activity.user_id,
                        UserBadge.activity_id == activity_id,
                    )
                )

            await session.execute(delete(VengeanceTarget).where(VengeanceTarget.activity_id == activity_id))

            for interaction in interactions:
                cell = await session.get(TerritoryCell, interaction.cell_id)
                # Cells touched by a later activity keep that activity's state
                if cell is not None and cell.activity_id == activity_id:
                    if interaction.previous_state:
                        CellSnapshot.from_dict(interaction.previous_state).apply_to(cell)
                    else:
                        await session.delete(cell)
                for target in (interaction.resolved_vengeance, interaction.replaced_vengeance):
                    if target:
                        await _restore_target(session, target)
            await session.flush()

            await session.execute(delete(CellInteraction).where(CellInteraction.activity_id == activity_id))
            await session.execute(delete(FeedEntry).where(FeedEntry.activity_id == activity_id))
            await session.execute(delete(Notification).where(Notification.activity_id == activity_id))

            if activity.aggregates_applied:
                await refresh_level(session, activity.user_id)

            activity.territory_stats = None
            activity.xp_breakdown = None
            activity.missions = None
            activity.unlocked_badges = None
            activity.conquered_victims = None
            activity.aggregates_applied = False

        logger.info("activity_previous_run_reverted", activity_id=activity_id, cells=len(interactions))


async def process_activity(
    session_factory: async_sessionmaker[AsyncSession],
    activity_id: str,
    redis: object | None = None,
    now: datetime | None = None,
) -> str | None:
    """Convenience wrapper around ActivityProcessor.process."""
    return await ActivityProcessor(session_factory, redis).process(activity_id, now)
