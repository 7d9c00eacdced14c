"""Translate a processed activity into notifications, feed entries and vengeance targets.

Runs inside the orchestrator's final transaction, so everything written
here commits or rolls back together with the user aggregate update.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from conquest.db.models import Activity, CellInteraction, Notification, VengeanceTarget
from conquest.gamification.config import GameplayConfig
from conquest.gamification.xp_calculator import CalculationResult
from conquest.notifications.service import create_notification, record_feed_entry
from conquest.territory.reconciler import CellClassification, TerritoryStats

logger = logging.getLogger(__name__)


def target_to_dict(target: VengeanceTarget) -> dict[str, Any]:
    return {
        "victim_id": target.victim_id,
        "cell_id": target.cell_id,
        "thief_id": target.thief_id,
        "activity_id": target.activity_id,
        "center_latitude": target.center_latitude,
        "center_longitude": target.center_longitude,
        "stolen_at": target.stolen_at.isoformat(),
        "xp_reward": target.xp_reward,
        "location_label": target.location_label,
    }


def target_from_dict(data: dict[str, Any]) -> VengeanceTarget:
    return VengeanceTarget(
        victim_id=data["victim_id"],
        cell_id=data["cell_id"],
        thief_id=data["thief_id"],
        activity_id=data["activity_id"],
        center_latitude=data["center_latitude"],
        center_longitude=data["center_longitude"],
        stolen_at=datetime.fromisoformat(data["stolen_at"]),
        xp_reward=data["xp_reward"],
        location_label=data.get("location_label"),
    )


async def load_open_targets(db: AsyncSession, victim_id: str) -> dict[str, dict[str, Any]]:
    """Open vengeance targets of a user keyed by cell id."""
    result = await db.execute(select(VengeanceTarget).where(VengeanceTarget.victim_id == victim_id))
    return {t.cell_id: target_to_dict(t) for t in result.scalars()}


def build_subtitle(stats: TerritoryStats, result: CalculationResult) -> str:
    """Human summary built from the classification counts and missions."""
    parts = []
    for count, label in (
        (stats.new_cells, "new"),
        (stats.defended_cells, "defended"),
        (stats.recaptured_cells, "recaptured"),
        (stats.stolen_cells, "stolen"),
    ):
        if count:
            parts.append(f"{count} {label}")
    subtitle = ", ".join(parts) if parts else "No territory changes"
    if result.missions:
        subtitle += " | Missions: " + ", ".join(m.name for m in result.missions)
    return subtitle


async def _apply_vengeance(
    db: AsyncSession,
    activity: Activity,
    stats: TerritoryStats,
    config: GameplayConfig,
    at: datetime,
) -> None:
    for outcome in stats.outcomes:
        if outcome.vengeance is not None:
            await db.execute(
                delete(VengeanceTarget).where(
                    VengeanceTarget.victim_id == activity.user_id,
                    VengeanceTarget.cell_id == outcome.cell_id,
                )
            )
            await db.execute(
                update(CellInteraction)
                .where(
                    CellInteraction.activity_id == activity.id,
                    CellInteraction.cell_id == outcome.cell_id,
                )
                .values(resolved_vengeance=outcome.vengeance)
            )

        if outcome.classification is not CellClassification.STOLEN:
            continue

        # One open target per victim and cell; the newest theft wins
        older = (
            await db.execute(
                select(VengeanceTarget).where(
                    VengeanceTarget.victim_id == outcome.victim_id,
                    VengeanceTarget.cell_id == outcome.cell_id,
                )
            )
        ).scalar_one_or_none()
        if older is not None:
            await db.execute(
                update(CellInteraction)
                .where(
                    CellInteraction.activity_id == activity.id,
                    CellInteraction.cell_id == outcome.cell_id,
                )
                .values(replaced_vengeance=target_to_dict(older))
            )
            await db.delete(older)
            await db.flush()
        previous = outcome.previous
        db.add(
            VengeanceTarget(
                victim_id=outcome.victim_id,
                cell_id=outcome.cell_id,
                thief_id=activity.user_id,
                activity_id=activity.id,
                center_latitude=previous.center_latitude,
                center_longitude=previous.center_longitude,
                stolen_at=at,
                xp_reward=config.vengeance_xp_reward,
                location_label=activity.location_label or previous.location_label,
            )
        )
    await db.flush()


async def emit_activity_outcome(
    db: AsyncSession,
    activity: Activity,
    stats: TerritoryStats,
    result: CalculationResult,
    config: GameplayConfig,
    at: datetime,
) -> list[Notification]:
    """Write the side effects of a processed activity. Returns notifications to push."""
    notifications: list[Notification] = []
    user_id = activity.user_id
    place = activity.location_label

    await _apply_vengeance(db, activity, stats, config, at)

    for outcome in stats.outcomes:
        if outcome.classification is not CellClassification.STOLEN:
            continue
        meta = {"cellId": outcome.cell_id, "lootXP": outcome.loot_xp, "locationLabel": place}
        notifications.append(
            await create_notification(
                db, outcome.victim_id, "territory_lost",
                title="Territory lost",
                message=f"One of your territories{f' in {place}' if place else ''} was stolen",
                sender_id=user_id, activity_id=activity.id, metadata=meta,
            )
        )
        notifications.append(
            await create_notification(
                db, user_id, "territory_stolen_success",
                title="Territory stolen",
                message=f"You stole a territory and looted {outcome.loot_xp} XP",
                sender_id=outcome.victim_id, activity_id=activity.id, metadata=meta,
            )
        )

    if stats.defended_cells > 0:
        notifications.append(
            await create_notification(
                db, user_id, "territory_defended",
                title="Territories defended",
                message=f"You defended {stats.defended_cells} territories",
                activity_id=activity.id,
                metadata={"defendedCellsCount": stats.defended_cells, "locationLabel": place},
            )
        )

    for badge in result.badges:
        notifications.append(
            await create_notification(
                db, user_id, "achievement",
                title="Badge unlocked",
                message=f"You earned the {badge.name} badge!",
                activity_id=activity.id,
                metadata={"badgeId": badge.slug, "xpReward": badge.xp_reward},
            )
        )
        await record_feed_entry(
            db, user_id, "badge_unlocked",
            title=badge.name, subtitle=badge.description,
            activity_id=activity.id, xp_earned=badge.xp_reward,
            metadata={"badgeId": badge.slug, "category": badge.category},
        )

    for mission in result.missions:
        await record_feed_entry(
            db, user_id, "mission_completed",
            title=mission.name, subtitle=mission.description,
            activity_id=activity.id, rarity=mission.rarity.value,
            metadata=mission.to_dict(),
        )

    total_xp = result.breakdown.total
    if stats.total_cells > 0 or total_xp > 0:
        await record_feed_entry(
            db, user_id, "activity_summary",
            title=f"{activity.activity_type.capitalize()} completed" + (f" in {place}" if place else ""),
            subtitle=build_subtitle(stats, result),
            activity_id=activity.id, xp_earned=total_xp,
            metadata={"territoryStats": stats.to_dict(), "xpBreakdown": result.breakdown.to_dict()},
        )

    logger.info(
        "Emitted %d notifications for activity %s (stolen=%d, missions=%d, badges=%d)",
        len(notifications), activity.id, stats.stolen_cells, len(result.missions), len(result.badges),
    )
    return notifications
