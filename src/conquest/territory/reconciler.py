"""Ownership reconciliation of traversed cells against the global territory map.

Each cell is classified and mutated inside its own short transaction. The
cell row carries a version counter, so two activities racing for the same
cell cannot both commit: the loser gets a StaleDataError (or an
IntegrityError when both tried to create the row), re-reads the fresh state
and classifies again.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from conquest.db.models import CellInteraction, TerritoryCell, UserProfile
from conquest.errors import ConflictError
from conquest.gamification.config import GameplayConfig
from conquest.territory.grid import cell_boundary, cell_center, parse_cell_id

logger = structlog.get_logger()

DAY = timedelta(days=1)


class CellClassification(str, Enum):
    """Outcome of one cell from the acting user's point of view."""

    NEW = "new"
    DEFENDED = "defended"
    RECAPTURED = "recaptured"
    STOLEN = "stolen"


# Value stored in TerritoryCell.last_interaction per classification
INTERACTION_NAMES: dict[CellClassification, str] = {
    CellClassification.NEW: "conquer",
    CellClassification.DEFENDED: "defend",
    CellClassification.RECAPTURED: "recapture",
    CellClassification.STOLEN: "steal",
}


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class CellSnapshot:
    """Persisted state of a territory cell, as read before a mutation."""

    owner_id: str
    center_latitude: float
    center_longitude: float
    boundary: list[dict[str, float]]
    first_conquered_at: datetime
    last_conquered_at: datetime
    expires_at: datetime
    defense_count: int = 0
    activity_end_at: datetime | None = None
    is_hot_spot: bool = False
    activity_id: str | None = None
    last_interaction: str = "conquer"
    location_label: str | None = None

    @classmethod
    def from_model(cls, cell: TerritoryCell) -> CellSnapshot:
        return cls(
            owner_id=cell.owner_id,
            center_latitude=cell.center_latitude,
            center_longitude=cell.center_longitude,
            boundary=list(cell.boundary or []),
            first_conquered_at=cell.first_conquered_at,
            last_conquered_at=cell.last_conquered_at,
            expires_at=cell.expires_at,
            defense_count=cell.defense_count,
            activity_end_at=cell.activity_end_at,
            is_hot_spot=cell.is_hot_spot,
            activity_id=cell.activity_id,
            last_interaction=cell.last_interaction,
            location_label=cell.location_label,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CellSnapshot:
        return cls(
            owner_id=data["owner_id"],
            center_latitude=data["center_latitude"],
            center_longitude=data["center_longitude"],
            boundary=list(data.get("boundary") or []),
            first_conquered_at=datetime.fromisoformat(data["first_conquered_at"]),
            last_conquered_at=datetime.fromisoformat(data["last_conquered_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            defense_count=data.get("defense_count", 0),
            activity_end_at=_parse_dt(data.get("activity_end_at")),
            is_hot_spot=data.get("is_hot_spot", False),
            activity_id=data.get("activity_id"),
            last_interaction=data.get("last_interaction", "conquer"),
            location_label=data.get("location_label"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "center_latitude": self.center_latitude,
            "center_longitude": self.center_longitude,
            "boundary": self.boundary,
            "first_conquered_at": self.first_conquered_at.isoformat(),
            "last_conquered_at": self.last_conquered_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "defense_count": self.defense_count,
            "activity_end_at": self.activity_end_at.isoformat() if self.activity_end_at else None,
            "is_hot_spot": self.is_hot_spot,
            "activity_id": self.activity_id,
            "last_interaction": self.last_interaction,
            "location_label": self.location_label,
        }

    def apply_to(self, cell: TerritoryCell) -> None:
        """Write this state back onto a cell row."""
        cell.owner_id = self.owner_id
        cell.center_latitude = self.center_latitude
        cell.center_longitude = self.center_longitude
        cell.boundary = self.boundary
        cell.first_conquered_at = self.first_conquered_at
        cell.last_conquered_at = self.last_conquered_at
        cell.expires_at = self.expires_at
        cell.defense_count = self.defense_count
        cell.activity_end_at = self.activity_end_at
        cell.is_hot_spot = self.is_hot_spot
        cell.activity_id = self.activity_id
        cell.last_interaction = self.last_interaction
        cell.location_label = self.location_label


@dataclass
class CellOutcome:
    """Classification of one cell plus the ownership state to write."""

    cell_id: str
    classification: CellClassification
    owner_id: str
    first_conquered_at: datetime
    last_conquered_at: datetime
    expires_at: datetime
    defense_count: int
    previous: CellSnapshot | None = None
    victim_id: str | None = None
    loot_xp: int = 0
    last_minute: bool = False
    consolidation_xp: int = 0
    # Whole days the previous owner had held the cell at interaction time
    held_days: int = 0
    vengeance: dict[str, Any] | None = None

    @property
    def last_interaction(self) -> str:
        return INTERACTION_NAMES[self.classification]


def classify_cell(
    cell_id: str,
    existing: CellSnapshot | None,
    user_id: str,
    at: datetime,
    config: GameplayConfig,
) -> CellOutcome:
    """Classify one traversed cell against its current ownership.

    ``at`` is the interaction time (the activity's end). A cell is expired
    when its ``expires_at`` is not after ``at``. An expired recapture keeps
    the original ``first_conquered_at``.
    """
    window = timedelta(days=config.territory_expiration_days)

    if existing is None:
        return CellOutcome(
            cell_id=cell_id,
            classification=CellClassification.NEW,
            owner_id=user_id,
            first_conquered_at=at,
            last_conquered_at=at,
            expires_at=at + window,
            defense_count=0,
        )

    expired = existing.expires_at <= at
    held_days = max(0, math.floor((at - existing.first_conquered_at) / DAY))
    # An older activity processed late renews from the newest interaction
    expires_at = max(max(at, existing.last_conquered_at) + window, existing.expires_at)

    if existing.owner_id == user_id:
        if expired:
            return CellOutcome(
                cell_id=cell_id,
                classification=CellClassification.RECAPTURED,
                owner_id=user_id,
                first_conquered_at=existing.first_conquered_at,
                last_conquered_at=at,
                expires_at=expires_at,
                defense_count=existing.defense_count + 1,
                previous=existing,
                held_days=held_days,
            )

        remaining = existing.expires_at - at
        consolidation = 0
        if held_days > 25:
            consolidation = config.xp_consolidation_25_day_bonus
        elif held_days > 15:
            consolidation = config.xp_consolidation_15_day_bonus
        return CellOutcome(
            cell_id=cell_id,
            classification=CellClassification.DEFENDED,
            owner_id=user_id,
            first_conquered_at=existing.first_conquered_at,
            last_conquered_at=at,
            expires_at=expires_at,
            defense_count=existing.defense_count + 1,
            previous=existing,
            last_minute=remaining < timedelta(hours=config.last_minute_defense_hours),
            consolidation_xp=consolidation,
            held_days=held_days,
        )

    if expired:
        # Lapsed cell of another user: free conquest, no theft
        return CellOutcome(
            cell_id=cell_id,
            classification=CellClassification.NEW,
            owner_id=user_id,
            first_conquered_at=at,
            last_conquered_at=at,
            expires_at=expires_at,
            defense_count=0,
            previous=existing,
            held_days=held_days,
        )

    return CellOutcome(
        cell_id=cell_id,
        classification=CellClassification.STOLEN,
        owner_id=user_id,
        first_conquered_at=at,
        last_conquered_at=at,
        expires_at=expires_at,
        defense_count=0,
        previous=existing,
        victim_id=existing.owner_id,
        loot_xp=round(held_days * config.xp_loot_per_day),
        held_days=held_days,
    )


@dataclass
class TerritoryStats:
    """Per-activity aggregation of cell outcomes."""

    new_cells: int = 0
    defended_cells: int = 0
    recaptured_cells: int = 0
    stolen_cells: int = 0
    last_minute_defenses: int = 0
    vengeance_cells: int = 0
    total_loot_xp: int = 0
    total_consolidation_xp: int = 0
    streak_interruption_xp: int = 0
    outcomes: list[CellOutcome] = field(default_factory=list)
    victims: list[str] = field(default_factory=list)
    victim_streaks: dict[str, int] = field(default_factory=dict)

    @property
    def total_cells(self) -> int:
        return self.new_cells + self.defended_cells + self.recaptured_cells + self.stolen_cells

    def add(self, outcome: CellOutcome) -> None:
        self.outcomes.append(outcome)
        kind = outcome.classification
        if kind is CellClassification.NEW:
            self.new_cells += 1
        elif kind is CellClassification.DEFENDED:
            self.defended_cells += 1
        elif kind is CellClassification.RECAPTURED:
            self.recaptured_cells += 1
        else:
            self.stolen_cells += 1
            if outcome.victim_id not in self.victims:
                self.victims.append(outcome.victim_id)
        if outcome.last_minute:
            self.last_minute_defenses += 1
        if outcome.vengeance is not None:
            self.vengeance_cells += 1
        self.total_loot_xp += outcome.loot_xp
        self.total_consolidation_xp += outcome.consolidation_xp

    def to_dict(self) -> dict[str, int]:
        return {
            "newCellsCount": self.new_cells,
            "defendedCellsCount": self.defended_cells,
            "recapturedCellsCount": self.recaptured_cells,
            "stolenCellsCount": self.stolen_cells,
            "lastMinuteDefenseCount": self.last_minute_defenses,
            "vengeanceCellsCount": self.vengeance_cells,
            "totalLootXP": self.total_loot_xp,
            "totalConsolidationXP": self.total_consolidation_xp,
            "streakInterruptionXP": self.streak_interruption_xp,
        }


class OwnershipReconciler:
    """Applies per-cell classify-and-mutate transactions for one activity."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: GameplayConfig,
        max_retries: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._max_retries = max_retries

    async def reconcile(
        self,
        activity_id: str,
        user_id: str,
        cells: Iterable[str],
        at: datetime,
        vengeance_targets: Mapping[str, dict[str, Any]] | None = None,
        location_label: str | None = None,
    ) -> TerritoryStats:
        """Classify and persist every traversed cell. Returns the aggregated stats.

        ``vengeance_targets`` maps cell ids to the acting user's open
        vengeance targets; taking one of those cells marks it as a
        vengeance reclaim.
        """
        stats = TerritoryStats()
        targets = vengeance_targets or {}
        # Sorted so two activities lock overlapping cells in the same order
        for cell_id in sorted(set(cells)):
            outcome = await self._apply_with_retry(activity_id, user_id, cell_id, at, location_label)
            if (
                outcome.classification in (CellClassification.NEW, CellClassification.STOLEN)
                and cell_id in targets
            ):
                outcome.vengeance = dict(targets[cell_id])
            stats.add(outcome)

        if stats.victims:
            stats.victim_streaks = await self._victim_streaks(stats.victims)
            interrupted = sum(1 for weeks in stats.victim_streaks.values() if weeks > 0)
            stats.streak_interruption_xp = interrupted * self._config.xp_streak_interruption_bonus

        logger.info(
            "territory_reconciled",
            activity_id=activity_id,
            user_id=user_id,
            **stats.to_dict(),
        )
        return stats

    async def _apply_with_retry(
        self,
        activity_id: str,
        user_id: str,
        cell_id: str,
        at: datetime,
        location_label: str | None,
    ) -> CellOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._apply_once(activity_id, user_id, cell_id, at, location_label)
            except (StaleDataError, IntegrityError) as e:
                if attempt >= self._max_retries:
                    logger.error(
                        "cell_conflict_exhausted",
                        activity_id=activity_id,
                        cell_id=cell_id,
                        attempts=attempt,
                    )
                    raise ConflictError(cell_id, attempt) from e
                logger.warning(
                    "cell_conflict_retry",
                    activity_id=activity_id,
                    cell_id=cell_id,
                    attempt=attempt,
                )

    async def _apply_once(
        self,
        activity_id: str,
        user_id: str,
        cell_id: str,
        at: datetime,
        location_label: str | None,
    ) -> CellOutcome:
        async with self._session_factory() as session, session.begin():
            cell = await session.get(TerritoryCell, cell_id)
            existing = CellSnapshot.from_model(cell) if cell is not None else None
            outcome = classify_cell(cell_id, existing, user_id, at, self._config)

            if cell is None:
                x, y = parse_cell_id(cell_id)
                lat, lon = cell_center(x, y)
                cell = TerritoryCell(
                    id=cell_id,
                    center_latitude=lat,
                    center_longitude=lon,
                    boundary=cell_boundary(x, y),
                    is_hot_spot=False,
                )
                session.add(cell)

            cell.owner_id = outcome.owner_id
            cell.first_conquered_at = outcome.first_conquered_at
            cell.last_conquered_at = outcome.last_conquered_at
            cell.activity_end_at = at
            cell.expires_at = outcome.expires_at
            cell.defense_count = outcome.defense_count
            cell.activity_id = activity_id
            cell.last_interaction = outcome.last_interaction
            if location_label:
                cell.location_label = location_label

            session.add(
                CellInteraction(
                    activity_id=activity_id,
                    cell_id=cell_id,
                    user_id=user_id,
                    classification=outcome.classification.value,
                    previous_state=existing.to_dict() if existing is not None else None,
                    victim_id=outcome.victim_id,
                    loot_xp=outcome.loot_xp,
                )
            )
        return outcome

    async def _victim_streaks(self, victims: list[str]) -> dict[str, int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserProfile.id, UserProfile.current_streak_weeks).where(UserProfile.id.in_(victims))
            )
            return {row.id: row.current_streak_weeks for row in result}
