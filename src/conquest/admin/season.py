"""Season reset: move territory cells older than a cutoff out of play."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conquest.config import Settings, get_settings
from conquest.db.models import TerritoryCell, TerritoryCellArchive, VengeanceTarget
from conquest.territory.reconciler import CellSnapshot

logger = structlog.get_logger()


@dataclass
class ArchiveSummary:
    season_id: str
    cutoff: datetime
    candidates: int = 0
    archived: int = 0
    batches: int = 0
    dry_run: bool = False


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


async def _archive_batch(
    session_factory: async_sessionmaker[AsyncSession],
    season_id: str,
    cutoff: datetime,
    cell_ids: list[str],
) -> int:
    """Archive and delete one batch in a single transaction."""
    archived_at = datetime.now(timezone.utc)
    async with session_factory() as session, session.begin():
        # Re-checked here: a cell conquered since the scan stays in play
        result = await session.execute(
            select(TerritoryCell).where(
                TerritoryCell.id.in_(cell_ids),
                TerritoryCell.last_conquered_at < cutoff,
            )
        )
        cells = list(result.scalars())
        if not cells:
            return 0

        ids = [c.id for c in cells]
        for cell in cells:
            session.add(
                TerritoryCellArchive(
                    season_id=season_id,
                    cell_id=cell.id,
                    owner_id=cell.owner_id,
                    data=CellSnapshot.from_model(cell).to_dict(),
                    archived_at=archived_at,
                )
            )
        await session.execute(delete(VengeanceTarget).where(VengeanceTarget.cell_id.in_(ids)))
        await session.execute(delete(TerritoryCell).where(TerritoryCell.id.in_(ids)))
    return len(ids)


async def archive_season(
    session_factory: async_sessionmaker[AsyncSession],
    season_id: str,
    cutoff: datetime,
    settings: Settings | None = None,
    dry_run: bool = False,
) -> ArchiveSummary:
    """Archive every cell last conquered before ``cutoff``.

    Work is split into ``admin_batch_size`` batches; at most
    ``admin_concurrency`` batches run at once.
    """
    settings = settings or get_settings()
    summary = ArchiveSummary(season_id=season_id, cutoff=cutoff, dry_run=dry_run)

    async with session_factory() as session:
        result = await session.execute(
            select(TerritoryCell.id)
            .where(TerritoryCell.last_conquered_at < cutoff)
            .order_by(TerritoryCell.id)
        )
        cell_ids = list(result.scalars())

    summary.candidates = len(cell_ids)
    batches = _chunks(cell_ids, settings.admin_batch_size)
    summary.batches = len(batches)
    logger.info(
        "season_archive_started",
        season_id=season_id,
        cutoff=cutoff.isoformat(),
        candidates=summary.candidates,
        batches=summary.batches,
        dry_run=dry_run,
    )
    if dry_run or not batches:
        return summary

    semaphore = asyncio.Semaphore(settings.admin_concurrency)

    async def _run(batch: list[str]) -> int:
        async with semaphore:
            return await _archive_batch(session_factory, season_id, cutoff, batch)

    counts = await asyncio.gather(*(_run(b) for b in batches))
    summary.archived = sum(counts)
    logger.info("season_archive_finished", season_id=season_id, archived=summary.archived)
    return summary
