"""ORM models: one row per document of the engine's store.

Territory cells carry a version column so every classify-and-mutate step is
an optimistic per-document transaction.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from conquest.db.base import Base, BigIntPK, JSONType, UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserProfile(Base):
    """User aggregate: cumulative counters mutated only through atomic increments."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)

    xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    level_title: Mapped[str] = mapped_column(String(64), nullable=False, default="Wanderer")

    total_activities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_distance_km: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_conquered_territories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_defended_territories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_recaptured_territories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_stolen_territories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_lost_territories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    current_streak_weeks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    longest_streak_weeks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_active_week: Mapped[str | None] = mapped_column(String(10), nullable=True)
    best_weekly_distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Maintained by the social service; read here for reaction-count badges
    max_post_reactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    badges: Mapped[list[UserBadge]] = relationship("UserBadge", back_populates="user", lazy="raise")


class UserBadge(Base):
    """One-time badge unlock (unique per user and slug)."""

    __tablename__ = "user_badges"
    __table_args__ = (UniqueConstraint("user_id", "badge_slug", name="uq_user_badge"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    badge_slug: Mapped[str] = mapped_column(String(64), nullable=False)
    activity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    earned_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    user: Mapped[UserProfile] = relationship("UserProfile", back_populates="badges")


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------


class Activity(Base):
    """One completed workout and the derived results of processing it."""

    __tablename__ = "activities"
    __table_args__ = (
        Index("ix_activities_status", "processing_status"),
        Index("ix_activities_user_end", "user_id", "end_date"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    distance_meters: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    location_label: Mapped[str | None] = mapped_column(String(128), nullable=True)

    processing_status: Mapped[str] = mapped_column(String(16), nullable=False, default="uploading")
    processing_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    config_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    territory_stats: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    xp_breakdown: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    missions: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    unlocked_badges: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    conquered_victims: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    aggregates_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    route_chunks: Mapped[list[RouteChunk]] = relationship(
        "RouteChunk",
        back_populates="activity",
        order_by="RouteChunk.order",
        cascade="all, delete-orphan",
        lazy="raise",
    )


class RouteChunk(Base):
    """Ordered slice of an activity's GPS route."""

    __tablename__ = "route_chunks"
    __table_args__ = (UniqueConstraint("activity_id", "order", name="uq_route_chunk_order"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    activity_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    points: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)

    activity: Mapped[Activity] = relationship("Activity", back_populates="route_chunks")


# ---------------------------------------------------------------------------
# Territory
# ---------------------------------------------------------------------------


class TerritoryCell(Base):
    """Current ownership of one grid cell (document id is "x_y")."""

    __tablename__ = "territory_cells"
    __table_args__ = (Index("ix_territory_cells_owner", "owner_id"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    center_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    center_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    boundary: Mapped[list[dict[str, float]]] = mapped_column(JSONType, nullable=False)
    first_conquered_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_conquered_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    activity_end_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    defense_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_hot_spot: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    activity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_interaction: Mapped[str] = mapped_column(String(16), nullable=False, default="conquer")
    location_label: Mapped[str | None] = mapped_column(String(128), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class CellInteraction(Base):
    """Journal of one activity touching one cell, with the state it replaced."""

    __tablename__ = "cell_interactions"
    __table_args__ = (UniqueConstraint("activity_id", "cell_id", name="uq_cell_interaction"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    activity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    cell_id: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    classification: Mapped[str] = mapped_column(String(16), nullable=False)
    previous_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    victim_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    loot_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_vengeance: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    replaced_vengeance: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class VengeanceTarget(Base):
    """A cell stolen from ``victim_id`` that they can reclaim for bonus XP."""

    __tablename__ = "vengeance_targets"
    __table_args__ = (UniqueConstraint("victim_id", "cell_id", name="uq_vengeance_victim_cell"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    victim_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    cell_id: Mapped[str] = mapped_column(String(32), nullable=False)
    thief_id: Mapped[str] = mapped_column(String(64), nullable=False)
    activity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    center_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    center_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    stolen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False)
    location_label: Mapped[str | None] = mapped_column(String(128), nullable=True)


class TerritoryCellArchive(Base):
    """Cell snapshot moved out of play by a season reset."""

    __tablename__ = "territory_cell_archive"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    season_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    cell_id: Mapped[str] = mapped_column(String(32), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    archived_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


# ---------------------------------------------------------------------------
# Notifications & feed
# ---------------------------------------------------------------------------


class Notification(Base):
    """Persisted user notification record (delivery is external)."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    sender_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    activity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class FeedEntry(Base):
    """Activity feed item."""

    __tablename__ = "feed_entries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    activity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    subtitle: Mapped[str | None] = mapped_column(Text, nullable=True)
    xp_earned: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rarity: Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_personal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    feed_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


# ---------------------------------------------------------------------------
# Gameplay config
# ---------------------------------------------------------------------------


class GameplayConfigRecord(Base):
    """Versioned numeric policy table."""

    __tablename__ = "gameplay_configs"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
