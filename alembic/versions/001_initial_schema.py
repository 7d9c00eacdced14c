"""Initial schema.

Creates users, badges, activities with their route chunks, territory cells
with the interaction journal, vengeance targets, the season archive,
notifications, the feed and the versioned gameplay config.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # --- Users ---
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("display_name", sa.String(64), nullable=True),
        sa.Column("xp", sa.BigInteger(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("level_title", sa.String(64), nullable=False),
        sa.Column("total_activities", sa.Integer(), nullable=False),
        sa.Column("total_distance_km", sa.Float(), nullable=False),
        sa.Column("total_conquered_territories", sa.Integer(), nullable=False),
        sa.Column("total_defended_territories", sa.Integer(), nullable=False),
        sa.Column("total_recaptured_territories", sa.Integer(), nullable=False),
        sa.Column("total_stolen_territories", sa.Integer(), nullable=False),
        sa.Column("total_lost_territories", sa.Integer(), nullable=False),
        sa.Column("current_streak_weeks", sa.Integer(), nullable=False),
        sa.Column("longest_streak_weeks", sa.Integer(), nullable=False),
        sa.Column("last_active_week", sa.String(10), nullable=True),
        sa.Column("best_weekly_distance_km", sa.Float(), nullable=True),
        sa.Column("max_post_reactions", sa.Integer(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "user_badges",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("badge_slug", sa.String(64), nullable=False),
        sa.Column("activity_id", sa.String(64), nullable=True),
        _ts("earned_at"),
        sa.UniqueConstraint("user_id", "badge_slug", name="uq_user_badge"),
    )
    op.create_index("ix_user_badges_activity_id", "user_badges", ["activity_id"])

    # --- Activities ---
    op.create_table(
        "activities",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("activity_type", sa.String(16), nullable=False),
        _ts("start_date"),
        _ts("end_date"),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column("distance_meters", sa.Float(), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=False),
        sa.Column("location_label", sa.String(128), nullable=True),
        sa.Column("processing_status", sa.String(16), nullable=False),
        sa.Column("processing_attempts", sa.Integer(), nullable=False),
        sa.Column("processing_error", sa.Text(), nullable=True),
        _ts("processing_started_at", nullable=True),
        _ts("processed_at", nullable=True),
        sa.Column("config_version", sa.Integer(), nullable=True),
        sa.Column("territory_stats", JSON, nullable=True),
        sa.Column("xp_breakdown", JSON, nullable=True),
        sa.Column("missions", JSON, nullable=True),
        sa.Column("unlocked_badges", JSON, nullable=True),
        sa.Column("conquered_victims", JSON, nullable=True),
        sa.Column("aggregates_applied", sa.Boolean(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_activities_status", "activities", ["processing_status"])
    op.create_index("ix_activities_user_end", "activities", ["user_id", "end_date"])

    op.create_table(
        "route_chunks",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column(
            "activity_id", sa.String(64), sa.ForeignKey("activities.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("points", JSON, nullable=False),
        sa.UniqueConstraint("activity_id", "order", name="uq_route_chunk_order"),
    )
    op.create_index("ix_route_chunks_activity_id", "route_chunks", ["activity_id"])

    # --- Territory ---
    op.create_table(
        "territory_cells",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("center_latitude", sa.Float(), nullable=False),
        sa.Column("center_longitude", sa.Float(), nullable=False),
        sa.Column("boundary", JSON, nullable=False),
        _ts("first_conquered_at"),
        _ts("last_conquered_at"),
        _ts("activity_end_at", nullable=True),
        _ts("expires_at"),
        sa.Column("defense_count", sa.Integer(), nullable=False),
        sa.Column("is_hot_spot", sa.Boolean(), nullable=False),
        sa.Column("activity_id", sa.String(64), nullable=True),
        sa.Column("last_interaction", sa.String(16), nullable=False),
        sa.Column("location_label", sa.String(128), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_territory_cells_owner", "territory_cells", ["owner_id"])

    op.create_table(
        "cell_interactions",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("activity_id", sa.String(64), nullable=False),
        sa.Column("cell_id", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("classification", sa.String(16), nullable=False),
        sa.Column("previous_state", JSON, nullable=True),
        sa.Column("victim_id", sa.String(64), nullable=True),
        sa.Column("loot_xp", sa.Integer(), nullable=False),
        sa.Column("resolved_vengeance", JSON, nullable=True),
        sa.Column("replaced_vengeance", JSON, nullable=True),
        _ts("created_at"),
        sa.UniqueConstraint("activity_id", "cell_id", name="uq_cell_interaction"),
    )
    op.create_index("ix_cell_interactions_activity_id", "cell_interactions", ["activity_id"])

    op.create_table(
        "vengeance_targets",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("victim_id", sa.String(64), nullable=False),
        sa.Column("cell_id", sa.String(32), nullable=False),
        sa.Column("thief_id", sa.String(64), nullable=False),
        sa.Column("activity_id", sa.String(64), nullable=False),
        sa.Column("center_latitude", sa.Float(), nullable=False),
        sa.Column("center_longitude", sa.Float(), nullable=False),
        _ts("stolen_at"),
        sa.Column("xp_reward", sa.Integer(), nullable=False),
        sa.Column("location_label", sa.String(128), nullable=True),
        sa.UniqueConstraint("victim_id", "cell_id", name="uq_vengeance_victim_cell"),
    )
    op.create_index("ix_vengeance_targets_victim_id", "vengeance_targets", ["victim_id"])
    op.create_index("ix_vengeance_targets_activity_id", "vengeance_targets", ["activity_id"])

    op.create_table(
        "territory_cell_archive",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("season_id", sa.String(32), nullable=False),
        sa.Column("cell_id", sa.String(32), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("data", JSON, nullable=False),
        _ts("archived_at"),
    )
    op.create_index("ix_territory_cell_archive_season_id", "territory_cell_archive", ["season_id"])

    # --- Notifications & feed ---
    op.create_table(
        "notifications",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("sender_id", sa.String(64), nullable=True),
        sa.Column("activity_id", sa.String(64), nullable=True),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False),
        sa.Column("metadata", JSON, nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_activity_id", "notifications", ["activity_id"])

    op.create_table(
        "feed_entries",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("activity_id", sa.String(64), nullable=True),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("subtitle", sa.Text(), nullable=True),
        sa.Column("xp_earned", sa.Integer(), nullable=True),
        sa.Column("rarity", sa.String(16), nullable=True),
        sa.Column("is_personal", sa.Boolean(), nullable=False),
        sa.Column("metadata", JSON, nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_feed_entries_user_id", "feed_entries", ["user_id"])
    op.create_index("ix_feed_entries_activity_id", "feed_entries", ["activity_id"])

    # --- Gameplay config ---
    op.create_table(
        "gameplay_configs",
        sa.Column("version", sa.Integer(), primary_key=True),
        sa.Column("data", JSON, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("description", sa.String(256), nullable=True),
        _ts("created_at"),
    )


def downgrade() -> None:
    for table in (
        "gameplay_configs",
        "feed_entries",
        "notifications",
        "territory_cell_archive",
        "vengeance_targets",
        "cell_interactions",
        "territory_cells",
        "route_chunks",
        "activities",
        "user_badges",
        "users",
    ):
        op.drop_table(table)
