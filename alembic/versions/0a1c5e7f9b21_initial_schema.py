"""Initial schema: points ledger, voice sessions, reaction roles

Revision ID: 0a1c5e7f9b21
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0a1c5e7f9b21"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("avatar_url", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "guilds",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("icon_url", sa.String(255), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "user_guild_stats",
        sa.Column("user_id", sa.String(32), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("guild_id", sa.String(32), sa.ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("messages_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("commands_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reactions_given", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reactions_received", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("voice_time_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_weekly_bonus_on", sa.Date(), nullable=True),
        sa.Column("last_monthly_bonus_on", sa.Date(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_user_guild_stats_leaderboard", "user_guild_stats", ["guild_id", "total_points"])

    op.create_table(
        "points_transactions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(32), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("guild_id", sa.String(32), sa.ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False),
        sa.Column("points_change", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(200), nullable=False),
        sa.Column("activity_type", sa.String(32), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("node_id", sa.String(64), nullable=False, server_default="unknown"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_points_tx_user_guild_time", "points_transactions", ["user_id", "guild_id", "created_at"])
    op.create_index("ix_points_tx_guild_time", "points_transactions", ["guild_id", "created_at"])

    op.create_table(
        "voice_sessions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("guild_id", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=False),
        sa.Column("node_id", sa.String(64), nullable=False, server_default="unknown"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("points_awarded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_accrual_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_muted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_deafened", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index(
        "uq_voice_sessions_open",
        "voice_sessions",
        ["user_id", "guild_id"],
        unique=True,
        postgresql_where=sa.text("ended_at IS NULL"),
    )
    op.create_index(
        "ix_voice_sessions_user_guild_start", "voice_sessions", ["user_id", "guild_id", "started_at"]
    )

    op.create_table(
        "daily_activity",
        sa.Column("user_id", sa.String(32), primary_key=True),
        sa.Column("guild_id", sa.String(32), primary_key=True),
        sa.Column("activity_date", sa.Date(), primary_key=True),
        sa.Column("messages_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("commands_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("voice_time_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reactions_given", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reactions_received", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_activity_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_daily_activity_guild_date", "daily_activity", ["guild_id", "activity_date"])

    op.create_table(
        "reaction_role_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=True),
        sa.Column("message_id", sa.String(32), nullable=False),
        sa.Column("emoji", sa.String(100), nullable=False),
        sa.Column("role_id", sa.String(32), nullable=False),
        sa.Column("description", sa.String(200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("guild_id", "message_id", "emoji", name="uq_reaction_role_mapping"),
    )
    op.create_index("ix_reaction_role_mappings_message", "reaction_role_mappings", ["message_id"])

    op.create_table(
        "reaction_role_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("role_id", sa.String(32), nullable=False),
        sa.Column("message_id", sa.String(32), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("node_id", sa.String(64), nullable=False, server_default="unknown"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_reaction_role_logs_guild_time", "reaction_role_logs", ["guild_id", "created_at"])


def downgrade() -> None:
    op.drop_table("reaction_role_logs")
    op.drop_table("reaction_role_mappings")
    op.drop_table("daily_activity")
    op.drop_table("voice_sessions")
    op.drop_table("points_transactions")
    op.drop_table("user_guild_stats")
    op.drop_table("guilds")
    op.drop_table("users")
