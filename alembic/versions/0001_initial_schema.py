"""initial schema: rounds, tickets, draw algorithms, results, handoffs, events

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17 00:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
MONEY_TYPE = sa.Numeric(12, 2)


def upgrade() -> None:
    op.create_table(
        "admins",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=100), nullable=True),
        sa.Column("name", sa.String(length=50), nullable=True),
        sa.Column("role", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_admins")),
    )
    op.create_index(op.f("ix_admins_id"), "admins", ["id"], unique=False)
    op.create_index(op.f("ix_admins_email"), "admins", ["email"], unique=True)

    op.create_table(
        "players",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("nickname", sa.String(length=50), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_players")),
        sa.UniqueConstraint("external_id", name=op.f("uq_players_external_id")),
    )

    op.create_table(
        "draw_algorithms",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("formula", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_default", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("config", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("version >= 1", name=op.f("ck_draw_algorithms_version_positive")),
        sa.CheckConstraint(
            "NOT is_default OR is_active", name=op.f("ck_draw_algorithms_default_is_active")
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_draw_algorithms")),
        sa.UniqueConstraint("name", name="uq_draw_algorithms_name"),
    )
    op.create_index(
        "uq_draw_algorithms_single_default",
        "draw_algorithms",
        ["is_default"],
        unique=True,
        sqlite_where=sa.text("is_default = 1"),
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "lottery_rounds",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("period_code", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_per_share", MONEY_TYPE, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("total_shares", sa.Integer(), nullable=False),
        sa.Column("sold_shares", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_per_user", sa.Integer(), nullable=True),
        sa.Column(
            "full_purchase_enabled",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("full_purchase_price", MONEY_TYPE, nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("draw_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sold_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("drawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column(
            "integrity_hold", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column("hold_reason", sa.Text(), nullable=True),
        sa.Column("created_by_admin_id", ID_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('PENDING','ACTIVE','DRAWN','CANCELLED')",
            name=op.f("ck_lottery_rounds_status_enum"),
        ),
        sa.CheckConstraint(
            "currency IN ('CNY','USD','EUR','VND','TJS')",
            name=op.f("ck_lottery_rounds_currency_enum"),
        ),
        sa.CheckConstraint(
            "total_shares > 0", name=op.f("ck_lottery_rounds_total_shares_positive")
        ),
        sa.CheckConstraint(
            "sold_shares >= 0 AND sold_shares <= total_shares",
            name=op.f("ck_lottery_rounds_sold_shares_range"),
        ),
        sa.CheckConstraint(
            "max_per_user IS NULL OR max_per_user > 0",
            name=op.f("ck_lottery_rounds_max_per_user_positive"),
        ),
        sa.CheckConstraint("price_per_share > 0", name=op.f("ck_lottery_rounds_price_positive")),
        sa.ForeignKeyConstraint(
            ["created_by_admin_id"],
            ["admins.id"],
            name=op.f("fk_lottery_rounds_created_by_admin_id_admins"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_lottery_rounds")),
    )
    op.create_index(op.f("ix_lottery_rounds_status"), "lottery_rounds", ["status"], unique=False)
    op.create_index(
        "uq_lottery_rounds_period_code", "lottery_rounds", ["period_code"], unique=True
    )
    op.create_index(
        "ix_lottery_rounds_draw_due", "lottery_rounds", ["status", "draw_time"], unique=False
    )

    op.create_table(
        "tickets",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("round_id", ID_TYPE, nullable=False),
        sa.Column("ticket_number", sa.Integer(), nullable=False),
        sa.Column("player_id", ID_TYPE, nullable=False),
        sa.Column("purchase_ref", sa.String(length=32), nullable=False),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("timestamp_ms", sa.BigInteger(), nullable=False),
        sa.Column("refund_status", sa.String(length=16), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
            nullable=False,
        ),
        sa.CheckConstraint("ticket_number >= 1", name=op.f("ck_tickets_ticket_number_positive")),
        sa.CheckConstraint(
            "refund_status IN ('none','refundable','refunded')",
            name=op.f("ck_tickets_refund_status_enum"),
        ),
        sa.ForeignKeyConstraint(
            ["player_id"], ["players.id"], name=op.f("fk_tickets_player_id_players")
        ),
        sa.ForeignKeyConstraint(
            ["round_id"], ["lottery_rounds.id"], name=op.f("fk_tickets_round_id_lottery_rounds")
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_tickets")),
        sa.UniqueConstraint("round_id", "ticket_number", name="uq_tickets_round_number"),
    )
    op.create_index(op.f("ix_tickets_player_id"), "tickets", ["player_id"], unique=False)
    op.create_index(op.f("ix_tickets_purchase_ref"), "tickets", ["purchase_ref"], unique=False)
    op.create_index("ix_tickets_round_player", "tickets", ["round_id", "player_id"], unique=False)

    op.create_table(
        "draw_results",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("round_id", ID_TYPE, nullable=False),
        sa.Column("algorithm_name", sa.String(length=64), nullable=False),
        sa.Column("algorithm_version", sa.Integer(), nullable=False),
        sa.Column("algorithm_config", sa.JSON(), nullable=True),
        sa.Column("winning_number", sa.Integer(), nullable=False),
        sa.Column("winning_ticket_id", ID_TYPE, nullable=False),
        sa.Column("winner_player_id", ID_TYPE, nullable=False),
        sa.Column("timestamp_sum", sa.String(length=64), nullable=False),
        sa.Column("share_count", sa.Integer(), nullable=False),
        sa.Column("input_data", sa.JSON(), nullable=False),
        sa.Column("calculation_steps", sa.JSON(), nullable=False),
        sa.Column("draw_trigger", sa.String(length=16), nullable=False),
        sa.Column("forced_by_admin_id", ID_TYPE, nullable=True),
        sa.Column("drawn_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "draw_trigger IN ('sold_out','forced')", name=op.f("ck_draw_results_trigger_enum")
        ),
        sa.CheckConstraint(
            "winning_number >= 1", name=op.f("ck_draw_results_winning_number_positive")
        ),
        sa.CheckConstraint(
            "winning_number <= share_count", name=op.f("ck_draw_results_winning_number_in_range")
        ),
        sa.ForeignKeyConstraint(
            ["forced_by_admin_id"],
            ["admins.id"],
            name=op.f("fk_draw_results_forced_by_admin_id_admins"),
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["round_id"],
            ["lottery_rounds.id"],
            name=op.f("fk_draw_results_round_id_lottery_rounds"),
        ),
        sa.ForeignKeyConstraint(
            ["winner_player_id"],
            ["players.id"],
            name=op.f("fk_draw_results_winner_player_id_players"),
        ),
        sa.ForeignKeyConstraint(
            ["winning_ticket_id"],
            ["tickets.id"],
            name=op.f("fk_draw_results_winning_ticket_id_tickets"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_draw_results")),
        sa.UniqueConstraint("round_id", name="uq_draw_results_round_id"),
    )

    op.create_table(
        "prize_handoffs",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("round_id", ID_TYPE, nullable=False),
        sa.Column("winning_ticket_id", ID_TYPE, nullable=False),
        sa.Column("winner_player_id", ID_TYPE, nullable=False),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("external_reference", sa.String(length=128), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending','acknowledged')", name=op.f("ck_prize_handoffs_status_enum")
        ),
        sa.ForeignKeyConstraint(
            ["round_id"],
            ["lottery_rounds.id"],
            name=op.f("fk_prize_handoffs_round_id_lottery_rounds"),
        ),
        sa.ForeignKeyConstraint(
            ["winner_player_id"],
            ["players.id"],
            name=op.f("fk_prize_handoffs_winner_player_id_players"),
        ),
        sa.ForeignKeyConstraint(
            ["winning_ticket_id"],
            ["tickets.id"],
            name=op.f("fk_prize_handoffs_winning_ticket_id_tickets"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_prize_handoffs")),
        sa.UniqueConstraint("idempotency_key", name="uq_prize_handoffs_idempotency_key"),
        sa.UniqueConstraint("round_id", name="uq_prize_handoffs_round_id"),
    )
    op.create_index(op.f("ix_prize_handoffs_id"), "prize_handoffs", ["id"], unique=False)
    op.create_index(
        "ix_prize_handoffs_status_next",
        "prize_handoffs",
        ["status", "next_attempt_at"],
        unique=False,
    )

    op.create_table(
        "round_events",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("round_id", ID_TYPE, nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("actor_type", sa.String(length=16), nullable=False),
        sa.Column("actor_admin_id", ID_TYPE, nullable=True),
        sa.Column("actor_player_id", ID_TYPE, nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column(
            "occurred_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "actor_type IN ('system','admin','player')",
            name=op.f("ck_round_events_actor_type_enum"),
        ),
        sa.ForeignKeyConstraint(
            ["actor_admin_id"],
            ["admins.id"],
            name=op.f("fk_round_events_actor_admin_id_admins"),
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["actor_player_id"],
            ["players.id"],
            name=op.f("fk_round_events_actor_player_id_players"),
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["round_id"],
            ["lottery_rounds.id"],
            name=op.f("fk_round_events_round_id_lottery_rounds"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_round_events")),
    )
    op.create_index(op.f("ix_round_events_id"), "round_events", ["id"], unique=False)
    op.create_index(op.f("ix_round_events_round_id"), "round_events", ["round_id"], unique=False)
    op.create_index(op.f("ix_round_events_action"), "round_events", ["action"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_round_events_action"), table_name="round_events")
    op.drop_index(op.f("ix_round_events_round_id"), table_name="round_events")
    op.drop_index(op.f("ix_round_events_id"), table_name="round_events")
    op.drop_table("round_events")
    op.drop_index("ix_prize_handoffs_status_next", table_name="prize_handoffs")
    op.drop_index(op.f("ix_prize_handoffs_id"), table_name="prize_handoffs")
    op.drop_table("prize_handoffs")
    op.drop_table("draw_results")
    op.drop_index("ix_tickets_round_player", table_name="tickets")
    op.drop_index(op.f("ix_tickets_purchase_ref"), table_name="tickets")
    op.drop_index(op.f("ix_tickets_player_id"), table_name="tickets")
    op.drop_table("tickets")
    op.drop_index("ix_lottery_rounds_draw_due", table_name="lottery_rounds")
    op.drop_index("uq_lottery_rounds_period_code", table_name="lottery_rounds")
    op.drop_index(op.f("ix_lottery_rounds_status"), table_name="lottery_rounds")
    op.drop_table("lottery_rounds")
    op.drop_index("uq_draw_algorithms_single_default", table_name="draw_algorithms")
    op.drop_table("draw_algorithms")
    op.drop_table("players")
    op.drop_index(op.f("ix_admins_email"), table_name="admins")
    op.drop_index(op.f("ix_admins_id"), table_name="admins")
    op.drop_table("admins")
