"""Create competition tables."""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
MONEY = sa.Double()
CRON_LOG_STATUS = sa.Enum("started", "completed", "failed", name="cron_log_status")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("username", name="uq_users_username"),
    )

    op.create_table(
        "trading_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_trading_accounts_user_id_users"),
            nullable=False,
        ),
        sa.Column("account_type", sa.String(length=32), nullable=False, server_default="tradelocker"),
        sa.Column("tl_email", sa.String(length=320), nullable=True),
        sa.Column("tl_server", sa.String(length=128), nullable=True),
        sa.Column("tl_password_encrypted", sa.Text(), nullable=True),
        sa.Column("tl_account_type", sa.String(length=16), nullable=True),
        sa.Column("account_number", sa.String(length=64), nullable=False),
        sa.Column("account_name", sa.String(length=120), nullable=True),
        sa.Column("starting_balance", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("current_balance", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("balance_override", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("show_on_leaderboard", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_trading_accounts_user_id", "trading_accounts", ["user_id"])
    op.create_index(
        "ix_trading_accounts_refresh",
        "trading_accounts",
        ["is_active", "balance_override"],
    )

    op.create_table(
        "cron_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("status", CRON_LOG_STATUS, nullable=False),
        sa.Column("accounts_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("accounts_updated", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("errors", JSON_TYPE, nullable=True),
        sa.Column("details", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_cron_logs_job_name_created_at",
        "cron_logs",
        ["job_name", "created_at"],
    )

    op.create_table(
        "competition_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("referral_link", sa.Text(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("competition_settings")

    op.drop_index("ix_cron_logs_job_name_created_at", table_name="cron_logs")
    op.drop_table("cron_logs")
    CRON_LOG_STATUS.drop(op.get_bind(), checkfirst=True)

    op.drop_index("ix_trading_accounts_refresh", table_name="trading_accounts")
    op.drop_index("ix_trading_accounts_user_id", table_name="trading_accounts")
    op.drop_table("trading_accounts")

    op.drop_table("users")
