"""create credit ledger, songs and payment tables

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_credits",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("free_songs_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("paid_credits", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_songs_created", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint("paid_credits >= 0", name="ck_user_credits_paid_credits_non_negative"),
        sa.CheckConstraint("free_songs_used >= 0", name="ck_user_credits_free_songs_used_non_negative"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "songs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("celebration_type", sa.String(), nullable=True),
        sa.Column("style", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("variations", sa.JSON(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_songs_user_id"), "songs", ["user_id"], unique=False)
    op.create_index(op.f("ix_songs_status"), "songs", ["status"], unique=False)
    op.create_index(op.f("ix_songs_task_id"), "songs", ["task_id"], unique=True)
    op.create_index(op.f("ix_songs_created_at"), "songs", ["created_at"], unique=False)

    op.create_table(
        "payment_transactions",
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("provider_response", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("token"),
    )
    op.create_index(op.f("ix_payment_transactions_user_id"), "payment_transactions", ["user_id"], unique=False)
    op.create_index(op.f("ix_payment_transactions_created_at"), "payment_transactions", ["created_at"], unique=False)

    op.create_table(
        "payment_sessions",
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=True),
        sa.Column("package_id", sa.String(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("locale", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("token"),
    )
    op.create_index(op.f("ix_payment_sessions_user_id"), "payment_sessions", ["user_id"], unique=False)

    op.create_table(
        "credit_packages",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("popular", sa.Boolean(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=True),
        sa.Column("polar_product_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "anonymous_usages",
        sa.Column("visitor_id", sa.String(), nullable=False),
        sa.Column("first_song_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("visitor_id"),
    )


def downgrade() -> None:
    op.drop_table("anonymous_usages")
    op.drop_table("credit_packages")
    op.drop_index(op.f("ix_payment_sessions_user_id"), table_name="payment_sessions")
    op.drop_table("payment_sessions")
    op.drop_index(op.f("ix_payment_transactions_created_at"), table_name="payment_transactions")
    op.drop_index(op.f("ix_payment_transactions_user_id"), table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_index(op.f("ix_songs_created_at"), table_name="songs")
    op.drop_index(op.f("ix_songs_task_id"), table_name="songs")
    op.drop_index(op.f("ix_songs_status"), table_name="songs")
    op.drop_index(op.f("ix_songs_user_id"), table_name="songs")
    op.drop_table("songs")
    op.drop_table("user_credits")
