"""direct messages

Revision ID: 5b1e0c7d2a41
Revises:
Create Date: 2026-10-19 09:12:44.318020

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5b1e0c7d2a41"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create profile, thread and message tables."""
    op.create_table(
        "user_profile",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("public_key", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "dm_thread",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("participant_a", sa.String(length=64), nullable=False),
        sa.Column("participant_b", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("participant_a < participant_b", name="ck_dm_thread_sorted_pair"),
        sa.ForeignKeyConstraint(["participant_a"], ["user_profile.id"]),
        sa.ForeignKeyConstraint(["participant_b"], ["user_profile.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_dm_thread_active_pair",
        "dm_thread",
        ["participant_a", "participant_b"],
        unique=True,
        sqlite_where=sa.text("archived_at IS NULL"),
        postgresql_where=sa.text("archived_at IS NULL"),
    )
    op.create_table(
        "direct_message",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("thread_id", sa.String(length=32), nullable=False),
        sa.Column("sender_id", sa.String(length=64), nullable=False),
        sa.Column("message_type", sa.String(length=16), nullable=False),
        sa.Column("cipher_content", sa.Text(), nullable=False),
        sa.Column("encrypted_key", sa.Text(), nullable=True),
        sa.Column("sender_encrypted_key", sa.Text(), nullable=True),
        sa.Column("iv", sa.String(length=32), nullable=True),
        sa.Column("is_encrypted", sa.Boolean(), nullable=False),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["sender_id"], ["user_profile.id"]),
        sa.ForeignKeyConstraint(["thread_id"], ["dm_thread.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_direct_message_thread_created",
        "direct_message",
        ["thread_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Drop the direct-message schema."""
    op.drop_index("ix_direct_message_thread_created", table_name="direct_message")
    op.drop_table("direct_message")
    op.drop_index("uq_dm_thread_active_pair", table_name="dm_thread")
    op.drop_table("dm_thread")
    op.drop_table("user_profile")
