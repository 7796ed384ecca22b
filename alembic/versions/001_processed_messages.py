"""Idempotency records for the SQL store.

Revision ID: 001_processed_messages
Revises: None
Create Date: 2024-01-01 00:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_processed_messages"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Primary key on message_id arbitrates concurrent claims
    op.create_table(
        "processed_messages",
        sa.Column("message_id", sa.String(255), primary_key=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_processed_messages_expires_at", "processed_messages", ["expires_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_processed_messages_expires_at", table_name="processed_messages")
    op.drop_table("processed_messages")
