"""add equipment_messages table

Revision ID: 20260112_140000
Revises: 20260105_090000
Create Date: 2026-01-12 14:00:00

Notes:
- Two-party chat per equipment listing.
- Composite (equipment_id, created_at) index backs the chronological thread read.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260112_140000"
down_revision: Union[str, None] = "20260105_090000"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "equipment_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("equipment_id", sa.Integer(), sa.ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("message", sa.String(length=1000), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_equipment_messages_id", "equipment_messages", ["id"])
    op.create_index("ix_equipment_messages_equipment_id", "equipment_messages", ["equipment_id"])
    op.create_index("ix_equipment_messages_sender_id", "equipment_messages", ["sender_id"])
    op.create_index("ix_equipment_messages_recipient_id", "equipment_messages", ["recipient_id"])
    op.create_index(
        "ix_equipment_messages_equipment_created_at",
        "equipment_messages",
        ["equipment_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_equipment_messages_equipment_created_at", table_name="equipment_messages")
    op.drop_table("equipment_messages")
