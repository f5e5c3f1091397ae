"""initial schema: users, equipment, equipment_bookings, notifications

Revision ID: 20260105_090000
Revises:
Create Date: 2026-01-05 09:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260105_090000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "equipment",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("equipment_type", sa.String(length=100), nullable=False),
        sa.Column("rental_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("price_type", sa.String(length=20), nullable=False, server_default="per_day"),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("availability_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("availability_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="available"),
        *_timestamps(),
        sa.CheckConstraint("price_type IN ('per_hour', 'per_day')", name="ck_equipment_price_type"),
    )
    op.create_index("ix_equipment_id", "equipment", ["id"])
    op.create_index("ix_equipment_owner_id", "equipment", ["owner_id"])
    op.create_index("ix_equipment_equipment_type", "equipment", ["equipment_type"])
    op.create_index("ix_equipment_status", "equipment", ["status"])

    op.create_table(
        "equipment_bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("equipment_id", sa.Integer(), sa.ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False),
        sa.Column("renter_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled')",
            name="ck_equipment_bookings_status",
        ),
        sa.CheckConstraint("start_date <= end_date", name="ck_equipment_bookings_range"),
    )
    op.create_index("ix_equipment_bookings_id", "equipment_bookings", ["id"])
    op.create_index("ix_equipment_bookings_equipment_id", "equipment_bookings", ["equipment_id"])
    op.create_index("ix_equipment_bookings_renter_id", "equipment_bookings", ["renter_id"])
    op.create_index("ix_equipment_bookings_equipment_status", "equipment_bookings", ["equipment_id", "status"])
    op.create_index("ix_equipment_bookings_equipment_start", "equipment_bookings", ["equipment_id", "start_date"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_notifications_id", "notifications", ["id"])
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("equipment_bookings")
    op.drop_table("equipment")
    op.drop_table("users")
