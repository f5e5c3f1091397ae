# SQLAlchemy ORM models for the rental marketplace tables.
# Business rules (overlap, transitions, notifications) live in booking_lifecycle / messaging.
from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import declarative_mixin

from .db import Base


@declarative_mixin
class TimestampMixin:
    """UTC-aware timestamps managed by the database.

    - created_at: set on insert
    - updated_at: set on insert and refreshed on each modification
    """
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class User(Base, TimestampMixin):
    """Marketplace account. Every user can both list equipment and rent it."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)


class Equipment(Base, TimestampMixin):
    """Rentable tool or machine listed by its owner."""
    __tablename__ = "equipment"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    equipment_type = Column(String(100), nullable=False, index=True)
    rental_price = Column(Numeric(12, 2), nullable=False)
    price_type = Column(String(20), nullable=False, default="per_day")  # "per_hour" or "per_day"
    location = Column(String(255), nullable=True)
    availability_start = Column(DateTime(timezone=True), nullable=False)
    availability_end = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default="available", index=True)


class EquipmentBooking(Base, TimestampMixin):
    """Renter's request to reserve equipment for an inclusive date range.

    Status transitions:
    pending -> approved | rejected   (equipment owner)
    pending -> cancelled             (renter)
    approved, rejected and cancelled are terminal.
    """
    __tablename__ = "equipment_bookings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False, index=True)
    renter_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="pending")

    # Overlap checks scan one equipment item's bookings filtered by status
    __table_args__ = (
        Index("ix_equipment_bookings_equipment_status", "equipment_id", "status"),
        Index("ix_equipment_bookings_equipment_start", "equipment_id", "start_date"),
    )


class Notification(Base):
    """One-way informational record for a user (booking requested/approved/rejected)."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class EquipmentMessage(Base):
    """Chat message between two parties about an equipment listing."""
    __tablename__ = "equipment_messages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    message = Column(String(1000), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Thread reads are per equipment in chronological order
    __table_args__ = (
        Index("ix_equipment_messages_equipment_created_at", "equipment_id", "created_at"),
    )
