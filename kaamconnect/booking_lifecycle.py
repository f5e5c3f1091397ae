# Booking lifecycle: request, approve/reject and cancel equipment bookings.
# Callers pass the store handle (Session) and the acting user's id explicitly; the API routes are thin adapters.
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Literal, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .errors import (
    InvalidDateRange,
    InvalidHours,
    InvalidStateTransition,
    NotFound,
    OutOfAvailabilityWindow,
    OverlapConflict,
    SelfBookingForbidden,
    StoreError,
    Unauthorized,
)
from .realtime import ChangeFeed, change_feed

logger = logging.getLogger("kaamconnect.bookings")

Decision = Literal["approve", "reject"]

# Statuses that hold dates against new requests
BLOCKING_STATUSES = ("pending", "approved")

_CENTS = Decimal("0.01")


def ranges_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """Inclusive intersection: ranges that only share an endpoint day still overlap."""
    return not (b_end < a_start or b_start > a_end)


def inclusive_days(start_date: date, end_date: date) -> int:
    return (end_date - start_date).days + 1


def compute_total_amount(
    equipment: models.Equipment,
    start_date: date,
    end_date: date,
    hours: Optional[float] = None,
) -> Decimal:
    """
    Price a booking.

    - per_day: inclusive day count x rental_price
    - per_hour: caller-supplied hours x rental_price; hours must be positive
    """
    price = Decimal(str(equipment.rental_price))
    if equipment.price_type == "per_hour":
        if hours is None or hours <= 0:
            raise InvalidHours("Please enter the number of hours.")
        total = Decimal(str(hours)) * price
    else:
        total = inclusive_days(start_date, end_date) * price
    return total.quantize(_CENTS, rounding=ROUND_HALF_UP)


def find_overlapping_booking(
    db: Session,
    equipment_id: int,
    start_date: date,
    end_date: date,
    statuses: Iterable[str],
    exclude_booking_id: Optional[int] = None,
) -> Optional[models.EquipmentBooking]:
    """
    Return the first booking on this equipment in one of `statuses` whose
    [start_date, end_date] intersects the given range, or None.

    Always reads current stored state; results are never cached.
    """
    q = db.query(models.EquipmentBooking).filter(
        models.EquipmentBooking.equipment_id == equipment_id,
        models.EquipmentBooking.status.in_(list(statuses)),
    )
    if exclude_booking_id is not None:
        q = q.filter(models.EquipmentBooking.id != exclude_booking_id)

    for existing in q.order_by(models.EquipmentBooking.start_date.asc()).all():
        if ranges_overlap(start_date, end_date, existing.start_date, existing.end_date):
            return existing
    return None


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _check_availability(equipment: models.Equipment, start_date: date, end_date: date) -> None:
    # Whole days: a window opening at 09:00 still makes that calendar day bookable
    avail_start = _utc(equipment.availability_start).date()
    avail_end = _utc(equipment.availability_end).date()
    if start_date < avail_start or end_date > avail_end:
        raise OutOfAvailabilityWindow(
            "Selected dates must be within availability: "
            f"{avail_start.isoformat()} - {avail_end.isoformat()}"
        )


def _overlap_message(existing: models.EquipmentBooking) -> str:
    return (
        "Selected dates overlap with an existing booking "
        f"({existing.start_date.isoformat()} to {existing.end_date.isoformat()})."
    )


def _get_equipment(db: Session, equipment_id: int) -> models.Equipment:
    equipment = db.get(models.Equipment, equipment_id)
    if equipment is None:
        raise NotFound("Equipment not found")
    return equipment


def _get_booking(db: Session, booking_id: int) -> models.EquipmentBooking:
    booking = db.get(models.EquipmentBooking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


def _insert_notification(db: Session, user_id: int, title: str, body: str) -> models.Notification:
    obj = models.Notification(user_id=user_id, title=title, body=body, read=False)
    db.add(obj)
    db.commit()
    return obj


def notify(db: Session, user_id: int, title: str, body: str) -> Optional[models.Notification]:
    """
    Best-effort notification insert.

    Runs in its own commit after the booking change has been committed, so a
    failure here is logged and ignored without touching the booking.
    """
    try:
        return _insert_notification(db, user_id, title, body)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("notifications.insert.failed", extra={"user_id": user_id, "title": title, "error": str(exc)})
        return None


def _publish(feed: ChangeFeed, event_type: str, booking: models.EquipmentBooking, old: Optional[dict] = None) -> None:
    record = schemas.BookingRead.model_validate(booking).model_dump(mode="json")
    feed.publish(
        schemas.ChangeEvent(
            event_type=event_type,
            table="equipment_bookings",
            equipment_id=booking.equipment_id,
            new=record,
            old=old,
        )
    )


def request_booking(
    db: Session,
    equipment_id: int,
    renter_id: int,
    start_date: date,
    end_date: date,
    hours: Optional[float] = None,
    feed: ChangeFeed = change_feed,
) -> models.EquipmentBooking:
    """
    Create a pending booking for `renter_id`.

    Every validation runs before the insert: self-booking, date order,
    availability window, hours (per_hour pricing) and overlap with pending or
    approved bookings. The owner is notified best-effort afterwards.
    """
    equipment = _get_equipment(db, equipment_id)

    if equipment.owner_id == renter_id:
        raise SelfBookingForbidden("You cannot book your own equipment.")
    if start_date > end_date:
        raise InvalidDateRange("Start date must be before end date.")
    _check_availability(equipment, start_date, end_date)
    total_amount = compute_total_amount(equipment, start_date, end_date, hours)

    try:
        existing = find_overlapping_booking(db, equipment_id, start_date, end_date, BLOCKING_STATUSES)
    except SQLAlchemyError as exc:
        raise StoreError(f"Failed to check existing bookings: {exc}") from exc
    if existing is not None:
        logger.info(
            "bookings.request.overlap",
            extra={"equipment_id": equipment_id, "renter_id": renter_id, "conflict_id": existing.id},
        )
        raise OverlapConflict(_overlap_message(existing), conflicting_booking_id=existing.id)

    booking = models.EquipmentBooking(
        equipment_id=equipment_id,
        renter_id=renter_id,
        start_date=start_date,
        end_date=end_date,
        total_amount=total_amount,
        status="pending",
    )
    try:
        db.add(booking)
        db.commit()
        db.refresh(booking)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"Failed to create booking: {exc}") from exc

    logger.info(
        "bookings.requested",
        extra={
            "booking_id": booking.id,
            "equipment_id": equipment_id,
            "renter_id": renter_id,
            "total_amount": str(total_amount),
        },
    )
    _publish(feed, "INSERT", booking)
    notify(
        db,
        equipment.owner_id,
        "New Equipment Booking Request",
        f"You have a new booking request for {equipment.name}.",
    )
    return booking


def _transition(db: Session, booking: models.EquipmentBooking, new_status: str) -> None:
    """
    Move a pending booking to `new_status`.

    The UPDATE is guarded on status='pending', so if another request already
    moved the booking nothing is written and InvalidStateTransition is raised.
    """
    try:
        updated = (
            db.query(models.EquipmentBooking)
            .filter(
                models.EquipmentBooking.id == booking.id,
                models.EquipmentBooking.status == "pending",
            )
            .update({models.EquipmentBooking.status: new_status}, synchronize_session=False)
        )
        if updated == 0:
            db.rollback()
            raise InvalidStateTransition("Only pending bookings can be changed.")
        db.commit()
        db.refresh(booking)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"Failed to update booking: {exc}") from exc


def decide_booking(
    db: Session,
    booking_id: int,
    decider_id: int,
    decision: Decision,
    feed: ChangeFeed = change_feed,
) -> models.EquipmentBooking:
    """
    Owner approves or rejects a pending booking.

    Approval re-checks overlap against the other approved bookings of the same
    equipment, read from the store at decision time. On conflict the booking
    stays pending. The renter is notified best-effort in both branches.
    """
    if decision not in ("approve", "reject"):
        raise ValueError(f"unknown decision: {decision!r}")

    booking = _get_booking(db, booking_id)
    equipment = _get_equipment(db, booking.equipment_id)

    if equipment.owner_id != decider_id:
        raise Unauthorized(f"Only the equipment owner can {decision} bookings.")
    if booking.status != "pending":
        raise InvalidStateTransition(f"This booking is already {booking.status}.")

    if decision == "approve":
        try:
            clash = find_overlapping_booking(
                db,
                booking.equipment_id,
                booking.start_date,
                booking.end_date,
                ("approved",),
                exclude_booking_id=booking.id,
            )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to check approved bookings: {exc}") from exc
        if clash is not None:
            logger.info(
                "bookings.approve.overlap",
                extra={"booking_id": booking.id, "conflict_id": clash.id, "equipment_id": booking.equipment_id},
            )
            raise OverlapConflict(
                "This booking overlaps with an approved booking "
                f"({clash.start_date.isoformat()} to {clash.end_date.isoformat()}).",
                conflicting_booking_id=clash.id,
            )
        new_status, title, verb = "approved", "Booking Approved", "approved"
    else:
        new_status, title, verb = "rejected", "Booking Rejected", "rejected"

    _transition(db, booking, new_status)
    logger.info(
        f"bookings.{new_status}",
        extra={"booking_id": booking.id, "equipment_id": booking.equipment_id, "owner_id": decider_id},
    )
    _publish(feed, "UPDATE", booking, old={"id": booking.id, "status": "pending"})
    notify(
        db,
        booking.renter_id,
        title,
        f"Your booking for {equipment.name or 'equipment'} has been {verb}.",
    )
    return booking


def cancel_booking(
    db: Session,
    booking_id: int,
    renter_id: int,
    feed: ChangeFeed = change_feed,
) -> models.EquipmentBooking:
    """Renter withdraws their own pending booking. No notification is sent."""
    booking = _get_booking(db, booking_id)
    if booking.renter_id != renter_id:
        raise Unauthorized("Not allowed to cancel this booking.")
    if booking.status != "pending":
        raise InvalidStateTransition(f"Only pending bookings can be cancelled; this one is {booking.status}.")

    _transition(db, booking, "cancelled")
    logger.info("bookings.cancelled", extra={"booking_id": booking.id, "renter_id": renter_id})
    _publish(feed, "UPDATE", booking, old={"id": booking.id, "status": "pending"})
    return booking


def list_equipment_bookings(db: Session, equipment_id: int, owner_id: int) -> List[models.EquipmentBooking]:
    """Owner's view of every booking on one of their listings, soonest first."""
    equipment = _get_equipment(db, equipment_id)
    if equipment.owner_id != owner_id:
        raise Unauthorized("Only the equipment owner can view its bookings.")
    return (
        db.query(models.EquipmentBooking)
        .filter(models.EquipmentBooking.equipment_id == equipment_id)
        .order_by(models.EquipmentBooking.start_date.asc(), models.EquipmentBooking.id.asc())
        .all()
    )
