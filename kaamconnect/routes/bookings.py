# Booking endpoints: request, approve/reject, cancel and list equipment bookings.
# Thin adapters over booking_lifecycle; domain errors are rendered by the app-level handler.
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import booking_lifecycle, models, schemas
from ..rate_limit import rate_limit
from .auth import get_current_user

router = APIRouter()


@router.post(
    "/equipment/{equipment_id}/bookings",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
def request_booking(
    equipment_id: int,
    payload: schemas.BookingCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.EquipmentBooking:
    return booking_lifecycle.request_booking(
        db,
        equipment_id,
        user.id,
        payload.start_date,
        payload.end_date,
        hours=payload.hours,
    )


@router.get("/equipment/{equipment_id}/bookings", response_model=List[schemas.BookingRead])
def list_equipment_bookings(
    equipment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.EquipmentBooking]:
    return booking_lifecycle.list_equipment_bookings(db, equipment_id, user.id)


@router.get("/bookings/me", response_model=List[schemas.BookingRead])
def list_my_bookings(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.EquipmentBooking]:
    """Bookings the caller made as a renter, latest start date first."""
    return (
        db.query(models.EquipmentBooking)
        .filter(models.EquipmentBooking.renter_id == user.id)
        .order_by(models.EquipmentBooking.start_date.desc(), models.EquipmentBooking.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


@router.post(
    "/bookings/{booking_id}/approve",
    response_model=schemas.BookingRead,
    dependencies=[Depends(rate_limit("write"))],
)
def approve_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.EquipmentBooking:
    return booking_lifecycle.decide_booking(db, booking_id, user.id, "approve")


@router.post(
    "/bookings/{booking_id}/reject",
    response_model=schemas.BookingRead,
    dependencies=[Depends(rate_limit("write"))],
)
def reject_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.EquipmentBooking:
    return booking_lifecycle.decide_booking(db, booking_id, user.id, "reject")


@router.delete(
    "/bookings/{booking_id}",
    response_model=schemas.BookingRead,
    dependencies=[Depends(rate_limit("write"))],
)
def cancel_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.EquipmentBooking:
    return booking_lifecycle.cancel_booking(db, booking_id, user.id)
