# Equipment listing endpoints.
# Browsing is open to anyone and shows only items still marked available; listing new equipment needs a token.
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..messaging import get_equipment
from ..rate_limit import rate_limit
from .auth import get_current_user

router = APIRouter()


@router.get("/equipment", response_model=List[schemas.EquipmentRead])
def list_equipment(
    equipment_type: Optional[str] = Query(None, min_length=1, max_length=100),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[models.Equipment]:
    """Browse available equipment, newest first, optionally by type."""
    q = db.query(models.Equipment).filter(models.Equipment.status == "available")
    if equipment_type:
        q = q.filter(models.Equipment.equipment_type == equipment_type.strip())
    return q.order_by(models.Equipment.id.desc()).offset(offset).limit(limit).all()


@router.get("/equipment/mine", response_model=List[schemas.EquipmentRead])
def list_my_equipment(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.Equipment]:
    return (
        db.query(models.Equipment)
        .filter(models.Equipment.owner_id == user.id)
        .order_by(models.Equipment.id.desc())
        .all()
    )


@router.get("/equipment/{equipment_id}", response_model=schemas.EquipmentRead)
def read_equipment(equipment_id: int, db: Session = Depends(get_db)) -> models.Equipment:
    return get_equipment(db, equipment_id)


@router.post(
    "/equipment",
    response_model=schemas.EquipmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
def create_equipment(
    payload: schemas.EquipmentCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.Equipment:
    """List new equipment owned by the caller."""
    obj = models.Equipment(
        owner_id=user.id,
        name=payload.name,
        equipment_type=payload.equipment_type,
        rental_price=payload.rental_price,
        price_type=payload.price_type,
        location=payload.location,
        availability_start=payload.availability_start,
        availability_end=payload.availability_end,
        status="available",
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj
