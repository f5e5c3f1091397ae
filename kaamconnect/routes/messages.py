# Equipment chat over REST: thread history and sending.
# Live delivery happens on the /ws/equipment/{id}/messages change channel.
from typing import List

from fastapi import APIRouter, Depends, status
import logging
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..messaging import get_equipment, list_thread, post_message
from ..rate_limit import rate_limit
from .auth import get_current_user

router = APIRouter()
logger = logging.getLogger("kaamconnect.chat")


@router.get("/equipment/{equipment_id}/messages", response_model=List[schemas.MessageRead])
def list_messages(
    equipment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.EquipmentMessage]:
    """
    Chat history for an equipment listing, oldest first.

    The owner sees every conversation on the listing; other users see only
    messages they sent or received.
    """
    equipment = get_equipment(db, equipment_id)
    items = list_thread(db, equipment, user.id)
    logger.info(
        "chat.history",
        extra={"equipment_id": equipment_id, "user_id": user.id, "count": len(items)},
    )
    return items


@router.post(
    "/equipment/{equipment_id}/messages",
    response_model=schemas.MessageRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
def send_message(
    equipment_id: int,
    payload: schemas.MessageCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> models.EquipmentMessage:
    equipment = get_equipment(db, equipment_id)
    return post_message(db, equipment, user.id, payload.recipient_id, payload.message)
