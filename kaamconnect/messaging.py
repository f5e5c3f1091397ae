# Equipment chat persistence: thread reads, message inserts, and the store the chat engine runs against.
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Protocol

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .db import SessionLocal, session_scope
from .errors import EmptyMessage, NotFound, StoreError, Unauthorized
from .realtime import ChangeFeed, Handler, Subscription, change_feed

logger = logging.getLogger("kaamconnect.chat")

MESSAGES_TABLE = "equipment_messages"


def get_equipment(db: Session, equipment_id: int) -> models.Equipment:
    equipment = db.get(models.Equipment, equipment_id)
    if equipment is None:
        raise NotFound("Equipment not found")
    return equipment


def is_thread_party(db: Session, equipment: models.Equipment, user_id: int) -> bool:
    """Owner, or a renter holding any booking on this equipment."""
    if equipment.owner_id == user_id:
        return True
    booking = (
        db.query(models.EquipmentBooking.id)
        .filter(
            models.EquipmentBooking.equipment_id == equipment.id,
            models.EquipmentBooking.renter_id == user_id,
        )
        .first()
    )
    return booking is not None


def list_thread(db: Session, equipment: models.Equipment, viewer_id: Optional[int] = None) -> List[models.EquipmentMessage]:
    """
    Messages for an equipment listing, ascending by created_at then id.

    The owner (or an unscoped internal caller, viewer_id=None) sees the whole
    thread; anyone else only the messages they sent or received.
    """
    q = db.query(models.EquipmentMessage).filter(models.EquipmentMessage.equipment_id == equipment.id)
    if viewer_id is not None and viewer_id != equipment.owner_id:
        q = q.filter(
            or_(
                models.EquipmentMessage.sender_id == viewer_id,
                models.EquipmentMessage.recipient_id == viewer_id,
            )
        )
    return q.order_by(models.EquipmentMessage.created_at.asc(), models.EquipmentMessage.id.asc()).all()


def post_message(
    db: Session,
    equipment: models.Equipment,
    sender_id: int,
    recipient_id: int,
    text: str,
    feed: ChangeFeed = change_feed,
) -> models.EquipmentMessage:
    """
    Persist a message and push an INSERT event on the equipment's channel.

    The recipient must be the owner or a renter with a booking on this
    equipment, and cannot be the sender. Blank text raises EmptyMessage.
    """
    text = (text or "").strip()
    if not text:
        raise EmptyMessage("Message is empty.")
    if recipient_id == sender_id:
        raise Unauthorized("Cannot send a message to yourself.")
    if not is_thread_party(db, equipment, recipient_id):
        raise Unauthorized("Recipient is not part of this equipment's conversations.")

    msg = models.EquipmentMessage(
        equipment_id=equipment.id,
        sender_id=sender_id,
        recipient_id=recipient_id,
        message=text,
    )
    try:
        db.add(msg)
        db.commit()
        db.refresh(msg)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"Failed to persist message: {exc}") from exc

    record = schemas.MessageRead.model_validate(msg)
    feed.publish(
        schemas.ChangeEvent(
            event_type="INSERT",
            table=MESSAGES_TABLE,
            equipment_id=equipment.id,
            new=record.model_dump(mode="json"),
        )
    )
    logger.info(
        "chat.message.persisted",
        extra={"equipment_id": equipment.id, "sender_id": sender_id, "message_id": msg.id},
    )
    return msg


class MessageStore(Protocol):
    """What the chat engine needs from the remote store."""

    async def fetch_messages(self, equipment_id: int) -> List[schemas.MessageRead]:
        ...

    async def insert_message(self, draft: schemas.MessageDraft) -> schemas.MessageRead:
        ...

    def subscribe(self, equipment_id: int, handler: Handler) -> Subscription:
        ...


class DatabaseMessageStore:
    """
    MessageStore backed by the application database and change feed.

    Each call opens and closes its own session. `viewer_id` scopes reads the
    same way the REST API does; leave it None for an unscoped view.
    """
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        feed: ChangeFeed = change_feed,
        viewer_id: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.feed = feed
        self.viewer_id = viewer_id

    async def fetch_messages(self, equipment_id: int) -> List[schemas.MessageRead]:
        with session_scope(self.session_factory) as db:
            try:
                equipment = get_equipment(db, equipment_id)
                rows = list_thread(db, equipment, self.viewer_id)
                return [schemas.MessageRead.model_validate(m) for m in rows]
            except SQLAlchemyError as exc:
                raise StoreError(f"Failed to load messages: {exc}") from exc

    async def insert_message(self, draft: schemas.MessageDraft) -> schemas.MessageRead:
        with session_scope(self.session_factory) as db:
            try:
                equipment = get_equipment(db, draft.equipment_id)
                msg = post_message(db, equipment, draft.sender_id, draft.recipient_id, draft.message, feed=self.feed)
                return schemas.MessageRead.model_validate(msg)
            except SQLAlchemyError as exc:
                raise StoreError(f"Failed to send message: {exc}") from exc

    def subscribe(self, equipment_id: int, handler: Handler) -> Subscription:
        return self.feed.subscribe(MESSAGES_TABLE, equipment_id, handler)
