# Client-side view of one equipment chat thread.
# Keeps messages sorted by created_at, de-duplicated by id across fetch, push and send,
# and echoes sends optimistically before the store confirms them.
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Set, Union

from . import schemas
from .errors import EmptyMessage, KaamConnectError, SendFailed
from .messaging import MessageStore
from .realtime import Subscription

logger = logging.getLogger("kaamconnect.chat")

# Process-wide counter so local ids never repeat, even for sends in the same millisecond
_local_ids = itertools.count(1)


def _next_local_id() -> str:
    return f"local-{next(_local_ids)}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryState(str, Enum):
    PENDING = "pending"
    FAILED = "failed"
    # The store accepted it; the echo has been replaced by the stored message
    CONFIRMED = "confirmed"


@dataclass
class Confirmed:
    """A message the store has persisted."""
    message: schemas.MessageRead

    @property
    def key(self) -> int:
        return self.message.id

    @property
    def created_at(self) -> datetime:
        return self.message.created_at

    @property
    def text(self) -> str:
        return self.message.message


@dataclass
class Optimistic:
    """
    A local echo of a send that has not been confirmed (pending) or that failed.

    Once the store accepts it the echo leaves the thread; the object keeps the
    stored id so a late retry on a stale handle resolves to the stored message.
    """
    local_id: str
    draft: schemas.MessageDraft
    created_at: datetime
    state: DeliveryState = DeliveryState.PENDING
    message_id: Optional[int] = None

    @property
    def key(self) -> str:
        return self.local_id

    @property
    def text(self) -> str:
        return self.draft.message

    @property
    def pending(self) -> bool:
        return self.state is DeliveryState.PENDING

    @property
    def failed(self) -> bool:
        return self.state is DeliveryState.FAILED


ThreadEntry = Union[Confirmed, Optimistic]
MessageCallback = Callable[[schemas.MessageRead], None]


@dataclass
class ChatThread:
    """
    Ordered, duplicate-free message list for one equipment listing.

    Invariants after every mutation:
    - entries are sorted ascending by created_at (stable, so ties keep arrival order)
    - a real message id appears at most once; `seen` holds every id and local id shown

    All handlers mutate state synchronously, so on a single event loop the
    seen-set check and the insert that follows cannot interleave.
    """
    store: MessageStore
    equipment_id: int
    clock: Callable[[], datetime] = _utcnow
    entries: List[ThreadEntry] = field(default_factory=list)
    seen: Set[Union[int, str]] = field(default_factory=set)
    # Banner state: the most recent send/retry failure, cleared by the next success
    error: Optional[SendFailed] = None

    @property
    def messages(self) -> List[schemas.MessageRead]:
        return [e.message for e in self.entries if isinstance(e, Confirmed)]

    def _sort(self) -> None:
        self.entries.sort(key=lambda e: e.created_at)

    def _index_of(self, key: Union[int, str]) -> Optional[int]:
        for i, entry in enumerate(self.entries):
            if entry.key == key:
                return i
        return None

    async def load_thread(self) -> List[ThreadEntry]:
        """
        Fetch the full thread and replace local state with it.

        Used for the initial load and for pull-to-refresh; optimistic entries
        not yet confirmed are dropped, never merged.
        """
        fetched = await self.store.fetch_messages(self.equipment_id)
        entries: List[ThreadEntry] = []
        seen: Set[Union[int, str]] = set()
        for msg in fetched:
            if msg.id in seen:
                continue
            seen.add(msg.id)
            entries.append(Confirmed(msg))
        self.entries = entries
        self.seen = seen
        self._sort()
        logger.debug("chat.thread.loaded", extra={"equipment_id": self.equipment_id, "count": len(entries)})
        return self.entries

    refresh = load_thread

    def subscribe_to_updates(
        self,
        on_insert: Optional[MessageCallback] = None,
        on_update: Optional[MessageCallback] = None,
        on_delete: Optional[Callable[[int], None]] = None,
    ) -> Subscription:
        """
        Listen for remote changes to this thread.

        Returns the Subscription; release it (or use it as a context manager)
        when the view goes away.
        """
        def _on_change(event: schemas.ChangeEvent) -> None:
            if event.event_type == "INSERT" and event.new:
                msg = schemas.MessageRead.model_validate(event.new)
                if self._add_confirmed(msg) and on_insert is not None:
                    on_insert(msg)
            elif event.event_type == "UPDATE" and event.new:
                msg = schemas.MessageRead.model_validate(event.new)
                idx = self._index_of(msg.id)
                if idx is None:
                    return
                self.entries[idx] = Confirmed(msg)
                self._sort()
                if on_update is not None:
                    on_update(msg)
            elif event.event_type == "DELETE" and event.old:
                msg_id = event.old.get("id")
                idx = self._index_of(msg_id)
                if idx is not None:
                    del self.entries[idx]
                self.seen.discard(msg_id)
                if on_delete is not None:
                    on_delete(msg_id)

        return self.store.subscribe(self.equipment_id, _on_change)

    def _add_confirmed(self, msg: schemas.MessageRead) -> bool:
        if msg.id in self.seen:
            return False
        self.seen.add(msg.id)
        self.entries.append(Confirmed(msg))
        self._sort()
        return True

    def _confirm(self, local_id: str, msg: schemas.MessageRead) -> Confirmed:
        # Push may already have delivered this row; then the local echo just goes away
        idx = self._index_of(local_id)
        self.seen.discard(local_id)
        if msg.id in self.seen:
            if idx is not None:
                del self.entries[idx]
        else:
            self.seen.add(msg.id)
            if idx is None:
                self.entries.append(Confirmed(msg))
            else:
                self.entries[idx] = Confirmed(msg)
        self._sort()
        if self.error is not None and self.error.local_id == local_id:
            self.error = None
        idx = self._index_of(msg.id)
        return self.entries[idx]  # type: ignore[return-value]

    async def _deliver(self, entry: Optimistic) -> ThreadEntry:
        try:
            inserted = await self.store.insert_message(entry.draft)
        except Exception as exc:
            # Stores outside this package may fail with transport errors rather than StoreError
            reason = exc.message if isinstance(exc, KaamConnectError) else str(exc) or type(exc).__name__
            entry.state = DeliveryState.FAILED
            self.error = SendFailed(f"Failed to send message: {reason}", local_id=entry.local_id)
            logger.warning(
                "chat.send.failed",
                extra={"equipment_id": self.equipment_id, "local_id": entry.local_id, "error": reason},
                exc_info=not isinstance(exc, KaamConnectError),
            )
            return entry
        entry.state = DeliveryState.CONFIRMED
        entry.message_id = inserted.id
        return self._confirm(entry.local_id, inserted)

    def _draft(self, sender_id: Optional[int], recipient_id: Optional[int], body: Optional[str]) -> schemas.MessageDraft:
        text = (body or "").strip()
        if not text or sender_id is None or recipient_id is None or self.equipment_id is None:
            raise EmptyMessage("Nothing to send")
        return schemas.MessageDraft(
            equipment_id=self.equipment_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            message=text,
        )

    async def send_message(
        self,
        sender_id: Optional[int],
        recipient_id: Optional[int],
        body: Optional[str],
    ) -> Optional[ThreadEntry]:
        """
        Optimistically send `body`.

        The local echo is visible (pending) before the store is contacted. On
        success it is replaced by the stored message; on failure it stays in
        place marked failed, and `error` is set, until retry_message().
        Returns None without doing anything when the body is blank or a party
        is missing.
        """
        try:
            draft = self._draft(sender_id, recipient_id, body)
        except EmptyMessage:
            return None

        entry = Optimistic(local_id=_next_local_id(), draft=draft, created_at=self.clock())
        self.seen.add(entry.local_id)
        self.entries.append(entry)
        self._sort()
        return await self._deliver(entry)

    async def retry_message(self, entry: Optimistic) -> ThreadEntry:
        """
        Re-send a failed entry's draft. It ends confirmed or failed again, never duplicated.

        Entries that are still in flight or already confirmed are not sent again;
        the entry currently shown for them is returned.
        """
        if entry.state is DeliveryState.CONFIRMED:
            idx = self._index_of(entry.message_id) if entry.message_id is not None else None
            return self.entries[idx] if idx is not None else entry
        if entry.state is not DeliveryState.FAILED:
            return entry
        entry.state = DeliveryState.PENDING
        if self._index_of(entry.local_id) is None:
            # A refresh dropped the echo; show it again while retrying
            self.seen.add(entry.local_id)
            self.entries.append(entry)
            self._sort()
        logger.info("chat.send.retry", extra={"equipment_id": self.equipment_id, "local_id": entry.local_id})
        return await self._deliver(entry)
