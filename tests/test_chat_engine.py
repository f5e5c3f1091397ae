# Chat engine tests against an in-memory store: ordering, de-duplication, optimistic send and retry.
from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from kaamconnect import booking_lifecycle, schemas
from kaamconnect.chat_engine import ChatThread, Confirmed, DeliveryState, Optimistic
from kaamconnect.errors import EmptyMessage, StoreError
from kaamconnect.messaging import DatabaseMessageStore, post_message
from kaamconnect.realtime import ChangeFeed

from conftest import make_equipment, make_user

EQUIPMENT_ID = 7
OWNER, RENTER = 1, 2
T0 = datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def msg(id: int, minutes: int, text: str = "hi", sender: int = RENTER, recipient: int = OWNER) -> schemas.MessageRead:
    return schemas.MessageRead(
        id=id,
        equipment_id=EQUIPMENT_ID,
        sender_id=sender,
        recipient_id=recipient,
        message=text,
        created_at=at(minutes),
    )


class FakeStore:
    """In-memory MessageStore. `offline` makes inserts fail; `push_first` pushes the row before returning it."""

    def __init__(self, rows: Optional[List[schemas.MessageRead]] = None) -> None:
        self.feed = ChangeFeed()
        self.rows = list(rows or [])
        self.next_id = 100
        self.minute = 60
        self.offline = False
        self.push_first = False
        self.insert_calls = 0
        self.before_insert: Optional[Callable[[], None]] = None
        # When set, inserts wait on it so a send can be observed in flight
        self.gate: Optional[asyncio.Event] = None

    async def fetch_messages(self, equipment_id: int) -> List[schemas.MessageRead]:
        return sorted((m for m in self.rows if m.equipment_id == equipment_id), key=lambda m: m.created_at)

    async def insert_message(self, draft: schemas.MessageDraft) -> schemas.MessageRead:
        self.insert_calls += 1
        if self.before_insert is not None:
            self.before_insert()
        if self.gate is not None:
            await self.gate.wait()
        if self.offline:
            raise StoreError("network request failed")
        self.next_id += 1
        self.minute += 1
        stored = schemas.MessageRead(id=self.next_id, created_at=at(self.minute), **draft.model_dump())
        self.rows.append(stored)
        if self.push_first:
            self.push("INSERT", stored)
        return stored

    def push(self, event_type: str, message: schemas.MessageRead) -> None:
        payload = message.model_dump(mode="json")
        self.feed.publish(
            schemas.ChangeEvent(
                event_type=event_type,
                table="equipment_messages",
                equipment_id=message.equipment_id,
                new=payload if event_type != "DELETE" else None,
                old={"id": message.id} if event_type == "DELETE" else None,
            )
        )

    def subscribe(self, equipment_id, handler):
        return self.feed.subscribe("equipment_messages", equipment_id, handler)


def make_thread(store: FakeStore, clock_minutes: int = 30) -> ChatThread:
    return ChatThread(store=store, equipment_id=EQUIPMENT_ID, clock=lambda: at(clock_minutes))


def confirmed_ids(thread: ChatThread) -> List[int]:
    return [e.message.id for e in thread.entries if isinstance(e, Confirmed)]


def assert_sorted(thread: ChatThread) -> None:
    stamps = [e.created_at for e in thread.entries]
    assert stamps == sorted(stamps)


def test_load_thread_sorts_and_deduplicates():
    store = FakeStore([msg(3, 20), msg(1, 0), msg(2, 10), msg(2, 10)])
    thread = make_thread(store)

    asyncio.run(thread.load_thread())

    assert confirmed_ids(thread) == [1, 2, 3]
    assert thread.seen == {1, 2, 3}


def test_send_confirms_in_place_when_response_arrives_first():
    store = FakeStore()
    thread = make_thread(store)
    inserted = []

    async def scenario():
        await thread.load_thread()
        with thread.subscribe_to_updates(on_insert=inserted.append):
            entry = await thread.send_message(RENTER, OWNER, "  Tractor free tomorrow?  ")
            # The same row arriving late over the push channel is ignored
            store.push("INSERT", store.rows[-1])
            return entry

    entry = asyncio.run(scenario())

    assert isinstance(entry, Confirmed)
    assert entry.text == "Tractor free tomorrow?"
    assert confirmed_ids(thread) == [store.rows[-1].id]
    assert len(thread.entries) == 1
    assert inserted == []
    assert not any(isinstance(k, str) for k in thread.seen)


def test_send_does_not_duplicate_when_push_beats_the_response():
    store = FakeStore()
    store.push_first = True
    thread = make_thread(store)
    inserted = []

    async def scenario():
        await thread.load_thread()
        with thread.subscribe_to_updates(on_insert=inserted.append):
            return await thread.send_message(RENTER, OWNER, "Hello")

    entry = asyncio.run(scenario())

    assert isinstance(entry, Confirmed)
    assert len(thread.entries) == 1
    assert confirmed_ids(thread) == [store.rows[-1].id]
    assert [m.id for m in inserted] == [store.rows[-1].id]
    assert thread.seen == {store.rows[-1].id}


def test_entries_stay_sorted_across_fetch_push_and_local_paths():
    store = FakeStore([msg(1, 10), msg(3, 40)])
    store.offline = True
    thread = make_thread(store, clock_minutes=25)

    async def scenario():
        await thread.load_thread()
        with thread.subscribe_to_updates():
            store.push("INSERT", msg(2, 20))
            assert_sorted(thread)
            await thread.send_message(RENTER, OWNER, "local")
            assert_sorted(thread)
            store.push("INSERT", msg(4, 5))
            assert_sorted(thread)
            store.push("INSERT", msg(5, 50))

    asyncio.run(scenario())

    assert_sorted(thread)
    keys = [e.key for e in thread.entries]
    assert keys[:3] == [4, 1, 2]
    assert isinstance(thread.entries[3], Optimistic)
    assert keys[4:] == [3, 5]


# Offline send shows pending, then failed; retry once back online confirms it with the original text
def test_offline_send_then_retry_yields_single_confirmed_entry():
    store = FakeStore()
    store.offline = True
    thread = make_thread(store)
    observed = []
    store.before_insert = lambda: observed.append([getattr(e, "state", None) for e in thread.entries])

    async def scenario():
        await thread.load_thread()
        with thread.subscribe_to_updates():
            failed = await thread.send_message(RENTER, OWNER, "Hello")
            assert isinstance(failed, Optimistic)
            assert failed.failed and not failed.pending
            assert thread.error is not None and thread.error.local_id == failed.local_id
            assert thread.entries == [failed]

            store.offline = False
            store.push_first = True
            return await thread.retry_message(failed)

    confirmed = asyncio.run(scenario())

    assert observed[0] == [DeliveryState.PENDING]
    assert isinstance(confirmed, Confirmed)
    assert confirmed.text == "Hello"
    assert len(thread.entries) == 1
    assert thread.error is None
    assert len(store.rows) == 1


def test_retry_that_fails_again_keeps_one_failed_entry():
    store = FakeStore()
    store.offline = True
    thread = make_thread(store)

    async def scenario():
        entry = await thread.send_message(RENTER, OWNER, "Hello")
        again = await thread.retry_message(entry)
        return entry, again

    entry, again = asyncio.run(scenario())

    assert again is entry
    assert entry.state is DeliveryState.FAILED
    assert thread.entries == [entry]
    assert store.insert_calls == 2


def test_retry_of_confirmed_handle_does_not_resend():
    store = FakeStore()
    thread = make_thread(store)
    handles = []
    store.before_insert = lambda: handles.append(thread.entries[-1])

    async def scenario():
        sent = await thread.send_message(RENTER, OWNER, "Hello")
        again = await thread.retry_message(handles[0])
        return sent, again

    sent, again = asyncio.run(scenario())

    handle = handles[0]
    assert isinstance(handle, Optimistic)
    assert handle.state is DeliveryState.CONFIRMED
    assert not handle.pending and not handle.failed
    assert handle.message_id == sent.key
    assert again is sent
    assert store.insert_calls == 1
    assert confirmed_ids(thread) == [sent.key]


def test_retry_while_send_in_flight_does_not_resend():
    store = FakeStore()
    thread = make_thread(store)

    async def scenario():
        store.gate = asyncio.Event()
        sending = asyncio.ensure_future(thread.send_message(RENTER, OWNER, "Hello"))
        await asyncio.sleep(0)
        handle = thread.entries[0]
        assert handle.pending
        retried = await thread.retry_message(handle)
        assert retried is handle
        assert store.insert_calls == 1
        store.gate.set()
        return await sending

    sent = asyncio.run(scenario())

    assert isinstance(sent, Confirmed)
    assert store.insert_calls == 1
    assert len(thread.entries) == 1


def test_transport_error_from_store_marks_send_failed():
    store = FakeStore()
    thread = make_thread(store)

    def unreachable():
        raise ConnectionError("offline")

    store.before_insert = unreachable

    async def scenario():
        failed = await thread.send_message(RENTER, OWNER, "Hello")
        assert isinstance(failed, Optimistic)
        assert failed.failed
        assert thread.error is not None and thread.error.local_id == failed.local_id
        assert "offline" in thread.error.message

        store.before_insert = None
        return await thread.retry_message(failed)

    confirmed = asyncio.run(scenario())

    assert isinstance(confirmed, Confirmed)
    assert confirmed.text == "Hello"
    assert len(thread.entries) == 1
    assert thread.error is None


def test_blank_or_unaddressed_messages_are_ignored():
    store = FakeStore()
    thread = make_thread(store)

    async def scenario():
        return [
            await thread.send_message(RENTER, OWNER, "   "),
            await thread.send_message(RENTER, OWNER, None),
            await thread.send_message(RENTER, None, "hello"),
            await thread.send_message(None, OWNER, "hello"),
        ]

    assert asyncio.run(scenario()) == [None, None, None, None]
    assert thread.entries == []
    assert store.insert_calls == 0


def test_update_and_delete_events():
    store = FakeStore([msg(1, 10, "first"), msg(2, 20, "second")])
    thread = make_thread(store)
    updated, deleted = [], []

    async def scenario():
        await thread.load_thread()
        with thread.subscribe_to_updates(on_update=updated.append, on_delete=deleted.append):
            store.push("UPDATE", msg(1, 30, "first (edited)"))
            store.push("DELETE", msg(2, 20))
            # Unknown ids are ignored for updates
            store.push("UPDATE", msg(99, 1))

    asyncio.run(scenario())

    assert confirmed_ids(thread) == [1]
    assert thread.entries[0].text == "first (edited)"
    assert [m.id for m in updated] == [1]
    assert deleted == [2]
    assert thread.seen == {1}

    # A re-insert of a deleted id is accepted again
    with thread.subscribe_to_updates():
        store.push("INSERT", msg(2, 40))
    assert confirmed_ids(thread) == [1, 2]


def test_released_subscription_stops_updates():
    store = FakeStore()
    thread = make_thread(store)

    sub = thread.subscribe_to_updates()
    assert store.feed.subscriber_count("equipment_messages", EQUIPMENT_ID) == 1
    sub.release()
    sub.release()
    assert store.feed.subscriber_count("equipment_messages", EQUIPMENT_ID) == 0

    store.push("INSERT", msg(1, 0))
    assert thread.entries == []


def test_subscription_released_when_body_raises():
    store = FakeStore()
    thread = make_thread(store)
    try:
        with thread.subscribe_to_updates():
            raise RuntimeError("view torn down")
    except RuntimeError:
        pass
    assert store.feed.subscriber_count("equipment_messages", EQUIPMENT_ID) == 0


def test_refresh_replaces_local_state():
    store = FakeStore([msg(1, 10)])
    store.offline = True
    thread = make_thread(store)

    async def scenario():
        await thread.load_thread()
        await thread.send_message(RENTER, OWNER, "draft")
        assert len(thread.entries) == 2
        store.rows.append(msg(2, 20))
        await thread.refresh()

    asyncio.run(scenario())

    assert confirmed_ids(thread) == [1, 2]
    assert thread.seen == {1, 2}


def test_database_store_round_trip_reaches_other_threads(db):
    owner = make_user(db, "owner@example.com")
    renter = make_user(db, "renter@example.com")
    eq = make_equipment(db, owner)
    feed = ChangeFeed()
    booking_lifecycle.request_booking(db, eq.id, renter.id, date(2024, 1, 5), date(2024, 1, 6), feed=feed)

    renter_thread = ChatThread(store=DatabaseMessageStore(feed=feed, viewer_id=renter.id), equipment_id=eq.id)
    owner_thread = ChatThread(store=DatabaseMessageStore(feed=feed, viewer_id=owner.id), equipment_id=eq.id)
    owner_inserts = []

    async def scenario():
        await renter_thread.load_thread()
        await owner_thread.load_thread()
        with renter_thread.subscribe_to_updates(), owner_thread.subscribe_to_updates(on_insert=owner_inserts.append):
            sent = await renter_thread.send_message(renter.id, owner.id, "Is the tractor free on the 5th?")
            reply = await owner_thread.send_message(owner.id, renter.id, "Yes")
            return sent, reply

    sent, reply = asyncio.run(scenario())

    assert isinstance(sent, Confirmed) and isinstance(reply, Confirmed)
    assert [e.text for e in renter_thread.entries] == ["Is the tractor free on the 5th?", "Yes"]
    assert [e.text for e in owner_thread.entries] == ["Is the tractor free on the 5th?", "Yes"]
    # The owner also sees its own reply pushed before the insert returned
    assert [m.message for m in owner_inserts] == ["Is the tractor free on the 5th?", "Yes"]
    assert feed.subscriber_count("equipment_messages", eq.id) == 0


def test_database_store_rejects_outsiders(db):
    owner = make_user(db, "owner@example.com")
    stranger = make_user(db, "stranger@example.com")
    eq = make_equipment(db, owner)
    thread = ChatThread(store=DatabaseMessageStore(feed=ChangeFeed()), equipment_id=eq.id)

    # Owner writing to someone with no booking is refused and surfaces as a failed echo
    entry = asyncio.run(thread.send_message(owner.id, stranger.id, "hello"))

    assert isinstance(entry, Optimistic) and entry.failed
    assert thread.error is not None


def test_message_service_refuses_blank_text(db):
    owner = make_user(db, "owner@example.com")
    renter = make_user(db, "renter@example.com")
    eq = make_equipment(db, owner)

    with pytest.raises(EmptyMessage):
        post_message(db, eq, renter.id, owner.id, "  \n ", feed=ChangeFeed())
