import asyncio
from datetime import datetime

import pytest

from cafe_billing.cache import legacy_bill_key, table_bill_key
from cafe_billing.errors import ActionFailed, DuplicateKeyError, StoreError, ValidationError
from cafe_billing.models import FORMAT_SIMPLE, STATUS_AVAILABLE, STATUS_OCCUPIED
from cafe_billing.session import (
    SOURCE_BILL_STORE,
    SOURCE_EMPTY,
    SOURCE_MEMORY,
    SOURCE_PERSISTED,
    STATE_CART_DIRTY,
    STATE_EMPTY,
    STATE_NO_TABLE,
    STATE_SAVED,
)

FIXED_NOW = datetime(2024, 5, 1, 12, 30, 15)


async def _session_with_tables(make_session, table_store, numbers, **kwargs):
    created = await table_store.inner.bulk_create(list(numbers))
    session = make_session(now=lambda: FIXED_NOW, **kwargs)
    await session.load()
    return session, created


async def _stored_table(table_store, table_id):
    return await table_store.inner.find_by_id(table_id)


def _cart(session):
    return [(line.item_id, line.quantity) for line in session.cart.lines()]


@pytest.mark.anyio
async def test_load_and_select_empty_table(make_session, table_store):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    assert session.state == STATE_NO_TABLE

    resolution = await session.select_table(table.id)

    assert resolution.source == SOURCE_EMPTY
    assert session.active_table.id == table.id
    assert session.state == STATE_EMPTY


@pytest.mark.anyio
async def test_selecting_active_table_again_is_a_no_op(make_session, table_store):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    assert await session.select_table(table.id) is None


@pytest.mark.anyio
async def test_unknown_table_is_rejected(make_session, table_store):
    session, _ = await _session_with_tables(make_session, table_store, [1])
    with pytest.raises(ValidationError):
        await session.select_table("missing")


@pytest.mark.anyio
async def test_state_moves_through_dirty_and_saved(make_session, table_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)

    session.add_item(coffee)
    assert session.state == STATE_CART_DIRTY
    await session.save_bill()
    assert session.state == STATE_SAVED
    session.add_item(coffee)
    assert session.state == STATE_CART_DIRTY
    await session.save_bill()
    assert session.state == STATE_SAVED
    await session.drain()


@pytest.mark.anyio
async def test_first_item_occupies_table(make_session, table_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)

    session.add_item(coffee)
    assert session.is_occupied(table.id)

    await session.drain()
    assert (await _stored_table(table_store, table.id)).status == STATUS_OCCUPIED


@pytest.mark.anyio
async def test_saved_total_matches_persisted_items(make_session, table_store, bill_store, coffee, cake):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    for item in (coffee, cake, coffee, cake, cake):
        session.add_item(item)
    session.remove_item(cake.id)

    bill = await session.save_bill()

    stored = await bill_store.inner.find_by_id(bill.id)
    assert stored.total_amount == pytest.approx(session.total)
    assert stored.total_amount == pytest.approx(sum(line.price * line.quantity for line in stored.items))
    assert stored.total_amount == pytest.approx(3.5 * 2 + 4.5 * 2)
    await session.drain()


@pytest.mark.anyio
async def test_repeated_save_updates_the_same_bill(make_session, table_store, bill_store, coffee, cake):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    session.add_item(coffee)

    first = await session.save_bill()
    session.add_item(cake)
    second = await session.save_bill(FORMAT_SIMPLE)

    assert len(bill_store.create_calls) == 1
    assert len(bill_store.update_calls) == 1
    assert second.id == first.id
    assert second.bill_number == first.bill_number
    assert second.receipt_format == FORMAT_SIMPLE
    assert len(await bill_store.inner.list_all()) == 1

    stored_table = await _stored_table(table_store, table.id)
    assert stored_table.last_bill_id == first.id
    assert stored_table.status == STATUS_OCCUPIED
    await session.drain()


@pytest.mark.anyio
async def test_switch_back_restores_cart_from_memory(make_session, table_store, bill_store, coffee):
    session, (table_a, table_b) = await _session_with_tables(make_session, table_store, [1, 2])
    table_store.update_gate = asyncio.Event()

    await session.select_table(table_a.id)
    session.add_item(coffee)
    session.add_item(coffee)

    await session.select_table(table_b.id)
    assert session.state == STATE_EMPTY
    assert session.is_occupied(table_a.id)
    assert not session.is_occupied(table_b.id)

    resolution = await session.select_table(table_a.id)
    assert resolution.source == SOURCE_MEMORY
    assert _cart(session) == [("coffee", 2)]
    assert bill_store.find_calls == []

    # The store only reports the table occupied once the delayed update lands.
    assert (await _stored_table(table_store, table_a.id)).status == STATUS_AVAILABLE
    table_store.update_gate.set()
    await session.drain()
    assert (await _stored_table(table_store, table_a.id)).status == STATUS_OCCUPIED
    assert (await _stored_table(table_store, table_b.id)).status == STATUS_AVAILABLE


@pytest.mark.anyio
async def test_unsaved_cart_restored_from_persisted_cache(make_session, table_store, coffee):
    first, (table,) = await _session_with_tables(make_session, table_store, [1])
    await first.select_table(table.id)
    first.add_item(coffee)
    await first.close()

    second = make_session()
    await second.load()
    resolution = await second.select_table(table.id)

    assert resolution.source == SOURCE_PERSISTED
    assert _cart(second) == [("coffee", 1)]
    assert second.state == STATE_CART_DIRTY


@pytest.mark.anyio
async def test_saved_bill_restored_from_bill_store(make_session, table_store, coffee):
    first, (table,) = await _session_with_tables(make_session, table_store, [1])
    await first.select_table(table.id)
    first.add_item(coffee)
    bill = await first.save_bill()
    await first.close()

    second = make_session()
    await second.load()
    resolution = await second.select_table(table.id)

    assert resolution.source == SOURCE_BILL_STORE
    assert second.saved_bill_id == bill.id
    assert second.saved_bill_number == bill.bill_number
    assert second.state == STATE_SAVED


@pytest.mark.anyio
async def test_duplicate_bill_number_retries_once(make_session, table_store, bill_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    session.add_item(coffee)
    bill_store.create_failures = [DuplicateKeyError("billNumber", "T11230")]

    bill = await session.save_bill()

    numbers = [draft.bill_number for draft in bill_store.create_calls]
    assert numbers == ["T11230", "T1123015"]
    assert bill.bill_number == "T1123015"
    assert session.saved_bill_id == bill.id
    await session.drain()


@pytest.mark.anyio
async def test_second_duplicate_surfaces_error(make_session, table_store, bill_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    session.add_item(coffee)
    bill_store.create_failures = [
        DuplicateKeyError("billNumber", "T11230"),
        DuplicateKeyError("billNumber", "T1123015"),
    ]

    with pytest.raises(ActionFailed):
        await session.save_bill()

    assert len(bill_store.create_calls) == 2
    assert session.saved_bill_id is None
    assert _cart(session) == [("coffee", 1)]
    await session.drain()


@pytest.mark.anyio
async def test_failed_save_leaves_session_untouched(make_session, table_store, bill_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    session.add_item(coffee)
    bill_store.create_failures = [StoreError("bill store down")]

    with pytest.raises(ActionFailed):
        await session.save_bill()

    assert session.saved_bill_id is None
    assert session.state == STATE_CART_DIRTY
    await session.drain()


@pytest.mark.anyio
async def test_save_requires_table_and_items(make_session, table_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    with pytest.raises(ValidationError):
        await session.save_bill()
    with pytest.raises(ValidationError):
        session.add_item(coffee)

    await session.select_table(table.id)
    with pytest.raises(ValidationError):
        await session.save_bill()


@pytest.mark.anyio
async def test_occupancy_reconciles_after_failed_updates(make_session, table_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    table_store.fail_updates = True

    session.add_item(coffee)
    await session.drain()
    assert (await _stored_table(table_store, table.id)).status == STATUS_AVAILABLE
    assert session.is_occupied(table.id)

    table_store.fail_updates = False
    assert await session.refresh_tables()
    await session.drain()
    assert (await _stored_table(table_store, table.id)).status == STATUS_OCCUPIED


@pytest.mark.anyio
async def test_occupancy_follows_cart_and_bill(make_session, table_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)

    session.add_item(coffee)
    session.remove_item(coffee.id)
    await session.drain()
    stored = await _stored_table(table_store, table.id)
    assert stored.status == STATUS_AVAILABLE
    assert not session.is_occupied(table.id)

    session.add_item(coffee)
    bill = await session.save_bill()
    await session.drain()
    stored = await _stored_table(table_store, table.id)
    assert stored.status == STATUS_OCCUPIED
    assert stored.last_bill_id == bill.id

    session.clear_bill()
    await session.drain()
    stored = await _stored_table(table_store, table.id)
    assert stored.status == STATUS_AVAILABLE
    assert stored.last_bill_id is None
    assert not session.is_occupied(table.id)


@pytest.mark.anyio
async def test_refresh_keeps_unsynced_local_occupancy(make_session, table_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    table_store.fail_updates = True
    session.add_item(coffee)
    await session.drain()

    assert await session.refresh_tables()

    assert session.tables[table.id].status == STATUS_OCCUPIED
    assert _cart(session) == [("coffee", 1)]
    await session.drain()


@pytest.mark.anyio
async def test_refresh_skipped_before_initial_load(make_session):
    session = make_session()
    assert await session.refresh_tables() is False


@pytest.mark.anyio
async def test_refresh_failure_is_not_raised(make_session, table_store):
    session, _ = await _session_with_tables(make_session, table_store, [1])
    table_store.fail_listing = True
    assert await session.refresh_tables() is False
    assert len(session.tables) == 1


@pytest.mark.anyio
async def test_failed_load_leaves_session_empty(make_session, table_store):
    table_store.fail_listing = True
    session = make_session()
    with pytest.raises(ActionFailed):
        await session.load()
    assert session.tables == {}
    assert not session.initial_load_complete


@pytest.mark.anyio
async def test_switch_requests_dropped_during_cooldown(make_session, table_store):
    session, (table_a, table_b) = await _session_with_tables(make_session, table_store, [1, 2], switch_cooldown=0.05)

    await session.select_table(table_a.id)
    assert session.is_switching
    assert await session.select_table(table_b.id) is None
    assert session.active_table.id == table_a.id

    await asyncio.sleep(0.08)
    assert not session.is_switching
    assert (await session.select_table(table_b.id)).source == SOURCE_EMPTY
    await session.close()


@pytest.mark.anyio
async def test_refresh_skipped_while_switching(make_session, table_store):
    session, (table,) = await _session_with_tables(make_session, table_store, [1], switch_cooldown=10)
    await session.select_table(table.id)
    assert await session.refresh_tables() is False
    await session.close()


@pytest.mark.anyio
async def test_clear_purges_every_cache_tier(make_session, table_store, cache, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    session.add_item(coffee)
    await session.save_bill()
    await session.drain()
    cache.set(legacy_bill_key(1), {"items": []})
    assert cache.get(table_bill_key(table.id)) is not None

    session.clear_bill()

    assert session.state == STATE_EMPTY
    assert session.saved_bill_id is None
    assert table.id not in session.table_bills
    assert cache.get(table_bill_key(table.id)) is None
    assert cache.get(legacy_bill_key(1)) is None
    await session.drain()


@pytest.mark.anyio
async def test_delete_guard_and_delete(make_session, table_store, coffee):
    session, (table_a, table_b) = await _session_with_tables(make_session, table_store, [1, 2])
    await session.select_table(table_a.id)
    session.add_item(coffee)

    with pytest.raises(ValidationError):
        await session.delete_table(table_a.id)
    with pytest.raises(ValidationError):
        await session.delete_table("missing")

    session.clear_bill()
    await session.drain()
    await session.delete_table(table_a.id)

    assert table_a.id not in session.tables
    assert session.active_table is None
    assert await _stored_table(table_store, table_a.id) is None
    assert list(session.tables) == [table_b.id]


@pytest.mark.anyio
async def test_table_with_saved_bill_cannot_be_deleted(make_session, table_store, coffee):
    session, (table_a, table_b) = await _session_with_tables(make_session, table_store, [1, 2])
    await session.select_table(table_a.id)
    session.add_item(coffee)
    await session.save_bill()
    await session.select_table(table_b.id)

    with pytest.raises(ValidationError):
        await session.delete_table(table_a.id)
    await session.drain()


@pytest.mark.anyio
async def test_create_tables_follow_numbering(make_session, table_store):
    session, _ = await _session_with_tables(make_session, table_store, range(1, 13))

    table = await session.create_table()
    assert table.table_number == 14

    created = await session.bulk_create_tables(3)
    assert [t.table_number for t in created] == [15, 16, 17]
    assert len(session.tables) == 16

    with pytest.raises(ValidationError):
        await session.bulk_create_tables(0)
    with pytest.raises(ValidationError):
        await session.bulk_create_tables(101)


@pytest.mark.anyio
async def test_bulk_preview_matches_allocation(make_session, table_store):
    session, _ = await _session_with_tables(make_session, table_store, [1, 2])
    assert session.preview_bulk(3) == "3 to 5"
    assert session.preview_bulk(1) == "3"
    assert session.preview_bulk(0) == ""


@pytest.mark.anyio
async def test_custom_table_names(make_session, table_store):
    session, _ = await _session_with_tables(make_session, table_store, [12])

    with pytest.raises(ValidationError):
        await session.create_custom_table("   ")
    with pytest.raises(ValidationError):
        await session.create_custom_table("12")

    assert session.custom_table_warning("12A") is not None
    assert session.custom_table_warning("Patio") is None

    table = await session.create_custom_table(" 12A ")
    assert table.table_number == "12A"
    assert (await session.create_table()).table_number == "12B"


@pytest.mark.anyio
async def test_store_failure_on_create_table_is_wrapped(make_session, table_store):
    session, _ = await _session_with_tables(make_session, table_store, [1])
    await table_store.inner.create(2)

    with pytest.raises(ActionFailed):
        await session.create_table()
    assert len(session.tables) == 1


@pytest.mark.anyio
async def test_listeners_notified_on_changes(make_session, table_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    calls = []
    session.subscribe(lambda: calls.append(session.state))

    await session.select_table(table.id)
    session.add_item(coffee)

    assert calls[:2] == [STATE_EMPTY, STATE_CART_DIRTY]
    await session.drain()


@pytest.mark.anyio
async def test_concurrent_saves_create_one_bill(make_session, table_store, bill_store, coffee):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)
    session.add_item(coffee)

    results = await asyncio.gather(session.save_bill(), session.save_bill(), return_exceptions=True)

    saved = [result for result in results if not isinstance(result, Exception)]
    rejected = [result for result in results if isinstance(result, ValidationError)]
    assert len(saved) == 1
    assert len(rejected) == 1
    assert len(bill_store.create_calls) == 1
    assert len(await bill_store.inner.list_all()) == 1
    assert not session.is_saving

    await session.save_bill()
    assert len(bill_store.create_calls) == 1
    assert len(bill_store.update_calls) == 1
    await session.drain()


@pytest.mark.anyio
async def test_switching_mid_save_keeps_each_tables_cart(make_session, table_store, coffee, cake):
    session, (table_a, table_b) = await _session_with_tables(make_session, table_store, [1, 2])
    await session.select_table(table_b.id)
    session.add_item(cake)
    await session.select_table(table_a.id)
    session.add_item(coffee)
    await session.drain()

    table_store.update_gate = asyncio.Event()
    save = asyncio.create_task(session.save_bill())
    while not any("last_bill_id" in changes for _, changes in table_store.update_calls):
        await asyncio.sleep(0.001)

    await session.select_table(table_b.id)
    table_store.update_gate.set()
    bill = await save
    await session.drain()

    assert _cart(session) == [("cake", 1)]
    assert [line.item_id for line in session.table_bills[table_a.id].bill_items] == ["coffee"]

    resolution = await session.select_table(table_a.id)
    assert resolution.source == SOURCE_MEMORY
    assert _cart(session) == [("coffee", 1)]
    assert session.saved_bill_id == bill.id
    assert session.state == STATE_SAVED
    await session.drain()


@pytest.mark.anyio
async def test_refresh_overwrites_active_table_only_on_occupancy_change(make_session, table_store):
    session, (table,) = await _session_with_tables(make_session, table_store, [1])
    await session.select_table(table.id)

    await table_store.inner.update(table.id, {"capacity": 8})
    assert await session.refresh_tables()
    assert session.active_table.capacity == 4
    assert session.tables[table.id].capacity == 4

    await table_store.inner.update(table.id, {"status": STATUS_OCCUPIED})
    assert await session.refresh_tables()
    assert session.active_table.status == STATUS_OCCUPIED
    assert session.active_table.capacity == 8
    assert session.tables[table.id] is session.active_table


@pytest.mark.anyio
async def test_refresh_discarded_when_switch_starts_mid_flight(make_session, table_store):
    session, (table_a, table_b) = await _session_with_tables(make_session, table_store, [1, 2], switch_cooldown=10)
    table_store.listing_gate = asyncio.Event()

    refresh = asyncio.create_task(session.refresh_tables())
    while not table_store.list_calls:
        await asyncio.sleep(0.001)

    await session.select_table(table_a.id)
    before = dict(session.tables)
    await table_store.inner.update(table_b.id, {"capacity": 8})
    table_store.listing_gate.set()

    assert await refresh is False
    assert session.tables == before
    assert session.tables[table_b.id].capacity == 4
    await session.close()
