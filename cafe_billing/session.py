"""
Billing session: table occupancy, the active cart and the per-table cache.

One ``BillingSession`` is the single writer for its tables' local state. Store
calls made on behalf of explicit cashier actions raise ``BillingError``; store
calls made in the background are logged and retried on the next refresh.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Coroutine

from cafe_billing.aggregate import Cart, build_bill, generate_bill_number
from cafe_billing.cache import TABLE_BILLS_KEY, PersistedCache, legacy_bill_key, table_bill_key
from cafe_billing.config import (
    CACHE_PERSIST_DEBOUNCE_SECONDS,
    DEFAULT_TABLE_CAPACITY,
    MAX_BULK_TABLES,
    TABLE_CACHE_TTL_SECONDS,
    TABLE_SWITCH_COOLDOWN_SECONDS,
)
from cafe_billing.debounce import Debouncer
from cafe_billing.errors import ActionFailed, DuplicateKeyError, NotFoundError, StoreError, ValidationError
from cafe_billing.models import (
    FORMAT_DETAILED,
    STATUS_AVAILABLE,
    STATUS_OCCUPIED,
    Bill,
    CartLine,
    Item,
    Table,
    TableBillCacheEntry,
)
from cafe_billing.numbering import allocate_table_numbers, next_table_number, suffix_conflict
from cafe_billing.stores import BillStore, ItemStore, TableStore

logger = logging.getLogger(__name__)

STATE_NO_TABLE = "no_table"
STATE_EMPTY = "empty"
STATE_CART_DIRTY = "cart_dirty"
STATE_SAVED = "saved"

SOURCE_MEMORY = "memory"
SOURCE_BILL_STORE = "bill_store"
SOURCE_PERSISTED = "persisted"
SOURCE_EMPTY = "empty"


@dataclass(frozen=True)
class CartResolution:
    """Cart contents for a table and the cache tier that supplied them."""

    source: str
    lines: list[CartLine] = field(default_factory=list)
    bill_id: str | None = None
    bill_number: str | None = None


class BillingSession:
    """Reconciles the active cart, per-table cache and store state for one till."""

    def __init__(
        self,
        item_store: ItemStore,
        table_store: TableStore,
        bill_store: BillStore,
        cache: PersistedCache,
        switch_cooldown: float = TABLE_SWITCH_COOLDOWN_SECONDS,
        persist_debounce: float = CACHE_PERSIST_DEBOUNCE_SECONDS,
        cache_ttl: float = TABLE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.item_store = item_store
        self.table_store = table_store
        self.bill_store = bill_store
        self.cache = cache
        self.switch_cooldown = switch_cooldown
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._now = now

        self.items: list[Item] = []
        self.tables: dict[str, Table] = {}
        self.active_table: Table | None = None
        self.cart = Cart()
        self.saved_bill_id: str | None = None
        self.saved_bill_number: str | None = None
        self.table_bills: dict[str, TableBillCacheEntry] = {}

        self.is_switching = False
        self.is_saving = False
        self.initial_load_complete = False
        self._dirty = False
        self._release_handle: asyncio.TimerHandle | None = None

        # Table changes not yet confirmed by the store, merged per table.
        self._unsynced: dict[str, dict[str, Any]] = {}
        self._sync_tasks: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._listeners: list[Callable[[], None]] = []

        self._dirty_cache_ids: set[str] = set()
        self._persist_debouncer = Debouncer(self._flush_persisted_cache, persist_debounce)

    # ------------------------------------------------------------------
    # Read side

    @property
    def state(self) -> str:
        if self.active_table is None:
            return STATE_NO_TABLE
        if self.saved_bill_id is not None and not self._dirty:
            return STATE_SAVED
        if not self.cart:
            return STATE_EMPTY
        return STATE_CART_DIRTY

    @property
    def total(self) -> float:
        return self.cart.total()

    def is_occupied(self, table_id: str) -> bool:
        """Display occupancy: a local cart wins over a stale store record."""
        if self._has_local_bill(table_id):
            return True
        table = self.tables.get(table_id)
        return table is not None and table.status == STATUS_OCCUPIED

    def table_list(self) -> list[Table]:
        """Tables in store order (creation time)."""
        return list(self.tables.values())

    def subscribe(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def custom_table_warning(self, name: str) -> str | None:
        name = name.strip()
        if not suffix_conflict(name, self.tables.values()):
            return None
        return (
            f"Table {name} would be the next automatically generated table. "
            "Adding it manually might cause numbering issues."
        )

    def preview_bulk(self, count: int) -> str:
        """Range of identifiers a bulk add of ``count`` tables would create."""
        if count <= 0:
            return ""
        numbers = allocate_table_numbers(self.tables.values(), count)
        if len(numbers) == 1:
            return str(numbers[0])
        return f"{numbers[0]} to {numbers[-1]}"

    # ------------------------------------------------------------------
    # Explicit actions

    async def load(self) -> None:
        """Initial load of the menu and table listing."""
        try:
            items = await self.item_store.list_all()
            tables = await self.table_store.list_with_status()
        except StoreError as exc:
            raise ActionFailed(f"Failed to fetch tables and menu: {exc}") from exc

        self.items = items
        self.tables = {table.id: self._overlay(table) for table in tables}
        self.initial_load_complete = True
        logger.info("load items=%d tables=%d", len(items), len(tables))
        self._notify()

    async def select_table(self, table_id: str) -> CartResolution | None:
        """
        Make ``table_id`` the active table.

        Returns None when the table is already active or another switch is in
        flight (the request is dropped, not queued).
        """
        if self.active_table is not None and self.active_table.id == table_id:
            return None
        if self.is_switching:
            logger.info("select_table dropped table_id=%s reason=switch_in_flight", table_id)
            return None
        table = self.tables.get(table_id)
        if table is None:
            raise ValidationError("Unknown table")

        self.is_switching = True
        try:
            previous = self.active_table
            if previous is not None and self.cart:
                self._remember_cart(previous)
                self._spawn(self._mark_occupied(previous.id))

            resolution = await self.resolve_cart(table)
            self._apply_switch(self.tables.get(table_id, table), resolution)
        finally:
            self._schedule_switch_release()

        logger.info("select_table table_id=%s source=%s lines=%d", table_id, resolution.source, len(resolution.lines))
        self._notify()
        return resolution

    async def resolve_cart(self, table: Table) -> CartResolution:
        """Resolve a table's cart: memory, then referenced bill, then persisted cache, then empty."""
        entry = self.table_bills.get(table.id)
        if entry is not None and entry.bill_items:
            return CartResolution(SOURCE_MEMORY, [replace(line) for line in entry.bill_items], entry.bill_id, entry.bill_number)

        if table.last_bill_id:
            try:
                bill = await self.bill_store.find_by_id(table.last_bill_id)
            except StoreError:
                logger.warning("bill fetch failed bill_id=%s", table.last_bill_id, exc_info=True)
                bill = None
            if bill is not None and bill.items:
                return CartResolution(SOURCE_BILL_STORE, list(bill.items), bill.id, bill.bill_number)

        entry = self._read_persisted_entry(table.id)
        if entry is not None and entry.bill_items:
            return CartResolution(SOURCE_PERSISTED, entry.bill_items, entry.bill_id, entry.bill_number)

        return CartResolution(SOURCE_EMPTY)

    def add_item(self, item: Item) -> CartLine:
        """Add one unit of ``item`` to the active cart."""
        table = self._require_table()
        was_empty = not self.cart
        line = self.cart.add(item)
        self._dirty = True
        if was_empty:
            self._spawn(self._mark_occupied(table.id))
        else:
            self._remember_cart(table)
        self._notify()
        return line

    def remove_item(self, item_id: str) -> CartLine | None:
        """Remove one unit; an emptied cart frees the table immediately."""
        table = self._require_table()
        if item_id not in self.cart:
            return None
        remaining = self.cart.remove(item_id)
        self._dirty = True
        if self.cart:
            self._remember_cart(table)
        else:
            self._release_table(table)
        self._notify()
        return remaining

    async def save_bill(self, receipt_format: str = FORMAT_DETAILED, total_override: float | None = None) -> Bill:
        """Create the bill for this table session, or update it if it was saved before."""
        table = self.active_table
        if table is None:
            raise ValidationError("Select a table before saving the bill")
        if not self.cart:
            raise ValidationError("Cannot save an empty bill")
        if self.is_saving:
            raise ValidationError("A save is already in progress")

        self.is_saving = True
        try:
            bill = await self._save(table, self.cart.lines(), receipt_format, total_override)
        finally:
            self.is_saving = False
        self._notify()
        return bill

    async def _save(
        self,
        table: Table,
        lines: list[CartLine],
        receipt_format: str,
        total_override: float | None,
    ) -> Bill:
        existing_id = self.saved_bill_id
        if existing_id is not None:
            number = self.saved_bill_number or generate_bill_number(table.table_number, self._now())
            draft = build_bill(table.table_number, lines, number, receipt_format, total_override)
            try:
                bill = await self.bill_store.update(existing_id, draft)
            except StoreError as exc:
                raise ActionFailed(f"Failed to save bill: {exc}") from exc
        else:
            bill = await self._create_bill(table, lines, receipt_format, total_override)

        if self._is_active(table.id):
            self.saved_bill_id = bill.id
            self.saved_bill_number = bill.bill_number
            self._dirty = False

        record = self.tables.get(table.id, table)
        if existing_id is None or record.last_bill_id != bill.id:
            await self._sync_table(table.id, {"status": STATUS_OCCUPIED, "last_bill_id": bill.id})

        # The cashier may have switched tables while the store calls were in flight.
        self._mirror_bill(table, bill, self.cart.lines() if self._is_active(table.id) else lines)
        logger.info("save_bill table_id=%s bill_id=%s number=%s total=%.2f", table.id, bill.id, bill.bill_number, bill.total_amount)
        return bill

    def clear_bill(self) -> None:
        """Drop the cart and bill association; the store update runs in the background."""
        table = self.active_table
        self.cart.clear()
        if table is None:
            self.saved_bill_id = None
            self.saved_bill_number = None
            self._dirty = False
        else:
            self._release_table(table)
            logger.info("clear_bill table_id=%s", table.id)
        self._notify()

    async def create_table(self, capacity: int = DEFAULT_TABLE_CAPACITY) -> Table:
        number = next_table_number(self.tables.values())
        try:
            table = await self.table_store.create(number, capacity=capacity)
        except StoreError as exc:
            raise ActionFailed(f"Failed to create new table: {exc}") from exc
        self.tables[table.id] = table
        logger.info("create_table number=%s", table.table_number)
        self._notify()
        return table

    async def create_custom_table(self, name: str, capacity: int = DEFAULT_TABLE_CAPACITY) -> Table:
        name = name.strip()
        if not name:
            raise ValidationError("Please enter a table name")
        if any(str(table.table_number) == name for table in self.tables.values()):
            raise ValidationError("A table with this name already exists")

        warning = self.custom_table_warning(name)
        if warning:
            logger.warning("create_custom_table name=%s warning=%r", name, warning)
        try:
            table = await self.table_store.create(name, capacity=capacity)
        except StoreError as exc:
            raise ActionFailed(f"Failed to create custom table: {exc}") from exc
        self.tables[table.id] = table
        self._notify()
        return table

    async def bulk_create_tables(self, count: int, capacity: int = DEFAULT_TABLE_CAPACITY) -> list[Table]:
        if not 1 <= count <= MAX_BULK_TABLES:
            raise ValidationError(f"Number of tables must be between 1 and {MAX_BULK_TABLES}")
        numbers = allocate_table_numbers(self.tables.values(), count)
        try:
            created = await self.table_store.bulk_create(numbers, capacity=capacity)
        except StoreError as exc:
            raise ActionFailed(f"Failed to create tables: {exc}") from exc
        for table in created:
            self.tables[table.id] = table
        logger.info("bulk_create_tables numbers=%s", numbers)
        self._notify()
        return created

    async def delete_table(self, table_id: str) -> None:
        table = self.tables.get(table_id)
        if table is None:
            raise ValidationError("Unknown table")
        if table.last_bill_id or self._has_local_bill(table_id):
            raise ValidationError("Cannot delete a table with an active bill. Please clear the bill first.")
        try:
            await self.table_store.delete(table_id)
        except StoreError as exc:
            raise ActionFailed(f"Failed to delete table: {exc}") from exc

        self.tables.pop(table_id, None)
        self.table_bills.pop(table_id, None)
        self._unsynced.pop(table_id, None)
        if self.active_table is not None and self.active_table.id == table_id:
            self.active_table = None
            self.cart = Cart()
            self.saved_bill_id = None
            self.saved_bill_number = None
            self._dirty = False
        logger.info("delete_table table_id=%s number=%s", table_id, table.table_number)
        self._notify()

    # ------------------------------------------------------------------
    # Background work

    async def refresh_tables(self) -> bool:
        """
        Merge the store's table listing into local state.

        Returns False when skipped: before the initial load, while a switch is
        in flight, or when the store could not be reached.
        """
        if not self.initial_load_complete or self.is_switching:
            return False
        try:
            records = await self.table_store.list_all()
        except StoreError:
            logger.warning("refresh_tables failed", exc_info=True)
            return False
        if self.is_switching:
            logger.debug("refresh_tables discarded reason=switch_started")
            return False

        merged = {record.id: self._overlay(record) for record in records}
        for table_id in list(self._unsynced):
            if table_id not in merged:
                self._unsynced.pop(table_id)
            elif table_id not in self._sync_tasks:
                self._start_sync(table_id)

        active = self.active_table
        if active is not None and active.id in merged:
            local_has_bill = bool(self.cart) or self.saved_bill_id is not None
            server_occupied = merged[active.id].status == STATUS_OCCUPIED
            if local_has_bill != server_occupied:
                self.active_table = merged[active.id]
            else:
                merged[active.id] = active

        self.tables = merged
        self._notify()
        return True

    def sweep_cache(self) -> int:
        try:
            removed = self.cache.sweep()
        except StoreError:
            logger.warning("cache sweep failed", exc_info=True)
            return 0
        if removed:
            logger.info("cache sweep removed=%d", removed)
        return removed

    async def drain(self) -> None:
        """Wait for background work and write any pending cache entries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._persist_debouncer.flush()

    async def close(self) -> None:
        if self._release_handle is not None:
            self._release_handle.cancel()
            self._release_handle = None
        self.is_switching = False
        await self.drain()

    # ------------------------------------------------------------------
    # Internals

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                logger.warning("session listener failed", exc_info=True)

    def _require_table(self) -> Table:
        if self.active_table is None:
            raise ValidationError("Select a table first")
        return self.active_table

    def _is_active(self, table_id: str) -> bool:
        return self.active_table is not None and self.active_table.id == table_id

    def _has_local_bill(self, table_id: str) -> bool:
        if self.active_table is not None and self.active_table.id == table_id and self.cart:
            return True
        entry = self.table_bills.get(table_id)
        return entry is not None and bool(entry.bill_items)

    def _overlay(self, table: Table) -> Table:
        changes = self._unsynced.get(table.id)
        if changes:
            table = replace(table, **changes)
        if self._has_local_bill(table.id) and table.status != STATUS_OCCUPIED:
            table = replace(table, status=STATUS_OCCUPIED)
        return table

    def _apply_switch(self, table: Table, resolution: CartResolution) -> None:
        self.active_table = table
        self.cart = Cart(resolution.lines)
        self.saved_bill_id = resolution.bill_id
        self.saved_bill_number = resolution.bill_number
        self._dirty = bool(self.cart) and resolution.bill_id is None

        if resolution.source in (SOURCE_BILL_STORE, SOURCE_PERSISTED):
            self._remember_cart(table)
        if self.cart and table.status != STATUS_OCCUPIED:
            self._spawn(self._mark_occupied(table.id))

        self.active_table = self._overlay(table)
        self.tables[table.id] = self.active_table

    def _schedule_switch_release(self) -> None:
        if self.switch_cooldown <= 0:
            self.is_switching = False
            return
        loop = asyncio.get_running_loop()
        self._release_handle = loop.call_later(self.switch_cooldown, self._release_switch)

    def _release_switch(self) -> None:
        self._release_handle = None
        self.is_switching = False

    async def _create_bill(
        self,
        table: Table,
        lines: list[CartLine],
        receipt_format: str,
        total_override: float | None,
    ) -> Bill:
        number = generate_bill_number(table.table_number, self._now())
        draft = build_bill(table.table_number, lines, number, receipt_format, total_override)
        try:
            return await self.bill_store.create(draft)
        except DuplicateKeyError:
            retry_number = generate_bill_number(table.table_number, self._now(), with_seconds=True)
            logger.info("bill number collision number=%s retry=%s", number, retry_number)
        except StoreError as exc:
            raise ActionFailed(f"Failed to save bill: {exc}") from exc

        try:
            return await self.bill_store.create(replace(draft, bill_number=retry_number))
        except StoreError as exc:
            raise ActionFailed(f"Failed to save bill: {exc}") from exc

    def _release_table(self, table: Table) -> None:
        self.saved_bill_id = None
        self.saved_bill_number = None
        self._dirty = False
        self.table_bills.pop(table.id, None)
        self._purge_persisted(table)

        record = replace(self.tables.get(table.id, table), status=STATUS_AVAILABLE, last_bill_id=None)
        self.tables[table.id] = record
        if self.active_table is not None and self.active_table.id == table.id:
            self.active_table = record
        self._request_sync(table.id, {"status": STATUS_AVAILABLE, "last_bill_id": None})

    async def _mark_occupied(self, table_id: str) -> None:
        # Yield first so the cart update renders before any cache or store work.
        await asyncio.sleep(0)
        if not self._has_local_bill(table_id):
            return
        if self.active_table is not None and self.active_table.id == table_id:
            self._remember_cart(self.active_table)
        record = self.tables.get(table_id)
        if record is not None and record.status == STATUS_OCCUPIED and table_id not in self._unsynced:
            return
        await self._sync_table(table_id, {"status": STATUS_OCCUPIED})

    def _request_sync(self, table_id: str, changes: dict[str, Any]) -> None:
        self._unsynced[table_id] = {**self._unsynced.get(table_id, {}), **changes}
        if table_id not in self._sync_tasks:
            self._start_sync(table_id)

    def _start_sync(self, table_id: str) -> None:
        self._sync_tasks[table_id] = self._spawn(self._sync_loop(table_id))

    async def _sync_table(self, table_id: str, changes: dict[str, Any]) -> bool:
        """Push ``changes`` and wait; True once the store has confirmed them."""
        self._request_sync(table_id, changes)
        task = self._sync_tasks.get(table_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return table_id not in self._unsynced

    async def _sync_loop(self, table_id: str) -> None:
        # One in-flight update per table; changes requested meanwhile are sent next.
        try:
            while table_id in self._unsynced:
                changes = self._unsynced[table_id]
                try:
                    updated = await self.table_store.update(table_id, changes)
                except NotFoundError:
                    logger.warning("table sync dropped table_id=%s reason=not_found", table_id)
                    self._unsynced.pop(table_id, None)
                    return
                except StoreError:
                    logger.warning("table sync failed table_id=%s changes=%r", table_id, changes, exc_info=True)
                    return
                if self._unsynced.get(table_id) is changes:
                    del self._unsynced[table_id]
                    self._adopt_record(updated)
        finally:
            self._sync_tasks.pop(table_id, None)

    def _adopt_record(self, record: Table) -> None:
        if record.id not in self.tables:
            return
        merged = self._overlay(record)
        self.tables[record.id] = merged
        if self.active_table is not None and self.active_table.id == record.id:
            self.active_table = merged
        self._notify()

    def _remember_cart(self, table: Table) -> None:
        self.table_bills[table.id] = TableBillCacheEntry(
            bill_items=self.cart.lines(),
            bill_id=self.saved_bill_id,
            bill_number=self.saved_bill_number,
            table_number=table.table_number,
            last_updated=self._clock(),
        )
        self._dirty_cache_ids.add(table.id)
        self._persist_debouncer.schedule()

    def _mirror_bill(self, table: Table, bill: Bill, lines: list[CartLine]) -> None:
        self.table_bills[table.id] = TableBillCacheEntry(
            bill_items=lines,
            bill_id=bill.id,
            bill_number=bill.bill_number,
            table_number=table.table_number,
            last_updated=self._clock(),
        )
        self._dirty_cache_ids.add(table.id)
        self._persist_debouncer.schedule()

    def _read_persisted_entry(self, table_id: str) -> TableBillCacheEntry | None:
        try:
            doc = self.cache.get(table_bill_key(table_id))
            if doc is None:
                doc = (self.cache.get(TABLE_BILLS_KEY) or {}).get(table_id)
            if doc is None:
                return None
            return TableBillCacheEntry.from_dict(doc)
        except StoreError:
            logger.warning("persisted cache read failed table_id=%s", table_id, exc_info=True)
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.warning("persisted cache entry unreadable table_id=%s", table_id, exc_info=True)
        return None

    def _purge_persisted(self, table: Table) -> None:
        self._dirty_cache_ids.add(table.id)
        self._persist_debouncer.cancel()
        self._flush_persisted_cache()
        try:
            self.cache.delete(legacy_bill_key(table.table_number))
        except StoreError:
            logger.warning("legacy cache purge failed table_id=%s", table.id, exc_info=True)

    def _flush_persisted_cache(self) -> None:
        table_ids, self._dirty_cache_ids = self._dirty_cache_ids, set()
        if not table_ids:
            return
        try:
            index = self.cache.get(TABLE_BILLS_KEY) or {}
            for table_id in table_ids:
                entry = self.table_bills.get(table_id)
                if entry is None:
                    index.pop(table_id, None)
                    self.cache.delete(table_bill_key(table_id))
                else:
                    index[table_id] = entry.to_dict()
                    self.cache.set(table_bill_key(table_id), entry.to_dict(), ttl=self.cache_ttl)
            self.cache.set(TABLE_BILLS_KEY, index, ttl=self.cache_ttl)
        except StoreError:
            logger.warning("persisted cache write failed table_ids=%s", sorted(table_ids), exc_info=True)
            self._dirty_cache_ids |= table_ids

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("background task failed", exc_info=exc)
