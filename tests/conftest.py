from __future__ import annotations

import asyncio
from typing import Any

import pytest

from cafe_billing.cache import PersistedCache
from cafe_billing.errors import StoreError
from cafe_billing.models import BillDraft, Item
from cafe_billing.persistence import SqliteBillStore, SqliteItemStore, SqliteTableStore, bootstrap_schema
from cafe_billing.session import BillingSession


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTableStore:
    """Wraps a table store; can hold, delay or fail calls and records every update."""

    def __init__(self, inner: SqliteTableStore) -> None:
        self.inner = inner
        self.update_calls: list[tuple[str, dict[str, Any]]] = []
        self.update_delay = 0.0
        self.fail_updates = False
        self.fail_listing = False
        self.update_gate: asyncio.Event | None = None
        self.listing_gate: asyncio.Event | None = None
        self.list_calls = 0

    def __getattr__(self, name: str) -> Any:
        return getattr(self.inner, name)

    async def list_all(self):
        self.list_calls += 1
        if self.listing_gate is not None:
            await self.listing_gate.wait()
        if self.fail_listing:
            raise StoreError("listing unavailable")
        return await self.inner.list_all()

    async def list_with_status(self):
        if self.fail_listing:
            raise StoreError("listing unavailable")
        return await self.inner.list_with_status()

    async def update(self, table_id: str, changes: dict[str, Any]):
        self.update_calls.append((table_id, dict(changes)))
        if self.update_gate is not None:
            await self.update_gate.wait()
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        if self.fail_updates:
            raise StoreError("table update failed")
        return await self.inner.update(table_id, changes)


class RecordingBillStore:
    """Wraps a bill store; queued exceptions are raised by ``create`` before delegating."""

    def __init__(self, inner: SqliteBillStore) -> None:
        self.inner = inner
        self.create_calls: list[BillDraft] = []
        self.update_calls: list[tuple[str, BillDraft]] = []
        self.find_calls: list[str] = []
        self.create_failures: list[Exception] = []

    def __getattr__(self, name: str) -> Any:
        return getattr(self.inner, name)

    async def find_by_id(self, bill_id: str):
        self.find_calls.append(bill_id)
        return await self.inner.find_by_id(bill_id)

    async def create(self, draft: BillDraft):
        self.create_calls.append(draft)
        if self.create_failures:
            raise self.create_failures.pop(0)
        return await self.inner.create(draft)

    async def update(self, bill_id: str, draft: BillDraft):
        self.update_calls.append((bill_id, draft))
        return await self.inner.update(bill_id, draft)


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "cafe.db"
    bootstrap_schema(path)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    return PersistedCache(tmp_path / "cache.db", default_ttl=1800, clock=clock)


@pytest.fixture
def item_store(db_path):
    return SqliteItemStore(db_path)


@pytest.fixture
def table_store(db_path):
    return RecordingTableStore(SqliteTableStore(db_path))


@pytest.fixture
def bill_store(db_path):
    return RecordingBillStore(SqliteBillStore(db_path))


@pytest.fixture
def make_session(item_store, table_store, bill_store, cache, clock):
    def factory(**kwargs: Any) -> BillingSession:
        kwargs.setdefault("switch_cooldown", 0)
        kwargs.setdefault("persist_debounce", 0.01)
        return BillingSession(item_store, table_store, bill_store, cache, clock=clock, **kwargs)

    return factory


@pytest.fixture
def coffee():
    return Item(id="coffee", name="Coffee", price=3.5, category="Beverages")


@pytest.fixture
def cake():
    return Item(id="cake", name="Cake", price=4.5, category="Desserts")
