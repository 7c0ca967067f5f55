"""SQLite document store for items, tables and bills."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import closing
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar
from uuid import uuid4

from cafe_billing.config import DEFAULT_TABLE_CAPACITY
from cafe_billing.errors import ActiveBillError, DuplicateKeyError, NotFoundError, StoreError
from cafe_billing.models import STATUS_AVAILABLE, TABLE_STATUSES, Bill, BillDraft, Item, Table, TableNumber
from cafe_billing.stores import TABLE_UPDATE_FIELDS

T = TypeVar("T")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect(db_path: str | Path) -> sqlite3.Connection:
    db_file = Path(db_path)
    db_file.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(db_file)


def bootstrap_schema(db_path: str | Path) -> None:
    """Create the document collections if they do not already exist."""
    with closing(_connect(db_path)) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                doc TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS cafe_tables (
                id TEXT PRIMARY KEY,
                table_number TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                doc TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS bills (
                id TEXT PRIMARY KEY,
                bill_number TEXT NOT NULL UNIQUE,
                table_no TEXT NOT NULL,
                created_at TEXT NOT NULL,
                doc TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_bills_table_no ON bills(table_no);
            """
        )


class _SqliteStore:
    def __init__(self, db_path: str | Path) -> None:
        self.db_path = db_path

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise StoreError(f"{type(self).__name__}: {exc}") from exc


class SqliteItemStore(_SqliteStore):
    """Menu items. Read-only during billing; ``create`` is used for seeding."""

    async def list_all(self) -> list[Item]:
        return await self._run(self._list_all)

    async def create(self, name: str, price: float, category: str = "") -> Item:
        if price < 0:
            raise ValueError("price must not be negative")
        return await self._run(self._create, name, price, category)

    async def count(self) -> int:
        return await self._run(self._count)

    def _list_all(self) -> list[Item]:
        with closing(_connect(self.db_path)) as conn:
            rows = conn.execute("SELECT doc FROM items ORDER BY created_at, rowid").fetchall()
        return [Item.from_dict(json.loads(doc)) for (doc,) in rows]

    def _create(self, name: str, price: float, category: str) -> Item:
        item = Item(id=uuid4().hex, name=name.strip(), price=float(price), category=category.strip())
        with closing(_connect(self.db_path)) as conn:
            with conn:
                conn.execute(
                    "INSERT INTO items (id, created_at, doc) VALUES (?, ?, ?)",
                    (item.id, _utc_now_iso(), json.dumps(item.to_dict())),
                )
        return item

    def _count(self) -> int:
        with closing(_connect(self.db_path)) as conn:
            (count,) = conn.execute("SELECT COUNT(*) FROM items").fetchone()
        return int(count)


class SqliteTableStore(_SqliteStore):
    """Table records with a uniqueness constraint on the table number."""

    async def list_all(self) -> list[Table]:
        return await self._run(self._list_all)

    async def list_with_status(self) -> list[Table]:
        return await self._run(self._list_with_status)

    async def find_by_id(self, table_id: str) -> Table | None:
        return await self._run(self._find_by_id, table_id)

    async def create(
        self,
        table_number: TableNumber,
        status: str = STATUS_AVAILABLE,
        capacity: int = DEFAULT_TABLE_CAPACITY,
    ) -> Table:
        if status not in TABLE_STATUSES:
            raise ValueError(f"unknown table status {status!r}")
        tables = await self._run(self._insert_many, [table_number], status, capacity)
        return tables[0]

    async def bulk_create(self, table_numbers: list[TableNumber], capacity: int = DEFAULT_TABLE_CAPACITY) -> list[Table]:
        if not table_numbers:
            raise ValueError("table_numbers must not be empty")
        keys = [str(number) for number in table_numbers]
        if len(set(keys)) != len(keys):
            raise ValueError("request contains duplicate table numbers")
        return await self._run(self._insert_many, list(table_numbers), STATUS_AVAILABLE, capacity)

    async def update(self, table_id: str, changes: dict[str, Any]) -> Table:
        unknown = set(changes) - TABLE_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"cannot update table fields: {sorted(unknown)}")
        return await self._run(self._update, table_id, dict(changes))

    async def delete(self, table_id: str) -> None:
        await self._run(self._delete, table_id)

    def _list_all(self) -> list[Table]:
        with closing(_connect(self.db_path)) as conn:
            rows = conn.execute("SELECT doc FROM cafe_tables ORDER BY created_at, rowid").fetchall()
        return [Table.from_dict(json.loads(doc)) for (doc,) in rows]

    def _list_with_status(self) -> list[Table]:
        with closing(_connect(self.db_path)) as conn:
            rows = conn.execute("SELECT doc FROM cafe_tables ORDER BY created_at, rowid").fetchall()
            billed = {table_no for (table_no,) in conn.execute("SELECT DISTINCT table_no FROM bills")}
        tables = [Table.from_dict(json.loads(doc)) for (doc,) in rows]
        return [replace(table, has_bill=str(table.table_number) in billed) for table in tables]

    def _find_by_id(self, table_id: str) -> Table | None:
        with closing(_connect(self.db_path)) as conn:
            row = conn.execute("SELECT doc FROM cafe_tables WHERE id = ?", (table_id,)).fetchone()
        if row is None:
            return None
        return Table.from_dict(json.loads(row[0]))

    def _insert_many(self, table_numbers: list[TableNumber], status: str, capacity: int) -> list[Table]:
        created_at = _utc_now_iso()
        tables = [
            Table(
                id=uuid4().hex,
                table_number=number,
                status=status,
                capacity=capacity,
                created_at=created_at,
            )
            for number in table_numbers
        ]
        with closing(_connect(self.db_path)) as conn:
            try:
                with conn:
                    conn.executemany(
                        "INSERT INTO cafe_tables (id, table_number, created_at, doc) VALUES (?, ?, ?, ?)",
                        [(t.id, str(t.table_number), t.created_at, json.dumps(t.to_dict())) for t in tables],
                    )
            except sqlite3.IntegrityError as exc:
                taken = self._taken_numbers(conn, table_numbers)
                raise DuplicateKeyError("tableNumber", taken[0] if taken else table_numbers[0]) from exc
        return tables

    def _taken_numbers(self, conn: sqlite3.Connection, table_numbers: list[TableNumber]) -> list[TableNumber]:
        taken = []
        for number in table_numbers:
            row = conn.execute("SELECT 1 FROM cafe_tables WHERE table_number = ?", (str(number),)).fetchone()
            if row is not None:
                taken.append(number)
        return taken

    def _update(self, table_id: str, changes: dict[str, Any]) -> Table:
        status = changes.get("status")
        if status is not None and status not in TABLE_STATUSES:
            raise ValueError(f"unknown table status {status!r}")

        with closing(_connect(self.db_path)) as conn:
            with conn:
                row = conn.execute("SELECT doc FROM cafe_tables WHERE id = ?", (table_id,)).fetchone()
                if row is None:
                    raise NotFoundError(f"table {table_id} not found")
                table = replace(Table.from_dict(json.loads(row[0])), **changes)
                conn.execute(
                    "UPDATE cafe_tables SET doc = ? WHERE id = ?",
                    (json.dumps(table.to_dict()), table_id),
                )
        return table

    def _delete(self, table_id: str) -> None:
        with closing(_connect(self.db_path)) as conn:
            with conn:
                row = conn.execute("SELECT doc FROM cafe_tables WHERE id = ?", (table_id,)).fetchone()
                if row is None:
                    raise NotFoundError(f"table {table_id} not found")
                table = Table.from_dict(json.loads(row[0]))
                if table.last_bill_id:
                    bill = conn.execute("SELECT 1 FROM bills WHERE id = ?", (table.last_bill_id,)).fetchone()
                    if bill is not None:
                        raise ActiveBillError("Cannot delete table with active bills. Please clear bills first.")
                conn.execute("DELETE FROM cafe_tables WHERE id = ?", (table_id,))


class SqliteBillStore(_SqliteStore):
    """Bill records with a uniqueness constraint on the bill number."""

    async def list_all(self) -> list[Bill]:
        return await self._run(self._list_all)

    async def find_by_id(self, bill_id: str) -> Bill | None:
        return await self._run(self._find_by_id, bill_id)

    async def create(self, draft: BillDraft) -> Bill:
        if not draft.items:
            raise ValueError("Table number and items are required")
        return await self._run(self._create, draft)

    async def update(self, bill_id: str, draft: BillDraft) -> Bill:
        return await self._run(self._update, bill_id, draft)

    async def delete(self, bill_id: str) -> None:
        await self._run(self._delete, bill_id)

    def _list_all(self) -> list[Bill]:
        with closing(_connect(self.db_path)) as conn:
            rows = conn.execute("SELECT doc FROM bills ORDER BY created_at DESC, rowid DESC").fetchall()
        return [Bill.from_dict(json.loads(doc)) for (doc,) in rows]

    def _find_by_id(self, bill_id: str) -> Bill | None:
        with closing(_connect(self.db_path)) as conn:
            row = conn.execute("SELECT doc FROM bills WHERE id = ?", (bill_id,)).fetchone()
        if row is None:
            return None
        return Bill.from_dict(json.loads(row[0]))

    def _create(self, draft: BillDraft) -> Bill:
        bill = Bill(
            id=uuid4().hex,
            bill_number=draft.bill_number,
            table_no=draft.table_no,
            items=list(draft.items),
            total_amount=draft.total_amount,
            receipt_format=draft.receipt_format,
            created_at=_utc_now_iso(),
        )
        with closing(_connect(self.db_path)) as conn:
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO bills (id, bill_number, table_no, created_at, doc) VALUES (?, ?, ?, ?, ?)",
                        (bill.id, bill.bill_number, str(bill.table_no), bill.created_at, json.dumps(bill.to_dict())),
                    )
            except sqlite3.IntegrityError as exc:
                raise DuplicateKeyError("billNumber", bill.bill_number) from exc
        return bill

    def _update(self, bill_id: str, draft: BillDraft) -> Bill:
        with closing(_connect(self.db_path)) as conn:
            try:
                with conn:
                    row = conn.execute("SELECT doc FROM bills WHERE id = ?", (bill_id,)).fetchone()
                    if row is None:
                        raise NotFoundError(f"bill {bill_id} not found")
                    current = Bill.from_dict(json.loads(row[0]))
                    bill = replace(
                        current,
                        bill_number=draft.bill_number,
                        table_no=draft.table_no,
                        items=list(draft.items),
                        total_amount=draft.total_amount,
                        receipt_format=draft.receipt_format,
                    )
                    conn.execute(
                        "UPDATE bills SET bill_number = ?, table_no = ?, doc = ? WHERE id = ?",
                        (bill.bill_number, str(bill.table_no), json.dumps(bill.to_dict()), bill_id),
                    )
            except sqlite3.IntegrityError as exc:
                raise DuplicateKeyError("billNumber", draft.bill_number) from exc
        return bill

    def _delete(self, bill_id: str) -> None:
        with closing(_connect(self.db_path)) as conn:
            with conn:
                cur = conn.execute("DELETE FROM bills WHERE id = ?", (bill_id,))
                if cur.rowcount == 0:
                    raise NotFoundError(f"bill {bill_id} not found")
