"""Store interfaces consumed by the billing session."""

from __future__ import annotations

from typing import Any, Protocol

from cafe_billing.models import Bill, BillDraft, Item, Table, TableNumber

# Fields a table update may change.
TABLE_UPDATE_FIELDS = frozenset({"status", "capacity", "last_bill_id"})


class ItemStore(Protocol):
    async def list_all(self) -> list[Item]: ...


class TableStore(Protocol):
    async def list_all(self) -> list[Table]: ...

    async def list_with_status(self) -> list[Table]: ...

    async def find_by_id(self, table_id: str) -> Table | None: ...

    async def create(self, table_number: TableNumber, status: str = ..., capacity: int = ...) -> Table: ...

    async def bulk_create(self, table_numbers: list[TableNumber], capacity: int = ...) -> list[Table]: ...

    async def update(self, table_id: str, changes: dict[str, Any]) -> Table: ...

    async def delete(self, table_id: str) -> None: ...


class BillStore(Protocol):
    async def list_all(self) -> list[Bill]: ...

    async def find_by_id(self, bill_id: str) -> Bill | None: ...

    async def create(self, draft: BillDraft) -> Bill: ...

    async def update(self, bill_id: str, draft: BillDraft) -> Bill: ...

    async def delete(self, bill_id: str) -> None: ...
