"""Domain models for cafe-billing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

STATUS_AVAILABLE = "available"
STATUS_OCCUPIED = "occupied"
STATUS_RESERVED = "reserved"
TABLE_STATUSES = (STATUS_AVAILABLE, STATUS_OCCUPIED, STATUS_RESERVED)

FORMAT_DETAILED = "detailed"
FORMAT_SIMPLE = "simple"
RECEIPT_FORMATS = (FORMAT_DETAILED, FORMAT_SIMPLE)

TableNumber = int | str


@dataclass(frozen=True)
class Item:
    """A menu item."""

    id: str
    name: str
    price: float
    category: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"_id": self.id, "name": self.name, "price": self.price, "category": self.category}

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> Item:
        return cls(
            id=str(doc["_id"]),
            name=str(doc.get("name") or doc.get("itemName") or ""),
            price=float(doc.get("price", 0)),
            category=str(doc.get("category") or ""),
        )


@dataclass
class CartLine:
    """One item in a cart with its quantity."""

    item_id: str
    name: str
    price: float
    quantity: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {"itemId": self.item_id, "name": self.name, "price": self.price, "quantity": self.quantity}

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> CartLine:
        return cls(
            item_id=str(doc.get("itemId") or doc.get("_id") or ""),
            name=str(doc.get("name") or ""),
            price=float(doc.get("price", 0)),
            quantity=int(doc.get("quantity", 1)),
        )


@dataclass
class Table:
    """A seating unit identified by a unique number or custom name."""

    id: str
    table_number: TableNumber
    status: str = STATUS_AVAILABLE
    capacity: int = 4
    last_bill_id: str | None = None
    created_at: str = ""
    # Only filled by the with-status listing.
    has_bill: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "tableNumber": self.table_number,
            "status": self.status,
            "capacity": self.capacity,
            "lastBillId": self.last_bill_id,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> Table:
        return cls(
            id=str(doc["_id"]),
            table_number=doc["tableNumber"],
            status=str(doc.get("status") or STATUS_AVAILABLE),
            capacity=int(doc.get("capacity") or 4),
            last_bill_id=doc.get("lastBillId"),
            created_at=str(doc.get("createdAt") or ""),
            has_bill=bool(doc.get("hasBill", False)),
        )


@dataclass
class Bill:
    """A persisted, numbered order linked to a table."""

    id: str
    bill_number: str
    table_no: TableNumber
    items: list[CartLine]
    total_amount: float
    receipt_format: str = FORMAT_DETAILED
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "billNumber": self.bill_number,
            "tableNo": self.table_no,
            "items": [line.to_dict() for line in self.items],
            "totalAmount": self.total_amount,
            "receiptFormat": self.receipt_format,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> Bill:
        return cls(
            id=str(doc["_id"]),
            bill_number=str(doc["billNumber"]),
            table_no=doc["tableNo"],
            items=[CartLine.from_dict(line) for line in doc.get("items", [])],
            total_amount=float(doc.get("totalAmount", 0)),
            receipt_format=str(doc.get("receiptFormat") or FORMAT_DETAILED),
            created_at=str(doc.get("createdAt") or ""),
        )


@dataclass
class TableBillCacheEntry:
    """Last known cart/bill pairing for one table."""

    bill_items: list[CartLine]
    bill_id: str | None
    bill_number: str | None
    table_number: TableNumber
    last_updated: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "billItems": [line.to_dict() for line in self.bill_items],
            "billId": self.bill_id,
            "billNumber": self.bill_number,
            "tableNumber": self.table_number,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> TableBillCacheEntry:
        return cls(
            bill_items=[CartLine.from_dict(line) for line in doc.get("billItems", [])],
            bill_id=doc.get("billId"),
            bill_number=doc.get("billNumber"),
            table_number=doc.get("tableNumber", ""),
            last_updated=float(doc.get("lastUpdated", 0.0)),
        )


@dataclass
class BillDraft:
    """Bill payload built from a cart, before the store assigns an id."""

    bill_number: str
    table_no: TableNumber
    items: list[CartLine] = field(default_factory=list)
    total_amount: float = 0.0
    receipt_format: str = FORMAT_DETAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "billNumber": self.bill_number,
            "tableNo": self.table_no,
            "items": [line.to_dict() for line in self.items],
            "totalAmount": self.total_amount,
            "receiptFormat": self.receipt_format,
        }
