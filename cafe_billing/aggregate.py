"""Cart container, bill totals and bill-number generation."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Iterable

from cafe_billing.errors import InvalidCartError
from cafe_billing.models import FORMAT_DETAILED, RECEIPT_FORMATS, BillDraft, CartLine, Item, TableNumber


def placeholder_name(item_id: str) -> str:
    """Display name for catalog items that arrive without one."""
    if not item_id:
        return "Unknown Item"
    return f"Item {item_id}"


def _checked_line(line: CartLine) -> CartLine:
    if line.quantity < 0:
        raise InvalidCartError(f"negative quantity for {line.item_id!r}")
    if line.price < 0:
        raise InvalidCartError(f"negative price for {line.item_id!r}")
    if line.name:
        return replace(line)
    return replace(line, name=placeholder_name(line.item_id))


class Cart:
    """In-progress lines for one table, at most one line per item id."""

    def __init__(self, lines: Iterable[CartLine] = ()) -> None:
        self._lines: dict[str, CartLine] = {}
        for line in lines:
            checked = _checked_line(line)
            if checked.quantity == 0:
                continue
            existing = self._lines.get(checked.item_id)
            if existing is not None:
                existing.quantity += checked.quantity
                continue
            self._lines[checked.item_id] = checked

    def __len__(self) -> int:
        return len(self._lines)

    def __bool__(self) -> bool:
        return bool(self._lines)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._lines

    def get(self, item_id: str) -> CartLine | None:
        return self._lines.get(item_id)

    def lines(self) -> list[CartLine]:
        """Copies of the current lines in insertion order."""
        return [replace(line) for line in self._lines.values()]

    def add(self, item: Item) -> CartLine:
        """Add one unit of ``item``; returns the updated line."""
        if item.price < 0:
            raise InvalidCartError(f"negative price for {item.id!r}")
        line = self._lines.get(item.id)
        if line is not None:
            line.quantity += 1
            return replace(line)

        line = CartLine(item_id=item.id, name=item.name or placeholder_name(item.id), price=item.price, quantity=1)
        self._lines[item.id] = line
        return replace(line)

    def remove(self, item_id: str) -> CartLine | None:
        """Remove one unit; returns the remaining line, or None when it was dropped or absent."""
        line = self._lines.get(item_id)
        if line is None:
            return None
        if line.quantity > 1:
            line.quantity -= 1
            return replace(line)
        del self._lines[item_id]
        return None

    def clear(self) -> None:
        self._lines.clear()

    def total(self) -> float:
        total, _ = summarize(self._lines.values())
        return total


def summarize(lines: Iterable[CartLine], total_override: float | None = None) -> tuple[float, int]:
    """Return ``(total_amount, line_count)`` for the given lines."""
    checked = [_checked_line(line) for line in lines]
    if total_override is not None:
        if total_override < 0:
            raise InvalidCartError("total override must not be negative")
        return (round(float(total_override), 2), len(checked))
    total = sum(line.price * line.quantity for line in checked)
    return (round(total, 2), len(checked))


def generate_bill_number(table_number: TableNumber, now: datetime | None = None, with_seconds: bool = False) -> str:
    """Derive ``T<table><HH><MM>`` (plus ``<SS>`` for the retry form)."""
    now = now or datetime.now()
    stamp = now.strftime("%H%M%S" if with_seconds else "%H%M")
    return f"T{table_number}{stamp}"


def build_bill(
    table_number: TableNumber,
    lines: Iterable[CartLine],
    bill_number: str,
    receipt_format: str = FORMAT_DETAILED,
    total_override: float | None = None,
) -> BillDraft:
    """Build the bill payload for a cart. Pure; never touches a store."""
    if receipt_format not in RECEIPT_FORMATS:
        raise ValueError(f"unknown receipt format {receipt_format!r}")

    checked = [line for line in map(_checked_line, lines) if line.quantity > 0]
    total, _ = summarize(checked, total_override)
    return BillDraft(
        bill_number=bill_number,
        table_no=table_number,
        items=checked,
        total_amount=total,
        receipt_format=receipt_format,
    )
