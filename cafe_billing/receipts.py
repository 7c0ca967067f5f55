"""Receipt layouts: detailed customer bill and KOT (kitchen order ticket)."""

from __future__ import annotations

from datetime import datetime

from cafe_billing.config import CAFE_ADDRESS, CAFE_CONTACT, CAFE_NAME, CASHIER_NAME, PRINTER_LINE_CHARS
from cafe_billing.models import FORMAT_SIMPLE, Bill, CartLine

_QTY_WIDTH = 4
_MONEY_WIDTH = 8


def format_currency(amount: float) -> str:
    return f"{amount:.2f}"


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3] + "..."


def _two_columns(left: str, right: str, width: int) -> str:
    gap = max(1, width - len(left) - len(right))
    return f"{left}{' ' * gap}{right}"[:width]


def _line_name(line: CartLine) -> str:
    return line.name or "Unknown Item"


def kot_number(bill_number: str) -> str:
    """``KOT - <n>`` using the part after the first dash when there is one."""
    parts = bill_number.split("-", 1)
    if len(parts) == 2 and parts[1]:
        return f"KOT - {parts[1]}"
    return f"KOT - {bill_number}"


def render_detailed(bill: Bill, printed_at: datetime, width: int = PRINTER_LINE_CHARS) -> list[str]:
    """Customer receipt with prices, totals and café header."""
    name_width = width - _QTY_WIDTH - (_MONEY_WIDTH * 2)
    rule = "-" * width

    lines = [
        CAFE_NAME.center(width).rstrip(),
        CAFE_ADDRESS.center(width).rstrip(),
        f"PH.: {CAFE_CONTACT}".center(width).rstrip(),
        "",
        _two_columns(f"Date: {printed_at:%d/%m/%y}", f"Dine In: {bill.table_no}", width),
        _two_columns(f"Time: {printed_at:%H:%M}", f"Bill No.: {bill.bill_number}", width),
        f"Cashier: {CASHIER_NAME}",
        rule,
        f"{'Item':<{name_width}}{'Qty.':>{_QTY_WIDTH}}{'Price':>{_MONEY_WIDTH}}{'Amount':>{_MONEY_WIDTH}}",
    ]
    for line in bill.items:
        lines.append(
            f"{truncate(_line_name(line), name_width - 1):<{name_width}}"
            f"{line.quantity:>{_QTY_WIDTH}}"
            f"{format_currency(line.price):>{_MONEY_WIDTH}}"
            f"{format_currency(line.price * line.quantity):>{_MONEY_WIDTH}}"
        )
    if not bill.items:
        lines.append("No items added".center(width).rstrip())

    total_qty = sum(line.quantity for line in bill.items)
    lines.extend(
        [
            rule,
            _two_columns(f"Total Qty: {total_qty}", f"Sub Total {format_currency(bill.total_amount)}", width),
            _two_columns("Grand Total", format_currency(bill.total_amount), width),
            rule,
            "Thanks For Visiting Us !!".center(width).rstrip(),
        ]
    )
    return lines


def render_kot(bill: Bill, printed_at: datetime, width: int = PRINTER_LINE_CHARS) -> list[str]:
    """Kitchen ticket: items and quantities only, no prices."""
    name_width = width - _QTY_WIDTH
    lines = [
        "KOT".center(width).rstrip(),
        f"{printed_at:%d/%m/%y %H:%M}".center(width).rstrip(),
        kot_number(bill.bill_number).center(width).rstrip(),
        "Dine In".center(width).rstrip(),
        f"Table No: {bill.table_no}".center(width).rstrip(),
        "-" * width,
        f"{'Item':<{name_width}}{'Qty.':>{_QTY_WIDTH}}",
    ]
    for line in bill.items:
        lines.append(f"{truncate(_line_name(line), name_width - 1):<{name_width}}{line.quantity:>{_QTY_WIDTH}}")
    if not bill.items:
        lines.append("No items added".center(width).rstrip())
    return lines


def render_receipt(bill: Bill, printed_at: datetime | None = None) -> list[str]:
    """Pick the layout from the bill's receipt format."""
    printed_at = printed_at or datetime.now()
    if bill.receipt_format == FORMAT_SIMPLE:
        return render_kot(bill, printed_at)
    return render_detailed(bill, printed_at)
