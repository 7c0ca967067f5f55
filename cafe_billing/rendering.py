"""Rich text formatting for tables, cart lines and menu results."""

from __future__ import annotations

from rich.text import Text

from cafe_billing.models import CartLine, Item, Table
from cafe_billing.receipts import format_currency


def table_style(occupied: bool, selected: bool) -> str:
    """Return a consistent chip style for a table's state."""
    if selected:
        return "bold #0b1f0f on #5fbf72"
    if occupied:
        return "bold #ffffff on #b23a48"
    return "bold #ffffff on #2f6db5"


def format_table_chip(table: Table, occupied: bool, selected: bool, under_cursor: bool) -> Text:
    """Render one table as a colored chip, with a pointer when under the cursor."""
    text = Text()
    text.append("➤" if under_cursor else " ")
    text.append(f" {table.table_number} ", style=table_style(occupied, selected))
    return text


def format_tables(tables: list[Table], occupied_ids: set[str], active_id: str | None, cursor: int, per_row: int = 6) -> Text:
    if not tables:
        return Text("(no tables yet, press A to add one)")

    lines = Text()
    for idx, table in enumerate(tables):
        if idx > 0:
            lines.append("\n" if idx % per_row == 0 else " ")
        lines.append_text(format_table_chip(table, table.id in occupied_ids, table.id == active_id, idx == cursor))
    return lines


def format_cart_line(line: CartLine) -> Text:
    text = Text()
    text.append(f"{line.quantity} x ", style="bold")
    text.append(line.name)
    text.append(f"  {format_currency(line.price * line.quantity)}", style="dim")
    return text


def format_menu_item(item: Item) -> str:
    return f"{item.name}  {format_currency(item.price)}"


def window_bounds(total: int, rows: int, selected: int | None) -> tuple[int, int]:
    """Visible slice of a scrolling list that keeps ``selected`` centred."""
    if total <= 0:
        return (0, 0)

    rows = max(1, rows)
    if total <= rows:
        return (0, total)

    if selected is None:
        start = 0
    else:
        half = rows // 2
        start = selected - half
        start = max(0, start)
        start = min(start, total - rows)

    return (start, start + rows)
