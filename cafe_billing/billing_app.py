"""Main Textual app class."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.events import Key
from textual.reactive import reactive
from textual.screen import ModalScreen
from textual.widgets import Header, Static

from cafe_billing.config import BACKGROUND_REFRESH_SECONDS, CACHE_SWEEP_SECONDS
from cafe_billing.errors import BillingError
from cafe_billing.models import FORMAT_DETAILED, FORMAT_SIMPLE, CartLine, Item, Table
from cafe_billing.printer import check_printer_dependencies, print_receipt
from cafe_billing.receipts import format_currency, render_receipt
from cafe_billing.rendering import format_cart_line, format_menu_item, format_tables, window_bounds
from cafe_billing.session import STATE_CART_DIRTY, STATE_EMPTY, STATE_NO_TABLE, BillingSession
from cafe_billing.table_modals import BulkTablesModal, CustomTableModal

logger = logging.getLogger(__name__)

_STATE_LABELS = {
    STATE_NO_TABLE: "Select a table",
    STATE_EMPTY: "Empty bill",
    STATE_CART_DIRTY: "Unsaved changes",
}


class BillingApp(App):
    """A Textual app for table billing at the café till."""

    TITLE = "Café Billing"
    SUB_TITLE = "No table selected"
    ENABLE_COMMAND_PALETTE = False

    CSS = """
    Screen {
        layout: vertical;
    }

    #main-layout {
        height: 1fr;
    }

    #tables-pane {
        width: 2fr;
        border: round $primary;
        padding: 1;
    }

    #bill-pane {
        width: 3fr;
        border: round $primary;
        padding: 1;
    }

    #search-pane {
        width: 2fr;
        border: round $secondary;
        padding: 1;
    }

    #search-bar {
        border: heavy $secondary;
        padding: 0 1;
        margin-bottom: 1;
        height: 5;
    }

    #results, #bill-list, #tables-list {
        height: 1fr;
        border: tall $surface;
        padding: 0 1;
    }

    #bill-summary {
        height: auto;
        margin-top: 1;
    }

    .pane-title {
        text-style: bold;
        margin-bottom: 1;
    }
    """

    input_state = reactive("normal")
    query = reactive("")
    selected_index = reactive(0)
    table_cursor = reactive(0)
    line_selected_index = reactive(None)

    BINDINGS = [
        ("tab", "cycle_results(1)", "Next result"),
        ("up", "cycle_results(-1)", "Previous result"),
        ("down", "cycle_results(1)", "Next result"),
        ("enter", "enter", "Select / add"),
        ("backspace", "backspace_query", "Delete query char"),
        Binding("ctrl+s", "save_bill('detailed')", "Save bill", priority=True),
        Binding("ctrl+k", "save_bill('simple')", "Save KOT", priority=True),
        Binding("ctrl+p", "save_and_print('detailed')", "Save + Print", priority=True),
        Binding("ctrl+t", "save_and_print('simple')", "Save + Print KOT", priority=True),
        Binding("ctrl+x", "clear_bill", "Clear bill", priority=True),
        ("ctrl+c", "cancel_active_mode", "Exit search"),
        ("ctrl+q", "quit", "Quit"),
    ]

    def __init__(self, session: BillingSession) -> None:
        super().__init__()
        self.session = session
        self.system_status = ""
        self.session.subscribe(self._refresh_all)

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal(id="main-layout"):
            with Vertical(id="tables-pane"):
                yield Static("Tables", classes="pane-title")
                yield Static("(loading tables)", id="tables-list")
            with Vertical(id="bill-pane"):
                yield Static("Bill", id="bill-title", classes="pane-title")
                yield Static("(no items yet)", id="bill-list")
                yield Static(id="bill-summary")
            with Vertical(id="search-pane"):
                yield Static(id="search-bar")
                yield Static(id="results")

    async def on_mount(self) -> None:
        _, msg = check_printer_dependencies()
        self.system_status = msg
        logger.info("on_mount printer_status=%r", msg)
        try:
            await self.session.load()
        except BillingError as exc:
            self.system_status = str(exc)
            logger.warning("initial load failed error=%r", exc)
        self.set_interval(BACKGROUND_REFRESH_SECONDS, self._background_refresh)
        self.set_interval(CACHE_SWEEP_SECONDS, self.session.sweep_cache)
        self._refresh_all()

    async def on_unmount(self) -> None:
        await self.session.close()

    def on_key(self, event: Key) -> None:
        # While a modal is active, let the modal own keyboard handling.
        if isinstance(self.screen, ModalScreen):
            return

        logger.debug("on_key key=%r char=%r state=%r", event.key, event.character, self.input_state)

        if self.input_state == "normal":
            if self._handle_normal_key(event):
                event.stop()
            return

        if not event.is_printable or not event.character or len(event.character) != 1:
            return
        if not (event.character.isalnum() or event.character == " "):
            return

        self.query += event.character
        self.selected_index = 0
        self._refresh_search()
        event.stop()

    def _handle_normal_key(self, event: Key) -> bool:
        char = event.character or ""
        if event.key == "space":
            self._select_table_under_cursor()
            return True
        if char == "/":
            self.input_state = "active"
            self.query = ""
            self.selected_index = 0
            self._refresh_search()
            return True
        if char in {"+", "="}:
            self._change_selected_quantity(1)
            return True
        if char == "-":
            self._change_selected_quantity(-1)
            return True

        if not event.is_printable or len(char) != 1 or not char.isalnum():
            return False

        key = char.lower()
        if key == "h":
            self._move_table_cursor(-1)
        elif key == "l":
            self._move_table_cursor(1)
        elif key == "j":
            self._move_line_selection(1)
        elif key == "k":
            self._move_line_selection(-1)
        elif key == "a":
            self._run(self._create_table())
        elif key == "b":
            self.push_screen(BulkTablesModal(self.session.preview_bulk), self._on_bulk_count)
        elif key == "c":
            self.push_screen(CustomTableModal(self.session.custom_table_warning), self._on_custom_name)
        elif key == "x":
            table = self._table_under_cursor()
            if table is not None:
                self._run(self._delete_table(table.id))
        else:
            return False
        return True

    def action_cancel_active_mode(self) -> None:
        if self.input_state == "normal":
            return

        self.input_state = "normal"
        self.query = ""
        self.selected_index = 0
        self._refresh_search()

    def action_cycle_results(self, delta: int) -> None:
        if self.input_state != "active":
            return

        results = self._filtered_results()
        if not results:
            self.selected_index = 0
            self._refresh_results(results)
            return
        self.selected_index = (self.selected_index + delta) % len(results)
        self._refresh_results(results)

    def action_enter(self) -> None:
        if isinstance(self.screen, ModalScreen):
            return
        if self.input_state == "normal":
            self._select_table_under_cursor()
            return

        results = self._filtered_results()
        if not results:
            return
        self._add_item(results[self.selected_index])

    def action_backspace_query(self) -> None:
        if self.input_state != "active":
            return

        if not self.query:
            return
        self.query = self.query[:-1]
        self.selected_index = 0
        self._refresh_search()

    def action_save_bill(self, receipt_format: str) -> None:
        self._start_save(receipt_format, print_after=False)

    def action_save_and_print(self, receipt_format: str) -> None:
        self._start_save(receipt_format, print_after=True)

    def _start_save(self, receipt_format: str, print_after: bool) -> None:
        if isinstance(self.screen, ModalScreen):
            return
        if self.session.is_saving:
            self._set_status("Save in progress")
            return
        if receipt_format not in (FORMAT_DETAILED, FORMAT_SIMPLE):
            receipt_format = FORMAT_DETAILED
        self._run(self._save(receipt_format, print_after=print_after))

    def action_clear_bill(self) -> None:
        if isinstance(self.screen, ModalScreen):
            return
        if self.session.active_table is None:
            self._set_status("Select a table first")
            return
        self.session.clear_bill()
        self.line_selected_index = None
        self._set_status(f"Cleared table {self.session.active_table.table_number}")

    # ------------------------------------------------------------------
    # Session actions

    def _run(self, coro: Coroutine[Any, Any, Any]) -> None:
        self.run_worker(self._guarded(coro), exit_on_error=False)

    async def _guarded(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except BillingError as exc:
            logger.info("action_failed error=%r", exc)
            self._set_status(str(exc))

    async def _background_refresh(self) -> None:
        await self.session.refresh_tables()

    async def _select_table(self, table_id: str) -> None:
        resolution = await self.session.select_table(table_id)
        if resolution is None:
            return
        table = self.session.active_table
        self.line_selected_index = 0 if self.session.cart else None
        self.sub_title = f"Table {table.table_number}" if table is not None else "No table selected"
        logger.info("table_selected table_id=%s source=%s", table_id, resolution.source)
        self._refresh_all()

    async def _save(self, receipt_format: str, print_after: bool) -> None:
        if self.input_state != "normal":
            self._set_status("Save only in NORMAL mode (Ctrl+C to exit search)")
            return
        bill = await self.session.save_bill(receipt_format)
        if not print_after:
            self._set_status(f"Saved bill {bill.bill_number}")
            return

        try:
            await asyncio.to_thread(print_receipt, render_receipt(bill))
        except Exception as exc:
            logger.warning("print_failed bill_id=%s error=%r", bill.id, exc)
            self._set_status(f"Saved {bill.bill_number} but print failed: {exc}")
            return
        self._set_status(f"Saved + printed: {bill.bill_number}")

    async def _create_table(self) -> None:
        table = await self.session.create_table()
        self._set_status(f"Added table {table.table_number}")

    async def _bulk_create(self, count: int) -> None:
        created = await self.session.bulk_create_tables(count)
        self._set_status(f"Added {len(created)} tables")

    async def _create_custom(self, name: str) -> None:
        table = await self.session.create_custom_table(name)
        self._set_status(f"Added table {table.table_number}")

    async def _delete_table(self, table_id: str) -> None:
        table = self.session.tables.get(table_id)
        await self.session.delete_table(table_id)
        if self.session.active_table is None:
            self.sub_title = "No table selected"
        if table is not None:
            self._set_status(f"Deleted table {table.table_number}")

    def _on_bulk_count(self, count: int | None) -> None:
        if count is None:
            return
        self._run(self._bulk_create(count))

    def _on_custom_name(self, name: str | None) -> None:
        if name is None:
            return
        self._run(self._create_custom(name))

    def _add_item(self, item: Item) -> None:
        try:
            line = self.session.add_item(item)
        except BillingError as exc:
            self._set_status(str(exc))
            return
        lines = self.session.cart.lines()
        self.line_selected_index = next((idx for idx, entry in enumerate(lines) if entry.item_id == line.item_id), None)
        self._refresh_bill()

    def _change_selected_quantity(self, delta: int) -> None:
        line = self._selected_line()
        if line is None:
            return
        if delta > 0:
            self._add_item(self._item_for_line(line))
            return
        try:
            self.session.remove_item(line.item_id)
        except BillingError as exc:
            self._set_status(str(exc))
            return
        self._refresh_bill()

    def _item_for_line(self, line: CartLine) -> Item:
        for item in self.session.items:
            if item.id == line.item_id:
                return item
        return Item(id=line.item_id, name=line.name, price=line.price)

    # ------------------------------------------------------------------
    # Cursor helpers

    def _table_under_cursor(self) -> Table | None:
        tables = self.session.table_list()
        if not tables:
            return None
        self.table_cursor = min(self.table_cursor, len(tables) - 1)
        return tables[self.table_cursor]

    def _select_table_under_cursor(self) -> None:
        table = self._table_under_cursor()
        if table is None:
            self._set_status("No tables yet, press A to add one")
            return
        self._run(self._select_table(table.id))

    def _move_table_cursor(self, delta: int) -> None:
        tables = self.session.table_list()
        if not tables:
            return
        self.table_cursor = (self.table_cursor + delta) % len(tables)
        self._refresh_tables()

    def _move_line_selection(self, delta: int) -> None:
        lines = self.session.cart.lines()
        if not lines:
            return

        if self.line_selected_index is None:
            self.line_selected_index = 0 if delta > 0 else len(lines) - 1
        else:
            self.line_selected_index = (self.line_selected_index + delta) % len(lines)
        self._refresh_bill()

    def _selected_line(self) -> CartLine | None:
        lines = self.session.cart.lines()
        if self.line_selected_index is None:
            return None
        if not (0 <= self.line_selected_index < len(lines)):
            return None
        return lines[self.line_selected_index]

    def _filtered_results(self) -> list[Item]:
        source = self.session.items
        if not self.query:
            return source
        q = self.query.lower()
        return [item for item in source if q in item.name.lower()]

    # ------------------------------------------------------------------
    # Rendering

    def _set_status(self, message: str) -> None:
        self.system_status = message
        self._refresh_search_bar()

    def _static(self, selector: str) -> Static | None:
        try:
            return self.query_one(selector, Static)
        except NoMatches:
            return None

    def _visible_rows(self, widget: Static) -> int:
        height = widget.size.height
        if height <= 0:
            return 8
        return max(1, height)

    def _refresh_all(self) -> None:
        self._refresh_tables()
        self._refresh_bill()
        self._refresh_search()

    def _refresh_tables(self) -> None:
        widget = self._static("#tables-list")
        if widget is None:
            return
        tables = self.session.table_list()
        if tables and self.table_cursor >= len(tables):
            self.table_cursor = len(tables) - 1
        occupied = {table.id for table in tables if self.session.is_occupied(table.id)}
        active = self.session.active_table
        widget.update(format_tables(tables, occupied, active.id if active else None, self.table_cursor))

    def _refresh_bill(self) -> None:
        widget = self._static("#bill-list")
        summary = self._static("#bill-summary")
        title = self._static("#bill-title")
        if widget is None or summary is None or title is None:
            return

        session = self.session
        table = session.active_table
        title.update(f"Bill - Table {table.table_number}" if table is not None else "Bill")

        state_label = _STATE_LABELS.get(session.state) or f"Saved {session.saved_bill_number or ''}".rstrip()
        summary_text = Text()
        summary_text.append(f"Total: {format_currency(session.total)}", style="bold")
        summary_text.append(f"\n{state_label}", style="dim")
        summary.update(summary_text)

        lines = session.cart.lines()
        if not lines:
            self.line_selected_index = None
            widget.update("(no items yet)")
            return

        if self.line_selected_index is not None and self.line_selected_index >= len(lines):
            self.line_selected_index = len(lines) - 1

        visible_rows = self._visible_rows(widget)
        start, end = window_bounds(len(lines), visible_rows, self.line_selected_index)

        text = Text()
        if start > 0:
            text.append("⋮\n", style="dim")

        for idx in range(start, end):
            if idx > start:
                text.append("\n")
            pointer = "➤ " if idx == self.line_selected_index else "  "
            text.append(pointer)
            text.append_text(format_cart_line(lines[idx]))

        if end < len(lines):
            text.append("\n⋮", style="dim")

        widget.update(text)

    def _refresh_search(self) -> None:
        self._refresh_search_bar()
        if self.input_state == "normal":
            self._refresh_results([])
            return
        self._refresh_results(self._filtered_results())

    def _refresh_search_bar(self) -> None:
        bar = self._static("#search-bar")
        if bar is None:
            return
        if self.input_state == "normal":
            status = self.system_status or "Ready"
            bar.update(f"h/l table, space select, / search, a/b/c add table.\nCtrl+S save, Ctrl+P print, Ctrl+T print KOT.\n{status}")
            return

        text = Text()
        text.append("/", style="bold #0b1f0f on #5fbf72")
        text.append(f" {self.query}")
        bar.update(text)

    def _refresh_results(self, results: list[Item]) -> None:
        results_widget = self._static("#results")
        if results_widget is None:
            return
        if self.input_state == "normal":
            results_widget.update("")
            return

        if not results:
            results_widget.update("No results")
            return

        if self.selected_index >= len(results):
            self.selected_index = 0

        visible_rows = self._visible_rows(results_widget)
        start, end = window_bounds(len(results), visible_rows, self.selected_index)

        lines = Text()
        if start > 0:
            lines.append("⋮\n", style="dim")

        for idx in range(start, end):
            if idx > start:
                lines.append("\n")
            pointer = "➤ " if idx == self.selected_index else "  "
            lines.append(f"{pointer}{format_menu_item(results[idx])}")

        if end < len(results):
            lines.append("\n⋮", style="dim")

        results_widget.update(lines)
