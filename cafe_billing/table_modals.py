"""Modal screens for adding tables in bulk or by custom name."""

from __future__ import annotations

from typing import Callable

from textual.app import ComposeResult
from textual.containers import Container
from textual.events import Key
from textual.screen import ModalScreen
from textual.widgets import Static

from cafe_billing.config import MAX_BULK_TABLES

_DIALOG_CSS = """
    {name} {{
        align: center middle;
        background: $background 60%;
    }}

    .table-dialog {{
        width: 60;
        height: auto;
        border: round $secondary;
        background: $panel;
        padding: 1 2;
    }}

    .table-dialog-title {{
        text-style: bold;
        margin-bottom: 1;
        color: white;
    }}

    .table-dialog-prompt {{
        color: white;
        margin-bottom: 1;
    }}

    .table-dialog-value {{
        border: heavy $secondary;
        padding: 0 1;
        color: white;
        margin-bottom: 1;
    }}

    .table-dialog-preview {{
        color: #b8e0c0;
        margin-bottom: 1;
    }}

    .table-dialog-error {{
        color: #ffb3b3;
        margin-bottom: 1;
    }}

    .table-dialog-help {{
        color: #dddddd;
    }}
"""


class BulkTablesModal(ModalScreen[int | None]):
    """Prompt for how many tables to add at once."""

    CSS = _DIALOG_CSS.format(name="BulkTablesModal")

    def __init__(self, preview: Callable[[int], str]) -> None:
        super().__init__()
        self.preview = preview
        self.value = ""
        self.error = ""

    def compose(self) -> ComposeResult:
        with Container(classes="table-dialog"):
            yield Static("Add Multiple Tables", classes="table-dialog-title")
            yield Static(f"How many tables? (1 to {MAX_BULK_TABLES})", classes="table-dialog-prompt")
            yield Static(id="bulk-value", classes="table-dialog-value")
            yield Static(id="bulk-preview", classes="table-dialog-preview")
            yield Static(id="bulk-error", classes="table-dialog-error")
            yield Static("Digits only. Enter confirm. Backspace delete. Esc/q/Ctrl+C cancel.", classes="table-dialog-help")

    def on_mount(self) -> None:
        self._refresh_content()

    def on_key(self, event: Key) -> None:
        if event.key in {"escape", "q", "ctrl+c"}:
            self.dismiss(None)
            event.stop()
            return

        if event.key == "enter":
            self._confirm()
            event.stop()
            return

        if event.key == "backspace":
            if self.value:
                self.value = self.value[:-1]
                self.error = ""
                self._refresh_content()
            event.stop()
            return

        if event.is_printable and event.character and event.character.isdigit():
            if len(self.value) < 3:
                self.value += event.character
            self.error = ""
            self._refresh_content()
            event.stop()

    def _parsed(self) -> int | None:
        if not self.value:
            return None
        parsed = int(self.value)
        if not (1 <= parsed <= MAX_BULK_TABLES):
            return None
        return parsed

    def _confirm(self) -> None:
        if not self.value:
            self.error = "Number of tables is required."
            self._refresh_content()
            return

        parsed = self._parsed()
        if parsed is None:
            self.error = f"Number of tables must be between 1 and {MAX_BULK_TABLES}."
            self._refresh_content()
            return

        self.dismiss(parsed)

    def _refresh_content(self) -> None:
        self.query_one("#bulk-value", Static).update(self.value or "")
        parsed = self._parsed()
        preview = f"Will create tables: {self.preview(parsed)}" if parsed is not None else ""
        self.query_one("#bulk-preview", Static).update(preview)
        self.query_one("#bulk-error", Static).update(self.error or "")


class CustomTableModal(ModalScreen[str | None]):
    """
    Prompt for a custom table name.

    A name that collides with the automatic numbering shows a warning on the
    first Enter; a second Enter with the same name confirms it.
    """

    CSS = _DIALOG_CSS.format(name="CustomTableModal")

    def __init__(self, warning_for: Callable[[str], str | None]) -> None:
        super().__init__()
        self.warning_for = warning_for
        self.value = ""
        self.error = ""
        self.warning = ""
        self._acknowledged = ""

    def compose(self) -> ComposeResult:
        with Container(classes="table-dialog"):
            yield Static("Add Custom Table", classes="table-dialog-title")
            yield Static("Table name (e.g. 12A, Patio, Bar 2)", classes="table-dialog-prompt")
            yield Static(id="custom-value", classes="table-dialog-value")
            yield Static(id="custom-warning", classes="table-dialog-preview")
            yield Static(id="custom-error", classes="table-dialog-error")
            yield Static("Enter confirm. Backspace delete. Esc/Ctrl+C cancel.", classes="table-dialog-help")

    def on_mount(self) -> None:
        self._refresh_content()

    def on_key(self, event: Key) -> None:
        if event.key in {"escape", "ctrl+c"}:
            self.dismiss(None)
            event.stop()
            return

        if event.key == "enter":
            self._confirm()
            event.stop()
            return

        if event.key == "backspace":
            if self.value:
                self._edit(self.value[:-1])
            event.stop()
            return

        if event.is_printable and event.character and len(event.character) == 1:
            if len(self.value) < 20:
                self._edit(self.value + event.character)
            event.stop()

    def _edit(self, value: str) -> None:
        self.value = value
        self.error = ""
        self.warning = ""
        self._refresh_content()

    def _confirm(self) -> None:
        name = self.value.strip()
        if not name:
            self.error = "Please enter a table name."
            self._refresh_content()
            return

        warning = self.warning_for(name)
        if warning and self._acknowledged != name:
            self._acknowledged = name
            self.warning = f"{warning} Press Enter again to add it anyway."
            self._refresh_content()
            return

        self.dismiss(name)

    def _refresh_content(self) -> None:
        self.query_one("#custom-value", Static).update(self.value or "")
        self.query_one("#custom-warning", Static).update(self.warning or "")
        self.query_one("#custom-error", Static).update(self.error or "")
