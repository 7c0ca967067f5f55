"""Thermal printer output: rasterize receipt lines with Pillow, send over ESC/POS."""

from __future__ import annotations

import os
from pathlib import Path

from cafe_billing.config import (
    PRINTER_FONT_PATH,
    PRINTER_FONT_SIZE,
    PRINTER_LEFT_INDENT_PX,
    PRINTER_TAIL_SPACER_PX,
    PRINTER_USB_PRODUCT_ID,
    PRINTER_USB_VENDOR_ID,
    PRINTER_WIDTH_PX,
)

# Extra vertical headroom per line to avoid descender clipping on thermal output.
_LINE_EXTRA_PX = 8
_FONT_OVERRIDE_ENV = "CAFE_BILLING_PRINTER_FONT_PATH"
# Receipt columns are aligned with spaces, so monospace fonts come first.
_LINUX_FONT_FALLBACKS = (
    "/usr/share/fonts/TTF/DejaVuSansMono.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf",
    "/usr/share/fonts/dejavu/DejaVuSansMono.ttf",
    "/usr/share/fonts/liberation/LiberationMono-Regular.ttf",
)


def resolve_printer_font_path() -> str:
    """Return the first existing font among the env override, the configured path and the fallbacks."""
    override = os.environ.get(_FONT_OVERRIDE_ENV, "").strip()
    for candidate in (override, PRINTER_FONT_PATH, *_LINUX_FONT_FALLBACKS):
        if candidate and Path(candidate).is_file():
            return candidate
    raise RuntimeError(f"No printer font found; set {_FONT_OVERRIDE_ENV} to a .ttf file")


def check_printer_dependencies() -> tuple[bool, str]:
    """Check whether printer dependencies are importable."""
    try:
        from escpos.printer import Usb  # noqa: F401
        from PIL import ImageFont

        font_path = resolve_printer_font_path()
        ImageFont.truetype(font_path, PRINTER_FONT_SIZE)
    except Exception as exc:
        return (False, f"Printer unavailable: {exc}")
    return (True, "Printer ready")


def render_line(text: str, font: object) -> object:
    """Render one receipt line onto a 1-bit canvas of printer width."""
    from PIL import Image, ImageDraw

    canvas_height = PRINTER_FONT_SIZE + _LINE_EXTRA_PX
    img = Image.new("1", (PRINTER_WIDTH_PX, canvas_height), color=1)
    if not text.strip():
        return img
    draw = ImageDraw.Draw(img)

    bbox = draw.textbbox((0, 0), text, font=font)
    text_height = bbox[3] - bbox[1]
    # Offset by bbox top so descenders are not clipped.
    y = (canvas_height - text_height) // 2 - bbox[1]
    draw.text((PRINTER_LEFT_INDENT_PX, y), text, font=font, fill=0)
    return img


def render_spacer(height_px: int) -> object:
    from PIL import Image

    return Image.new("1", (PRINTER_WIDTH_PX, max(1, height_px)), color=1)


def print_receipt(lines: list[str]) -> None:
    """Print receipt lines top to bottom and cut the ticket."""
    if not lines:
        return

    try:
        from escpos.printer import Usb
        from PIL import ImageFont
    except Exception as exc:
        raise RuntimeError(f"Printer dependencies unavailable: {exc}") from exc

    printer = Usb(PRINTER_USB_VENDOR_ID, PRINTER_USB_PRODUCT_ID)
    font = ImageFont.truetype(resolve_printer_font_path(), PRINTER_FONT_SIZE)
    for line in lines:
        printer.image(render_line(line, font))
    printer.image(render_spacer(PRINTER_TAIL_SPACER_PX))
    printer.cut()
