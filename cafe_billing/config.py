"""Runtime configuration defaults for persistence, caching and printing."""

from __future__ import annotations

import os

DB_PATH = os.environ.get("CAFE_BILLING_DB_PATH", "data/cafe.db")
CACHE_PATH = os.environ.get("CAFE_BILLING_CACHE_PATH", "data/cache.db")
DEBUG_LOG_PATH = "/tmp/cafe-billing-debug.log"

BACKGROUND_REFRESH_SECONDS = 30.0
CACHE_SWEEP_SECONDS = 5 * 60.0
CACHE_PERSIST_DEBOUNCE_SECONDS = 0.3
TABLE_CACHE_TTL_SECONDS = 30 * 60.0
# Absorbs rapid repeated clicks on the same or neighbouring tables.
TABLE_SWITCH_COOLDOWN_SECONDS = 0.3

DEFAULT_TABLE_CAPACITY = 4
MAX_BULK_TABLES = 100

CAFE_NAME = "Café"
CAFE_ADDRESS = "123 Café Street, City"
CAFE_CONTACT = "123-456-7890"
CASHIER_NAME = "Staff"

PRINTER_USB_VENDOR_ID = 0x28E9
PRINTER_USB_PRODUCT_ID = 0x0289
PRINTER_WIDTH_PX = 384
PRINTER_FONT_SIZE = 24
PRINTER_FONT_PATH = "/System/Library/Fonts/SFNSMono.ttf"
PRINTER_LEFT_INDENT_PX = 8
PRINTER_LINE_CHARS = 32
PRINTER_TAIL_SPACER_PX = 70
