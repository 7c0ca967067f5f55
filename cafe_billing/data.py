"""Default menu seeded into an empty item store."""

from __future__ import annotations

from cafe_billing.persistence import SqliteItemStore

# (name, price, category)
DEFAULT_MENU: list[tuple[str, float, str]] = [
    ("Coffee", 3.5, "Beverages"),
    ("Tea", 2.5, "Beverages"),
    ("Cold Coffee", 4.0, "Beverages"),
    ("Lemonade", 3.0, "Beverages"),
    ("Sandwich", 6.5, "Food"),
    ("Veg Burger", 7.0, "Food"),
    ("Fries", 3.5, "Food"),
    ("Cake", 4.5, "Desserts"),
    ("Brownie", 4.0, "Desserts"),
]


async def seed_menu(item_store: SqliteItemStore, menu: list[tuple[str, float, str]] = DEFAULT_MENU) -> int:
    """Insert ``menu`` when the store has no items yet; returns how many were added."""
    if await item_store.count():
        return 0
    for name, price, category in menu:
        await item_store.create(name, price, category)
    return len(menu)
