"""Entry point for the cafe-billing Textual app."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from textual.logging import TextualHandler

from cafe_billing.billing_app import BillingApp
from cafe_billing.cache import PersistedCache
from cafe_billing.config import CACHE_PATH, DB_PATH, DEBUG_LOG_PATH
from cafe_billing.data import seed_menu
from cafe_billing.persistence import SqliteBillStore, SqliteItemStore, SqliteTableStore, bootstrap_schema
from cafe_billing.session import BillingSession

logger = logging.getLogger(__name__)


def configure_logging(log_path: str | Path = DEBUG_LOG_PATH) -> None:
    """Debug log file plus Textual's devtools console."""
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[logging.FileHandler(log_path, encoding="utf-8"), TextualHandler()],
        force=True,
    )


def build_session(db_path: str | Path = DB_PATH, cache_path: str | Path = CACHE_PATH) -> BillingSession:
    bootstrap_schema(db_path)
    return BillingSession(
        item_store=SqliteItemStore(db_path),
        table_store=SqliteTableStore(db_path),
        bill_store=SqliteBillStore(db_path),
        cache=PersistedCache(cache_path),
    )


def main() -> None:
    """Run the Textual application."""
    configure_logging()
    session = build_session()
    added = asyncio.run(seed_menu(session.item_store))
    logger.info("app_start db=%s cache=%s seeded_items=%d", DB_PATH, CACHE_PATH, added)
    BillingApp(session).run()


if __name__ == "__main__":
    main()
