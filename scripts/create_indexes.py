# scripts/create_indexes.py
"""
Create/ensure the MongoDB indexes the price sync relies on.

The upsert writer keys on (symbol, exchange) for the catalog and on
(exchange, symbol_token) for stock_mapping; without unique indexes two
concurrent batches could insert duplicates.

Run from project root:
  - python scripts/create_indexes.py
  - OR: python -m scripts.create_indexes
"""

import asyncio
import os
import sys

# --- Make sure 'app' package is importable when running this file directly ---
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from motor.motor_asyncio import AsyncIOMotorClient  # type: ignore

from app.settings import settings
from app.mongo_collections import (
    STOCK_SYMBOLS,
    STOCK_SYMBOLS_KEY,
    STOCK_MAPPING,
    STOCK_MAPPING_KEY,
)


async def ensure_indexes(db) -> None:
    # STOCK_SYMBOLS (one per symbol + exchange)
    await db[STOCK_SYMBOLS].create_index([(k, 1) for k in STOCK_SYMBOLS_KEY], unique=True)
    await db[STOCK_SYMBOLS].create_index([("exchange", 1), ("name", 1)])

    # STOCK_MAPPING (one per exchange + symbol token)
    await db[STOCK_MAPPING].create_index([(k, 1) for k in STOCK_MAPPING_KEY], unique=True)
    await db[STOCK_MAPPING].create_index([("trading_symbol", 1)])
    await db[STOCK_MAPPING].create_index([("last_updated", -1)])


async def main_async() -> None:
    client = AsyncIOMotorClient(settings.mongodb_uri)
    try:
        await ensure_indexes(client[settings.mongodb_db])
    finally:
        client.close()


def main() -> None:
    try:
        asyncio.run(main_async())
        print("✅ Indexes ensured.")
    except Exception as e:
        print(f"❌ Failed to create indexes: {e}")
        raise


if __name__ == "__main__":
    main()
