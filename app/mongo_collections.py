# app/mongo_collections.py

STOCK_SYMBOLS = "stock_symbols"
STOCK_MAPPING = "stock_mapping"

# Conflict keys used by the upsert writer. Both are backed by unique indexes
# (see scripts/create_indexes.py).
STOCK_SYMBOLS_KEY = ("symbol", "exchange")
STOCK_MAPPING_KEY = ("exchange", "symbol_token")

# Notes:
# - STOCK_SYMBOLS is the full equity catalog, rebuilt by /refresh-stocks.
# - STOCK_MAPPING holds the tracked instruments and their cmp / lcp / last_updated.
