import sys

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .db import get_engine

# Portable between SQLite and PostgreSQL. Timestamps are ISO-8601 UTC text.
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS assets (
        asset_id TEXT PRIMARY KEY,
        token_id BIGINT,
        wallet_address TEXT NOT NULL,
        rarity TEXT NOT NULL,
        store TEXT NOT NULL,
        stake_status TEXT NOT NULL DEFAULT 'unstaked',
        staking_source TEXT NOT NULL DEFAULT 'none',
        staked_at TEXT,
        last_reconciled_at TEXT,
        pending_op TEXT,
        name TEXT NOT NULL DEFAULT '',
        image TEXT NOT NULL DEFAULT '',
        metadata_uri TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_assets_wallet ON assets (wallet_address)",
    """
    CREATE TABLE IF NOT EXISTS stake_records (
        wallet_address TEXT NOT NULL,
        asset_id TEXT NOT NULL,
        source TEXT NOT NULL,
        rarity TEXT NOT NULL,
        daily_reward REAL NOT NULL,
        staked_at TEXT NOT NULL,
        unstaked_at TEXT,
        tx_hash TEXT,
        PRIMARY KEY (wallet_address, asset_id, source)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS burn_transactions (
        burn_id TEXT PRIMARY KEY,
        wallet_address TEXT NOT NULL,
        burned_asset_ids TEXT NOT NULL,
        result_rarity TEXT NOT NULL,
        result_asset_id TEXT,
        burn_type TEXT NOT NULL,
        chain_tx_hash TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_burn_transactions_wallet ON burn_transactions (wallet_address)",
    """
    CREATE TABLE IF NOT EXISTS burn_pool (
        pool_id TEXT PRIMARY KEY,
        rarity TEXT NOT NULL,
        cid TEXT NOT NULL,
        metadata_cid TEXT NOT NULL DEFAULT '',
        image_url TEXT NOT NULL DEFAULT '',
        is_distributed BOOLEAN NOT NULL DEFAULT FALSE,
        distributed_to TEXT,
        distributed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_burn_pool_available ON burn_pool (rarity, is_distributed)",
]

TABLES = ["burn_pool", "burn_transactions", "stake_records", "assets"]


def init_schema(engine: Engine):
    with engine.begin() as conn:
        for stmt in SCHEMA:
            conn.execute(text(stmt))


def reset_db(engine: Engine):
    """
    Drop and recreate every table.
    DESTRUCTIVE. Intended for dev/test only.
    """
    with engine.begin() as conn:
        for table in TABLES:
            conn.execute(text(f"DROP TABLE IF EXISTS {table}"))
    init_schema(engine)
    print("database reset complete")


def main():
    """
    Usage:
      python -m neftit.migrate        # create tables
      python -m neftit.migrate reset  # DROP + recreate tables
    """
    engine = get_engine()
    if len(sys.argv) > 1 and sys.argv[1] == "reset":
        reset_db(engine)
        return

    init_schema(engine)
    print("schema ready")


if __name__ == "__main__":
    main()
