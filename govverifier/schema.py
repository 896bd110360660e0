"""Database schema definition and migrations."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 1
MIGRATION_DESCRIPTIONS = ("Initial schema with network support",)
DEFAULT_DB_PATH = "governance.db"

CREATE_MIGRATIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL,
    description TEXT NOT NULL
)
"""

CREATE_VOTE_ACCOUNTS_TABLE_SQL = """
CREATE TABLE vote_accounts (
    network TEXT NOT NULL,
    snapshot_slot INTEGER NOT NULL,
    vote_account TEXT NOT NULL,
    voting_wallet TEXT NOT NULL,
    stake_merkle_root TEXT NOT NULL,
    active_stake INTEGER NOT NULL,
    meta_merkle_proof TEXT NOT NULL,
    PRIMARY KEY (network, vote_account, snapshot_slot)
)
"""

CREATE_STAKE_ACCOUNTS_TABLE_SQL = """
CREATE TABLE stake_accounts (
    network TEXT NOT NULL,
    snapshot_slot INTEGER NOT NULL,
    stake_account TEXT NOT NULL,
    vote_account TEXT NOT NULL,
    voting_wallet TEXT NOT NULL,
    active_stake INTEGER NOT NULL,
    stake_merkle_proof TEXT NOT NULL,
    PRIMARY KEY (network, stake_account, snapshot_slot)
)
"""

CREATE_SNAPSHOT_META_TABLE_SQL = """
CREATE TABLE snapshot_meta (
    network TEXT NOT NULL,
    slot INTEGER NOT NULL,
    merkle_root TEXT NOT NULL,
    snapshot_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (network, slot)
)
"""

CREATE_DB_INDEXES = (
    "CREATE INDEX idx_vote_voting_wallet ON vote_accounts(network, voting_wallet, snapshot_slot)",
    "CREATE INDEX idx_stake_voting_wallet ON stake_accounts(network, voting_wallet, snapshot_slot)",
    "CREATE INDEX idx_snapshot_created_at ON snapshot_meta(network, created_at)",
    # Covering indexes so ORDER BY needs no extra sort.
    "CREATE INDEX idx_vote_voting_wallet_order ON vote_accounts(network, voting_wallet, snapshot_slot, vote_account)",
    "CREATE INDEX idx_stake_voting_wallet_order ON stake_accounts(network, voting_wallet, snapshot_slot, stake_account)",
)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements in one explicit transaction."""
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied schema version, or 0 if none is recorded."""
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    except sqlite3.Error:
        return 0
    if row is None or row[0] is None:
        return 0
    return int(row[0])


def _apply_migration_v1(conn: sqlite3.Connection) -> None:
    logger.info("Applying migration v1: %s", MIGRATION_DESCRIPTIONS[0])
    with transaction(conn):
        conn.execute(CREATE_VOTE_ACCOUNTS_TABLE_SQL)
        conn.execute(CREATE_STAKE_ACCOUNTS_TABLE_SQL)
        conn.execute(CREATE_SNAPSHOT_META_TABLE_SQL)
        for index_sql in CREATE_DB_INDEXES:
            conn.execute(index_sql)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at, description) VALUES (?, ?, ?)",
            (1, datetime.now(timezone.utc).isoformat(), MIGRATION_DESCRIPTIONS[0]),
        )
    logger.info("Migration v1 completed successfully")


def run_migrations(conn: sqlite3.Connection) -> None:
    """Bring the database schema up to the current version."""
    logger.info("Running database migrations")
    conn.execute(CREATE_MIGRATIONS_TABLE_SQL)
    if conn.in_transaction:
        conn.commit()

    version = current_version(conn)
    logger.info("Current database version: %d", version)

    if version < 1:
        _apply_migration_v1(conn)

    logger.info("All migrations completed")