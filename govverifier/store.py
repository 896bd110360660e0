"""Record types and their storage in the SQLite database."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from .schema import run_migrations

logger = logging.getLogger(__name__)

_I64_MAX = 2**63 - 1


def _to_i64(value: int, name: str) -> int:
    """Check that an unsigned 64-bit value fits the signed column type."""
    if not 0 <= value <= _I64_MAX:
        raise ValueError(f"{name} out of range: {value}")
    return value


def _load_proof(raw: str) -> list[str]:
    try:
        proof = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(proof, list) or not all(isinstance(p, str) for p in proof):
        return []
    return proof


def open_database(db_path: str) -> sqlite3.Connection:
    """Open (creating if needed) the database at ``db_path`` and migrate it."""
    logger.info("Opening database at %r", db_path)
    if db_path != ":memory:":
        path = Path(db_path)
        if str(path.parent) not in ("", "."):
            path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)

    conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    try:
        run_migrations(conn)
    except BaseException:
        conn.close()
        raise
    logger.info("Database initialized successfully")
    return conn


@dataclass(frozen=True)
class MigrationRecord:
    """A row of the schema_migrations table."""

    version: int
    applied_at: str
    description: str


@dataclass(frozen=True)
class VoteAccountSummary:
    vote_account: str
    active_stake: int


@dataclass(frozen=True)
class StakeAccountSummary:
    stake_account: str
    vote_account: str
    active_stake: int


@dataclass
class VoteAccountRecord:
    network: str
    snapshot_slot: int
    vote_account: str
    voting_wallet: str
    stake_merkle_root: str
    active_stake: int
    meta_merkle_proof: list[str] = field(default_factory=list)

    def insert(self, conn: sqlite3.Connection) -> None:
        """Insert or replace this record."""
        logger.debug(
            "Inserting vote account: %s for slot %d", self.vote_account, self.snapshot_slot
        )
        params = (
            self.network,
            _to_i64(self.snapshot_slot, "snapshot_slot"),
            self.vote_account,
            self.voting_wallet,
            self.stake_merkle_root,
            _to_i64(self.active_stake, "active_stake"),
            json.dumps(self.meta_merkle_proof),
        )
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO vote_accounts "
                "(network, snapshot_slot, vote_account, voting_wallet, stake_merkle_root, "
                "active_stake, meta_merkle_proof) VALUES (?, ?, ?, ?, ?, ?, ?)",
                params,
            )

    @classmethod
    def summaries_by_voting_wallet(
        cls, conn: sqlite3.Connection, network: str, voting_wallet: str, snapshot_slot: int
    ) -> list[VoteAccountSummary]:
        """Vote accounts of a voting wallet at a slot, ordered by vote account."""
        rows = conn.execute(
            "SELECT vote_account, active_stake FROM vote_accounts "
            "WHERE network = ? AND voting_wallet = ? AND snapshot_slot = ? "
            "ORDER BY vote_account",
            (network, voting_wallet, _to_i64(snapshot_slot, "snapshot_slot")),
        ).fetchall()
        return [VoteAccountSummary(account, int(stake)) for account, stake in rows]

    @classmethod
    def get_by_account(
        cls, conn: sqlite3.Connection, network: str, vote_account: str, snapshot_slot: int
    ) -> VoteAccountRecord | None:
        row = conn.execute(
            "SELECT network, snapshot_slot, vote_account, voting_wallet, stake_merkle_root, "
            "active_stake, meta_merkle_proof FROM vote_accounts "
            "WHERE network = ? AND vote_account = ? AND snapshot_slot = ?",
            (network, vote_account, _to_i64(snapshot_slot, "snapshot_slot")),
        ).fetchone()
        if row is None:
            return None
        net, slot, account, wallet, root, stake, proof = row
        return cls(net, int(slot), account, wallet, root, int(stake), _load_proof(proof))


@dataclass
class StakeAccountRecord:
    network: str
    snapshot_slot: int
    stake_account: str
    vote_account: str
    voting_wallet: str
    active_stake: int
    stake_merkle_proof: list[str] = field(default_factory=list)

    def insert(self, conn: sqlite3.Connection) -> None:
        """Insert or replace this record."""
        logger.debug(
            "Inserting stake account: %s for slot %d", self.stake_account, self.snapshot_slot
        )
        params = (
            self.network,
            _to_i64(self.snapshot_slot, "snapshot_slot"),
            self.stake_account,
            self.vote_account,
            self.voting_wallet,
            _to_i64(self.active_stake, "active_stake"),
            json.dumps(self.stake_merkle_proof),
        )
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO stake_accounts "
                "(network, snapshot_slot, stake_account, vote_account, voting_wallet, "
                "active_stake, stake_merkle_proof) VALUES (?, ?, ?, ?, ?, ?, ?)",
                params,
            )

    @classmethod
    def summaries_by_voting_wallet(
        cls, conn: sqlite3.Connection, network: str, voting_wallet: str, snapshot_slot: int
    ) -> list[StakeAccountSummary]:
        """Stake accounts of a voting wallet at a slot, ordered by stake account."""
        rows = conn.execute(
            "SELECT stake_account, vote_account, active_stake FROM stake_accounts "
            "WHERE network = ? AND voting_wallet = ? AND snapshot_slot = ? "
            "ORDER BY stake_account",
            (network, voting_wallet, _to_i64(snapshot_slot, "snapshot_slot")),
        ).fetchall()
        return [
            StakeAccountSummary(stake_account, vote_account, int(stake))
            for stake_account, vote_account, stake in rows
        ]

    @classmethod
    def get_by_account(
        cls, conn: sqlite3.Connection, network: str, stake_account: str, snapshot_slot: int
    ) -> StakeAccountRecord | None:
        row = conn.execute(
            "SELECT network, snapshot_slot, stake_account, vote_account, voting_wallet, "
            "active_stake, stake_merkle_proof FROM stake_accounts "
            "WHERE network = ? AND stake_account = ? AND snapshot_slot = ?",
            (network, stake_account, _to_i64(snapshot_slot, "snapshot_slot")),
        ).fetchone()
        if row is None:
            return None
        net, slot, account, vote_account, wallet, stake, proof = row
        return cls(
            net, int(slot), account, vote_account, wallet, int(stake), _load_proof(proof)
        )


@dataclass
class SnapshotMetaRecord:
    network: str
    slot: int
    merkle_root: str
    snapshot_hash: str
    created_at: str

    def insert(self, conn: sqlite3.Connection) -> None:
        """Insert or replace this record."""
        logger.debug(
            "Inserting snapshot meta for slot %d on network %s", self.slot, self.network
        )
        params = (
            self.network,
            _to_i64(self.slot, "slot"),
            self.merkle_root,
            self.snapshot_hash,
            self.created_at,
        )
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO snapshot_meta "
                "(network, slot, merkle_root, snapshot_hash, created_at) VALUES (?, ?, ?, ?, ?)",
                params,
            )

    @classmethod
    def get_latest(cls, conn: sqlite3.Connection, network: str) -> SnapshotMetaRecord | None:
        """The snapshot with the highest slot on ``network``, if any."""
        row = conn.execute(
            "SELECT network, slot, merkle_root, snapshot_hash, created_at FROM snapshot_meta "
            "WHERE network = ? ORDER BY slot DESC LIMIT 1",
            (network,),
        ).fetchone()
        if row is None:
            return None
        net, slot, root, snapshot_hash, created_at = row
        return cls(net, int(slot), root, snapshot_hash, created_at)

    @classmethod
    def get_latest_slot(cls, conn: sqlite3.Connection, network: str) -> int | None:
        """The highest snapshot slot on ``network``, if any."""
        row = conn.execute(
            "SELECT slot FROM snapshot_meta WHERE network = ? ORDER BY slot DESC LIMIT 1",
            (network,),
        ).fetchone()
        return None if row is None else int(row[0])