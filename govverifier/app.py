"""HTTP service that stores snapshot uploads and serves merkle proofs.

Uploads are parsed by a snapshot reader configured in ``Settings``. It is
called with the raw file bytes and returns an object with these attributes:

* ``slot`` (int), ``root`` (32 bytes) and ``hash`` (bytes, the snapshot hash);
* ``leaf_bundles``: each with ``meta_merkle_leaf`` (``vote_account``,
  ``voting_wallet``, ``stake_merkle_root``, ``active_stake``), ``proof``
  (a list of hashes, or None) and ``stake_merkle_leaves``, each with
  ``stake_account``, ``voting_wallet``, ``active_stake`` and ``proof``.

Accounts may be given as base58 strings or raw bytes; hashes as raw bytes.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import re
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Callable, Mapping, TypeVar

from aiohttp import web

from .base58 import b58encode
from .metrics import Metrics, ProofKind, UploadOutcome
from .middleware import RateLimiter, client_ip_middleware, rate_limit_middleware
from .schema import DEFAULT_DB_PATH
from .store import (
    SnapshotMetaRecord,
    StakeAccountRecord,
    VoteAccountRecord,
    open_database,
)
from .upload import SignatureError, read_file, read_metadata, verify_signature
from .utils import ApiError, validate_network

logger = logging.getLogger(__name__)

DEFAULT_BODY_LIMIT = 100 * 1024 * 1024
DEFAULT_PORT = 3000
DEFAULT_NETWORK = "mainnet"

_UINT_RE = re.compile(r"\+?[0-9]+")
_U64_MAX = 2**64 - 1

SnapshotReader = Callable[[bytes], Any]
T = TypeVar("T")


def _env_uint(environ: Mapping[str, str], key: str, default: int, bits: int) -> int:
    raw = environ.get(key)
    if raw is None or not _UINT_RE.fullmatch(raw):
        return default
    value = int(raw)
    return value if value < 2**bits else default


@dataclass(frozen=True)
class Settings:
    """Service configuration."""

    operator_pubkey: str | None = None
    metrics_auth_token: str | None = None
    db_path: str = DEFAULT_DB_PATH
    port: int = DEFAULT_PORT
    global_refill_interval: int = 10
    global_burst: int = 10
    upload_refill_interval: int = 60
    upload_burst: int = 2
    body_limit: int = DEFAULT_BODY_LIMIT
    snapshot_reader: SnapshotReader | None = field(default=None, compare=False)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Read settings from ``environ`` (the process environment by default)."""
        env = os.environ if environ is None else environ
        return cls(
            operator_pubkey=env.get("OPERATOR_PUBKEY"),
            metrics_auth_token=env.get("METRICS_AUTH_TOKEN"),
            db_path=env.get("DB_PATH", DEFAULT_DB_PATH),
            port=_env_uint(env, "PORT", DEFAULT_PORT, 16),
            global_refill_interval=_env_uint(env, "GLOBAL_REFILL_INTERVAL", 10, 64),
            global_burst=_env_uint(env, "GLOBAL_RATE_BURST", 10, 32),
            upload_refill_interval=_env_uint(env, "UPLOAD_REFILL_INTERVAL", 60, 64),
            upload_burst=_env_uint(env, "UPLOAD_RATE_BURST", 2, 32),
            body_limit=_env_uint(env, "UPLOAD_BODY_LIMIT", DEFAULT_BODY_LIMIT, 64),
        )


def _db(operation: Callable[[], T], error_msg: str) -> T:
    """Run a database operation, turning failures into a 500 error."""
    try:
        return operation()
    except (sqlite3.Error, ValueError) as exc:
        logger.info("%s: %s", error_msg, exc)
        raise ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, error_msg) from exc


def latest_snapshot_slot(
    conn: sqlite3.Connection, network: str, requested_slot: int | None = None
) -> int:
    """Return ``requested_slot``, or the latest stored slot; 404 if there is none."""
    if requested_slot is not None:
        return requested_slot
    slot = _db(
        lambda: SnapshotMetaRecord.get_latest_slot(conn, network),
        "Failed to get latest slot",
    )
    if slot is None:
        raise ApiError(HTTPStatus.NOT_FOUND, f"no snapshots for network {network}")
    return slot


def _network(request: web.Request) -> str:
    network = request.query.get("network", DEFAULT_NETWORK)
    validate_network(network)
    return network


def _query_slot(request: web.Request) -> int:
    raw = request.query.get("slot")
    if raw is None or not _UINT_RE.fullmatch(raw) or int(raw) > _U64_MAX:
        raise ApiError(HTTPStatus.BAD_REQUEST, "missing or invalid slot")
    return int(raw)


def _b58(value: str | bytes) -> str:
    return value if isinstance(value, str) else b58encode(bytes(value))


def _index_snapshot(
    conn: sqlite3.Connection,
    snapshot: Any,
    network: str,
    merkle_root: str,
    snapshot_hash: str,
) -> None:
    SnapshotMetaRecord(
        network=network,
        slot=snapshot.slot,
        merkle_root=merkle_root,
        snapshot_hash=snapshot_hash,
        created_at=datetime.now(timezone.utc).isoformat(),
    ).insert(conn)

    bundles = list(snapshot.leaf_bundles)
    for bundle_idx, bundle in enumerate(bundles):
        if bundle_idx % 100 == 0:
            logger.info("Indexing bundle %d / %d", bundle_idx, len(bundles))
        leaf = bundle.meta_merkle_leaf
        vote_account = _b58(leaf.vote_account)

        VoteAccountRecord(
            network=network,
            snapshot_slot=snapshot.slot,
            vote_account=vote_account,
            voting_wallet=_b58(leaf.voting_wallet),
            stake_merkle_root=b58encode(bytes(leaf.stake_merkle_root)),
            active_stake=leaf.active_stake,
            meta_merkle_proof=[b58encode(bytes(h)) for h in bundle.proof or ()],
        ).insert(conn)

        stake_leaves = list(bundle.stake_merkle_leaves)
        for stake_leaf in stake_leaves:
            StakeAccountRecord(
                network=network,
                snapshot_slot=snapshot.slot,
                stake_account=_b58(stake_leaf.stake_account),
                vote_account=vote_account,
                voting_wallet=_b58(stake_leaf.voting_wallet),
                active_stake=stake_leaf.active_stake,
                stake_merkle_proof=[b58encode(bytes(h)) for h in stake_leaf.proof],
            ).insert(conn)

        logger.debug(
            "Indexed bundle %d: vote_account=%s, %d stake accounts",
            bundle_idx,
            vote_account,
            len(stake_leaves),
        )

    logger.info(
        "Successfully indexed snapshot for slot %d with %d vote accounts",
        snapshot.slot,
        len(bundles),
    )


@web.middleware
async def _api_errors(request: web.Request, handler: Any) -> web.StreamResponse:
    try:
        return await handler(request)
    except ApiError as exc:
        return web.Response(status=int(exc.status))


class _Service:
    def __init__(
        self, conn: sqlite3.Connection, settings: Settings, metrics: Metrics
    ) -> None:
        self.conn = conn
        self.settings = settings
        self.metrics = metrics

    async def health(self, request: web.Request) -> web.Response:
        return web.Response(text="ok")

    async def admin_stats(self, request: web.Request) -> web.Response:
        expected = self.settings.metrics_auth_token
        if expected is None:
            raise ApiError(HTTPStatus.SERVICE_UNAVAILABLE)
        if request.headers.get("x-metrics-token") != expected:
            raise ApiError(HTTPStatus.UNAUTHORIZED)
        return web.json_response(self.metrics.snapshot(self.settings.db_path))

    async def meta(self, request: web.Request) -> web.Response:
        network = _network(request)
        record = _db(
            lambda: SnapshotMetaRecord.get_latest(self.conn, network),
            "Failed to get snapshot meta record",
        )
        if record is None:
            logger.info("No snapshots found for network: %s", network)
            raise ApiError(HTTPStatus.NOT_FOUND)
        return web.json_response(asdict(record))

    async def voter_summary(self, request: web.Request) -> web.Response:
        voting_wallet = request.match_info["voting_wallet"]
        slot = _query_slot(request)
        network = _network(request)
        vote_accounts = _db(
            lambda: VoteAccountRecord.summaries_by_voting_wallet(
                self.conn, network, voting_wallet, slot
            ),
            "Failed to get vote accounts",
        )
        stake_accounts = _db(
            lambda: StakeAccountRecord.summaries_by_voting_wallet(
                self.conn, network, voting_wallet, slot
            ),
            "Failed to get stake accounts",
        )
        logger.debug(
            "Found %d vote accounts and %d stake accounts for voting wallet %s",
            len(vote_accounts),
            len(stake_accounts),
            voting_wallet,
        )
        return web.json_response(
            {
                "network": network,
                "snapshot_slot": slot,
                "voting_wallet": voting_wallet,
                "vote_accounts": [asdict(s) for s in vote_accounts],
                "stake_accounts": [asdict(s) for s in stake_accounts],
            }
        )

    async def vote_proof(self, request: web.Request) -> web.Response:
        vote_account = request.match_info["vote_account"]
        slot = _query_slot(request)
        network = _network(request)
        record = _db(
            lambda: VoteAccountRecord.get_by_account(self.conn, network, vote_account, slot),
            "Failed to get vote account record",
        )
        if record is None:
            logger.info(
                "Vote account %s not found for network %s at slot %d",
                vote_account,
                network,
                slot,
            )
            self.metrics.record_proofs_not_found(ProofKind.VOTE)
            raise ApiError(HTTPStatus.NOT_FOUND)
        return web.json_response(
            {
                "network": network,
                "snapshot_slot": slot,
                "meta_merkle_leaf": {
                    "voting_wallet": record.voting_wallet,
                    "vote_account": record.vote_account,
                    "stake_merkle_root": record.stake_merkle_root,
                    "active_stake": record.active_stake,
                },
                "meta_merkle_proof": record.meta_merkle_proof,
            }
        )

    async def stake_proof(self, request: web.Request) -> web.Response:
        stake_account = request.match_info["stake_account"]
        slot = _query_slot(request)
        network = _network(request)
        record = _db(
            lambda: StakeAccountRecord.get_by_account(
                self.conn, network, stake_account, slot
            ),
            "Failed to get stake account record",
        )
        if record is None:
            logger.info(
                "Stake account %s not found for network %s at slot %d",
                stake_account,
                network,
                slot,
            )
            self.metrics.record_proofs_not_found(ProofKind.STAKE)
            raise ApiError(HTTPStatus.NOT_FOUND)
        return web.json_response(
            {
                "network": network,
                "snapshot_slot": slot,
                "stake_merkle_leaf": {
                    "voting_wallet": record.voting_wallet,
                    "stake_account": record.stake_account,
                    "active_stake": record.active_stake,
                },
                "stake_merkle_proof": record.stake_merkle_proof,
                "vote_account": record.vote_account,
            }
        )

    def _fail(self, outcome: UploadOutcome, status: HTTPStatus, reason: str) -> ApiError:
        logger.info("%s", reason)
        self.metrics.record_upload_outcome(outcome)
        return ApiError(status, reason)

    async def upload(self, request: web.Request) -> web.Response:
        logger.info("POST /upload - Snapshot upload requested")
        limit = self.settings.body_limit
        bad = UploadOutcome.BAD_REQUEST

        try:
            if request.content_length is not None and request.content_length > limit:
                raise ValueError("length limit exceeded")
            reader = await request.multipart()
            meta = await read_metadata(reader)
        except Exception as exc:
            raise self._fail(bad, HTTPStatus.BAD_REQUEST, f"Failed to extract metadata: {exc}")

        try:
            validate_network(meta.network)
        except ApiError:
            self.metrics.record_upload_outcome(bad)
            raise

        try:
            verify_signature(
                meta.slot, meta.merkle_root, meta.signature, self.settings.operator_pubkey
            )
        except SignatureError as exc:
            raise self._fail(
                UploadOutcome.UNAUTHORIZED,
                HTTPStatus.UNAUTHORIZED,
                f"Signature verification failed: {exc}",
            )
        logger.info(
            "Verified upload request: slot=%d, merkle_root=%s, signature=%s",
            meta.slot,
            meta.merkle_root,
            meta.signature,
        )

        try:
            file_data = await read_file(reader)
            if len(file_data) > limit:
                raise ValueError("length limit exceeded")
        except Exception as exc:
            raise self._fail(bad, HTTPStatus.BAD_REQUEST, f"Failed to extract file: {exc}")
        logger.info("Signature verified, processing file (%d bytes)", len(file_data))

        snapshot_reader = self.settings.snapshot_reader
        if snapshot_reader is None:
            raise self._fail(
                bad, HTTPStatus.BAD_REQUEST, "Failed to read snapshot: no reader configured"
            )
        try:
            snapshot = await asyncio.to_thread(snapshot_reader, file_data)
            root = b58encode(bytes(snapshot.root))
            encoded_hash = b58encode(bytes(snapshot.hash))
        except Exception as exc:
            raise self._fail(bad, HTTPStatus.BAD_REQUEST, f"Failed to read snapshot: {exc}")

        if root != meta.merkle_root or snapshot.slot != meta.slot:
            raise self._fail(
                bad, HTTPStatus.BAD_REQUEST, "Merkle root or slot in snapshot mismatch"
            )

        try:
            _index_snapshot(self.conn, snapshot, meta.network, meta.merkle_root, encoded_hash)
        except Exception as exc:
            raise self._fail(
                UploadOutcome.INTERNAL,
                HTTPStatus.INTERNAL_SERVER_ERROR,
                f"Failed to index snapshot data: {exc}",
            )

        self.metrics.record_upload_outcome(UploadOutcome.SUCCESS)
        return web.json_response(
            {"status": "success", "slot": meta.slot, "merkle_root": meta.merkle_root}
        )


def create_app(
    conn: sqlite3.Connection,
    settings: Settings | None = None,
    metrics: Metrics | None = None,
) -> web.Application:
    """Build the web application over an open, migrated database connection."""
    settings = Settings.from_env() if settings is None else settings
    metrics = Metrics() if metrics is None else metrics
    service = _Service(conn, settings, metrics)

    global_limit = rate_limit_middleware(
        RateLimiter(settings.global_refill_interval, settings.global_burst)
    )
    upload_limit = rate_limit_middleware(
        RateLimiter(settings.upload_refill_interval, settings.upload_burst)
    )

    async def limited_upload(request: web.Request) -> web.StreamResponse:
        return await upload_limit(request, service.upload)

    app = web.Application(
        middlewares=[client_ip_middleware, global_limit, _api_errors],
        client_max_size=max(settings.body_limit, 1),
    )
    app.router.add_get("/healthz", service.health)
    app.router.add_get("/meta", service.meta)
    app.router.add_get("/admin/stats", service.admin_stats)
    app.router.add_post("/upload", limited_upload)
    app.router.add_get("/voter/{voting_wallet}", service.voter_summary)
    app.router.add_get("/proof/vote_account/{vote_account}", service.vote_proof)
    app.router.add_get("/proof/stake_account/{stake_account}", service.stake_proof)
    return app


def main(argv: list[str] | None = None) -> int:
    """Start the verifier service, configured from the environment."""
    parser = argparse.ArgumentParser(
        prog="govverifier",
        description="Governance merkle verifier service (configured by environment).",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting Governance Merkle Verifier Service")

    settings = Settings.from_env()
    if settings.operator_pubkey is None or settings.metrics_auth_token is None:
        raise SystemExit("OPERATOR_PUBKEY or METRICS_AUTH_TOKEN is not set")

    conn = open_database(settings.db_path)
    try:
        app = create_app(conn, settings)
        logger.info("Server listening on 0.0.0.0:%d", settings.port)
        web.run_app(app, host="0.0.0.0", port=settings.port, print=None)
    finally:
        conn.close()
    return 0