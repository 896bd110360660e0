"""Load generator for the verifier service's read endpoints.

Configuration comes from the environment: BASE_URL, DB_PATH, NETWORK, SLOT
(required), DURATION_SECS, CONCURRENCY, TARGET_RPS, ENDPOINTS and
ENDPOINT_WEIGHTS. Account identifiers are sampled from a local database.
"""

from __future__ import annotations

import argparse
import asyncio
import math
import os
import random
import re
import sqlite3
import sys
import time
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import aiohttp

ENDPOINT_LABELS = ("voter", "vote_proof", "stake_proof")
DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_DB_PATH = "./governance.db"
DEFAULT_NETWORK = "testnet"
DEFAULT_ENDPOINTS = "voter,vote_proof,stake_proof"
DEFAULT_DURATION_SECS = 30
DEFAULT_CONCURRENCY = 64
REQUEST_TIMEOUT_SECS = 15
ID_LIMIT = 5000

_UINT_RE = re.compile(r"\+?[0-9]+")


def _parse_uint(raw: str | None, bits: int) -> int | None:
    if raw is None or not _UINT_RE.fullmatch(raw):
        return None
    value = int(raw)
    return value if value < 2**bits else None


def parse_endpoints(csv: str) -> list[str]:
    """Return the recognised endpoint labels in ``csv``, in order.

    Unknown entries are ignored; raises ValueError if none remain.
    """
    labels = [
        part.strip().lower()
        for part in csv.split(",")
        if part.strip().lower() in ENDPOINT_LABELS
    ]
    if not labels:
        raise ValueError("ENDPOINTS produced no valid entries")
    return labels


def parse_weights(spec: str | None) -> dict[str, int]:
    """Parse ``name=weight,...``; malformed entries are skipped, weights are at least 1."""
    weights: dict[str, int] = {}
    if spec is None:
        return weights
    for entry in spec.split(","):
        parts = entry.split("=")
        if len(parts) < 2:
            continue
        value = _parse_uint(parts[1].strip(), 32)
        if value is None:
            continue
        weights[parts[0].strip().lower()] = max(value, 1)
    return weights


def build_pick_bag(labels: list[str], weights: Mapping[str, int]) -> list[int]:
    """List each label index as many times as its weight (default 1)."""
    bag = [
        index
        for index, name in enumerate(labels)
        for _ in range(weights.get(name, 1))
    ]
    if not bag:
        raise ValueError("No endpoints to pick from")
    return bag


def percentile(sorted_values: list[int], q: float) -> int:
    """The value at quantile ``q`` of an ascending list, nearest rank; 0 when empty."""
    if not sorted_values:
        return 0
    position = (len(sorted_values) - 1) * q
    return sorted_values[int(math.floor(position + 0.5))]


def build_url(base_url: str, label: str, ident: str, network: str, slot: int) -> str:
    """The request URL for an endpoint label and account or wallet identifier."""
    if label == "voter":
        path = f"/voter/{ident}"
    elif label == "vote_proof":
        path = f"/proof/vote_account/{ident}"
    else:
        path = f"/proof/stake_account/{ident}"
    return f"{base_url}{path}?network={network}&slot={slot}"


@dataclass
class LoadTestConfig:
    """Settings for one load-test run."""

    slot: int
    base_url: str = DEFAULT_BASE_URL
    db_path: str = DEFAULT_DB_PATH
    network: str = DEFAULT_NETWORK
    duration_secs: int = DEFAULT_DURATION_SECS
    concurrency: int = DEFAULT_CONCURRENCY
    target_rps: int | None = None
    endpoints: list[str] = field(default_factory=lambda: list(ENDPOINT_LABELS))
    weights: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> LoadTestConfig:
        """Read the configuration from ``environ`` (the process environment by default)."""
        env = os.environ if environ is None else environ
        slot = _parse_uint(env.get("SLOT"), 64)
        if slot is None:
            raise ValueError("SLOT env is required (u64)")
        duration = _parse_uint(env.get("DURATION_SECS"), 64)
        concurrency = _parse_uint(env.get("CONCURRENCY"), 64)
        target_rps = _parse_uint(env.get("TARGET_RPS"), 64)
        return cls(
            slot=slot,
            base_url=env.get("BASE_URL", DEFAULT_BASE_URL),
            db_path=env.get("DB_PATH", DEFAULT_DB_PATH),
            network=env.get("NETWORK", DEFAULT_NETWORK),
            duration_secs=DEFAULT_DURATION_SECS if duration is None else duration,
            concurrency=DEFAULT_CONCURRENCY if concurrency is None else concurrency,
            target_rps=target_rps or None,
            endpoints=parse_endpoints(env.get("ENDPOINTS", DEFAULT_ENDPOINTS)),
            weights=parse_weights(env.get("ENDPOINT_WEIGHTS")),
        )

    def describe(self) -> list[str]:
        """Human-readable lines summarising the configuration."""
        mode = (
            f"TARGET_RPS={self.target_rps}"
            if self.target_rps is not None
            else "(best-effort firehose)"
        )
        return [
            f"BASE_URL={self.base_url}",
            f"DB_PATH={self.db_path}",
            f"NETWORK={self.network} SLOT={self.slot}",
            f"DURATION_SECS={self.duration_secs} CONCURRENCY={self.concurrency} {mode}",
            f"ENDPOINTS={','.join(self.endpoints)}",
        ]


@dataclass
class Stats:
    """Outcome counts and latencies, overall and per endpoint label."""

    labels: list[str]
    ok: int = 0
    err: int = 0
    ok_per: list[int] = field(init=False)
    err_per: list[int] = field(init=False)
    latencies_ms: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.ok_per = [0] * len(self.labels)
        self.err_per = [0] * len(self.labels)

    @property
    def completed(self) -> int:
        return self.ok + self.err

    def record(self, ok: bool, elapsed_ms: int, label_index: int) -> None:
        """Count one finished request."""
        if ok:
            self.ok += 1
            self.ok_per[label_index] += 1
        else:
            self.err += 1
            self.err_per[label_index] += 1
        self.latencies_ms.append(elapsed_ms)

    def summary_lines(self, issued: int, elapsed: float) -> list[str]:
        """The summary report: one overall line, then one line per label."""
        latencies = sorted(self.latencies_ms)
        qps = self.completed / elapsed if elapsed > 0 else 0.0
        lines = [
            f"Summary: issued={issued} completed={self.completed} ok={self.ok} "
            f"err={self.err} p50={percentile(latencies, 0.50)}ms "
            f"p90={percentile(latencies, 0.90)}ms p99={percentile(latencies, 0.99)}ms "
            f"qps={qps:.1f}"
        ]
        lines.extend(
            f"  {name}: ok={ok} err={err} total={ok + err}"
            for name, ok, err in zip(self.labels, self.ok_per, self.err_per)
        )
        return lines


def load_ids(db_path: str) -> tuple[list[str], list[str], list[str]]:
    """Return (vote accounts, stake accounts, distinct voting wallets) from the database."""
    if not Path(db_path).is_file():
        raise FileNotFoundError(f"database not found at {db_path}")
    with closing(sqlite3.connect(db_path)) as conn:
        vote_accounts = [
            row[0]
            for row in conn.execute(
                f"SELECT vote_account FROM vote_accounts LIMIT {ID_LIMIT}"
            )
        ]
        stake_accounts = [
            row[0]
            for row in conn.execute(
                f"SELECT stake_account FROM stake_accounts LIMIT {ID_LIMIT}"
            )
        ]
        voting_wallets = [
            row[0]
            for row in conn.execute(
                f"SELECT DISTINCT voting_wallet FROM vote_accounts LIMIT {ID_LIMIT}"
            )
        ]
    return vote_accounts, stake_accounts, voting_wallets


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


async def _request(
    session: aiohttp.ClientSession,
    url: str,
    label_index: int,
    stats: Stats,
    semaphore: asyncio.Semaphore,
) -> None:
    started = time.perf_counter()
    try:
        try:
            async with session.get(url) as resp:
                elapsed_ms = _elapsed_ms(started)
                ok = 200 <= resp.status < 300
                detail = f"status={resp.status} {resp.reason or ''}".rstrip()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            elapsed_ms = _elapsed_ms(started)
            ok = False
            detail = f"net={exc}"
        stats.record(ok, elapsed_ms, label_index)
    finally:
        semaphore.release()
    if not ok:
        print(f"err {elapsed_ms}ms {url} {detail}", file=sys.stderr)


async def run(config: LoadTestConfig) -> Stats:
    """Drive requests for ``config.duration_secs`` seconds, print a summary, return the stats."""
    pick_bag = build_pick_bag(config.endpoints, config.weights)
    for line in config.describe():
        print(line)

    vote_accounts, stake_accounts, voting_wallets = load_ids(config.db_path)
    print(
        f"Loaded {len(vote_accounts)} vote, {len(stake_accounts)} stake, "
        f"{len(voting_wallets)} wallets"
    )
    if not vote_accounts and not stake_accounts:
        raise RuntimeError(f"No accounts found in DB at {config.db_path}")

    pools = {"voter": voting_wallets, "vote_proof": vote_accounts}
    stats = Stats(list(config.endpoints))
    rng = random.Random()
    semaphore = asyncio.Semaphore(config.concurrency)
    tasks: set[asyncio.Task[None]] = set()
    issued = 0

    loop = asyncio.get_running_loop()
    start = loop.time()
    end = start + config.duration_secs
    period = (
        (1_000_000_000 // config.target_rps) / 1e9
        if config.target_rps is not None
        else None
    )
    next_tick = start

    timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECS)
    connector = aiohttp.TCPConnector(limit=0, keepalive_timeout=60)
    async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
        while loop.time() < end:
            if period is not None:
                now = loop.time()
                if next_tick > now:
                    await asyncio.sleep(next_tick - now)
                next_tick = max(next_tick, now) + period
            await semaphore.acquire()
            issued += 1

            index = rng.choice(pick_bag)
            label = config.endpoints[index]
            ids = pools.get(label, stake_accounts)
            if not ids:
                semaphore.release()
                await asyncio.sleep(0)
                continue
            url = build_url(config.base_url, label, rng.choice(ids), config.network, config.slot)
            task = asyncio.create_task(_request(session, url, index, stats, semaphore))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        if tasks:
            await asyncio.gather(*tasks)

    for line in stats.summary_lines(issued, loop.time() - start):
        print(line)
    return stats


def main(argv: list[str] | None = None) -> int:
    """Run a load test configured from the environment."""
    parser = argparse.ArgumentParser(
        prog="govverifier-loadtest",
        description="Load test for the verifier service (configured by environment).",
    )
    parser.parse_args(argv)
    try:
        config = LoadTestConfig.from_env()
        asyncio.run(run(config))
    except (ValueError, RuntimeError, OSError, sqlite3.Error) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0