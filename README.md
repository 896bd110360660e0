# govverifier

An aiohttp service that accepts signed governance Merkle snapshots, indexes
every vote account and stake account they contain into SQLite, and serves the
Merkle leaves and proofs back to clients that need to prove their voting
power. A small load generator for the read endpoints is included.

## Installation

```
pip install .
```

For running the test suite:

```
pip install ".[test]"
pytest
```

## Running the service

```
OPERATOR_PUBKEY=<base58 operator public key> METRICS_AUTH_TOKEN=token govverifier
```

`govverifier` (`govverifier.app:main`) refuses to start unless both
`OPERATOR_PUBKEY` and `METRICS_AUTH_TOKEN` are set. It opens (and creates and
migrates, if needed) the SQLite database and listens on all interfaces. Other
settings are read from the environment by `Settings.from_env`:

| Variable                 | Default         | Meaning                                            |
|--------------------------|-----------------|----------------------------------------------------|
| `DB_PATH`                | `governance.db` | SQLite file; `:memory:` keeps everything in memory |
| `PORT`                   | `3000`          | Port to listen on                                  |
| `GLOBAL_REFILL_INTERVAL` | `10`            | Seconds to restore one request, all routes         |
| `GLOBAL_RATE_BURST`      | `10`            | Burst size for all routes, per client IP           |
| `UPLOAD_REFILL_INTERVAL` | `60`            | Seconds to restore one upload                      |
| `UPLOAD_RATE_BURST`      | `2`             | Burst size for uploads, per client IP              |
| `UPLOAD_BODY_LIMIT`      | 100 MiB         | Largest accepted upload body, in bytes             |

Values that are not unsigned integers in range fall back to their defaults.
Rate limits are per-client token buckets keyed on the client IP, taken from
`CF-Connecting-IP`, then the first entry of `X-Forwarded-For`, then the socket
peer. A client over its limit gets 429 with a `retry-after` header.

## Endpoints

Every query endpoint accepts `network`, one of `mainnet` (the default),
`testnet` or `devnet`; any other value is answered with 400. Endpoints that
take `slot` require it, as an unsigned integer, and answer 400 without it.

- `GET /healthz` — returns `ok`.
- `GET /meta?network=...` — the latest indexed snapshot: network, slot,
  Merkle root, snapshot hash and creation time. 404 if none exists.
- `GET /voter/{voting_wallet}?network=...&slot=...` — vote and stake accounts
  that belong to a voting wallet at a slot, each with its active stake.
- `GET /proof/vote_account/{vote_account}?network=...&slot=...` — the meta
  Merkle leaf and its proof for a vote account; 404 if unknown.
- `GET /proof/stake_account/{stake_account}?network=...&slot=...` — the stake
  Merkle leaf, its proof and the vote account it is delegated to; 404 if
  unknown.
- `GET /admin/stats` — upload outcome and proof-not-found counters together
  with the database path, its size and the free disk space, in MB. Requires
  the `x-metrics-token` header to equal `METRICS_AUTH_TOKEN`; otherwise 401
  (503 when no token is configured).
- `POST /upload` — a multipart form whose fields arrive in this order:
  `slot`, `network`, `merkle_root`, `signature`, then the snapshot file.

### Upload signatures

The operator signs, with Ed25519, the slot as eight little-endian bytes
followed by the base58 Merkle root as UTF-8 text (`govverifier.upload.signing_message`).
The signature is sent in base58. The upload is rejected with 401 when it does
not verify against `OPERATOR_PUBKEY`, and with 400 when the form is malformed,
the network is unsupported, or the snapshot's root or slot differ from the
submitted ones.

## Using it from Python

```python
from govverifier.app import Settings, create_app
from govverifier.store import open_database
from aiohttp import web

conn = open_database("governance.db")
settings = Settings(metrics_auth_token="token", operator_pubkey="<base58 key>",
                    snapshot_reader=my_reader)
web.run_app(create_app(conn, settings))
```

The snapshot reader is called with the uploaded file's bytes and must return
an object with `slot`, `root` (32 bytes), `hash` (bytes) and `leaf_bundles`.
Each bundle has `meta_merkle_leaf` (`vote_account`, `voting_wallet`,
`stake_merkle_root`, `active_stake`), `proof` (a list of hashes or `None`) and
`stake_merkle_leaves`, each with `stake_account`, `voting_wallet`,
`active_stake` and `proof`. Accounts may be base58 strings or raw bytes.

Other pieces are usable on their own: `govverifier.store` (record dataclasses
and their queries), `govverifier.schema.run_migrations`,
`govverifier.metrics.Metrics`, `govverifier.middleware.RateLimiter`,
`govverifier.base58` (`b58encode`, `b58decode`) and
`govverifier.upload.verify_signature`.

## What it does not do

The package does not decode snapshot files and does not build Merkle trees or
compute proofs; stake and meta proofs are stored exactly as the snapshot
reader supplies them. The `govverifier` command configures no snapshot reader,
so uploads sent to it are answered with 400; to accept uploads, build the app
with `create_app` and a `Settings` that carries a `snapshot_reader`.

## Load testing

`govverifier-loadtest` fires GET requests at a running service, picking
identifiers from an existing database, and prints a latency summary:

```
SLOT=340850340 BASE_URL=http://localhost:3000 govverifier-loadtest
```

| Variable           | Default                        | Meaning                                       |
|--------------------|--------------------------------|-----------------------------------------------|
| `SLOT`             | required                       | Snapshot slot to query                        |
| `BASE_URL`         | `http://localhost:3000`        | Service to load                               |
| `DB_PATH`          | `./governance.db`              | Database to draw account identifiers from     |
| `NETWORK`          | `testnet`                      | Network query parameter                       |
| `DURATION_SECS`    | `30`                           | How long to keep issuing requests             |
| `CONCURRENCY`      | `64`                           | Requests in flight at once                    |
| `TARGET_RPS`       | unset                          | Fixed request rate; unset or 0 means as fast as possible |
| `ENDPOINTS`        | `voter,vote_proof,stake_proof` | Endpoints to exercise; unknown names are ignored |
| `ENDPOINT_WEIGHTS` | unset                          | Relative weights, e.g. `voter=1,vote_proof=2` |

Up to 5000 identifiers of each kind are read from the database. The summary
reports issued and completed requests, successes and failures, p50/p90/p99
latency in milliseconds, achieved queries per second, and a per-endpoint
breakdown. Failed requests are reported on standard error; a missing `SLOT`,
no valid endpoints, a missing database or one without accounts ends the run
with exit status 1.