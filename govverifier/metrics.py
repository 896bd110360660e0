"""In-process service counters and storage statistics."""

from __future__ import annotations

import math
import os
import shutil
import threading
from enum import Enum
from pathlib import Path
from typing import Any

from .schema import DEFAULT_DB_PATH

_BYTES_PER_MB = 1024.0 * 1024.0


class UploadOutcome(Enum):
    """How an upload request ended."""

    SUCCESS = "success"
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    INTERNAL = "internal"


class ProofKind(Enum):
    """Which kind of proof lookup found nothing."""

    VOTE = "vote"
    STAKE = "stake"


class Metrics:
    """Thread-safe counters for uploads and missed proof lookups."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._upload_total: dict[UploadOutcome, int] = {}
        self._proofs_not_found_total: dict[ProofKind, int] = {}

    def record_upload_outcome(self, outcome: UploadOutcome) -> None:
        with self._lock:
            self._upload_total[outcome] = self._upload_total.get(outcome, 0) + 1

    def record_proofs_not_found(self, kind: ProofKind) -> None:
        with self._lock:
            self._proofs_not_found_total[kind] = (
                self._proofs_not_found_total.get(kind, 0) + 1
            )

    def snapshot(self, db_path: str | None = None) -> dict[str, Any]:
        """Return the counters and storage figures as a JSON-ready dict.

        ``db_path`` defaults to the DB_PATH environment variable, then to the
        default database file name.
        """
        with self._lock:
            uploads = [
                {"outcome": outcome.value, "count": count}
                for outcome, count in self._upload_total.items()
            ]
            not_found = [
                {"kind": kind.value, "count": count}
                for kind, count in self._proofs_not_found_total.items()
            ]

        if db_path is None:
            db_path = os.environ.get("DB_PATH", DEFAULT_DB_PATH)
        path_str, db_bytes = storage_db_info(db_path)
        db_mb = None if db_bytes is None else round2(bytes_to_mb(db_bytes))

        return {
            "upload_total": uploads,
            "proofs_not_found_total": not_found,
            "storage": {
                "db_path": path_str,
                "db_size_mb": db_mb,
                "free_storage_mb": free_storage_mb(path_str),
            },
        }


def bytes_to_mb(num_bytes: int) -> float:
    """Convert a byte count to mebibytes."""
    return float(num_bytes) / _BYTES_PER_MB


def round2(value: float) -> float:
    """Round to two decimals, halves away from zero."""
    scaled = value * 100.0
    rounded = math.floor(abs(scaled) + 0.5)
    return math.copysign(rounded, scaled) / 100.0


def storage_db_info(db_path: str) -> tuple[str, int | None]:
    """Return the path and, if it names a regular file, its size in bytes."""
    try:
        path = Path(db_path)
        size = path.stat().st_size if path.is_file() else None
    except OSError:
        size = None
    return db_path, size


def free_storage_mb(db_path: str) -> float | None:
    """Free space in MB on the filesystem holding ``db_path``, if it exists."""
    try:
        resolved = Path(db_path).resolve(strict=True)
        target = resolved if resolved.is_dir() else resolved.parent
        free = shutil.disk_usage(target).free
    except (OSError, RuntimeError):
        return None
    return round2(bytes_to_mb(free))