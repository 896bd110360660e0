"""Shared helpers: network validation, environment parsing and API errors."""

from __future__ import annotations

import logging
import os
import re
from http import HTTPStatus
from typing import TypeVar

logger = logging.getLogger(__name__)

SUPPORTED_NETWORKS = ("devnet", "testnet", "mainnet")

_UNSIGNED_RE = re.compile(r"\+?[0-9]+")

T = TypeVar("T")


class ApiError(Exception):
    """An error that maps directly onto an HTTP status code."""

    def __init__(self, status: int, message: str = "") -> None:
        self.status = HTTPStatus(status)
        self.message = message or self.status.phrase
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"ApiError({int(self.status)}, {self.message!r})"


def validate_network(network: str) -> None:
    """Raise ApiError(400) unless ``network`` is a supported network name."""
    if network not in SUPPORTED_NETWORKS:
        logger.info(
            "Invalid network '%s'. Must be one of: devnet, testnet, mainnet", network
        )
        raise ApiError(HTTPStatus.BAD_REQUEST, f"invalid network: {network!r}")


def _parse_like(raw: str, default: T) -> T:
    if isinstance(default, bool):
        if raw in ("true", "false"):
            return raw == "true"  # type: ignore[return-value]
        raise ValueError(raw)
    if isinstance(default, int):
        # Settings read this way are counts and sizes, so only unsigned
        # decimal values are accepted.
        if not _UNSIGNED_RE.fullmatch(raw):
            raise ValueError(raw)
        return int(raw)  # type: ignore[return-value]
    if isinstance(default, float):
        return float(raw)  # type: ignore[return-value]
    return type(default)(raw)  # type: ignore[call-arg]


def env_parse(key: str, default: T) -> T:
    """Read ``key`` from the environment as the type of ``default``.

    Falls back to ``default`` when the variable is unset or does not parse.
    """
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return _parse_like(raw, default)
    except (TypeError, ValueError):
        return default