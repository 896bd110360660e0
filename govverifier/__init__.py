"""Governance Merkle snapshot verifier service and its load generator."""

__version__ = "0.1.0"