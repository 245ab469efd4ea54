"""Merkle-tree token distributions mirrored from an on-chain ledger."""

__version__ = "0.4.0"
