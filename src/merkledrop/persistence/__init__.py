"""Persistence layer: the off-chain mirror of distribution state."""

from merkledrop.persistence.distribution_store import DistributionLedger

__all__ = ["DistributionLedger"]
