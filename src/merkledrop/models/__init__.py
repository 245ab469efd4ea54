"""Core data models for merkledrop."""

from merkledrop.models.distribution import (
    AttemptStatus,
    Distribution,
    DistributionStatus,
    ExecutionType,
    FinalizationAttempt,
    Leaf,
    VaultType,
)

__all__ = [
    "AttemptStatus",
    "Distribution",
    "DistributionStatus",
    "ExecutionType",
    "FinalizationAttempt",
    "Leaf",
    "VaultType",
]
