"""External ledger boundary: client contract and the Web3 implementation."""

from merkledrop.ledger.client import (
    DistributionReceipt,
    FinalizeReceipt,
    LedgerClient,
    LedgerDistributionState,
)

__all__ = [
    "DistributionReceipt",
    "FinalizeReceipt",
    "LedgerClient",
    "LedgerDistributionState",
]
