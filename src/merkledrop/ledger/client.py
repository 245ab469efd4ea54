"""Ledger client contract: the boundary to the authoritative on-chain ledger.

The distribution core never talks to a chain directly. It calls an object
satisfying ``LedgerClient`` and reacts to its results. The ledger is the
source of truth for claims and finalization; the core only mirrors it.

Every call either confirms or fails deterministically. Implementations
must:
- block until the ledger confirms a submission (bounded by a timeout),
- raise LedgerSubmissionError on revert, rejection or timeout,
- never return for a transaction that is still pending.

Adding a new backend = implement this Protocol. Zero changes to the
service or the scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from merkledrop.models.distribution import VaultType


@dataclass(frozen=True)
class DistributionReceipt:
    """Confirmation that the ledger registered a distribution."""
    distribution_id: int
    start_time: datetime
    end_time: datetime
    tx_ref: str
    block_number: Optional[int] = None


@dataclass(frozen=True)
class FinalizeReceipt:
    """Confirmation that the ledger finalized a distribution."""
    tx_ref: str
    block_number: Optional[int] = None


@dataclass(frozen=True)
class LedgerDistributionState:
    """Authoritative claim state read from the ledger."""
    total_claimed: int
    finalized: bool


@runtime_checkable
class LedgerClient(Protocol):
    """Abstract contract for external ledger implementations."""

    def submit_distribution(
        self,
        root: str,
        total: int,
        vault_type: VaultType,
        duration_days: int,
    ) -> DistributionReceipt:
        """Register a Merkle root funded from ``vault_type``. Blocks until confirmed."""
        ...

    def submit_finalize(self, distribution_id: int) -> FinalizeReceipt:
        """Close an expired distribution, returning unclaimed funds to its vault."""
        ...

    def read_distribution(self, distribution_id: int) -> LedgerDistributionState:
        """Read totalClaimed / finalized for a distribution."""
        ...

    def read_vault_remaining(self, vault_type: VaultType) -> int:
        """Unreserved balance left in a vault, in base units."""
        ...

    def read_claimed_amount(self, distribution_id: int, address: str) -> int:
        """Cumulative amount ``address`` has claimed from a distribution."""
        ...

    def signer_balance(self) -> int:
        """Native balance of the submitting account (gas budget), in wei."""
        ...
