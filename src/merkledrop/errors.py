"""Error taxonomy for the distribution core.

Faults are raised as exceptions. Expected negative answers (an address
not being in a distribution, a distribution not yet expired, a second
finalization) are NOT faults. They travel as values on the result
dataclasses in ``merkledrop.service``.

Propagation rules:
- ValidationError / InsufficientVaultBalance / UnknownVaultType are local
  and never reach the ledger. They are never retried automatically.
- LedgerSubmissionError means the ledger rejected or timed out a call.
  The mirror is never written when this is raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class DistributorError(Exception):
    """Root of all merkledrop faults."""


@dataclass(frozen=True)
class AllocationIssue:
    """One offending entry in an allocation list."""
    index: int
    code: str  # "malformed_address" | "invalid_amount" | "duplicate_address"
    value: str
    message: str


class ValidationError(DistributorError):
    """Allocation input is malformed. Carries every offending entry."""

    def __init__(self, issues: list[AllocationIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(i.message for i in self.issues[:5])
        if len(self.issues) > 5:
            summary += f"; ... ({len(self.issues) - 5} more)"
        super().__init__(f"Invalid allocations: {summary}")


class UnknownVaultType(DistributorError):
    """The named vault does not exist on the ledger."""

    def __init__(self, vault_type: str) -> None:
        self.vault_type = vault_type
        super().__init__(f"Invalid vault type: {vault_type}")


class InsufficientVaultBalance(DistributorError):
    """Pre-flight check failed: the vault cannot fund the distribution."""

    def __init__(self, vault_type: str, required: int, available: int) -> None:
        self.vault_type = vault_type
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient vault balance in {vault_type}. "
            f"Required: {required}, Available: {available}"
        )


class LedgerSubmissionError(DistributorError):
    """The external ledger rejected, reverted or timed out a call."""

    def __init__(
        self,
        operation: str,
        message: str,
        revert_reason: Optional[str] = None,
        is_timeout: bool = False,
        tx_ref: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.revert_reason = revert_reason
        self.is_timeout = is_timeout
        self.tx_ref = tx_ref
        super().__init__(f"{operation} failed: {message}")

    @property
    def already_finalized(self) -> bool:
        """True when the ledger refused because finalization already happened."""
        reason = (self.revert_reason or "").lower()
        return "already finalized" in reason


class DistributionNotFound(DistributorError, LookupError):
    """No mirrored distribution exists with this id."""

    def __init__(self, distribution_id: int) -> None:
        self.distribution_id = distribution_id
        super().__init__(f"Distribution {distribution_id} not found")


class ConfigError(DistributorError):
    """Configuration is missing or malformed."""


class LeafNotFound(DistributorError, LookupError):
    """The address has no leaf in the tree."""

    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"Address not found in tree: {address}")
