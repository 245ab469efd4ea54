"""Distribution models: the off-chain mirror of ledger distribution state.

All token amounts are integer base units (wei-style, 18 decimals). They are
plain ``int`` so that arithmetic is exact and matches the ledger's uint256.

Invariants enforced by these models:
- Leaf claimed amount stays within [0, allocated].
- Distribution ``finalized`` is monotonic (false → true, never back).
- Distribution status is derived from (finalized, now, start, end),
  never stored independently.
- A FinalizationAttempt in SUCCESS is terminal.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

from merkledrop.errors import UnknownVaultType


class VaultType(str, enum.Enum):
    """Named token pools on the ledger that fund distributions.

    The ledger identifies vaults by their enum position.
    """
    PLAYER_TASKS = "PLAYER_TASKS"
    SOCIAL_FOLLOWERS = "SOCIAL_FOLLOWERS"
    SOCIAL_POSTERS = "SOCIAL_POSTERS"
    ECOSYSTEM_FUND = "ECOSYSTEM_FUND"

    @property
    def ledger_index(self) -> int:
        return _VAULT_INDEX[self]

    @classmethod
    def parse(cls, value: "str | VaultType") -> VaultType:
        """Resolve a vault name, raising UnknownVaultType for anything else."""
        if isinstance(value, VaultType):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise UnknownVaultType(str(value)) from None

    @classmethod
    def from_ledger_index(cls, index: int) -> VaultType:
        for vault, idx in _VAULT_INDEX.items():
            if idx == index:
                return vault
        raise UnknownVaultType(str(index))


_VAULT_INDEX: Dict[VaultType, int] = {
    VaultType.PLAYER_TASKS: 0,
    VaultType.SOCIAL_FOLLOWERS: 1,
    VaultType.SOCIAL_POSTERS: 2,
    VaultType.ECOSYSTEM_FUND: 3,
}


class DistributionStatus(str, enum.Enum):
    """Derived lifecycle status of a distribution.

    State machine:
        PENDING → ACTIVE → EXPIRED → FINALIZED
    FINALIZED is terminal and reachable only from EXPIRED.
    """
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    FINALIZED = "finalized"


class AttemptStatus(str, enum.Enum):
    """Outcome of the latest finalization attempt for a distribution."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionType(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


# Valid attempt status transitions. SKIPPED → PENDING exists only for
# operator-triggered (manual) finalization of a distribution the
# scheduler gave up on.
ATTEMPT_TRANSITIONS: Dict[AttemptStatus, frozenset] = {
    AttemptStatus.PENDING: frozenset({
        AttemptStatus.SUCCESS,
        AttemptStatus.FAILED,
        AttemptStatus.SKIPPED,
    }),
    AttemptStatus.FAILED: frozenset({
        AttemptStatus.PENDING,
        AttemptStatus.SKIPPED,
    }),
    AttemptStatus.SKIPPED: frozenset({AttemptStatus.PENDING}),
    AttemptStatus.SUCCESS: frozenset(),
}


@dataclass
class Leaf:
    """One recipient's entitlement within a distribution.

    ``leaf_hash`` is keccak256(abi.encodePacked(address, allocated_amount))
    and ``leaf_index`` is the position in canonical (address-sorted) order.
    """
    distribution_id: int
    address: str  # lowercased 0x-prefixed hex
    allocated_amount: int
    leaf_hash: str
    leaf_index: int
    claimed_amount: int = 0
    claim_count: int = 0
    last_claim_time: Optional[datetime] = None
    last_claim_tx_ref: Optional[str] = None

    @property
    def fully_claimed(self) -> bool:
        return self.claimed_amount == self.allocated_amount

    @property
    def unclaimed_amount(self) -> int:
        return self.allocated_amount - self.claimed_amount

    def apply_claim(
        self,
        claimed_amount: int,
        tx_ref: Optional[str],
        now: datetime,
    ) -> None:
        """Reflect a claim event read from the ledger.

        ``claimed_amount`` is the cumulative amount claimed so far, not
        the delta of this single claim.
        """
        if claimed_amount < 0 or claimed_amount > self.allocated_amount:
            raise ValueError(
                f"Claimed amount {claimed_amount} outside [0, {self.allocated_amount}] "
                f"for {self.address} in distribution {self.distribution_id}"
            )
        self.claimed_amount = claimed_amount
        self.claim_count += 1
        self.last_claim_time = now
        self.last_claim_tx_ref = tx_ref


@dataclass
class Distribution:
    """Mirror of one ledger distribution.

    Mutable: claimed totals and the finalized flag are refreshed from
    the ledger by sync and by finalization.
    """
    distribution_id: int
    merkle_root: str
    total_allocated: int
    start_time: datetime
    end_time: datetime
    vault_type: VaultType
    recipient_count: int
    total_claimed: int = 0
    finalized: bool = False
    title: str = ""
    description: str = ""
    category: str = "general"
    tags: list[str] = field(default_factory=list)
    created_by: Optional[str] = None
    creation_tx_ref: Optional[str] = None
    finalization_tx_ref: Optional[str] = None
    created_utc: Optional[datetime] = None

    def status_at(self, now: datetime) -> DistributionStatus:
        if self.finalized:
            return DistributionStatus.FINALIZED
        if now >= self.end_time:
            return DistributionStatus.EXPIRED
        if now >= self.start_time:
            return DistributionStatus.ACTIVE
        return DistributionStatus.PENDING

    @property
    def unclaimed_amount(self) -> int:
        return self.total_allocated - self.total_claimed

    def mark_finalized(self, tx_ref: Optional[str] = None) -> None:
        self.finalized = True
        if tx_ref is not None:
            self.finalization_tx_ref = tx_ref

    def apply_ledger_state(self, total_claimed: int, finalized: bool) -> None:
        """Overwrite mirrored fields with authoritative ledger values.

        ``finalized`` only ever moves forward; a ledger read reporting
        false for a mirror already finalized leaves the flag set.
        """
        if total_claimed < 0 or total_claimed > self.total_allocated:
            raise ValueError(
                f"Ledger totalClaimed {total_claimed} outside "
                f"[0, {self.total_allocated}] for distribution {self.distribution_id}"
            )
        self.total_claimed = total_claimed
        if finalized:
            self.finalized = True


@dataclass
class FinalizationAttempt:
    """Retry/backoff bookkeeping for finalizing one distribution.

    Created lazily on the first attempt and updated in place afterwards.
    """
    distribution_id: int
    status: AttemptStatus = AttemptStatus.PENDING
    execution_type: ExecutionType = ExecutionType.AUTO
    executed_by: str = "scheduler"
    tx_ref: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    error: Optional[str] = None
    error_count: int = 0
    last_error_at: Optional[datetime] = None
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None

    def transition_to(self, new_status: AttemptStatus) -> None:
        """Transition to a new status, validating the transition is legal."""
        if new_status == self.status and new_status == AttemptStatus.PENDING:
            return
        allowed = ATTEMPT_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise ValueError(
                f"Invalid attempt transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {', '.join(s.value for s in allowed) or 'none'}"
            )
        self.status = new_status

    def begin(self, execution_type: ExecutionType, executed_by: str, now: datetime) -> None:
        self.transition_to(AttemptStatus.PENDING)
        self.execution_type = execution_type
        self.executed_by = executed_by
        self.next_retry_at = None
        self.updated_utc = now

    def mark_success(self, tx_ref: Optional[str], now: datetime) -> None:
        self.transition_to(AttemptStatus.SUCCESS)
        self.tx_ref = tx_ref
        self.error = None
        self.next_retry_at = None
        self.updated_utc = now

    def mark_failed(self, error: str, now: datetime) -> None:
        self.transition_to(AttemptStatus.FAILED)
        self.error = error
        self.error_count += 1
        self.last_error_at = now
        self.updated_utc = now

    def schedule_retry(self, delay: timedelta, now: datetime) -> None:
        if self.status != AttemptStatus.FAILED:
            raise ValueError("Only failed attempts can be scheduled for retry")
        self.retry_count += 1
        self.next_retry_at = now + delay
        self.updated_utc = now

    def mark_skipped(self, reason: str, now: datetime) -> None:
        self.transition_to(AttemptStatus.SKIPPED)
        self.error = reason
        self.next_retry_at = None
        self.updated_utc = now

    def is_due(self, now: datetime) -> bool:
        return (
            self.status == AttemptStatus.FAILED
            and self.next_retry_at is not None
            and self.next_retry_at <= now
        )
