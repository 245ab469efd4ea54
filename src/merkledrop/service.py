"""Distribution lifecycle service: the facade over the distribution core.

Orchestrates:
- Creation (validate, build tree, vault pre-check, ledger submit, mirror write)
- Eligibility (proofs and claimable amounts)
- Reconciliation (sync mirror fields from the authoritative ledger)
- Finalization (guarded, idempotent close of expired distributions)
- Read-only listing and statistics for dashboards

The external ledger is the tie-breaker. The mirror is written only after
the ledger confirms, so a LedgerSubmissionError never leaves a mirror row
the ledger does not know about.

"Not eligible", "not expired" and "already finalized" are answers, not
faults. They come back on the result dataclasses below.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional

from merkledrop.allocation.validator import AllocationValidator, ValidationReport
from merkledrop.crypto.merkle import (
    TreeLeaf,
    build_tree,
    rebuild_tree,
    tree_stats,
)
from merkledrop.errors import (
    ConfigError,
    DistributionNotFound,
    InsufficientVaultBalance,
    LeafNotFound,
    LedgerSubmissionError,
)
from merkledrop.ledger.client import LedgerClient
from merkledrop.models.distribution import (
    Distribution,
    DistributionStatus,
    Leaf,
    VaultType,
)
from merkledrop.persistence.distribution_store import DistributionLedger

logger = logging.getLogger(__name__)


class IneligibleReason(str, enum.Enum):
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    FINALIZED = "finalized"
    NOT_IN_DISTRIBUTION = "not_in_distribution"


class FinalizeStatus(str, enum.Enum):
    FINALIZED = "finalized"
    NOT_EXPIRED = "not_expired"
    ALREADY_FINALIZED = "already_finalized"


@dataclass(frozen=True)
class DistributionMetadata:
    """Operator-facing descriptors. Never sent to the ledger."""
    title: str = ""
    description: str = ""
    category: str = "general"
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProofResult:
    """Answer to "can this address claim, and with what proof?"."""
    distribution_id: int
    address: str
    eligible: bool
    amount: int = 0
    claimed: int = 0
    claimable: int = 0
    proof: tuple[str, ...] = ()
    merkle_root: Optional[str] = None
    reason: Optional[IneligibleReason] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "distribution_id": self.distribution_id,
            "address": self.address,
            "eligible": self.eligible,
            "amount": str(self.amount),
            "claimed": str(self.claimed),
            "claimable": str(self.claimable),
            "proof": list(self.proof),
            "merkle_root": self.merkle_root,
            "reason": self.reason.value if self.reason else None,
        }


@dataclass(frozen=True)
class ClaimableResult:
    distribution_id: int
    address: str
    eligible: bool
    claimable: int = 0
    reason: Optional[IneligibleReason] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "distribution_id": self.distribution_id,
            "address": self.address,
            "eligible": self.eligible,
            "claimable": str(self.claimable),
            "reason": self.reason.value if self.reason else None,
        }


@dataclass(frozen=True)
class FinalizeResult:
    distribution_id: int
    status: FinalizeStatus
    tx_ref: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.status == FinalizeStatus.FINALIZED


@dataclass(frozen=True)
class SyncResult:
    """Outcome of reconciling one distribution with the ledger."""
    distribution_id: int
    total_claimed: int
    finalized: bool
    changed: bool
    leaf_claimed_sum: int
    drift: int = 0  # ledger totalClaimed minus the mirror's leaf claim sum


@dataclass(frozen=True)
class CreationResult:
    distribution: Distribution
    tree_stats: dict[str, Any] = field(default_factory=dict)


class DistributionLifecycleService:
    """Create, query, reconcile and finalize Merkle distributions.

    Usage:
        service = DistributionLifecycleService(store, ledger_client)
        created = service.create_distribution(
            [{"address": "0xA...", "amount": "100"}],
            vault_type="PLAYER_TASKS",
            duration_days=7,
        )
        service.get_proof_for(created.distribution.distribution_id, "0xA...")
    """

    def __init__(
        self,
        store: DistributionLedger,
        ledger: Optional[LedgerClient] = None,
        validator: Optional[AllocationValidator] = None,
    ) -> None:
        self._store = store
        self._ledger_client = ledger
        self._validator = validator or AllocationValidator()

    @property
    def store(self) -> DistributionLedger:
        return self._store

    @property
    def _ledger(self) -> LedgerClient:
        if self._ledger_client is None:
            raise ConfigError("This operation needs a ledger client; none is configured")
        return self._ledger_client

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def validate_allocations(self, allocations: Iterable[Mapping[str, Any]]) -> ValidationReport:
        """Dry run of the creation checks; never touches the ledger."""
        return self._validator.validate(allocations)

    def create_distribution(
        self,
        allocations: Iterable[Mapping[str, Any]],
        vault_type: "VaultType | str",
        duration_days: int,
        metadata: Optional[DistributionMetadata] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreationResult:
        """Publish a new distribution and mirror it.

        Raises ValidationError, UnknownVaultType, InsufficientVaultBalance
        or LedgerSubmissionError. Nothing is persisted unless the ledger
        confirmed the submission.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if metadata is None:
            metadata = DistributionMetadata()
        vault = VaultType.parse(vault_type)
        if (
            isinstance(duration_days, bool)
            or not isinstance(duration_days, int)
            or duration_days <= 0
        ):
            raise ValueError(f"duration_days must be a positive integer, got {duration_days!r}")

        canonical = self._validator.canonicalize(allocations)
        logger.info(
            "Creating distribution: %d recipients, total %d, vault %s, %d days",
            canonical.recipient_count, canonical.total, vault.value, duration_days,
        )
        tree = build_tree(canonical)
        logger.info("Merkle tree built: root %s, depth %d", tree.root, tree.tree.depth)

        remaining = self._ledger.read_vault_remaining(vault)
        if remaining < canonical.total:
            raise InsufficientVaultBalance(vault.value, canonical.total, remaining)

        receipt = self._ledger.submit_distribution(
            tree.root, canonical.total, vault, duration_days,
        )
        logger.info(
            "Distribution %d confirmed on ledger (tx %s)",
            receipt.distribution_id, receipt.tx_ref,
        )

        distribution = Distribution(
            distribution_id=receipt.distribution_id,
            merkle_root=tree.root,
            total_allocated=canonical.total,
            start_time=receipt.start_time,
            end_time=receipt.end_time,
            vault_type=vault,
            recipient_count=canonical.recipient_count,
            title=metadata.title or f"Distribution #{receipt.distribution_id}",
            description=metadata.description,
            category=metadata.category,
            tags=list(metadata.tags),
            created_by=created_by.strip().lower() if created_by else None,
            creation_tx_ref=receipt.tx_ref,
            created_utc=now,
        )
        leaves = [
            Leaf(
                distribution_id=receipt.distribution_id,
                address=leaf.address,
                allocated_amount=leaf.amount,
                leaf_hash=leaf.leaf_hash,
                leaf_index=leaf.leaf_index,
            )
            for leaf in tree.leaves
        ]
        if not self._store.record_distribution(distribution, leaves):
            logger.info("Distribution %d was already mirrored", receipt.distribution_id)
        else:
            logger.info(
                "Distribution %d mirrored with %d leaves",
                receipt.distribution_id, len(leaves),
            )
        return CreationResult(distribution=distribution, tree_stats=tree_stats(tree))

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def get_proof_for(self, distribution_id: int, address: str) -> ProofResult:
        """Proof and claimable amount for ``address``.

        An address without a leaf is an ineligible answer, not an error.
        """
        distribution = self._require(distribution_id)
        normalized = address.strip().lower()
        leaf = self._store.find_leaf(distribution_id, normalized)
        if leaf is None:
            return ProofResult(
                distribution_id=distribution_id,
                address=normalized,
                eligible=False,
                reason=IneligibleReason.NOT_IN_DISTRIBUTION,
            )

        tree = self._rebuild(distribution)
        proof = tree.tree.proof_at(leaf.leaf_index)
        return ProofResult(
            distribution_id=distribution_id,
            address=leaf.address,
            eligible=True,
            amount=leaf.allocated_amount,
            claimed=leaf.claimed_amount,
            claimable=leaf.unclaimed_amount,
            proof=tuple(proof),
            merkle_root=distribution.merkle_root,
        )

    def get_claimable(
        self,
        distribution_id: int,
        address: str,
        now: Optional[datetime] = None,
    ) -> ClaimableResult:
        """Unclaimed remainder for ``address``, or the reason it cannot claim."""
        if now is None:
            now = datetime.now(timezone.utc)
        distribution = self._require(distribution_id)
        normalized = address.strip().lower()

        reason: Optional[IneligibleReason] = None
        status = distribution.status_at(now)
        if status == DistributionStatus.PENDING:
            reason = IneligibleReason.NOT_STARTED
        elif status == DistributionStatus.EXPIRED:
            reason = IneligibleReason.EXPIRED
        elif status == DistributionStatus.FINALIZED:
            reason = IneligibleReason.FINALIZED

        leaf = self._store.find_leaf(distribution_id, normalized)
        if reason is None and leaf is None:
            reason = IneligibleReason.NOT_IN_DISTRIBUTION
        if reason is not None:
            return ClaimableResult(distribution_id, normalized, eligible=False, reason=reason)
        return ClaimableResult(
            distribution_id, normalized, eligible=True, claimable=leaf.unclaimed_amount,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def sync_from_ledger(self, distribution_id: int) -> SyncResult:
        """Overwrite mirrored totalClaimed / finalized with ledger values.

        Idempotent. A ledger total above the mirrored allocation means the
        mirror holds the wrong leaf set; that raises ValueError and leaves
        the mirror untouched.
        """
        distribution = self._require(distribution_id)
        state = self._ledger.read_distribution(distribution_id)

        if state.total_claimed > distribution.total_allocated:
            logger.warning(
                "SyncDrift: distribution %d ledger totalClaimed %d exceeds mirrored "
                "totalAllocated %d",
                distribution_id, state.total_claimed, distribution.total_allocated,
            )
            raise ValueError(
                f"Ledger totalClaimed {state.total_claimed} exceeds totalAllocated "
                f"{distribution.total_allocated} for distribution {distribution_id}"
            )

        before = (distribution.total_claimed, distribution.finalized)
        distribution.apply_ledger_state(state.total_claimed, state.finalized)
        changed = (distribution.total_claimed, distribution.finalized) != before
        if changed:
            self._store.update_distribution(distribution)

        leaf_sum = self._store.leaf_stats(distribution_id)["claimed_sum"]
        drift = state.total_claimed - leaf_sum
        if drift:
            logger.warning(
                "SyncDrift: distribution %d leaf claims sum to %d, ledger reports %d",
                distribution_id, leaf_sum, state.total_claimed,
            )
        logger.info(
            "Synced distribution %d: totalClaimed=%d finalized=%s changed=%s",
            distribution_id, distribution.total_claimed, distribution.finalized, changed,
        )
        return SyncResult(
            distribution_id=distribution_id,
            total_claimed=distribution.total_claimed,
            finalized=distribution.finalized,
            changed=changed,
            leaf_claimed_sum=leaf_sum,
            drift=drift,
        )

    def record_claim(
        self,
        distribution_id: int,
        address: str,
        claimed_amount: int,
        tx_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Leaf:
        """Reflect a ledger claim event on a leaf.

        ``claimed_amount`` is the cumulative amount claimed by the address.
        Raises DistributionNotFound or LeafNotFound.
        """
        self._require(distribution_id)
        leaf = self._store.upsert_claim_state(distribution_id, address, claimed_amount, tx_ref, now)
        logger.info(
            "Claim recorded: distribution %d, %s claimed %d of %d",
            distribution_id, leaf.address, leaf.claimed_amount, leaf.allocated_amount,
        )
        return leaf

    def sync_claim(
        self,
        distribution_id: int,
        address: str,
        tx_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Leaf:
        """Pull one address's cumulative claim from the ledger into its leaf."""
        self._require(distribution_id)
        leaf = self._store.find_leaf(distribution_id, address)
        if leaf is None:
            raise LeafNotFound(address)
        claimed = self._ledger.read_claimed_amount(distribution_id, leaf.address)
        if claimed == leaf.claimed_amount:
            return leaf
        return self.record_claim(distribution_id, leaf.address, claimed, tx_ref, now)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(self, distribution_id: int, now: Optional[datetime] = None) -> FinalizeResult:
        """Close an expired distribution on the ledger and mirror the result.

        Returns ALREADY_FINALIZED or NOT_EXPIRED without touching the
        ledger when the guard fails. A ledger refusal because another
        caller finalized first is reported as ALREADY_FINALIZED too.
        Any other ledger failure raises LedgerSubmissionError.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        distribution = self._require(distribution_id)

        if distribution.finalized:
            return FinalizeResult(distribution_id, FinalizeStatus.ALREADY_FINALIZED)
        if distribution.status_at(now) != DistributionStatus.EXPIRED:
            return FinalizeResult(distribution_id, FinalizeStatus.NOT_EXPIRED)

        try:
            receipt = self._ledger.submit_finalize(distribution_id)
        except LedgerSubmissionError as exc:
            if not exc.already_finalized:
                raise
            logger.info("Distribution %d was finalized elsewhere; resyncing", distribution_id)
            self.sync_from_ledger(distribution_id)
            return FinalizeResult(distribution_id, FinalizeStatus.ALREADY_FINALIZED)

        distribution.mark_finalized(receipt.tx_ref)
        self._store.update_distribution(distribution)
        logger.info("Distribution %d finalized (tx %s)", distribution_id, receipt.tx_ref)

        try:
            self.sync_from_ledger(distribution_id)
        except (LedgerSubmissionError, ValueError) as exc:
            # Finalization is already confirmed; the next sync heals totals.
            logger.warning("Post-finalize sync of %d failed: %s", distribution_id, exc)
        return FinalizeResult(distribution_id, FinalizeStatus.FINALIZED, tx_ref=receipt.tx_ref)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_distribution(self, distribution_id: int) -> Distribution:
        return self._require(distribution_id)

    def list_distributions(
        self,
        status: Optional[DistributionStatus] = None,
        vault_type: "VaultType | str | None" = None,
        created_by: Optional[str] = None,
        limit: int = 100,
        now: Optional[datetime] = None,
    ) -> list[Distribution]:
        vault = VaultType.parse(vault_type) if vault_type is not None else None
        return self._store.list_distributions(
            status=status, vault_type=vault, created_by=created_by, limit=limit, now=now,
        )

    def distributions_for(
        self,
        address: str,
        now: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """Every distribution ``address`` appears in, newest first."""
        if now is None:
            now = datetime.now(timezone.utc)
        entries = []
        for leaf in self._store.find_leaves_by_address(address):
            distribution = self._store.find_distribution(leaf.distribution_id)
            if distribution is None:
                continue
            status = distribution.status_at(now)
            entries.append({
                "distribution_id": distribution.distribution_id,
                "title": distribution.title,
                "status": status.value,
                "amount": str(leaf.allocated_amount),
                "claimed": str(leaf.claimed_amount),
                "claimable": str(
                    leaf.unclaimed_amount if status == DistributionStatus.ACTIVE else 0
                ),
                "end_time": distribution.end_time.isoformat(),
            })
        return entries

    def distribution_stats(
        self,
        distribution_id: int,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Claim progress figures for one distribution."""
        if now is None:
            now = datetime.now(timezone.utc)
        distribution = self._require(distribution_id)
        leaf_figures = self._store.leaf_stats(distribution_id)
        claim_rate = (
            round(distribution.total_claimed * 100 / distribution.total_allocated, 2)
            if distribution.total_allocated else 0.0
        )
        remaining = distribution.end_time - now
        return {
            "distribution_id": distribution_id,
            "title": distribution.title,
            "status": distribution.status_at(now).value,
            "vault_type": distribution.vault_type.value,
            "merkle_root": distribution.merkle_root,
            "total_allocated": str(distribution.total_allocated),
            "total_claimed": str(distribution.total_claimed),
            "unclaimed_amount": str(distribution.unclaimed_amount),
            "claim_rate": claim_rate,
            "total_recipients": leaf_figures["total_recipients"],
            "claimed_count": leaf_figures["claimed_count"],
            "fully_claimed_count": leaf_figures["fully_claimed_count"],
            "total_claims": leaf_figures["total_claims"],
            "time_remaining_seconds": max(int(remaining / timedelta(seconds=1)), 0),
        }

    def tree_stats(self, distribution_id: int) -> dict[str, Any]:
        distribution = self._require(distribution_id)
        return tree_stats(self._rebuild(distribution))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require(self, distribution_id: int) -> Distribution:
        distribution = self._store.find_distribution(distribution_id)
        if distribution is None:
            raise DistributionNotFound(distribution_id)
        return distribution

    def _rebuild(self, distribution: Distribution):
        leaves = self._store.find_leaves_for(distribution.distribution_id)
        tree = rebuild_tree(
            TreeLeaf(
                address=leaf.address,
                amount=leaf.allocated_amount,
                leaf_hash=leaf.leaf_hash,
                leaf_index=leaf.leaf_index,
            )
            for leaf in leaves
        )
        if tree.root != distribution.merkle_root:
            raise ValueError(
                f"Stored leaves of distribution {distribution.distribution_id} rebuild "
                f"root {tree.root}, expected {distribution.merkle_root}"
            )
        return tree
