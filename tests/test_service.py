"""Tests for DistributionLifecycleService: creation, eligibility, sync and finalize."""

import logging

import pytest
from datetime import datetime, timedelta, timezone

from fakes import FakeLedgerClient
from merkledrop.crypto.merkle import verify_proof
from merkledrop.errors import (
    ConfigError,
    DistributionNotFound,
    InsufficientVaultBalance,
    LeafNotFound,
    LedgerSubmissionError,
    UnknownVaultType,
    ValidationError,
)
from merkledrop.ledger.client import LedgerClient
from merkledrop.models.distribution import DistributionStatus, VaultType
from merkledrop.persistence.distribution_store import DistributionLedger
from merkledrop.service import (
    DistributionLifecycleService,
    DistributionMetadata,
    FinalizeStatus,
    IneligibleReason,
)

ADDR_A = "0x" + "aa" * 20
ADDR_B = "0x" + "bb" * 20
ADDR_C = "0x" + "cc" * 20
OUTSIDER = "0x" + "dd" * 20
ETHER = 10**18

ALLOCATIONS = [
    {"address": ADDR_A, "amount": "100"},
    {"address": ADDR_B, "amount": "50"},
    {"address": ADDR_C, "amount": "25"},
]


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _setup(vault_balance: int = 10**30):
    ledger = FakeLedgerClient(now=_now(), vault_balance=vault_balance)
    store = DistributionLedger()
    return DistributionLifecycleService(store, ledger), ledger, store


def _create(service, **kwargs) -> int:
    kwargs.setdefault("vault_type", "PLAYER_TASKS")
    kwargs.setdefault("duration_days", 7)
    created = service.create_distribution(ALLOCATIONS, now=_now(), **kwargs)
    return created.distribution.distribution_id


class TestFakeLedger:
    def test_fake_satisfies_protocol(self) -> None:
        assert isinstance(FakeLedgerClient(), LedgerClient)


class TestCreateDistribution:
    def test_mirrors_confirmed_distribution(self) -> None:
        service, ledger, store = _setup()
        created = service.create_distribution(
            ALLOCATIONS, "PLAYER_TASKS", 7,
            metadata=DistributionMetadata(title="Week 7", tags=("weekly",)),
            created_by="0x" + "EE" * 20,
            now=_now(),
        )
        dist = created.distribution
        assert dist.distribution_id == 1
        assert dist.merkle_root.startswith("0x")
        assert dist.total_allocated == 175 * ETHER
        assert dist.start_time == _now()
        assert dist.end_time == _now() + timedelta(days=7)
        assert dist.title == "Week 7"
        assert dist.created_by == "0x" + "ee" * 20
        assert ledger.distributions[1].root == dist.merkle_root
        assert ledger.distributions[1].total == 175 * ETHER

        stored = store.find_distribution(1)
        assert stored.recipient_count == 3
        assert stored.creation_tx_ref == dist.creation_tx_ref
        assert sum(l.allocated_amount for l in store.find_leaves_for(1)) == stored.total_allocated
        assert created.tree_stats["recipient_count"] == 3

    def test_default_title(self) -> None:
        service, _, store = _setup()
        distribution_id = _create(service)
        assert store.find_distribution(distribution_id).title == f"Distribution #{distribution_id}"

    def test_vault_debited(self) -> None:
        service, ledger, _ = _setup(vault_balance=1000 * ETHER)
        _create(service, vault_type=VaultType.SOCIAL_FOLLOWERS)
        assert ledger.vaults[VaultType.SOCIAL_FOLLOWERS] == 825 * ETHER
        assert ledger.vaults[VaultType.PLAYER_TASKS] == 1000 * ETHER

    def test_validation_error_never_reaches_ledger(self) -> None:
        service, ledger, store = _setup()
        with pytest.raises(ValidationError) as exc_info:
            service.create_distribution(
                [{"address": ADDR_A, "amount": "1"}, {"address": ADDR_A, "amount": "2"}],
                "PLAYER_TASKS", 7, now=_now(),
            )
        assert exc_info.value.issues[0].code == "duplicate_address"
        assert ledger.submissions == 0
        assert store.list_distributions(now=_now()) == []

    def test_unknown_vault(self) -> None:
        service, ledger, _ = _setup()
        with pytest.raises(UnknownVaultType):
            _create(service, vault_type="TREASURY")
        assert ledger.submissions == 0

    def test_insufficient_vault_balance(self) -> None:
        service, ledger, store = _setup(vault_balance=100 * ETHER)
        with pytest.raises(InsufficientVaultBalance) as exc_info:
            _create(service)
        assert exc_info.value.required == 175 * ETHER
        assert exc_info.value.available == 100 * ETHER
        assert ledger.submissions == 0
        assert store.find_distribution(1) is None

    def test_ledger_failure_writes_no_mirror(self) -> None:
        service, ledger, store = _setup()
        ledger.submit_failure = LedgerSubmissionError("submit_distribution", "timeout", is_timeout=True)
        with pytest.raises(LedgerSubmissionError):
            _create(service)
        assert store.list_distributions(now=_now()) == []

    @pytest.mark.parametrize("days", [0, -3, 1.9, 2.0, "7", True])
    def test_rejects_non_positive_or_non_integer_duration(self, days) -> None:
        service, ledger, _ = _setup()
        with pytest.raises(ValueError, match="duration_days"):
            _create(service, duration_days=days)
        assert ledger.submissions == 0

    def test_requires_ledger_client(self) -> None:
        service = DistributionLifecycleService(DistributionLedger())
        with pytest.raises(ConfigError):
            _create(service)

    def test_dry_run_validation(self) -> None:
        service, ledger, _ = _setup()
        report = service.validate_allocations(ALLOCATIONS)
        assert report.valid
        assert report.total_amount == 175 * ETHER
        assert ledger.submissions == 0


class TestEligibility:
    def test_scenario_partial_claim(self) -> None:
        """A=100, B=50, C=25 for 7 days; B claims 20 and has 30 left."""
        service, ledger, _ = _setup()
        distribution_id = _create(service)

        proof = service.get_proof_for(distribution_id, ADDR_B)
        assert proof.eligible
        assert proof.claimable == 50 * ETHER
        assert verify_proof(proof.proof, proof.merkle_root, ADDR_B, 50 * ETHER)

        ledger.claim(distribution_id, ADDR_B, 20 * ETHER)
        service.sync_claim(distribution_id, ADDR_B, tx_ref="0xclaim", now=_now())
        sync = service.sync_from_ledger(distribution_id)
        assert sync.total_claimed == 20 * ETHER
        assert sync.drift == 0

        claimable = service.get_claimable(distribution_id, ADDR_B, now=_now() + timedelta(days=1))
        assert claimable.eligible
        assert claimable.claimable == 30 * ETHER

    def test_absent_address_not_eligible(self) -> None:
        service, _, _ = _setup()
        distribution_id = _create(service)
        result = service.get_proof_for(distribution_id, OUTSIDER)
        assert not result.eligible
        assert result.proof == ()
        assert result.reason == IneligibleReason.NOT_IN_DISTRIBUTION

    def test_proof_for_checksummed_address(self) -> None:
        service, _, _ = _setup()
        distribution_id = _create(service)
        result = service.get_proof_for(distribution_id, ADDR_C.upper().replace("0X", "0x"))
        assert result.eligible
        assert result.address == ADDR_C

    def test_every_recipient_gets_valid_proof(self) -> None:
        service, _, _ = _setup()
        distribution_id = _create(service)
        for entry in ALLOCATIONS:
            result = service.get_proof_for(distribution_id, entry["address"])
            assert verify_proof(result.proof, result.merkle_root, entry["address"], result.amount)

    def test_claimable_reasons(self) -> None:
        service, ledger, _ = _setup()
        distribution_id = _create(service)

        before = service.get_claimable(distribution_id, ADDR_A, now=_now() - timedelta(hours=1))
        assert before.reason == IneligibleReason.NOT_STARTED
        outsider = service.get_claimable(distribution_id, OUTSIDER, now=_now())
        assert outsider.reason == IneligibleReason.NOT_IN_DISTRIBUTION
        after = service.get_claimable(distribution_id, ADDR_A, now=_now() + timedelta(days=7))
        assert after.reason == IneligibleReason.EXPIRED

        ledger.now = _now() + timedelta(days=8)
        service.finalize(distribution_id, now=ledger.now)
        closed = service.get_claimable(distribution_id, ADDR_A, now=ledger.now)
        assert closed.reason == IneligibleReason.FINALIZED
        assert closed.claimable == 0

    def test_unknown_distribution(self) -> None:
        service, _, _ = _setup()
        with pytest.raises(DistributionNotFound):
            service.get_claimable(99, ADDR_A, now=_now())
        with pytest.raises(DistributionNotFound):
            service.get_proof_for(99, ADDR_A)


class TestSync:
    def test_sync_is_idempotent(self) -> None:
        service, ledger, _ = _setup()
        distribution_id = _create(service)
        ledger.claim(distribution_id, ADDR_A, 10 * ETHER)
        first = service.sync_from_ledger(distribution_id)
        second = service.sync_from_ledger(distribution_id)
        assert first.changed
        assert not second.changed
        assert second.total_claimed == 10 * ETHER

    def test_drift_logged_not_blocking(self, caplog: pytest.LogCaptureFixture) -> None:
        service, ledger, _ = _setup()
        distribution_id = _create(service)
        ledger.claim(distribution_id, ADDR_A, 10 * ETHER)
        with caplog.at_level(logging.WARNING, logger="merkledrop.service"):
            result = service.sync_from_ledger(distribution_id)
        assert result.drift == 10 * ETHER
        assert "SyncDrift" in caplog.text
        assert service.get_claimable(distribution_id, ADDR_A, now=_now()).eligible

    def test_ledger_total_above_allocation_rejected(self) -> None:
        service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.distributions[distribution_id].total_claimed = 176 * ETHER
        with pytest.raises(ValueError):
            service.sync_from_ledger(distribution_id)
        assert store.find_distribution(distribution_id).total_claimed == 0

    def test_finalized_elsewhere_is_mirrored(self) -> None:
        service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.finalize_elsewhere(distribution_id)
        assert service.sync_from_ledger(distribution_id).finalized
        assert store.find_distribution(distribution_id).finalized

    def test_unknown_distribution(self) -> None:
        service, _, _ = _setup()
        with pytest.raises(DistributionNotFound):
            service.sync_from_ledger(42)

    def test_record_claim_unknown_leaf(self) -> None:
        service, _, _ = _setup()
        distribution_id = _create(service)
        with pytest.raises(LeafNotFound):
            service.record_claim(distribution_id, OUTSIDER, 1, now=_now())

    def test_sync_claim_without_change_keeps_count(self) -> None:
        service, _, store = _setup()
        distribution_id = _create(service)
        service.sync_claim(distribution_id, ADDR_A, now=_now())
        assert store.find_leaf(distribution_id, ADDR_A).claim_count == 0


class TestFinalize:
    def test_not_expired(self) -> None:
        service, ledger, _ = _setup()
        distribution_id = _create(service)
        result = service.finalize(distribution_id, now=_now() + timedelta(days=6))
        assert result.status == FinalizeStatus.NOT_EXPIRED
        assert ledger.finalize_calls == []

    def test_finalize_then_already_finalized(self) -> None:
        service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.claim(distribution_id, ADDR_A, 40 * ETHER)
        ledger.now = _now() + timedelta(days=7)

        first = service.finalize(distribution_id, now=ledger.now)
        second = service.finalize(distribution_id, now=ledger.now)
        assert first.status == FinalizeStatus.FINALIZED
        assert first.tx_ref
        assert second.status == FinalizeStatus.ALREADY_FINALIZED
        assert ledger.finalize_calls == [distribution_id]

        stored = store.find_distribution(distribution_id)
        assert stored.finalized
        assert stored.finalization_tx_ref == first.tx_ref
        assert stored.total_claimed == 40 * ETHER
        assert stored.status_at(ledger.now) == DistributionStatus.FINALIZED

    def test_ledger_race_reported_as_already_finalized(self) -> None:
        service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=8)
        ledger.finalize_elsewhere(distribution_id)
        result = service.finalize(distribution_id, now=ledger.now)
        assert result.status == FinalizeStatus.ALREADY_FINALIZED
        assert store.find_distribution(distribution_id).finalized

    def test_ledger_failure_propagates(self) -> None:
        service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=8)
        ledger.fail_next_finalize()
        with pytest.raises(LedgerSubmissionError):
            service.finalize(distribution_id, now=ledger.now)
        assert not store.find_distribution(distribution_id).finalized


class TestQueries:
    def test_stats(self) -> None:
        service, ledger, _ = _setup()
        distribution_id = _create(service)
        ledger.claim(distribution_id, ADDR_B, 50 * ETHER)
        service.sync_claim(distribution_id, ADDR_B, now=_now())
        service.sync_from_ledger(distribution_id)

        stats = service.distribution_stats(distribution_id, now=_now())
        assert stats["status"] == "active"
        assert stats["unclaimed_amount"] == str(125 * ETHER)
        assert stats["claim_rate"] == round(50 * 100 / 175, 2)
        assert stats["claimed_count"] == 1
        assert stats["fully_claimed_count"] == 1
        assert stats["total_claims"] == 1
        assert stats["time_remaining_seconds"] == 7 * 24 * 3600

    def test_tree_stats(self) -> None:
        service, _, _ = _setup()
        distribution_id = _create(service)
        stats = service.tree_stats(distribution_id)
        assert stats["recipient_count"] == 3
        assert stats["max_allocation"] == 100 * ETHER

    def test_list_and_per_address(self) -> None:
        service, ledger, _ = _setup()
        first = _create(service)
        second = _create(service, vault_type="social_posters", created_by="ops")
        listed = service.list_distributions(now=_now())
        assert [d.distribution_id for d in listed] == [second, first]
        assert [d.distribution_id for d in service.list_distributions(created_by="OPS", now=_now())] == [second]
        assert [d.distribution_id for d in service.list_distributions(vault_type="SOCIAL_POSTERS", now=_now())] == [second]

        mine = service.distributions_for(ADDR_B, now=_now())
        assert [m["distribution_id"] for m in mine] == [second, first]
        assert mine[0]["claimable"] == str(50 * ETHER)
