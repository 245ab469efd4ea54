"""Tests for the finalization scheduler: sweeps, backoff, races and manual runs."""

import threading

import pytest
from datetime import datetime, timedelta, timezone

from fakes import FakeLedgerClient
from merkledrop.config import DistributorConfig
from merkledrop.errors import LedgerSubmissionError
from merkledrop.finalization.scheduler import FinalizationScheduler
from merkledrop.models.distribution import AttemptStatus, ExecutionType
from merkledrop.persistence.distribution_store import DistributionLedger
from merkledrop.service import DistributionLifecycleService, FinalizeStatus

ADDR_A = "0x" + "aa" * 20
ADDR_B = "0x" + "bb" * 20


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _setup(**config_overrides):
    config_overrides.setdefault("auto_finalization_enabled", True)
    config = DistributorConfig(**config_overrides)
    ledger = FakeLedgerClient(now=_now())
    store = DistributionLedger()
    service = DistributionLifecycleService(store, ledger)
    scheduler = FinalizationScheduler(service, ledger, config)
    return scheduler, service, ledger, store


def _create(service, days: int = 7) -> int:
    created = service.create_distribution(
        [{"address": ADDR_A, "amount": "10"}, {"address": ADDR_B, "amount": "5"}],
        "ECOSYSTEM_FUND", days, now=_now(),
    )
    return created.distribution.distribution_id


class TestSweep:
    def test_nothing_expired(self) -> None:
        scheduler, service, ledger, _ = _setup()
        _create(service)
        summary = scheduler.run_once(now=_now() + timedelta(days=1))
        assert summary.ran
        assert summary.outcomes == ()
        assert ledger.finalize_calls == []

    def test_finalizes_expired(self) -> None:
        scheduler, service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=7, minutes=1)

        summary = scheduler.run_once(now=ledger.now)
        assert summary.count(AttemptStatus.SUCCESS) == 1
        attempt = store.find_attempt(distribution_id)
        assert attempt.status == AttemptStatus.SUCCESS
        assert attempt.execution_type == ExecutionType.AUTO
        assert attempt.tx_ref
        assert store.find_distribution(distribution_id).finalized

        again = scheduler.run_once(now=ledger.now + timedelta(hours=1))
        assert again.outcomes == ()
        assert ledger.finalize_calls == [distribution_id]

    def test_disabled_is_noop(self) -> None:
        scheduler, service, ledger, _ = _setup(auto_finalization_enabled=False)
        _create(service)
        summary = scheduler.run_once(now=_now() + timedelta(days=8))
        assert not summary.ran
        assert summary.reason == "disabled"
        assert ledger.finalize_calls == []

    def test_overlapping_run_rejected(self) -> None:
        scheduler, _, _, _ = _setup()
        scheduler._run_lock.acquire()
        try:
            summary = scheduler.run_once(now=_now())
        finally:
            scheduler._run_lock.release()
        assert not summary.ran
        assert summary.reason == "already running"

    def test_low_signer_balance_aborts(self) -> None:
        scheduler, service, ledger, store = _setup()
        distribution_id = _create(service, days=1)
        ledger.balance = 10**15
        summary = scheduler.run_once(now=_now() + timedelta(days=2))
        assert not summary.ran
        assert summary.reason == "insufficient signer balance"
        assert store.find_attempt(distribution_id) is None

    def test_per_run_cap(self) -> None:
        scheduler, service, ledger, _ = _setup(max_finalizations_per_run=2)
        ids = [_create(service, days=1) for _ in range(3)]
        ledger.now = _now() + timedelta(days=2)

        first = scheduler.run_once(now=ledger.now)
        assert len(first.outcomes) == 2
        assert first.deferred == 1
        second = scheduler.run_once(now=ledger.now)
        assert [o.distribution_id for o in second.outcomes] == [ids[2]]


    def test_unexpected_error_does_not_stop_batch(self) -> None:
        scheduler, service, ledger, store = _setup()
        broken = _create(service, days=1)
        healthy = _create(service, days=1)
        t = _now() + timedelta(days=2)
        ledger.now = t
        original = ledger.submit_finalize

        def flaky(distribution_id: int):
            if distribution_id == broken:
                raise ConnectionError("connection reset")
            return original(distribution_id)

        ledger.submit_finalize = flaky
        summary = scheduler.run_once(now=t)

        assert len(summary.outcomes) == 2
        attempt = store.find_attempt(broken)
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.retry_count == 1
        assert attempt.next_retry_at == t + timedelta(hours=1)
        assert "ConnectionError" in attempt.error
        assert store.find_attempt(healthy).status == AttemptStatus.SUCCESS
        assert store.find_distribution(healthy).finalized


class TestRetries:
    def test_backoff_then_skipped(self) -> None:
        """Three failures schedule +1h/+2h/+3h; the next one gives up."""
        scheduler, service, ledger, store = _setup()
        distribution_id = _create(service)
        t = _now() + timedelta(days=7)
        ledger.now = t
        ledger.fail_next_finalize(times=4, message="connection reset")

        scheduler.run_once(now=t)
        attempt = store.find_attempt(distribution_id)
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.retry_count == 1
        assert attempt.next_retry_at == t + timedelta(hours=1)

        # Not due yet: nothing happens.
        assert scheduler.run_once(now=t + timedelta(minutes=30)).outcomes == ()

        t += timedelta(hours=1)
        scheduler.run_once(now=t)
        attempt = store.find_attempt(distribution_id)
        assert attempt.retry_count == 2
        assert attempt.next_retry_at == t + timedelta(hours=2)

        t += timedelta(hours=2)
        scheduler.run_once(now=t)
        attempt = store.find_attempt(distribution_id)
        assert attempt.retry_count == 3
        assert attempt.next_retry_at == t + timedelta(hours=3)

        t += timedelta(hours=3)
        summary = scheduler.run_once(now=t)
        attempt = store.find_attempt(distribution_id)
        assert summary.count(AttemptStatus.SKIPPED) == 1
        assert attempt.status == AttemptStatus.SKIPPED
        assert attempt.next_retry_at is None
        assert "connection reset" in attempt.error
        assert attempt.error_count == 4

        assert scheduler.run_once(now=t + timedelta(days=1)).outcomes == ()
        assert len(ledger.finalize_calls) == 4
        assert not store.find_distribution(distribution_id).finalized

    def test_retry_succeeds(self) -> None:
        scheduler, service, ledger, store = _setup()
        distribution_id = _create(service)
        t = _now() + timedelta(days=7)
        ledger.now = t
        ledger.fail_next_finalize()

        scheduler.run_once(now=t)
        summary = scheduler.run_once(now=t + timedelta(hours=1))
        assert summary.count(AttemptStatus.SUCCESS) == 1
        attempt = store.find_attempt(distribution_id)
        assert attempt.status == AttemptStatus.SUCCESS
        assert attempt.retry_count == 1
        assert attempt.next_retry_at is None

    def test_custom_backoff_schedule(self) -> None:
        scheduler, service, ledger, store = _setup(max_retries=1, backoff_hours=(6,))
        distribution_id = _create(service)
        t = _now() + timedelta(days=7)
        ledger.now = t
        ledger.fail_next_finalize(times=2)

        scheduler.run_once(now=t)
        assert store.find_attempt(distribution_id).next_retry_at == t + timedelta(hours=6)
        scheduler.run_once(now=t + timedelta(hours=6))
        assert store.find_attempt(distribution_id).status == AttemptStatus.SKIPPED


class TestRaces:
    def test_finalized_elsewhere_is_skipped(self) -> None:
        scheduler, service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=8)
        ledger.finalize_elsewhere(distribution_id)

        summary = scheduler.run_once(now=ledger.now)
        attempt = store.find_attempt(distribution_id)
        assert summary.count(AttemptStatus.SKIPPED) == 1
        assert attempt.status == AttemptStatus.SKIPPED
        assert attempt.error == "already finalized"
        assert ledger.finalize_calls == []
        assert store.find_distribution(distribution_id).finalized

    def test_already_finalized_revert_is_skipped(self) -> None:
        scheduler, service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=8)
        ledger.finalize_failures.append(LedgerSubmissionError(
            "submit_finalize", "reverted: MWG: Already finalized",
            revert_reason="MWG: Already finalized",
        ))

        scheduler.run_once(now=ledger.now)
        attempt = store.find_attempt(distribution_id)
        assert attempt.status == AttemptStatus.SKIPPED
        assert attempt.error == "already finalized"

    def test_manual_and_scheduled_finalize_once(self) -> None:
        scheduler, service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=8)

        manual = scheduler.finalize_manual(distribution_id, executed_by="alice", now=ledger.now)
        assert manual.status == FinalizeStatus.FINALIZED
        summary = scheduler.run_once(now=ledger.now)
        assert summary.outcomes == ()
        assert ledger.finalize_calls == [distribution_id]


class TestManual:
    def test_records_manual_attempt(self) -> None:
        scheduler, service, ledger, store = _setup(auto_finalization_enabled=False)
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=8)

        result = scheduler.finalize_manual(distribution_id, executed_by="alice", now=ledger.now)
        attempt = store.find_attempt(distribution_id)
        assert result.finalized
        assert attempt.status == AttemptStatus.SUCCESS
        assert attempt.execution_type == ExecutionType.MANUAL
        assert attempt.executed_by == "alice"

    def test_failure_surfaces_without_retry(self) -> None:
        scheduler, service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=8)
        ledger.fail_next_finalize(message="gas too low")

        with pytest.raises(LedgerSubmissionError):
            scheduler.finalize_manual(distribution_id, executed_by="alice", now=ledger.now)
        attempt = store.find_attempt(distribution_id)
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.next_retry_at is None
        assert attempt.retry_count == 0
        assert ledger.finalize_calls == [distribution_id]

    def test_sweep_takes_back_failed_manual(self) -> None:
        scheduler, service, ledger, store = _setup()
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=8)
        ledger.fail_next_finalize(message="gas too low")
        with pytest.raises(LedgerSubmissionError):
            scheduler.finalize_manual(distribution_id, executed_by="alice", now=ledger.now)

        summary = scheduler.run_once(now=ledger.now + timedelta(hours=1))
        attempt = store.find_attempt(distribution_id)
        assert summary.count(AttemptStatus.SUCCESS) == 1
        assert attempt.status == AttemptStatus.SUCCESS
        assert attempt.execution_type == ExecutionType.AUTO
        assert store.find_distribution(distribution_id).finalized

    def test_not_expired_records_nothing(self) -> None:
        scheduler, service, _, store = _setup()
        distribution_id = _create(service)
        result = scheduler.finalize_manual(distribution_id, executed_by="alice", now=_now())
        assert result.status == FinalizeStatus.NOT_EXPIRED
        assert store.find_attempt(distribution_id) is None

    def test_manual_revives_skipped(self) -> None:
        scheduler, service, ledger, store = _setup(max_retries=0)
        distribution_id = _create(service)
        ledger.now = _now() + timedelta(days=8)
        ledger.fail_next_finalize()
        scheduler.run_once(now=ledger.now)
        assert store.find_attempt(distribution_id).status == AttemptStatus.SKIPPED

        result = scheduler.finalize_manual(distribution_id, executed_by="bob", now=ledger.now)
        assert result.finalized
        assert store.find_attempt(distribution_id).status == AttemptStatus.SUCCESS


class TestReporting:
    def test_history_and_stats(self) -> None:
        scheduler, service, ledger, _ = _setup(max_retries=0)
        ok = _create(service, days=1)
        bad = _create(service, days=1)
        ledger.now = _now() + timedelta(days=2)
        original = ledger.submit_finalize

        def flaky(distribution_id: int):
            if distribution_id == bad:
                raise LedgerSubmissionError("submit_finalize", "rpc down")
            return original(distribution_id)

        ledger.submit_finalize = flaky
        scheduler.run_once(now=ledger.now)

        statuses = {a.distribution_id: a.status for a in scheduler.history()}
        assert statuses == {ok: AttemptStatus.SUCCESS, bad: AttemptStatus.SKIPPED}
        assert [a.distribution_id for a in scheduler.history(status=AttemptStatus.SUCCESS)] == [ok]

        stats = scheduler.stats(days=7, now=ledger.now)
        assert stats["total"] == 2
        assert stats["success"] == 1
        assert stats["skipped"] == 1
        assert stats["success_rate"] == 50.0


class TestBackgroundLoop:
    def test_start_and_stop(self) -> None:
        scheduler, _, _, _ = _setup(finalization_interval_seconds=3600)
        ran = threading.Event()
        original = scheduler.run_once

        def tracked(now=None):
            ran.set()
            return original(now)

        scheduler.run_once = tracked
        scheduler.start()
        assert ran.wait(timeout=5)
        scheduler.stop(timeout=5)
        assert not scheduler.running

    def test_loop_survives_unexpected_error(self) -> None:
        scheduler, _, _, _ = _setup(finalization_interval_seconds=1)
        calls = []
        second_run = threading.Event()

        def failing_then_ok(now=None):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            second_run.set()

        scheduler.run_once = failing_then_ok
        scheduler.start()
        try:
            assert second_run.wait(timeout=5)
        finally:
            scheduler.stop(timeout=5)
        assert len(calls) >= 2
