"""Finalization scheduler: closes expired distributions on a periodic tick.

Each run sweeps two candidate sets:
- expired, unfinalized distributions with no attempt yet (or one left
  PENDING by an interrupted run, or FAILED by a manual finalize),
- FAILED attempts whose ``next_retry_at`` has come.

For each candidate the mirror is first reconciled with the ledger, then
``DistributionLifecycleService.finalize`` is called. Failures schedule a
retry using the configured backoff (1h, 2h, 3h by default). Once the
retry cap is exhausted the attempt is SKIPPED and keeps its last error
for operator inspection. A distribution found finalized elsewhere is
SKIPPED with reason "already finalized"; races are expected.

There is no lock around finalization itself. The service guard and the
ledger's own rejection of a second finalize are what prevent doubles.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from merkledrop.config import DistributorConfig
from merkledrop.errors import LedgerSubmissionError
from merkledrop.ledger.client import LedgerClient
from merkledrop.models.distribution import (
    AttemptStatus,
    ExecutionType,
    FinalizationAttempt,
)
from merkledrop.service import (
    DistributionLifecycleService,
    FinalizeResult,
    FinalizeStatus,
)

logger = logging.getLogger(__name__)

ALREADY_FINALIZED_REASON = "already finalized"


@dataclass(frozen=True)
class AttemptOutcome:
    distribution_id: int
    status: AttemptStatus
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    tx_ref: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RunSummary:
    """What one scheduler tick did."""
    started_at: datetime
    ran: bool
    reason: Optional[str] = None  # why the run did not execute
    outcomes: tuple[AttemptOutcome, ...] = ()
    deferred: int = 0  # candidates left for the next run by the per-run cap

    def count(self, status: AttemptStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "ran": self.ran,
            "reason": self.reason,
            "processed": len(self.outcomes),
            "succeeded": self.count(AttemptStatus.SUCCESS),
            "failed": self.count(AttemptStatus.FAILED),
            "skipped": self.count(AttemptStatus.SKIPPED),
            "deferred": self.deferred,
            "outcomes": [
                {
                    "distribution_id": o.distribution_id,
                    "status": o.status.value,
                    "retry_count": o.retry_count,
                    "next_retry_at": o.next_retry_at.isoformat() if o.next_retry_at else None,
                    "tx_ref": o.tx_ref,
                    "error": o.error,
                }
                for o in self.outcomes
            ],
        }


class FinalizationScheduler:
    """Periodic sweeper over expired distributions and due retries.

    Usage:
        scheduler = FinalizationScheduler(service, ledger_client, config)
        summary = scheduler.run_once()      # one sweep
        scheduler.start()                   # background thread
        scheduler.stop()
    """

    def __init__(
        self,
        service: DistributionLifecycleService,
        ledger: LedgerClient,
        config: Optional[DistributorConfig] = None,
    ) -> None:
        self._service = service
        self._store = service.store
        self._ledger = ledger
        self._config = config or DistributorConfig()
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return self._config.auto_finalization_enabled

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def run_once(self, now: Optional[datetime] = None) -> RunSummary:
        if now is None:
            now = datetime.now(timezone.utc)
        if not self.enabled:
            logger.info("Auto-finalization disabled; nothing to do")
            return RunSummary(started_at=now, ran=False, reason="disabled")
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Finalization run already in progress; skipping this tick")
            return RunSummary(started_at=now, ran=False, reason="already running")
        try:
            return self._sweep(now)
        finally:
            self._run_lock.release()

    def _sweep(self, now: datetime) -> RunSummary:
        try:
            balance = self._ledger.signer_balance()
        except LedgerSubmissionError as exc:
            logger.error("Cannot read signer balance: %s", exc)
            return RunSummary(started_at=now, ran=False, reason=f"balance check failed: {exc}")
        if balance < self._config.min_signer_balance_wei:
            logger.error(
                "Signer balance %d below minimum %d; aborting run",
                balance, self._config.min_signer_balance_wei,
            )
            return RunSummary(started_at=now, ran=False, reason="insufficient signer balance")

        candidates = self._candidates(now)
        cap = self._config.max_finalizations_per_run
        batch, deferred = candidates[:cap], max(len(candidates) - cap, 0)
        logger.info(
            "Finalization run: %d candidates, processing %d", len(candidates), len(batch),
        )

        outcomes = tuple(self._attempt(distribution_id, now) for distribution_id in batch)
        summary = RunSummary(started_at=now, ran=True, outcomes=outcomes, deferred=deferred)
        logger.info(
            "Finalization run complete: %d succeeded, %d failed, %d skipped, %d deferred",
            summary.count(AttemptStatus.SUCCESS),
            summary.count(AttemptStatus.FAILED),
            summary.count(AttemptStatus.SKIPPED),
            deferred,
        )
        return summary

    def _candidates(self, now: datetime) -> list[int]:
        """Due retries first, then fresh expirations. Each id once.

        A FAILED attempt without ``next_retry_at`` comes from a failed manual
        finalize; the sweep takes such a distribution back like a fresh one.
        """
        ids: list[int] = [
            a.distribution_id
            for a in self._store.find_due_retries(now, self._config.max_retries)
        ]
        seen = set(ids)
        for distribution in self._store.find_expired_unfinalized(now):
            if distribution.distribution_id in seen:
                continue
            attempt = self._store.find_attempt(distribution.distribution_id)
            if attempt is None or attempt.status == AttemptStatus.PENDING or (
                attempt.status == AttemptStatus.FAILED and attempt.next_retry_at is None
            ):
                ids.append(distribution.distribution_id)
                seen.add(distribution.distribution_id)
        return ids

    def _attempt(self, distribution_id: int, now: datetime) -> AttemptOutcome:
        attempt = self._store.find_attempt(distribution_id)
        if attempt is None:
            attempt = FinalizationAttempt(distribution_id=distribution_id, created_utc=now)
        attempt.begin(ExecutionType.AUTO, "scheduler", now)
        self._store.save_attempt(attempt)
        logger.info(
            "Finalizing distribution %d (retry %d)", distribution_id, attempt.retry_count,
        )

        try:
            sync = self._service.sync_from_ledger(distribution_id)
            if sync.finalized:
                result = FinalizeResult(distribution_id, FinalizeStatus.ALREADY_FINALIZED)
            else:
                result = self._service.finalize(distribution_id, now)
        except (LedgerSubmissionError, ValueError) as exc:
            self._record_failure(attempt, str(exc), now)
        except Exception as exc:
            # One distribution's fault must not stop the rest of the batch.
            logger.exception("Unexpected error finalizing distribution %d", distribution_id)
            self._record_failure(attempt, f"{type(exc).__name__}: {exc}", now)
        else:
            if result.status == FinalizeStatus.FINALIZED:
                attempt.mark_success(result.tx_ref, now)
                logger.info("Distribution %d finalized by scheduler", distribution_id)
            elif result.status == FinalizeStatus.ALREADY_FINALIZED:
                attempt.mark_skipped(ALREADY_FINALIZED_REASON, now)
                logger.info("Distribution %d already finalized; skipped", distribution_id)
            else:
                attempt.mark_skipped("not expired", now)
                logger.warning("Distribution %d not expired at %s; skipped", distribution_id, now)
        self._store.save_attempt(attempt)
        return AttemptOutcome(
            distribution_id=distribution_id,
            status=attempt.status,
            retry_count=attempt.retry_count,
            next_retry_at=attempt.next_retry_at,
            tx_ref=attempt.tx_ref,
            error=attempt.error,
        )

    def _record_failure(self, attempt: FinalizationAttempt, error: str, now: datetime) -> None:
        attempt.mark_failed(error, now)
        if attempt.retry_count < self._config.max_retries:
            delay = self._config.backoff_for(attempt.retry_count + 1)
            attempt.schedule_retry(delay, now)
            logger.warning(
                "Finalization of %d failed (%s); retry %d at %s",
                attempt.distribution_id, error, attempt.retry_count,
                attempt.next_retry_at.isoformat(),
            )
        else:
            attempt.mark_skipped(f"retries exhausted: {error}", now)
            logger.error(
                "Finalization of %d failed after %d retries; giving up: %s",
                attempt.distribution_id, attempt.retry_count, error,
            )

    # ------------------------------------------------------------------
    # Manual finalization
    # ------------------------------------------------------------------

    def finalize_manual(
        self,
        distribution_id: int,
        executed_by: str,
        now: Optional[datetime] = None,
    ) -> FinalizeResult:
        """Operator-triggered finalize. Never schedules a retry.

        Ledger errors are recorded on the attempt and re-raised. Works
        whether or not auto-finalization is enabled.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        attempt = self._store.find_attempt(distribution_id)
        if attempt is not None and attempt.status == AttemptStatus.SUCCESS:
            return self._service.finalize(distribution_id, now)
        if attempt is None:
            attempt = FinalizationAttempt(distribution_id=distribution_id, created_utc=now)
        attempt.begin(ExecutionType.MANUAL, executed_by, now)

        try:
            result = self._service.finalize(distribution_id, now)
        except LedgerSubmissionError as exc:
            attempt.mark_failed(str(exc), now)
            self._store.save_attempt(attempt)
            logger.error("Manual finalization of %d by %s failed: %s", distribution_id, executed_by, exc)
            raise

        if result.status == FinalizeStatus.NOT_EXPIRED:
            return result
        if result.status == FinalizeStatus.FINALIZED:
            attempt.mark_success(result.tx_ref, now)
        else:
            attempt.mark_skipped(ALREADY_FINALIZED_REASON, now)
        self._store.save_attempt(attempt)
        logger.info(
            "Manual finalization of %d by %s: %s", distribution_id, executed_by, result.status.value,
        )
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def history(
        self,
        limit: int = 100,
        status: Optional[AttemptStatus] = None,
    ) -> list[FinalizationAttempt]:
        return self._store.attempt_history(limit=limit, status=status)

    def stats(self, days: int = 30, now: Optional[datetime] = None) -> dict[str, Any]:
        """Attempt counts and success rate over the trailing ``days``."""
        if now is None:
            now = datetime.now(timezone.utc)
        counts = self._store.attempt_status_counts(since=now - timedelta(days=days))
        total = sum(counts.values())
        succeeded = counts.get(AttemptStatus.SUCCESS.value, 0)
        return {
            "days": days,
            "total": total,
            "success": succeeded,
            "failed": counts.get(AttemptStatus.FAILED.value, 0),
            "skipped": counts.get(AttemptStatus.SKIPPED.value, 0),
            "pending": counts.get(AttemptStatus.PENDING.value, 0),
            "success_rate": round(succeeded * 100 / total, 2) if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Finalization scheduler already started")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.serve, name="finalization-scheduler", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def serve(self) -> None:
        """Run sweeps every configured interval until ``stop`` is called."""
        interval = self._config.finalization_interval_seconds
        logger.info("Finalization scheduler started (interval %ds)", interval)
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Finalization run failed")
            self._stop.wait(interval)
        logger.info("Finalization scheduler stopped")
