"""Distribution ledger: persistent off-chain mirror of distributions and leaves.

Backed by SQLite. The mirror is a cache of ledger state: every writer
treats the external ledger as the tie-breaker and ``sync_from_ledger`` in
the service layer is the reconciliation path.

Storage contract:
- (distribution_id, address) is unique; (distribution_id, leaf_index) is unique.
- A distribution and all of its leaves are written in ONE transaction.
  A partially written leaf set is never observable.
- Leaves are read back ordered by leaf_index, the order proofs depend on.
- ``finalized`` is monotonic at the storage level too (MAX on update).
- Nothing is ever deleted.

Amounts are stored as decimal TEXT because uint256 values exceed SQLite's
64-bit integers. Timestamps are stored as fixed-width UTC strings so that
text comparison matches time order.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from merkledrop.errors import LeafNotFound
from merkledrop.models.distribution import (
    AttemptStatus,
    Distribution,
    DistributionStatus,
    ExecutionType,
    FinalizationAttempt,
    Leaf,
    VaultType,
)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS distributions (
        distribution_id INTEGER PRIMARY KEY,
        merkle_root TEXT NOT NULL,
        total_allocated TEXT NOT NULL,
        total_claimed TEXT NOT NULL DEFAULT '0',
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        vault_type TEXT NOT NULL,
        finalized INTEGER NOT NULL DEFAULT 0,
        recipient_count INTEGER NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        category TEXT NOT NULL DEFAULT 'general',
        tags TEXT NOT NULL DEFAULT '[]',
        created_by TEXT,
        creation_tx_ref TEXT,
        finalization_tx_ref TEXT,
        created_utc TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS leaves (
        distribution_id INTEGER NOT NULL
            REFERENCES distributions(distribution_id) ON DELETE CASCADE,
        address TEXT NOT NULL,
        allocated_amount TEXT NOT NULL,
        leaf_hash TEXT NOT NULL,
        leaf_index INTEGER NOT NULL,
        claimed_amount TEXT NOT NULL DEFAULT '0',
        claim_count INTEGER NOT NULL DEFAULT 0,
        last_claim_time TEXT,
        last_claim_tx_ref TEXT,
        PRIMARY KEY (distribution_id, address),
        UNIQUE (distribution_id, leaf_index)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_leaves_address ON leaves(address);",
    "CREATE INDEX IF NOT EXISTS idx_distributions_end ON distributions(finalized, end_time);",
    """
    CREATE TABLE IF NOT EXISTS finalization_attempts (
        distribution_id INTEGER PRIMARY KEY,
        status TEXT NOT NULL,
        execution_type TEXT NOT NULL,
        executed_by TEXT NOT NULL,
        tx_ref TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        next_retry_at TEXT,
        error TEXT,
        error_count INTEGER NOT NULL DEFAULT 0,
        last_error_at TEXT,
        created_utc TEXT,
        updated_utc TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_attempts_retry ON finalization_attempts(status, next_retry_at);",
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError(f"Timestamps must be timezone-aware, got {value!r}")
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


class DistributionLedger:
    """Query/update surface over Distribution, Leaf and FinalizationAttempt records.

    Usage:
        ledger = DistributionLedger(Path("data/merkledrop.db"))
        ledger.record_distribution(distribution, leaves)
        leaves = ledger.find_leaves_for(distribution.distribution_id)

    ``DistributionLedger()`` with no path keeps everything in memory,
    which is what the tests use.
    """

    def __init__(self, db_path: "Path | str" = ":memory:") -> None:
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = str(db_path)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._lock = threading.RLock()
        self.ensure_schema()

    def ensure_schema(self) -> None:
        with self._lock, self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Distributions and leaves
    # ------------------------------------------------------------------

    def record_distribution(self, distribution: Distribution, leaves: Iterable[Leaf]) -> bool:
        """Atomically write a distribution and all of its leaves.

        Returns False (and writes nothing) when the same distribution,
        identified by id and merkle root, is already recorded. A different
        root under an existing id raises ValueError.
        """
        leaf_list = sorted(leaves, key=lambda l: l.leaf_index)
        self._check_leaf_set(distribution, leaf_list)

        with self._lock:
            existing = self.find_distribution(distribution.distribution_id)
            if existing is not None:
                if existing.merkle_root == distribution.merkle_root:
                    return False
                raise ValueError(
                    f"Distribution {distribution.distribution_id} already recorded "
                    f"with root {existing.merkle_root}"
                )
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO distributions (
                        distribution_id, merkle_root, total_allocated, total_claimed,
                        start_time, end_time, vault_type, finalized, recipient_count,
                        title, description, category, tags, created_by,
                        creation_tx_ref, finalization_tx_ref, created_utc
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        distribution.distribution_id,
                        distribution.merkle_root,
                        str(distribution.total_allocated),
                        str(distribution.total_claimed),
                        _ts(distribution.start_time),
                        _ts(distribution.end_time),
                        distribution.vault_type.value,
                        int(distribution.finalized),
                        distribution.recipient_count,
                        distribution.title,
                        distribution.description,
                        distribution.category,
                        json.dumps(list(distribution.tags)),
                        distribution.created_by,
                        distribution.creation_tx_ref,
                        distribution.finalization_tx_ref,
                        _ts(distribution.created_utc),
                    ),
                )
                self._conn.executemany(
                    """
                    INSERT INTO leaves (
                        distribution_id, address, allocated_amount, leaf_hash, leaf_index,
                        claimed_amount, claim_count, last_claim_time, last_claim_tx_ref
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            leaf.distribution_id,
                            leaf.address,
                            str(leaf.allocated_amount),
                            leaf.leaf_hash,
                            leaf.leaf_index,
                            str(leaf.claimed_amount),
                            leaf.claim_count,
                            _ts(leaf.last_claim_time),
                            leaf.last_claim_tx_ref,
                        )
                        for leaf in leaf_list
                    ],
                )
        return True

    def update_distribution(self, distribution: Distribution) -> None:
        """Persist the mutable (ledger-mirrored) fields of a distribution."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """
                UPDATE distributions
                SET total_claimed = ?,
                    finalized = MAX(finalized, ?),
                    finalization_tx_ref = COALESCE(?, finalization_tx_ref)
                WHERE distribution_id = ?
                """,
                (
                    str(distribution.total_claimed),
                    int(distribution.finalized),
                    distribution.finalization_tx_ref,
                    distribution.distribution_id,
                ),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Distribution {distribution.distribution_id} is not recorded")

    def find_distribution(self, distribution_id: int) -> Optional[Distribution]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM distributions WHERE distribution_id = ?",
                (distribution_id,),
            ).fetchone()
        return _row_to_distribution(row) if row else None

    def find_leaf(self, distribution_id: int, address: str) -> Optional[Leaf]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM leaves WHERE distribution_id = ? AND address = ?",
                (distribution_id, address.strip().lower()),
            ).fetchone()
        return _row_to_leaf(row) if row else None

    def find_leaves_for(self, distribution_id: int) -> list[Leaf]:
        """All leaves of a distribution, ordered by leaf_index."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM leaves WHERE distribution_id = ? ORDER BY leaf_index ASC",
                (distribution_id,),
            ).fetchall()
        return [_row_to_leaf(r) for r in rows]

    def find_leaves_by_address(self, address: str) -> list[Leaf]:
        """Every leaf held by an address, newest distribution first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM leaves WHERE address = ? ORDER BY distribution_id DESC",
                (address.strip().lower(),),
            ).fetchall()
        return [_row_to_leaf(r) for r in rows]

    def upsert_claim_state(
        self,
        distribution_id: int,
        address: str,
        claimed_amount: int,
        tx_ref: Optional[str],
        now: Optional[datetime] = None,
    ) -> Leaf:
        """Apply a ledger claim event to a leaf. Raises LeafNotFound."""
        if now is None:
            now = datetime.now(timezone.utc)
        with self._lock:
            leaf = self.find_leaf(distribution_id, address)
            if leaf is None:
                raise LeafNotFound(address)
            leaf.apply_claim(claimed_amount, tx_ref, now)
            with self._conn:
                self._conn.execute(
                    """
                    UPDATE leaves
                    SET claimed_amount = ?, claim_count = ?,
                        last_claim_time = ?, last_claim_tx_ref = ?
                    WHERE distribution_id = ? AND address = ?
                    """,
                    (
                        str(leaf.claimed_amount),
                        leaf.claim_count,
                        _ts(leaf.last_claim_time),
                        leaf.last_claim_tx_ref,
                        distribution_id,
                        leaf.address,
                    ),
                )
        return leaf

    def list_distributions(
        self,
        status: Optional[DistributionStatus] = None,
        vault_type: Optional[VaultType] = None,
        created_by: Optional[str] = None,
        limit: int = 100,
        now: Optional[datetime] = None,
    ) -> list[Distribution]:
        """Distributions, newest first, filtered by derived status and fields."""
        if now is None:
            now = datetime.now(timezone.utc)
        clauses: list[str] = []
        params: list[Any] = []
        if vault_type is not None:
            clauses.append("vault_type = ?")
            params.append(vault_type.value)
        if created_by is not None:
            clauses.append("created_by = ?")
            params.append(created_by.lower())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM distributions {where} ORDER BY distribution_id DESC",
                params,
            ).fetchall()
        result = [_row_to_distribution(r) for r in rows]
        if status is not None:
            result = [d for d in result if d.status_at(now) == status]
        return result[:limit]

    def find_expired_unfinalized(self, now: datetime) -> list[Distribution]:
        """Distributions whose end time has passed and are not finalized."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM distributions
                WHERE finalized = 0 AND end_time <= ?
                ORDER BY end_time ASC, distribution_id ASC
                """,
                (_ts(now),),
            ).fetchall()
        return [_row_to_distribution(r) for r in rows]

    def leaf_stats(self, distribution_id: int) -> dict[str, int]:
        """Per-distribution recipient claim figures."""
        leaves = self.find_leaves_for(distribution_id)
        return {
            "total_recipients": len(leaves),
            "claimed_count": sum(1 for l in leaves if l.claim_count > 0),
            "fully_claimed_count": sum(1 for l in leaves if l.fully_claimed),
            "total_claims": sum(l.claim_count for l in leaves),
            "claimed_sum": sum(l.claimed_amount for l in leaves),
        }

    # ------------------------------------------------------------------
    # Finalization attempts
    # ------------------------------------------------------------------

    def find_attempt(self, distribution_id: int) -> Optional[FinalizationAttempt]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM finalization_attempts WHERE distribution_id = ?",
                (distribution_id,),
            ).fetchone()
        return _row_to_attempt(row) if row else None

    def save_attempt(self, attempt: FinalizationAttempt) -> None:
        """Insert or update the attempt record for its distribution."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO finalization_attempts (
                    distribution_id, status, execution_type, executed_by, tx_ref,
                    retry_count, next_retry_at, error, error_count, last_error_at,
                    created_utc, updated_utc
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(distribution_id) DO UPDATE SET
                    status = excluded.status,
                    execution_type = excluded.execution_type,
                    executed_by = excluded.executed_by,
                    tx_ref = excluded.tx_ref,
                    retry_count = excluded.retry_count,
                    next_retry_at = excluded.next_retry_at,
                    error = excluded.error,
                    error_count = excluded.error_count,
                    last_error_at = excluded.last_error_at,
                    updated_utc = excluded.updated_utc
                """,
                (
                    attempt.distribution_id,
                    attempt.status.value,
                    attempt.execution_type.value,
                    attempt.executed_by,
                    attempt.tx_ref,
                    attempt.retry_count,
                    _ts(attempt.next_retry_at),
                    attempt.error,
                    attempt.error_count,
                    _ts(attempt.last_error_at),
                    _ts(attempt.created_utc),
                    _ts(attempt.updated_utc),
                ),
            )

    def find_due_retries(self, now: datetime, max_retries: int) -> list[FinalizationAttempt]:
        """Failed attempts whose retry time has come and cap is not exhausted."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM finalization_attempts
                WHERE status = ? AND next_retry_at IS NOT NULL
                  AND next_retry_at <= ? AND retry_count <= ?
                ORDER BY next_retry_at ASC
                """,
                (AttemptStatus.FAILED.value, _ts(now), max_retries),
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def attempt_history(
        self,
        limit: int = 100,
        status: Optional[AttemptStatus] = None,
    ) -> list[FinalizationAttempt]:
        """Attempt records, most recently updated first."""
        query = "SELECT * FROM finalization_attempts"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY updated_utc DESC, distribution_id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def attempt_status_counts(self, since: datetime) -> dict[str, int]:
        """Count attempts per status, for attempts created since ``since``."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT status, COUNT(*) AS n FROM finalization_attempts
                WHERE created_utc >= ? GROUP BY status
                """,
                (_ts(since),),
            ).fetchall()
        return {row["status"]: row["n"] for row in rows}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _check_leaf_set(distribution: Distribution, leaves: list[Leaf]) -> None:
        if not leaves:
            raise ValueError("A distribution needs at least one leaf")
        for expected, leaf in enumerate(leaves):
            if leaf.distribution_id != distribution.distribution_id:
                raise ValueError(
                    f"Leaf for {leaf.address} belongs to distribution "
                    f"{leaf.distribution_id}, not {distribution.distribution_id}"
                )
            if leaf.leaf_index != expected:
                raise ValueError(f"Leaf indices must be contiguous from 0; missing {expected}")
        total = sum(l.allocated_amount for l in leaves)
        if total != distribution.total_allocated:
            raise ValueError(
                f"Leaf allocations sum to {total}, distribution total is "
                f"{distribution.total_allocated}"
            )
        if len(leaves) != distribution.recipient_count:
            raise ValueError(
                f"Recipient count {distribution.recipient_count} does not match "
                f"{len(leaves)} leaves"
            )


def _row_to_distribution(row: sqlite3.Row) -> Distribution:
    return Distribution(
        distribution_id=row["distribution_id"],
        merkle_root=row["merkle_root"],
        total_allocated=int(row["total_allocated"]),
        total_claimed=int(row["total_claimed"]),
        start_time=_dt(row["start_time"]),
        end_time=_dt(row["end_time"]),
        vault_type=VaultType(row["vault_type"]),
        finalized=bool(row["finalized"]),
        recipient_count=row["recipient_count"],
        title=row["title"],
        description=row["description"],
        category=row["category"],
        tags=json.loads(row["tags"]),
        created_by=row["created_by"],
        creation_tx_ref=row["creation_tx_ref"],
        finalization_tx_ref=row["finalization_tx_ref"],
        created_utc=_dt(row["created_utc"]),
    )


def _row_to_leaf(row: sqlite3.Row) -> Leaf:
    return Leaf(
        distribution_id=row["distribution_id"],
        address=row["address"],
        allocated_amount=int(row["allocated_amount"]),
        leaf_hash=row["leaf_hash"],
        leaf_index=row["leaf_index"],
        claimed_amount=int(row["claimed_amount"]),
        claim_count=row["claim_count"],
        last_claim_time=_dt(row["last_claim_time"]),
        last_claim_tx_ref=row["last_claim_tx_ref"],
    )


def _row_to_attempt(row: sqlite3.Row) -> FinalizationAttempt:
    return FinalizationAttempt(
        distribution_id=row["distribution_id"],
        status=AttemptStatus(row["status"]),
        execution_type=ExecutionType(row["execution_type"]),
        executed_by=row["executed_by"],
        tx_ref=row["tx_ref"],
        retry_count=row["retry_count"],
        next_retry_at=_dt(row["next_retry_at"]),
        error=row["error"],
        error_count=row["error_count"],
        last_error_at=_dt(row["last_error_at"]),
        created_utc=_dt(row["created_utc"]),
        updated_utc=_dt(row["updated_utc"]),
    )
