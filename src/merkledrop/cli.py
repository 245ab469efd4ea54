"""merkledrop CLI: operator commands for Merkle distributions.

Usage:
    merkledrop create --file allocations.csv --vault PLAYER_TASKS --days 7 --title "Week 12"
    merkledrop create --file allocations.json --vault SOCIAL_POSTERS --days 14 --dry-run
    merkledrop proof --id 3 --address 0xabc...
    merkledrop claimable --id 3 --address 0xabc...
    merkledrop sync --id 3
    merkledrop finalize --id 3 --operator alice
    merkledrop list --status active --vault PLAYER_TASKS
    merkledrop stats --id 3
    merkledrop finalizer run-once
    merkledrop finalizer serve

Ledger credentials and the database path come from the environment
(or a .env file); see ``merkledrop.config``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from merkledrop.allocation.parsing import load_allocations
from merkledrop.allocation.validator import AllocationValidator
from merkledrop.config import DistributorConfig
from merkledrop.errors import DistributorError, ValidationError
from merkledrop.finalization.scheduler import FinalizationScheduler
from merkledrop.ledger.client import LedgerClient
from merkledrop.models.distribution import (
    AttemptStatus,
    Distribution,
    DistributionStatus,
    FinalizationAttempt,
    VaultType,
)
from merkledrop.persistence.distribution_store import DistributionLedger
from merkledrop.service import DistributionLifecycleService, DistributionMetadata

logger = logging.getLogger("merkledrop.cli")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _build_ledger_client(config: DistributorConfig) -> LedgerClient:
    return config.build_ledger_client()


def _load_config(args: argparse.Namespace) -> DistributorConfig:
    return DistributorConfig.from_env(args.env_file)


def _make_store(args: argparse.Namespace, config: DistributorConfig) -> DistributionLedger:
    return DistributionLedger(Path(args.db) if args.db else config.database_path)


def _make_service(
    args: argparse.Namespace,
    with_ledger: bool = True,
) -> tuple[DistributionLifecycleService, DistributorConfig]:
    """Create a service over durable storage, with a live ledger client when needed."""
    config = _load_config(args)
    ledger = _build_ledger_client(config) if with_ledger else None
    return DistributionLifecycleService(_make_store(args, config), ledger), config


def _make_scheduler(args: argparse.Namespace) -> FinalizationScheduler:
    config = _load_config(args)
    ledger = _build_ledger_client(config)
    service = DistributionLifecycleService(_make_store(args, config), ledger)
    return FinalizationScheduler(service, ledger, config)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _distribution_json(distribution: Distribution, status: DistributionStatus) -> dict[str, Any]:
    return {
        "distribution_id": distribution.distribution_id,
        "title": distribution.title,
        "status": status.value,
        "vault_type": distribution.vault_type.value,
        "merkle_root": distribution.merkle_root,
        "total_allocated": str(distribution.total_allocated),
        "total_claimed": str(distribution.total_claimed),
        "recipient_count": distribution.recipient_count,
        "start_time": distribution.start_time.isoformat(),
        "end_time": distribution.end_time.isoformat(),
        "category": distribution.category,
        "tags": distribution.tags,
        "created_by": distribution.created_by,
        "creation_tx_ref": distribution.creation_tx_ref,
        "finalization_tx_ref": distribution.finalization_tx_ref,
    }


def _attempt_json(attempt: FinalizationAttempt) -> dict[str, Any]:
    return {
        "distribution_id": attempt.distribution_id,
        "status": attempt.status.value,
        "execution_type": attempt.execution_type.value,
        "executed_by": attempt.executed_by,
        "tx_ref": attempt.tx_ref,
        "retry_count": attempt.retry_count,
        "next_retry_at": attempt.next_retry_at.isoformat() if attempt.next_retry_at else None,
        "error": attempt.error,
        "updated_utc": attempt.updated_utc.isoformat() if attempt.updated_utc else None,
    }


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_create(args: argparse.Namespace) -> int:
    allocations = load_allocations(Path(args.file))

    if args.dry_run:
        report = AllocationValidator().validate(allocations)
        _print({
            "valid": report.valid,
            "recipient_count": report.recipient_count,
            "total_amount": str(report.total_amount),
            "errors": report.errors,
        })
        return 0 if report.valid else 1

    service, _ = _make_service(args)
    try:
        created = service.create_distribution(
            allocations,
            vault_type=args.vault,
            duration_days=args.days,
            metadata=DistributionMetadata(
                title=args.title or "",
                description=args.description or "",
                category=args.category,
                tags=tuple(args.tag or ()),
            ),
            created_by=args.created_by,
        )
    except ValidationError as exc:
        for issue in exc.issues:
            print(f"  entry {issue.index}: {issue.message}", file=sys.stderr)
        print(f"Failed: {len(exc.issues)} invalid allocation entries", file=sys.stderr)
        return 1

    distribution = created.distribution
    print(f"Created distribution: {distribution.distribution_id} (root: {distribution.merkle_root})")
    _print(created.tree_stats)
    return 0


def cmd_proof(args: argparse.Namespace) -> int:
    service, _ = _make_service(args, with_ledger=False)
    _print(service.get_proof_for(args.id, args.address).to_dict())
    return 0


def cmd_claimable(args: argparse.Namespace) -> int:
    service, _ = _make_service(args, with_ledger=False)
    _print(service.get_claimable(args.id, args.address).to_dict())
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    service, _ = _make_service(args)
    if args.address:
        leaf = service.sync_claim(args.id, args.address)
        _print({
            "distribution_id": leaf.distribution_id,
            "address": leaf.address,
            "claimed": str(leaf.claimed_amount),
            "claimable": str(leaf.unclaimed_amount),
        })
    result = service.sync_from_ledger(args.id)
    _print({
        "distribution_id": result.distribution_id,
        "total_claimed": str(result.total_claimed),
        "finalized": result.finalized,
        "changed": result.changed,
        "drift": str(result.drift),
    })
    return 0


def cmd_finalize(args: argparse.Namespace) -> int:
    scheduler = _make_scheduler(args)
    result = scheduler.finalize_manual(args.id, executed_by=args.operator)
    _print({
        "distribution_id": result.distribution_id,
        "status": result.status.value,
        "tx_ref": result.tx_ref,
    })
    return 0 if result.finalized else 1


def cmd_list(args: argparse.Namespace) -> int:
    service, _ = _make_service(args, with_ledger=False)
    if args.address:
        _print(service.distributions_for(args.address))
        return 0
    now = datetime.now(timezone.utc)
    distributions = service.list_distributions(
        status=DistributionStatus(args.status) if args.status else None,
        vault_type=args.vault,
        created_by=args.creator,
        limit=args.limit,
        now=now,
    )
    _print([_distribution_json(d, d.status_at(now)) for d in distributions])
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    service, _ = _make_service(args, with_ledger=False)
    stats = service.distribution_stats(args.id)
    if args.tree:
        stats["tree"] = service.tree_stats(args.id)
    _print(stats)
    return 0


def cmd_finalizer(args: argparse.Namespace) -> int:
    scheduler = _make_scheduler(args)
    action = args.finalizer_command

    if action == "run-once":
        summary = scheduler.run_once()
        _print(summary.to_dict())
        return 0 if summary.count(AttemptStatus.FAILED) == 0 else 1
    if action == "serve":
        if not scheduler.enabled:
            print("Failed: auto-finalization is disabled (ENABLE_AUTO_FINALIZATION)", file=sys.stderr)
            return 1
        try:
            scheduler.serve()
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down")
        return 0
    if action == "history":
        status = AttemptStatus(args.status) if args.status else None
        _print([_attempt_json(a) for a in scheduler.history(limit=args.limit, status=status)])
        return 0
    if action == "stats":
        _print(scheduler.stats(days=args.days))
        return 0

    print("Usage: merkledrop finalizer {run-once,serve,history,stats}", file=sys.stderr)
    return 1


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="merkledrop",
        description="merkledrop: Merkle token distribution operator CLI",
    )
    parser.add_argument("--db", help="SQLite database path (default: DATABASE_PATH)")
    parser.add_argument("--env-file", type=Path, help="Load settings from this .env file")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command")

    vaults = [v.value for v in VaultType]

    # create
    p_create = sub.add_parser("create", help="Publish a distribution from an allocation file")
    p_create.add_argument("--file", required=True, help="Allocation file (.csv or .json)")
    p_create.add_argument("--vault", required=True, type=str.upper, choices=vaults)
    p_create.add_argument("--days", required=True, type=int, help="Claim window in days")
    p_create.add_argument("--title", help="Title (default: Distribution #<id>)")
    p_create.add_argument("--description", help="Free-text description")
    p_create.add_argument("--category", default="general", help="Category (default: general)")
    p_create.add_argument("--tag", action="append", help="Tag (repeatable)")
    p_create.add_argument("--created-by", help="Operator address or name")
    p_create.add_argument("--dry-run", action="store_true", help="Validate only; no ledger calls")

    # proof / claimable
    for name, help_text in (
        ("proof", "Merkle proof and claimable amount for an address"),
        ("claimable", "Claimable amount, or why the address cannot claim"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--id", required=True, type=int, help="Distribution ID")
        p.add_argument("--address", required=True, help="Recipient address")

    # sync
    p_sync = sub.add_parser("sync", help="Reconcile the mirror with the ledger")
    p_sync.add_argument("--id", required=True, type=int, help="Distribution ID")
    p_sync.add_argument("--address", help="Also pull this address's claim state")

    # finalize
    p_fin = sub.add_parser("finalize", help="Finalize an expired distribution now")
    p_fin.add_argument("--id", required=True, type=int, help="Distribution ID")
    p_fin.add_argument("--operator", default="operator", help="Who triggered it")

    # list
    p_list = sub.add_parser("list", help="List distributions")
    p_list.add_argument("--status", choices=[s.value for s in DistributionStatus])
    p_list.add_argument("--vault", type=str.upper, choices=vaults)
    p_list.add_argument("--creator", help="Filter by creator")
    p_list.add_argument("--address", help="List the distributions this address is in")
    p_list.add_argument("--limit", type=int, default=100)

    # stats
    p_stats = sub.add_parser("stats", help="Claim statistics for a distribution")
    p_stats.add_argument("--id", required=True, type=int, help="Distribution ID")
    p_stats.add_argument("--tree", action="store_true", help="Include tree statistics")

    # finalizer
    p_finalizer = sub.add_parser("finalizer", help="Automatic finalization")
    fsub = p_finalizer.add_subparsers(dest="finalizer_command")
    fsub.add_parser("run-once", help="Run a single finalization sweep")
    fsub.add_parser("serve", help="Run sweeps every FINALIZATION_INTERVAL_SECONDS")
    p_hist = fsub.add_parser("history", help="Finalization attempt history")
    p_hist.add_argument("--limit", type=int, default=50)
    p_hist.add_argument("--status", choices=[s.value for s in AttemptStatus])
    p_fstats = fsub.add_parser("stats", help="Finalization success rate")
    p_fstats.add_argument("--days", type=int, default=30)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    commands = {
        "create": cmd_create,
        "proof": cmd_proof,
        "claimable": cmd_claimable,
        "sync": cmd_sync,
        "finalize": cmd_finalize,
        "list": cmd_list,
        "stats": cmd_stats,
        "finalizer": cmd_finalizer,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except (DistributorError, ValueError, OSError) as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
