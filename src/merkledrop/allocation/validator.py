"""Allocation validator: rejects malformed allocation lists before any hashing.

Every raw entry is an ``{address, amount}`` mapping. Checks are collected,
not short-circuited, so the caller sees every offending entry at once:
- malformed address (not a 0x-prefixed 20-byte hex address, or bad checksum),
- non-numeric, non-positive or over-precise amount,
- duplicate address (case-insensitive).

Canonical form: addresses lowercased, amounts converted to integer base
units, entries sorted by address ascending. The same leaf set therefore
always produces the same tree regardless of input order.

Pure: no I/O, no ledger access.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional

from web3 import Web3

from merkledrop.errors import AllocationIssue, ValidationError

MAX_UINT256 = 2**256 - 1


@dataclass(frozen=True)
class CanonicalAllocation:
    """A validated recipient entitlement in base units."""
    address: str  # lowercased 0x-prefixed
    amount: int


@dataclass(frozen=True)
class CanonicalAllocations:
    """Sorted, deduplicated allocation list with its total."""
    entries: tuple[CanonicalAllocation, ...]
    total: int

    @property
    def recipient_count(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class ValidationReport:
    """Non-raising validation outcome (used for dry runs)."""
    valid: bool
    issues: tuple[AllocationIssue, ...]
    total_amount: int
    recipient_count: int

    @property
    def errors(self) -> list[str]:
        return [i.message for i in self.issues]


class AllocationValidator:
    """Validates and canonicalizes allocation lists.

    Usage:
        validator = AllocationValidator()
        canonical = validator.canonicalize([
            {"address": "0xAbC...", "amount": "100"},
            {"address": "0xdef...", "amount": "50.5"},
        ])
        canonical.total  # base units (18 decimals by default)

    Amounts are decimal token units and are scaled with
    ``Web3.to_wei(amount, unit)``. Pass ``unit="wei"`` for lists already
    expressed in base units.
    """

    def __init__(self, unit: str = "ether") -> None:
        # Fail early on an unknown unit name.
        Web3.to_wei(1, unit)
        self._unit = unit

    @property
    def unit(self) -> str:
        return self._unit

    def validate(self, allocations: Iterable[Mapping[str, Any]]) -> ValidationReport:
        """Check every entry and collect every issue."""
        issues, accepted = self._inspect(list(allocations))
        total = sum(a.amount for a in accepted)
        return ValidationReport(
            valid=not issues,
            issues=tuple(issues),
            total_amount=total if not issues else 0,
            recipient_count=len({a.address for a in accepted}),
        )

    def canonicalize(self, allocations: Iterable[Mapping[str, Any]]) -> CanonicalAllocations:
        """Return the canonical sorted list, or raise ValidationError."""
        issues, accepted = self._inspect(list(allocations))
        if issues:
            raise ValidationError(issues)
        entries = tuple(sorted(accepted, key=lambda a: a.address))
        return CanonicalAllocations(
            entries=entries,
            total=sum(a.amount for a in entries),
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _inspect(
        self,
        raw: list[Mapping[str, Any]],
    ) -> tuple[list[AllocationIssue], list[CanonicalAllocation]]:
        issues: list[AllocationIssue] = []
        accepted: list[CanonicalAllocation] = []
        seen: set[str] = set()

        if not raw:
            issues.append(AllocationIssue(
                index=-1,
                code="empty",
                value="",
                message="Allocations must be a non-empty list",
            ))
            return issues, accepted

        for index, entry in enumerate(raw):
            address = _field(entry, "address")
            amount = _field(entry, "amount")

            address_ok = True
            if address is None or address == "":
                issues.append(AllocationIssue(
                    index, "malformed_address", "", f"Missing address at index {index}",
                ))
                address_ok = False
            elif not _is_address(address):
                issues.append(AllocationIssue(
                    index, "malformed_address", str(address),
                    f"Invalid address at index {index}: {address}",
                ))
                address_ok = False

            base_units, amount_error = self._to_base_units(amount)
            if amount_error is not None:
                issues.append(AllocationIssue(
                    index, "invalid_amount", "" if amount is None else str(amount),
                    f"{amount_error} at index {index}: {amount}",
                ))

            if isinstance(address, str) and address:
                lowered = address.strip().lower()
                if lowered in seen:
                    issues.append(AllocationIssue(
                        index, "duplicate_address", address,
                        f"Duplicate address at index {index}: {address}",
                    ))
                    continue
                seen.add(lowered)

            if address_ok and base_units is not None:
                accepted.append(CanonicalAllocation(
                    address=address.strip().lower(),
                    amount=base_units,
                ))

        return issues, accepted

    def _to_base_units(self, amount: Any) -> tuple[Optional[int], Optional[str]]:
        """Convert a token amount to base units. Returns (value, error)."""
        if amount is None or amount == "":
            return None, "Missing amount"
        if isinstance(amount, bool):
            return None, "Invalid amount format"
        try:
            if isinstance(amount, Decimal):
                parsed = amount
            elif isinstance(amount, float):
                parsed = Decimal(str(amount))
            else:
                parsed = Decimal(str(amount).strip())
        except InvalidOperation:
            return None, "Invalid amount format"
        if not parsed.is_finite():
            return None, "Invalid amount format"
        if parsed <= 0:
            return None, "Invalid amount (must be positive)"
        try:
            base_units = int(Web3.to_wei(parsed, self._unit))
        except (ValueError, TypeError):
            return None, "Invalid amount (out of range)"
        if base_units <= 0 or base_units > MAX_UINT256:
            return None, "Invalid amount (out of range)"
        if Decimal(Web3.from_wei(base_units, self._unit)) != parsed:
            return None, "Invalid amount (too many decimal places)"
        return base_units, None


def _field(entry: Any, name: str) -> Any:
    if isinstance(entry, Mapping):
        return entry.get(name)
    return getattr(entry, name, None)


def _is_address(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    candidate = value.strip()
    return candidate.startswith("0x") and Web3.is_address(candidate)
