"""Allocation input handling: parsing, validation and canonical ordering."""

from merkledrop.allocation.parsing import load_allocations, parse_csv, parse_json
from merkledrop.allocation.validator import (
    AllocationValidator,
    CanonicalAllocation,
    CanonicalAllocations,
    ValidationReport,
)

__all__ = [
    "AllocationValidator",
    "CanonicalAllocation",
    "CanonicalAllocations",
    "ValidationReport",
    "load_allocations",
    "parse_csv",
    "parse_json",
]
