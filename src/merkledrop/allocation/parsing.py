"""Allocation file parsing: CSV and JSON inputs into raw allocation dicts.

Parsing only checks shape (both fields present). Semantic checks live in
AllocationValidator so that every bad entry is reported together.
"""

from __future__ import annotations

import csv
import io
import json
from pathlib import Path
from typing import Any


def parse_csv(text: str) -> list[dict[str, str]]:
    """Parse ``address,amount`` lines. A header row is optional."""
    lines = [line for line in text.strip().splitlines()]
    if not lines:
        return []
    start = 1 if "address" in lines[0].lower() else 0

    allocations: list[dict[str, str]] = []
    reader = csv.reader(io.StringIO("\n".join(lines[start:])))
    for offset, row in enumerate(reader):
        line_no = start + offset + 1
        cells = [c.strip() for c in row]
        if not any(cells):
            continue
        if len(cells) < 2 or not cells[0] or not cells[1]:
            raise ValueError(f"Invalid CSV format at line {line_no}: {','.join(row)}")
        allocations.append({"address": cells[0], "amount": cells[1]})
    return allocations


def parse_json(data: "str | list[Any]") -> list[dict[str, Any]]:
    """Parse a JSON array of ``{"address": ..., "amount": ...}`` objects."""
    items = json.loads(data) if isinstance(data, str) else data
    if not isinstance(items, list):
        raise ValueError("JSON data must be an array")

    allocations: list[dict[str, Any]] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("address") or item.get("amount") in (None, ""):
            raise ValueError(f"Invalid allocation at index {index}: missing address or amount")
        allocations.append({"address": item["address"], "amount": item["amount"]})
    return allocations


def load_allocations(path: Path) -> list[dict[str, Any]]:
    """Load an allocation file, choosing the parser by extension."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return parse_json(text)
    return parse_csv(text)
