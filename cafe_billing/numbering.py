"""Table numbering: next identifier, 13 skipping and the 12A/12B family."""

from __future__ import annotations

import re
from typing import Any, Iterable

from cafe_billing.models import Table, TableNumber

UNLUCKY_NUMBER = 13
FAMILY_BASE = 12

_FAMILY_PATTERN = re.compile(r"^12([A-Z]+)$")
_SUFFIX_PATTERN = re.compile(r"^[A-Z]+$")
_NUMERIC_PATTERN = re.compile(r"^\d+$")


def _identifier(entry: Any) -> TableNumber:
    if isinstance(entry, Table):
        return entry.table_number
    if isinstance(entry, dict):
        return entry["tableNumber"]
    return entry


def numeric_value(identifier: TableNumber) -> int | None:
    """Return the sequence value of an identifier, or None for custom names."""
    if isinstance(identifier, bool):
        return None
    if isinstance(identifier, int):
        return identifier
    if isinstance(identifier, str) and _NUMERIC_PATTERN.match(identifier.strip()):
        return int(identifier.strip())
    return None


def family_suffix(identifier: TableNumber) -> str | None:
    """Return the letter suffix of a 12-family identifier such as ``12AB``."""
    if not isinstance(identifier, str):
        return None
    match = _FAMILY_PATTERN.match(identifier)
    if match is None:
        return None
    return match.group(1)


def next_suffix(suffix: str) -> str:
    """Bijective base-26 increment: ``A -> B``, ``Z -> AA``, ``AZ -> BA``."""
    if not suffix:
        return "A"
    if not _SUFFIX_PATTERN.match(suffix):
        raise ValueError(f"suffix must be uppercase letters, got {suffix!r}")

    head, last = suffix[:-1], suffix[-1]
    if last == "Z":
        return next_suffix(head) + "A"
    return head + chr(ord(last) + 1)


def _suffix_order(suffix: str) -> tuple[int, str]:
    return (len(suffix), suffix)


def next_table_number(existing: Iterable[Any]) -> TableNumber:
    """
    Compute the next table identifier.

    Accepts raw identifiers, ``Table`` records or table documents.

    Resolution order:
    1. No identifiers at all gives 1.
    2. A ``12[A-Z]+`` identifier, or a lone 12, continues the 12 family.
    3. Otherwise max(numeric) + 1, never 13.
    """
    identifiers = [_identifier(entry) for entry in existing]
    if not identifiers:
        return 1

    suffixes = [suffix for suffix in map(family_suffix, identifiers) if suffix is not None]
    numeric = {value for value in map(numeric_value, identifiers) if value is not None}

    if suffixes:
        return f"{FAMILY_BASE}{next_suffix(max(suffixes, key=_suffix_order))}"
    if numeric == {FAMILY_BASE}:
        return f"{FAMILY_BASE}A"
    if not numeric:
        return 1

    candidate = max(numeric) + 1
    if candidate == UNLUCKY_NUMBER:
        candidate += 1
    return candidate


def allocate_table_numbers(existing: Iterable[Any], count: int) -> list[TableNumber]:
    """Allocate ``count`` identifiers in sequence against a running snapshot."""
    if count < 0:
        raise ValueError("count must not be negative")

    snapshot = [_identifier(entry) for entry in existing]
    seen = {str(identifier) for identifier in snapshot}
    allocated: list[TableNumber] = []
    for _ in range(count):
        identifier = next_table_number(snapshot)
        if str(identifier) in seen:
            raise ValueError(f"numbering produced duplicate identifier {identifier!r}")
        seen.add(str(identifier))
        snapshot.append(identifier)
        allocated.append(identifier)
    return allocated


def suffix_conflict(name: str, existing: Iterable[Any]) -> bool:
    """True when a manual ``12[A-Z]+`` name is exactly the next auto-generated one."""
    if family_suffix(name) is None:
        return False
    return next_table_number(existing) == name
