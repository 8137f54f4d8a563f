# Margin Recon - P&L reconciliation core for uploaded margin workbooks
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Fuzzy field resolution for Margin Recon.

Naming-convention sheets and fact-table columns are authored independently.
They drift apart in casing, punctuation, unit suffixes (``_$mm``, ``_pct``,
``_bps``, ``_annual``, ``_fte``) and word forms. This module finds, for a
target field label, the fact-record column that carries the same quantity
and returns its numeric value.

Matching cascade
----------------
Strategies are tried in order; each one scans every eligible key of the
record before the next strategy is attempted:

1. EXACT          : case-insensitive equality of the raw names.
2. NORMALIZED     : equality of the normalized names.
3. CONTAINMENT    : normalized names contain each other (both > 3 chars).
4. CORE_WORDS     : every target core word overlaps a core word of the key.
5. WORDS_IN_KEY   : every target core word is a substring of the raw key.
6. MAJORITY_WORDS : at least half of the target core words are substrings
                    of the raw key.

Columns whose lower-cased name contains ``id``, ``period``, ``date`` or
``quarter`` are never eligible.

The public entry points are:

- ``resolve_field(record, target)``: returns a ``FieldMatch`` diagnostic.
- ``resolve_value(record, target)``: returns the matched float or None.
"""

import math
import re
from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

EXCLUDED_KEY_FRAGMENTS = ("id", "period", "date", "quarter")

# Unit tokens removed before comparison. Order matters: '$mm' must go before
# the standalone '$m' and 'mm' rules.
_UNIT_PATTERNS = [
    re.compile(r"\$mm"),
    re.compile(r"\$m(?![a-z])"),
    re.compile(r"mm(?![a-z])"),
    re.compile(r"_bps"),
    re.compile(r"_pct"),
    re.compile(r"_annual"),
    re.compile(r"_fte"),
]

_NUMERIC_PREFIX = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)")


class MatchStrategy(str, Enum):
    """Strategy of the cascade that produced a match."""

    EXACT = "exact"
    NORMALIZED = "normalized"
    CONTAINMENT = "containment"
    CORE_WORDS = "core_words"
    WORDS_IN_KEY = "words_in_key"
    MAJORITY_WORDS = "majority_words"
    NONE = "none"


STRATEGY_CONFIDENCE: dict[MatchStrategy, float] = {
    MatchStrategy.EXACT: 1.0,
    MatchStrategy.NORMALIZED: 0.95,
    MatchStrategy.CONTAINMENT: 0.8,
    MatchStrategy.CORE_WORDS: 0.7,
    MatchStrategy.WORDS_IN_KEY: 0.6,
    MatchStrategy.MAJORITY_WORDS: 0.4,
    MatchStrategy.NONE: 0.0,
}


@dataclass(frozen=True)
class FieldMatch:
    """
    Outcome of a fuzzy field resolution.

    Attributes
    ----------
    target :
        Field label that was looked up.
    matched :
        True when a column was selected and its value coerced to a number.
    strategy :
        Strategy of the cascade that selected the column (NONE on a miss).
    key :
        Name of the selected column, or None.
    value :
        Coerced numeric value, or None.
    confidence :
        Heuristic strength of the strategy, from 0.0 (miss) to 1.0 (exact).
    candidates :
        Eligible record keys (identifier/period/date/quarter columns removed).
    """

    target: str
    matched: bool
    strategy: MatchStrategy
    key: Optional[str] = None
    value: Optional[float] = None
    confidence: float = 0.0
    candidates: tuple[str, ...] = field(default_factory=tuple)


def _strip_units(name: str, replacement: str) -> str:
    s = name.lower()
    for pattern in _UNIT_PATTERNS:
        s = pattern.sub(replacement, s)
    return s


def normalize_field_name(name: str) -> str:
    """Normalize a field name for loose equality checks.

    Lower-cases the name, strips the known unit tokens and removes every
    remaining non-alphanumeric character.

    Examples:
        "TotalRevenue_$mm" → "totalrevenue"
        "Total Revenue"    → "totalrevenue"
        "Headcount_fte"    → "headcount"
    """
    return re.sub(r"[^a-z0-9]", "", _strip_units(str(name), ""))


def extract_core_words(name: str) -> list[str]:
    """Split a field name into its significant lower-case words.

    Unit tokens and punctuation (underscores included) are replaced by
    spaces, whitespace is collapsed and words of one character are dropped.

    Examples:
        "Rev_TransactionalFees_$mm" → ["rev", "transactionalfees"]
        "Rev Transaction Fees"      → ["rev", "transaction", "fees"]
    """
    s = _strip_units(str(name), " ")
    s = re.sub(r"[^a-z0-9]", " ", s)
    s = re.sub(r"\s+", " ", s).strip()
    return [w for w in s.split(" ") if len(w) > 1]


def is_excluded_key(key: str) -> bool:
    """Return True for identifier, period, date and quarter columns."""
    k = str(key).lower()
    return any(fragment in k for fragment in EXCLUDED_KEY_FRAGMENTS)


def coerce_number(value: Any) -> Optional[float]:
    """Convert a cell value to a float, or None when it is not numeric.

    Numbers pass through (NaN is rejected). Any other value is converted to
    a string, stripped of everything except digits, '.' and '-', and its
    leading numeric prefix is parsed: "$1,234.5" → 1234.5, "12%" → 12.0.
    Booleans and None never coerce.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return None if math.isnan(f) else f

    cleaned = re.sub(r"[^0-9.\-]", "", str(value))
    m = _NUMERIC_PREFIX.match(cleaned)
    if not m:
        return None
    try:
        f = float(m.group(0))
    except ValueError:
        return None
    return None if math.isnan(f) else f


# ---------------------------------------------------------------------------
# Strategy predicates
# ---------------------------------------------------------------------------


def _all_significant(words: list[str]) -> bool:
    # A core word of 2 characters disqualifies the word strategies outright.
    return bool(words) and all(len(w) > 2 for w in words)


def _exact(key: str, target: str, ctx: "_Target") -> bool:
    return key.lower().strip() == target.lower().strip()


def _normalized(key: str, target: str, ctx: "_Target") -> bool:
    key_norm = normalize_field_name(key)
    return bool(key_norm) and key_norm == ctx.normalized


def _containment(key: str, target: str, ctx: "_Target") -> bool:
    key_norm = normalize_field_name(key)
    if len(key_norm) <= 3 or len(ctx.normalized) <= 3:
        return False
    return key_norm in ctx.normalized or ctx.normalized in key_norm


def _core_words(key: str, target: str, ctx: "_Target") -> bool:
    if not _all_significant(ctx.words):
        return False
    key_words = extract_core_words(key)
    return all(any(t in k or k in t for k in key_words) for t in ctx.words)


def _words_in_key(key: str, target: str, ctx: "_Target") -> bool:
    if not _all_significant(ctx.words):
        return False
    key_lower = key.lower()
    return all(t in key_lower for t in ctx.words)


def _majority_words(key: str, target: str, ctx: "_Target") -> bool:
    if not ctx.words:
        return False
    key_lower = key.lower()
    hits = [t for t in ctx.words if len(t) > 2 and t in key_lower]
    return len(hits) > 0 and len(hits) >= math.ceil(len(ctx.words) * 0.5)


@dataclass(frozen=True)
class _Target:
    normalized: str
    words: list[str]


_CASCADE: list[tuple[MatchStrategy, Callable[[str, str, _Target], bool]]] = [
    (MatchStrategy.EXACT, _exact),
    (MatchStrategy.NORMALIZED, _normalized),
    (MatchStrategy.CONTAINMENT, _containment),
    (MatchStrategy.CORE_WORDS, _core_words),
    (MatchStrategy.WORDS_IN_KEY, _words_in_key),
    (MatchStrategy.MAJORITY_WORDS, _majority_words),
]


def eligible_keys(record: Mapping[str, Any]) -> list[str]:
    """Return the record keys that may be matched, in record order."""
    return [str(k) for k in record.keys() if not is_excluded_key(str(k))]


def resolve_field(
    record: Mapping[str, Any],
    target: str,
    strategies: Optional[Collection[MatchStrategy]] = None,
) -> FieldMatch:
    """Find the record column matching ``target`` and return a diagnostic.

    Args:
        record: Flat fact record (column name → cell value).
        target: Field label to look up (e.g. "TotalRevenue_$mm").
        strategies: Restrict the cascade to these strategies (default: all).

    Returns:
        A ``FieldMatch``. When ``matched`` is False the caller must treat
        the field as absent for this record (not as zero).
    """
    if not record or not target:
        return FieldMatch(target=target, matched=False, strategy=MatchStrategy.NONE)

    candidates = eligible_keys(record)
    ctx = _Target(
        normalized=normalize_field_name(target),
        words=extract_core_words(target),
    )
    values = {str(k): v for k, v in record.items()}

    for strategy, predicate in _CASCADE:
        if strategies is not None and strategy not in strategies:
            continue
        for key in candidates:
            if not predicate(key, target, ctx):
                continue
            number = coerce_number(values[key])
            if number is None:
                # Non-numeric cell: keep scanning.
                continue
            return FieldMatch(
                target=target,
                matched=True,
                strategy=strategy,
                key=key,
                value=number,
                confidence=STRATEGY_CONFIDENCE[strategy],
                candidates=tuple(candidates),
            )

    return FieldMatch(
        target=target,
        matched=False,
        strategy=MatchStrategy.NONE,
        candidates=tuple(candidates),
    )


def resolve_value(record: Mapping[str, Any], target: str) -> Optional[float]:
    """Return the numeric value of the column matching ``target``, or None."""
    return resolve_field(record, target).value


def resolve_first(
    record: Mapping[str, Any],
    targets: Iterable[str],
    strategies: Optional[Collection[MatchStrategy]] = None,
) -> Optional[FieldMatch]:
    """Return the first match whose value is non-zero among several labels.

    Used for quantities that source workbooks spell in more than one way
    (e.g. "MarginPct" or "Margin_%").
    """
    for target in targets:
        m = resolve_field(record, target, strategies)
        if m.matched and m.value:
            return m
    return None
