"""Deterministic reporting rules applied to every draft record.

The model is asked to follow these rules, but they are enforced here as
well so a draft never depends on the model having listened:

- a biogenic figure reported outside scope 1 is moved to ``scope1.biogenic``
- market-based scope 2 stands in for scope 2 when no scope 2 figure exists
- a total that is merely the sum of reported parts, and does not appear in
  the report text, is removed (totals are never calculated)
- reliability only ever moves down
"""
from __future__ import annotations

import copy
import logging
import re
from collections.abc import Sequence
from itertools import combinations
from typing import Any

from ghgpipe.core.constants import RELIABILITY_LEVELS
from ghgpipe.extraction.schema import coerce_number, complete_record

logger = logging.getLogger(__name__)

# A figure in the text, optionally followed by a mass unit.  Digits inside
# words (CO2) and paragraph markers ([12]) never start a figure.
_AMOUNT = re.compile(
    r"(?<![\w\[.,])"
    r"(?P<number>\d{1,3}(?:[ \u00a0,]\d{3})+(?:[.,]\d+)?|\d+(?:[.,]\d+)?)"
    r"(?:[ \u00a0]*(?P<unit>"
    r"kt\b|kton\w*|kiloton\w*|tusen\s+ton\w*"
    r"|Mt\b|Mton\w*|megaton\w*|miljoner\s+ton\w*"
    r"|t(?:on\w*|CO2e?)?\b"
    r"))?",
    re.IGNORECASE,
)

_YEAR_RANGE = (1900, 2100)


def _unit_scale(unit: str | None) -> float:
    if not unit:
        return 1.0
    unit = unit.lower()
    if unit.startswith(("k", "tusen")):
        return 1_000.0
    if unit.startswith(("m", "miljoner")):
        return 1_000_000.0
    return 1.0


def stated_amounts(text: str) -> list[float]:
    """Figures written in *text*, in tonnes.

    Kilotonne and megatonne figures are scaled only when their unit says so.
    A bare four-digit year is not a figure unless a mass unit follows it.
    """
    found: list[float] = []
    for match in _AMOUNT.finditer(text):
        number, unit = match.group("number"), match.group("unit")
        if unit is None and len(number) == 4 and number.isdigit():
            if _YEAR_RANGE[0] <= int(number) <= _YEAR_RANGE[1]:
                continue
        try:
            value = float(coerce_number(number))
        except ValueError:
            continue
        found.append(value * _unit_scale(unit))
    return found


def mentions_number(texts: str | Sequence[str], value: float) -> bool:
    """True if *value* (tonnes) is written in any of *texts*."""
    if isinstance(texts, str):
        texts = [texts]
    tolerance = max(0.5, abs(value) * 0.005)
    return any(abs(stated - value) <= tolerance for text in texts for stated in stated_amounts(text))


def _sums(parts: list[float]) -> list[float]:
    return [sum(combo) for size in range(2, len(parts) + 1) for combo in combinations(parts, size)]


def _matches_any(value: float, candidates: list[float]) -> bool:
    return any(abs(value - c) <= 0.5 for c in candidates)


def lower_reliability(current: str, proposed: str) -> str:
    """Return the less reliable of *current* and *proposed*.

    An unrated draft takes any valid rating; an invalid proposal is ignored.
    """
    if proposed not in RELIABILITY_LEVELS:
        return current
    if current not in RELIABILITY_LEVELS:
        return proposed
    return max(current, proposed, key=RELIABILITY_LEVELS.index)


def downgrade_reliability(current: str) -> str:
    if current not in RELIABILITY_LEVELS:
        return RELIABILITY_LEVELS[1]
    index = min(RELIABILITY_LEVELS.index(current) + 1, len(RELIABILITY_LEVELS) - 1)
    return RELIABILITY_LEVELS[index]


def append_comment(record: dict[str, Any], note: str) -> None:
    existing = record.get("reviewComment") or ""
    record["reviewComment"] = f"{existing} {note}".strip()


def strip_unreported_totals(
    record: dict[str, Any], texts: str | Sequence[str]
) -> tuple[dict[str, Any], list[str]]:
    """Null totals that equal a sum of parts and are not stated in *texts*.

    Returns the updated copy of *record* and the notes added to its review
    comment.  Reliability is downgraded once when anything was removed.
    """
    record = copy.deepcopy(record)
    emissions = record["emissions"]
    scope1 = emissions["scope1"]
    scope2 = emissions["scope2"]
    scope3 = emissions["scope3"]
    notes: list[str] = []

    categories = [v for v in scope3["categories"].values() if v is not None]
    category_sum = sum(categories) if categories else None

    scope3_total = scope3["emissions"]
    if (
        scope3_total is not None
        and len(categories) >= 2
        and _matches_any(scope3_total, [category_sum])
        and not mentions_number(texts, scope3_total)
    ):
        scope3["emissions"] = None
        notes.append(
            f"Scope 3 total {scope3_total:g} removed: it equals the sum of the "
            f"reported categories and is not stated in the report."
        )

    total = emissions["totalEmissions"]
    if total is not None and not mentions_number(texts, total):
        parts = [
            v for v in (
                scope1["emissions"],
                scope1["biogenic"],
                scope2["emissions"],
                scope3_total,
                category_sum,
            )
            if v is not None
        ]
        if _matches_any(total, _sums(parts)):
            emissions["totalEmissions"] = None
            notes.append(
                f"Total emissions {total:g} removed: it equals a sum of reported "
                f"figures and is not stated in the report."
            )

    if notes:
        for note in notes:
            append_comment(record, note)
        record["reliability"] = downgrade_reliability(record.get("reliability") or "")
        logger.info("Removed %d calculated total(s) from draft", len(notes))
    return record, notes
