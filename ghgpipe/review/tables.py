"""Fixed-width text tables for the review message.

Presentation only: the tables are rendered from the draft and never fed
back into the record.
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from ghgpipe.extraction.schema import SCOPE3_CATEGORIES

_MISSING = "-"

SCOPE3_LABELS: dict[str, str] = {
    "purchasedGoods": "Purchased goods and services",
    "capitalGoods": "Capital goods",
    "fuelAndEnergyRelatedActivities": "Fuel and energy related",
    "upstreamTransportationAndDistribution": "Upstream transportation",
    "wasteGeneratedInOperations": "Waste in operations",
    "businessTravel": "Business travel",
    "employeeCommuting": "Employee commuting",
    "upstreamLeasedAssets": "Upstream leased assets",
    "downstreamTransportationAndDistribution": "Downstream transportation",
    "processingOfSoldProducts": "Processing of sold products",
    "useOfSoldProducts": "Use of sold products",
    "endOfLifeTreatmentOfSoldProducts": "End of life of sold products",
    "downstreamLeasedAssets": "Downstream leased assets",
    "franchises": "Franchises",
    "investments": "Investments",
    "other": "Other",
}


def format_amount(value: Any) -> str:
    if value is None:
        return _MISSING
    if isinstance(value, (int, float)):
        return f"{value:,.0f}".replace(",", " ")
    return str(value)


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(cell)) for w, cell in zip(widths, row)]

    def line(cells: Sequence[str]) -> str:
        return "  ".join(
            cell.ljust(w) if i == 0 else cell.rjust(w) for i, (cell, w) in enumerate(zip(cells, widths))
        ).rstrip()

    out = [line(headers), line(["-" * w for w in widths])]
    out.extend(line(row) for row in rows)
    return "\n".join(out)


def summary_table(draft: dict[str, Any]) -> str:
    emissions = draft.get("emissions") or {}
    scope1 = emissions.get("scope1") or {}
    scope2 = emissions.get("scope2") or {}
    scope3 = emissions.get("scope3") or {}
    rows = [
        ["Scope 1", format_amount(scope1.get("emissions")), scope1.get("unit") or ""],
        ["Scope 1 biogenic", format_amount(scope1.get("biogenic")), scope1.get("unit") or ""],
        ["Scope 2", format_amount(scope2.get("emissions")), scope2.get("unit") or ""],
        ["Scope 2 market-based", format_amount(scope2.get("marketBased")), scope2.get("unit") or ""],
        ["Scope 2 location-based", format_amount(scope2.get("locationBased")), scope2.get("unit") or ""],
        ["Scope 3", format_amount(scope3.get("emissions")), scope3.get("unit") or ""],
        ["Total", format_amount(emissions.get("totalEmissions")), emissions.get("totalUnit") or ""],
    ]
    year = emissions.get("reportingYear")
    title = f"Reporting year {year}" if year else "Reporting year -"
    return f"{title}\n" + render_table(["", "Emissions", "Unit"], rows)


def scope3_table(draft: dict[str, Any]) -> str:
    categories = ((draft.get("emissions") or {}).get("scope3") or {}).get("categories") or {}
    rows = [
        [f"{i}. {SCOPE3_LABELS[key]}", format_amount(categories.get(key))]
        for i, key in enumerate(SCOPE3_CATEGORIES, start=1)
    ]
    return render_table(["Category", "Emissions"], rows)
