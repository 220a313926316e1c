"""
HRMS Approvals - Travel Claim Calculator

Totals for the claim line-item categories and the net settlement position
against an advance that was already paid out.
"""

from typing import Any, Dict, Iterable, Optional, Tuple


# Line-item category -> (total field, amount fields summed per item)
CATEGORY_FIELDS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "travel_expenses": ("total_travel_expenses", ("amount", "booking_charges")),
    "accommodation": ("total_accommodation", ("room_rent",)),
    "daily_allowance": ("total_daily_allowance", ("amount",)),
    "local_conveyance": ("total_local_conveyance", ("fare",)),
    "incidental_expenses": ("total_incidental_expenses", ("amount",)),
}


def _money(value: Any) -> float:
    try:
        return round(float(value or 0), 2)
    except (TypeError, ValueError):
        return 0.0


def _sum_items(items: Optional[Iterable[Dict[str, Any]]], fields: Tuple[str, ...]) -> float:
    total = 0.0
    for item in items or []:
        total += sum(_money(item.get(f)) for f in fields)
    return round(total, 2)


def daily_allowance_amount(item: Dict[str, Any]) -> float:
    """Amount of a DA line; falls back to rate x days when no amount was entered."""
    if item.get("amount") not in (None, ""):
        return _money(item.get("amount"))
    return round(_money(item.get("rate")) * _money(item.get("days")), 2)


def mileage_amount(mileage: Optional[Dict[str, Any]]) -> float:
    if not mileage:
        return 0.0
    if mileage.get("amount") not in (None, ""):
        return _money(mileage.get("amount"))
    return round(_money(mileage.get("distance")) * _money(mileage.get("rate_per_km")), 2)


def compute_totals(claim: Dict[str, Any]) -> Dict[str, float]:
    """Return per-category totals plus total_amount for a claim document."""
    totals: Dict[str, float] = {}
    for category, (total_field, amount_fields) in CATEGORY_FIELDS.items():
        if category == "daily_allowance":
            totals[total_field] = round(
                sum(daily_allowance_amount(i) for i in claim.get(category) or []), 2
            )
        else:
            totals[total_field] = _sum_items(claim.get(category), amount_fields)
    totals["total_mileage"] = mileage_amount(claim.get("mileage_claim"))
    totals["total_amount"] = round(sum(totals.values()), 2)
    return totals


def compute_net(approved_amount: Any, advance_paid: Any) -> Dict[str, float]:
    """
    Split approved_amount - advance_paid into the two settlement directions.

    At most one of net_payable / net_recoverable is positive.
    """
    diff = round(_money(approved_amount) - _money(advance_paid), 2)
    return {
        "net_payable": diff if diff > 0 else 0.0,
        "net_recoverable": -diff if diff < 0 else 0.0,
    }
