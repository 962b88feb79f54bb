"""
Pure trip / mileage / expense math shared by the server and the device.

Provides:
- Odometer miles and reimbursement derivation
- Fuel cost, earnings and net profit
- Route-distance conversions used by enrichment
- Parent-trip resolution for mileage logs (explicit tripId or legacy same-id)
- Trip-link parsing and cost roll-up for expenses
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, Optional


METERS_PER_MILE = 1609.34
EXPENSE_ID_SEPARATOR = "::"

# Expense categories that roll up into a trip cost field
ROLLUP_FIELDS = {
    "fuel": "fuelCost",
    "maintenance": "maintenanceCost",
    "supplies": "suppliesCost",
}

_CATEGORY_ALIASES = {
    "fuel": "fuel",
    "gas": "fuel",
    "gasoline": "fuel",
    "maintenance": "maintenance",
    "repair": "maintenance",
    "repairs": "maintenance",
    "supplies": "supplies",
    "supply": "supplies",
}


def round_to(value: float, places: int = 2) -> float:
    """Half-up rounding (money and mileage never use banker's rounding)"""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def as_number(value: Any) -> Optional[float]:
    """Coerce a JSON value to float, or None when it is not numeric"""
    if isinstance(value, bool) or value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ─────────────────────────── MILEAGE ───────────────────────────

def compute_miles(start_odometer: float, end_odometer: float) -> float:
    return round_to(max(0.0, float(end_odometer) - float(start_odometer)), 2)


def compute_reimbursement(miles: float, rate: float) -> float:
    return round_to(float(miles) * float(rate), 2)


def calculate_fuel_cost(miles: float, mpg: Optional[float], gas_price: Optional[float]) -> float:
    """Fuel cost for a distance; zero when mpg is unknown or non-positive"""
    mpg = as_number(mpg)
    gas_price = as_number(gas_price)
    if not mpg or mpg <= 0 or gas_price is None:
        return 0.0
    return round_to((float(miles) / mpg) * gas_price, 2)


def meters_to_miles(meters: float) -> float:
    return round_to(float(meters) / METERS_PER_MILE, 1)


def seconds_to_minutes(seconds: float) -> int:
    return int(round_to(float(seconds) / 60, 0))


# ─────────────────────────── EARNINGS ───────────────────────────

def calculate_total_earnings(stops: Iterable[Dict[str, Any]]) -> float:
    total = 0.0
    for stop in stops or []:
        if isinstance(stop, dict):
            total += as_number(stop.get("earnings")) or 0.0
    return round_to(total, 2)


def calculate_net_profit(trip: Dict[str, Any]) -> float:
    earnings = as_number(trip.get("totalEarnings")) or 0.0
    costs = sum(
        as_number(trip.get(name)) or 0.0
        for name in ("fuelCost", "maintenanceCost", "suppliesCost")
    )
    return round_to(earnings - costs, 2)


def apply_mileage_to_trip(trip: Dict[str, Any], miles: float) -> Dict[str, Any]:
    """Set a trip's distance from a mileage value and refresh dependent costs"""
    updated = dict(trip)
    updated["totalMiles"] = round_to(miles, 2)
    updated["fuelCost"] = calculate_fuel_cost(miles, trip.get("mpg"), trip.get("gasPrice"))
    updated["netProfit"] = calculate_net_profit(updated)
    return updated


def zero_trip_mileage(trip: Dict[str, Any]) -> Dict[str, Any]:
    updated = dict(trip)
    updated["totalMiles"] = 0
    updated["fuelCost"] = 0
    updated["netProfit"] = calculate_net_profit(updated)
    return updated


# ─────────────────────────── LINKING ───────────────────────────

def resolve_parent_trip_id(
    record: Dict[str, Any],
    trip_slot_exists: Optional[Callable[[str], bool]] = None,
) -> Optional[str]:
    """Return the trip a mileage log belongs to, or None for a standalone log.

    An explicit ``tripId`` always wins. Otherwise the legacy convention links a
    mileage log to the trip sharing its id; when ``trip_slot_exists`` is given
    the legacy link only counts if a trip (active or tombstoned) is stored
    under that id.
    """
    explicit = record.get("tripId")
    if explicit:
        return str(explicit)
    record_id = record.get("id")
    if not record_id:
        return None
    if trip_slot_exists is None or trip_slot_exists(str(record_id)):
        return str(record_id)
    return None


def expense_trip_id(expense: Dict[str, Any]) -> Optional[str]:
    """Trip id an expense is linked to (explicit field or composite id prefix)"""
    explicit = expense.get("tripId")
    if explicit:
        return str(explicit)
    expense_id = str(expense.get("id") or "")
    if EXPENSE_ID_SEPARATOR in expense_id:
        prefix = expense_id.split(EXPENSE_ID_SEPARATOR, 1)[0]
        return prefix or None
    return None


def rollup_kind(category: Any) -> Optional[str]:
    if not isinstance(category, str):
        return None
    return _CATEGORY_ALIASES.get(category.strip().lower())


def apply_expense_rollup(
    trip: Dict[str, Any],
    expenses: Iterable[Dict[str, Any]],
    kinds: Iterable[str],
) -> Dict[str, Any]:
    """Recompute the trip cost fields for ``kinds`` from its linked expenses.

    A fuel roll-up with no linked fuel expenses falls back to the
    distance-based fuel estimate.
    """
    updated = dict(trip)
    expenses = list(expenses)
    for kind in set(kinds):
        field_name = ROLLUP_FIELDS.get(kind)
        if not field_name:
            continue
        matching = [e for e in expenses if rollup_kind(e.get("category")) == kind]
        if kind == "fuel" and not matching:
            updated[field_name] = calculate_fuel_cost(
                as_number(trip.get("totalMiles")) or 0.0, trip.get("mpg"), trip.get("gasPrice")
            )
            continue
        updated[field_name] = round_to(sum(as_number(e.get("amount")) or 0.0 for e in matching), 2)
    updated["netProfit"] = calculate_net_profit(updated)
    return updated
