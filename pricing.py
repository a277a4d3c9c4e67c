from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from errors import InvalidServiceRate

DEFAULT_MIN = 1
DEFAULT_MAX = 1_000_000

COMMISSION_RATE = Decimal("0.20")
MARKUP_MULTIPLIER = Decimal("1") + COMMISSION_RATE

QUOTE_PLACES = 6
CHARGE_PLACES = 3

RATE_PER_ITEM = "per_item"
RATE_PER_1000 = "per_1000"

PER_ITEM_KEYWORDS = ("package", "software", "license")


@dataclass(frozen=True)
class ServiceDescriptor:
    service_id: int
    name: str
    category: str
    type: str
    rate: Optional[Decimal]
    min: int = DEFAULT_MIN
    max: int = DEFAULT_MAX
    description: str = ""
    refill: Optional[bool] = None
    cancel: Optional[bool] = None


@dataclass(frozen=True)
class Quote:
    quantity: int
    rate_type: str
    base_rate_usd: Decimal
    base_price_usd: Decimal
    commission_usd: Decimal
    total_usd: Decimal
    per_unit_usd: Decimal
    min: int
    max: int


# -----------------------------
# Decimal helpers
# -----------------------------
def round_money(value: Decimal, places: int = QUOTE_PLACES) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a vendor number into a finite Decimal, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return d


def to_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(Decimal(str(value).strip()))
    except (InvalidOperation, ValueError, OverflowError):
        return default


def service_bounds(raw_min: Any, raw_max: Any) -> Tuple[int, int]:
    """Vendor min/max with defaults for missing, non-positive or inverted values."""
    lo = to_int(raw_min, DEFAULT_MIN)
    hi = to_int(raw_max, DEFAULT_MAX)
    if lo < 1:
        lo = DEFAULT_MIN
    if hi < 1:
        hi = DEFAULT_MAX
    if hi < lo:
        return DEFAULT_MIN, DEFAULT_MAX
    return lo, hi


# -----------------------------
# Quote computation
# -----------------------------
def is_per_item_service(service: ServiceDescriptor) -> bool:
    if service.min == 1 and service.max == 1:
        return True
    for text in (service.type, service.name, service.category):
        s = (text or "").lower()
        if any(word in s for word in PER_ITEM_KEYWORDS):
            return True
    return False


def clamp_quantity(service: ServiceDescriptor, requested: int) -> int:
    return min(max(int(requested), service.min), service.max)


def compute_quote(service: ServiceDescriptor, requested_quantity: int) -> Quote:
    """Price `requested_quantity` units of `service` including the 20% commission.

    The quantity is clamped into the service bounds; callers compare the returned
    `quantity` with what they asked for. Pure and deterministic.
    """
    rate = service.rate
    if rate is None or not rate.is_finite():
        raise InvalidServiceRate("Invalid service rate")
    if service.min < 1 or service.max < service.min:
        raise InvalidServiceRate("Invalid service bounds")

    qty = clamp_quantity(service, requested_quantity)
    per_item = is_per_item_service(service)

    if per_item:
        base = rate * qty
    else:
        base = rate * qty / Decimal(1000)

    commission = round_money(base * COMMISSION_RATE)
    total = round_money(base + commission)
    per_unit = round_money(total / qty)

    return Quote(
        quantity=qty,
        rate_type=RATE_PER_ITEM if per_item else RATE_PER_1000,
        base_rate_usd=rate,
        base_price_usd=round_money(base),
        commission_usd=commission,
        total_usd=total,
        per_unit_usd=per_unit,
        min=service.min,
        max=service.max,
    )


def charge_amount(quote: Quote) -> Decimal:
    """The amount actually debited and stored as `Order.price`."""
    return round_money(quote.total_usd, CHARGE_PLACES)


def markup_rate(rate: Optional[Decimal]) -> Decimal:
    """Display rate for catalog listings (vendor rate plus commission)."""
    if rate is None:
        return Decimal("0.000")
    return round_money(rate * MARKUP_MULTIPLIER, CHARGE_PLACES)
