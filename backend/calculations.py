"""
Bill-splitting calculations.

Every function here is pure: it reads a room snapshot and an item list and
returns a Decimal. Inputs are converted through their string form so that
sums and rate multiplications stay exact; nothing is rounded until display.
"""

import functools
from decimal import Context, Decimal, localcontext
from typing import Any, Dict, Iterable, List, Optional, Sequence

from models import BillItem, Room, TaxProfile

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Float inputs carry at most 17 significant digits; products of price,
# quantity, tax rate and service rate never reach 80.
EXACT_CONTEXT = Context(prec=80)


def exact(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with localcontext(EXACT_CONTEXT):
            return func(*args, **kwargs)

    return wrapper


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    return Decimal(str(value))


def resolve_profile(item: BillItem, profiles: Sequence[TaxProfile]) -> Optional[TaxProfile]:
    """Explicit assignment, else the first global profile, else none."""
    if item.tax_profile_id is not None:
        for profile in profiles:
            if profile.id == item.tax_profile_id:
                return profile
    # Dangling or absent reference: same path either way.
    for profile in profiles:
        if profile.is_global:
            return profile
    return None


@exact
def item_tax(amount: Any, profile: Optional[TaxProfile]) -> Decimal:
    if profile is None:
        return ZERO
    tax = to_decimal(amount) * (to_decimal(profile.rate) / HUNDRED)
    if profile.is_double:
        # Two co-equal components, e.g. CGST + SGST
        return tax * 2
    return tax


@exact
def item_extended_price(item: BillItem) -> Decimal:
    return to_decimal(item.price) * to_decimal(item.quantity)


def item_effective_profile(item: BillItem, room: Room) -> Optional[TaxProfile]:
    return resolve_profile(item, room.tax_profiles)


@exact
def item_tax_amount(item: BillItem, room: Room) -> Decimal:
    return item_tax(item_extended_price(item), item_effective_profile(item, room))


@exact
def item_total_with_tax(item: BillItem, room: Room) -> Decimal:
    return item_extended_price(item) + item_tax_amount(item, room)


@exact
def item_service_charge(item: BillItem, room: Room) -> Decimal:
    return item_total_with_tax(item, room) * (to_decimal(room.service_tax_rate) / HUNDRED)


@exact
def item_grand_total(item: BillItem, room: Room) -> Decimal:
    return item_total_with_tax(item, room) + item_service_charge(item, room)


@exact
def item_share(item: BillItem, room: Room) -> Optional[Decimal]:
    """Equal per-person share of an item, or None when nobody selected it."""
    selectors = len(item.selected_by)
    if selectors == 0:
        return None
    return item_grand_total(item, room) / selectors


@exact
def subtotal(items: Iterable[BillItem]) -> Decimal:
    return sum((item_extended_price(item) for item in items), ZERO)


@exact
def total_tax(items: Iterable[BillItem], room: Room) -> Decimal:
    return sum((item_tax_amount(item, room) for item in items), ZERO)


@exact
def total_service_charge(items: Iterable[BillItem], room: Room) -> Decimal:
    return sum((item_service_charge(item, room) for item in items), ZERO)


@exact
def total_bill(items: Iterable[BillItem], room: Room) -> Decimal:
    return sum((item_grand_total(item, room) for item in items), ZERO)


@exact
def user_share(items: Iterable[BillItem], user_id: str, room: Room) -> Decimal:
    share = ZERO
    for item in items:
        selectors = len(item.selected_by)
        if selectors > 0 and user_id in item.selected_by:
            share += item_grand_total(item, room) / selectors
    return share


def split_breakdown(items: Sequence[BillItem], user_ids: Iterable[str], room: Room) -> Dict[str, Decimal]:
    return {user_id: user_share(items, user_id, room) for user_id in user_ids}


def unclaimed_items(items: Iterable[BillItem]) -> List[BillItem]:
    return [item for item in items if not item.selected_by]


@exact
def unclaimed_total(items: Iterable[BillItem], room: Room) -> Decimal:
    """Grand total of items nobody selected; the organiser absorbs it."""
    return total_bill(unclaimed_items(items), room)


@exact
def claimed_total(items: Sequence[BillItem], room: Room) -> Decimal:
    return total_bill(items, room) - unclaimed_total(items, room)
