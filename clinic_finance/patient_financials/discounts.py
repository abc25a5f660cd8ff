"""Discount selection and ordered application for a billing month."""

from collections.abc import Sequence
from datetime import date

from clinic_finance.patient_financials.models import Discount, DiscountApplication


def month_start(value: date) -> date:
    return value.replace(day=1)


def discount_covers_month(discount: Discount, month: date) -> bool:
    """True if an approved discount's validity window touches the given month."""
    if discount.status != "approved":
        return False
    month = month_start(month)
    return month_start(discount.valid_from) <= month <= month_start(discount.valid_until)


def active_discounts(discounts: Sequence[Discount], month: date) -> list[Discount]:
    """Approved discounts covering month, in the patient's stored order."""
    return [d for d in discounts if discount_covers_month(d, month)]


def apply_discounts(
    charge: float, discounts: Sequence[Discount]
) -> tuple[float, list[DiscountApplication]]:
    """Apply discounts to a month's charge one after another.

    Order matters: a fixed amount followed by a percentage gives a different
    result than the reverse. Fixed amounts never push the charge below zero.

    Args:
        charge: Gross charge for the month
        discounts: Discounts already filtered to the month, in evaluation order

    Returns:
        Tuple of (net charge, list of applications in evaluation order)
    """
    applications: list[DiscountApplication] = []
    for discount in discounts:
        before = charge
        if discount.kind == "fixed_amount":
            charge = max(0.0, charge - discount.value)
        elif discount.kind == "percentage":
            charge *= 1 - (discount.value / 100)
        applications.append(
            DiscountApplication(
                discount_id=discount.id,
                kind=discount.kind,
                value=discount.value,
                charge_before=before,
                charge_after=charge,
            )
        )
    return charge, applications
