"""Additive ledger operations on patient snapshots.

Every operation returns a new Patient plus the ActionLogEntry describing the
change. Inputs are never mutated and financial history is only appended to.
"""

from collections.abc import Sequence
from datetime import UTC, date, datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from clinic_finance.patient_financials.history import resolve_rate
from clinic_finance.patient_financials.models import (
    ENDING_STATUSES,
    BillingInfo,
    Discount,
    OneTimeCharge,
    Patient,
    PatientStatus,
    Payment,
    RateHistoryEntry,
    Refund,
    StatusHistoryEntry,
)
from clinic_finance.patient_financials.splits import validate_split_reference

ActionLogType = Literal[
    "rate-change",
    "discount-request",
    "discount-decision",
    "billing-split-update",
    "status-change",
    "transaction-add",
]


class ActionLogEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    user: str
    patient_id: str | None = None
    type: ActionLogType
    details: str


def _log(user: str, patient: Patient, type_: ActionLogType, details: str) -> ActionLogEntry:
    return ActionLogEntry(user=user, patient_id=patient.id, type=type_, details=details)


def _format_discount(discount: Discount) -> str:
    if discount.kind == "percentage":
        return f"{discount.value:g}%"
    return f"{discount.value:.2f}"


def change_rate(
    patient: Patient,
    new_rate: float,
    *,
    user: str,
    effective: date | None = None,
) -> tuple[Patient, ActionLogEntry | None]:
    """Append a rate entry starting on effective (defaults to today).

    Returns (patient, None) unchanged when the rate in effect on that date
    already equals new_rate.
    """
    effective = effective or date.today()
    current = resolve_rate(patient.rate_history, effective)
    if current is not None and current.rate == new_rate:
        return patient, None

    entry = RateHistoryEntry(
        start_date=effective,
        rate=new_rate,
        created_at=datetime.now(UTC),
        created_by=user,
    )
    updated = patient.model_copy(update={"rate_history": [*patient.rate_history, entry]})
    previous = f"{current.rate:.2f}" if current is not None else "none"
    return updated, _log(
        user, patient, "rate-change", f"Rate changed from {previous} to {new_rate:.2f} as of {effective}"
    )


def change_status(
    patient: Patient,
    status: PatientStatus | str,
    *,
    user: str,
    effective: date | None = None,
    notes: str | None = None,
) -> tuple[Patient, ActionLogEntry]:
    """Append a status entry and update the patient's current status.

    Moving to an ending status fills end_date with the effective date when it
    is still empty, which closes the chargeable period.
    """
    status = PatientStatus.coerce(status)
    effective = effective or date.today()
    entry = StatusHistoryEntry(date=effective, status=status, changed_by=user, notes=notes)

    update: dict = {"status": status, "status_history": [*patient.status_history, entry]}
    if status in ENDING_STATUSES and patient.end_date is None:
        update["end_date"] = effective

    updated = patient.model_copy(update=update)
    return updated, _log(
        user, patient, "status-change", f"Status changed from {patient.status.value} to {status.value}"
    )


def add_transaction(
    patient: Patient, transaction: Payment | OneTimeCharge | Refund, *, user: str
) -> tuple[Patient, ActionLogEntry]:
    updated = patient.model_copy(update={"transactions": [*patient.transactions, transaction]})
    return updated, _log(
        user,
        patient,
        "transaction-add",
        f"Added {transaction.type} transaction of {transaction.amount:.2f}",
    )


def request_discount(
    patient: Patient,
    *,
    user: str,
    kind: Literal["percentage", "fixed_amount"],
    value: float,
    valid_from: date,
    valid_until: date,
    reason: str = "",
    requested_on: date | None = None,
) -> tuple[Patient, ActionLogEntry]:
    """Record a pending discount request."""
    discount = Discount(
        id=str(uuid4()),
        request_date=requested_on or date.today(),
        requester=user,
        reason=reason,
        kind=kind,
        value=value,
        valid_from=valid_from,
        valid_until=valid_until,
        status="pending",
    )
    updated = patient.model_copy(update={"discounts": [*patient.discounts, discount]})
    return updated, _log(
        user, patient, "discount-request", f"Requested discount of {_format_discount(discount)}"
    )


def decide_discount(
    patient: Patient,
    discount_id: str,
    approved: bool,
    *,
    user: str,
    decided_on: date | None = None,
) -> tuple[Patient, ActionLogEntry]:
    """Approve or reject a pending discount.

    Raises:
        KeyError: No discount with discount_id
        ValueError: Discount was already decided
    """
    target = next((d for d in patient.discounts if d.id == discount_id), None)
    if target is None:
        raise KeyError(f"Unknown discount '{discount_id}' for patient '{patient.id}'")
    if target.status != "pending":
        raise ValueError(f"Discount '{discount_id}' was already {target.status}")

    decided = target.model_copy(
        update={
            "status": "approved" if approved else "rejected",
            "approver": user,
            "decision_date": decided_on or date.today(),
        }
    )
    # Keep the discount in place; evaluation order is the stored order
    discounts = [decided if d.id == discount_id else d for d in patient.discounts]
    updated = patient.model_copy(update={"discounts": discounts})
    return updated, _log(
        user,
        patient,
        "discount-decision",
        f"Discount {_format_discount(decided)} {decided.status}",
    )


def set_billing_split(
    patient: Patient,
    roster: Sequence[Patient],
    partner_id: str,
    percentage: float,
    *,
    user: str,
) -> tuple[Patient, ActionLogEntry]:
    """Make patient pay percentage of its own base charge, billing the rest to partner_id.

    Raises:
        SplitReferenceError: partner is the patient itself, unknown, or the edge closes a cycle
    """
    validate_split_reference(roster, patient.id, partner_id)
    info = BillingInfo(split_with_patient_id=partner_id, split_percentage=percentage)
    updated = patient.model_copy(update={"billing_info": info})
    return updated, _log(
        user,
        patient,
        "billing-split-update",
        f"Billing split with {partner_id}: patient pays {percentage:g}%",
    )


def clear_billing_split(patient: Patient, *, user: str) -> tuple[Patient, ActionLogEntry]:
    updated = patient.model_copy(update={"billing_info": None})
    return updated, _log(user, patient, "billing-split-update", "Billing split removed")
