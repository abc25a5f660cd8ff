"""Totals over a patient's transaction ledger."""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from clinic_finance.patient_financials.models import OneTimeCharge, Payment, Refund


@dataclass(frozen=True)
class TransactionTotals:
    total_payments: float
    total_refunds: float
    total_one_time_charges: float
    last_payment_date: date | None

    @property
    def total_paid(self) -> float:
        """Payments net of refunds."""
        return self.total_payments - self.total_refunds


def aggregate_transactions(transactions: Sequence[Payment | OneTimeCharge | Refund]) -> TransactionTotals:
    """Sum payments, refunds and one-time charges.

    One-time charges are reported here but belong to the charge side; they are
    not part of total_paid.
    """
    payments = [t for t in transactions if t.type == "payment"]
    return TransactionTotals(
        total_payments=sum((t.amount for t in payments), 0.0),
        total_refunds=sum((t.amount for t in transactions if t.type == "refund"), 0.0),
        total_one_time_charges=sum((t.amount for t in transactions if t.type == "charge"), 0.0),
        last_payment_date=max((t.date for t in payments), default=None),
    )
