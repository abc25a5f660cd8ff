"""Patient financial calculator.

This module implements the ledger calculation that:
1. Determines the treatment window (start date through end date or as-of date)
2. Walks the window month by month, accruing the daily pro-rata rate
3. Skips days on which the patient was frozen
4. Applies approved discounts to each month in stored order
5. Adjusts the charge for billing splits and adds one-time charges
6. Nets payments against refunds and derives the balance

All functions are pure over the patient snapshots passed in.
"""

import calendar
import logging
from collections.abc import Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from clinic_finance.patient_financials.discounts import active_discounts, apply_discounts
from clinic_finance.patient_financials.history import resolve_rate, resolve_status
from clinic_finance.patient_financials.models import (
    ENDING_STATUSES,
    FinancialSummary,
    MonthlyCharge,
    Patient,
    PatientStatus,
    SplitAnomaly,
)
from clinic_finance.patient_financials.splits import (
    anomalies_for,
    detect_split_anomalies,
    resolve_split_charge,
)
from clinic_finance.patient_financials.transactions import aggregate_transactions

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def round_money(value: float) -> float:
    """Round to cents, half away from zero."""
    return float(Decimal(repr(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def _next_month(month: date) -> date:
    if month.month == 12:
        return date(month.year + 1, 1, 1)
    return date(month.year, month.month + 1, 1)


class FinancialCalculator:
    """Pro-rata, discount and split aware ledger calculator.

    Example:
        >>> from datetime import date
        >>> calculator = FinancialCalculator(as_of=date(2024, 1, 31))
        >>> patient = Patient(
        ...     id="P001",
        ...     start_date=date(2024, 1, 15),
        ...     status="in_treatment",
        ...     rate_history=[{"start_date": date(2024, 1, 15), "rate": 600}],
        ... )
        >>> summary = calculator.summarize(patient, [patient])
        >>> summary.total_charged
        329.03
    """

    def __init__(self, as_of: date | None = None):
        """Initialize calculator.

        Args:
            as_of: Date that open-ended treatments accrue through (defaults to today)
        """
        self.as_of = as_of or date.today()

    def treatment_window(self, patient: Patient) -> tuple[date, date] | None:
        """Return (start, end) of the chargeable period, or None if nothing accrues.

        The end date only closes the window once the patient's current status is
        an ending status; otherwise treatment is still accruing up to as_of.
        """
        if patient.start_date is None or not patient.rate_history:
            return None

        if patient.end_date is not None and patient.status in ENDING_STATUSES:
            end = patient.end_date
        else:
            end = self.as_of

        if patient.start_date > end:
            return None
        return patient.start_date, end

    def monthly_breakdown(self, patient: Patient) -> list[MonthlyCharge]:
        """Calculate the charge for every month of the treatment window.

        Args:
            patient: Patient snapshot

        Returns:
            One MonthlyCharge per calendar month, oldest first
        """
        window = self.treatment_window(patient)
        if window is None:
            return []
        start, end = window

        months: list[MonthlyCharge] = []
        month = start.replace(day=1)
        last_month = end.replace(day=1)

        while month <= last_month:
            days_in_month = calendar.monthrange(month.year, month.month)[1]
            first_day = start.day if month == start.replace(day=1) else 1
            last_day = end.day if month == last_month else days_in_month

            gross = 0.0
            days_charged = 0
            days_frozen = 0
            for day in range(first_day, last_day + 1):
                current = month.replace(day=day)

                status_entry = resolve_status(patient.status_history, current)
                if status_entry is not None and status_entry.status == PatientStatus.FROZEN:
                    days_frozen += 1
                    continue

                rate_entry = resolve_rate(patient.rate_history, current)
                if rate_entry is not None and rate_entry.rate > 0:
                    gross += rate_entry.rate / days_in_month
                    days_charged += 1

            net, applications = apply_discounts(gross, active_discounts(patient.discounts, month))
            months.append(
                MonthlyCharge(
                    month=month,
                    days_charged=days_charged,
                    days_frozen=days_frozen,
                    gross=gross,
                    discounts_applied=applications,
                    net=net,
                )
            )
            month = _next_month(month)

        return months

    def base_charge(self, patient: Patient) -> float:
        """Pro-rata charge after freezes and discounts, before splits and one-time charges."""
        return sum((m.net for m in self.monthly_breakdown(patient)), 0.0)

    def summarize(
        self,
        patient: Patient,
        all_patients: Sequence[Patient],
        anomalies: Sequence[SplitAnomaly] | None = None,
    ) -> FinancialSummary:
        """Calculate totals for a single patient.

        Args:
            patient: Patient to summarize
            all_patients: Roster snapshot, used to resolve incoming billing splits
            anomalies: Pre-computed split anomalies for the roster; detected
                here when omitted

        Returns:
            FinancialSummary with amounts rounded to cents
        """
        totals = aggregate_transactions(patient.transactions)
        charged = resolve_split_charge(
            patient,
            all_patients,
            base_charge=self.base_charge,
            one_time_charges=totals.total_one_time_charges,
        )

        if anomalies is None:
            anomalies = detect_split_anomalies(all_patients)

        total_charged = round_money(charged)
        total_paid = round_money(totals.total_paid)
        return FinancialSummary(
            patient_id=patient.id,
            total_charged=total_charged,
            total_paid=total_paid,
            balance=round_money(total_paid - total_charged),
            split_anomalies=anomalies_for(patient.id, anomalies),
        )

    def summarize_batch(self, patients: Sequence[Patient]) -> list[FinancialSummary]:
        """Summarize every patient of a roster.

        Args:
            patients: Roster snapshot; each patient is billed against the whole roster

        Returns:
            List of summaries in same order as inputs
        """
        anomalies = detect_split_anomalies(patients)
        for anomaly in anomalies:
            logger.warning("Billing split anomaly (%s): %s", anomaly.kind, anomaly.detail)
        return [self.summarize(patient, patients, anomalies) for patient in patients]


def calculate_base_charge(patient: Patient, *, as_of: date | None = None) -> float:
    """Pro-rata base charge for a patient, unrounded."""
    return FinancialCalculator(as_of=as_of).base_charge(patient)


def calculate_patient_financials(
    patient: Patient, all_patients: Sequence[Patient], *, as_of: date | None = None
) -> FinancialSummary:
    """Total charged, total paid and balance (paid minus charged) for a patient."""
    return FinancialCalculator(as_of=as_of).summarize(patient, all_patients)
