"""Clinic-wide financial reporting over patient summaries.

Builds polars frames from the financial engine's per-patient summaries for the
overview screens: totals, patients in debt, revenue per therapist and
patient counts by status and by therapeutic center.
"""

from collections.abc import Sequence
from datetime import date

import polars as pl

from clinic_finance.patient_financials.calculator import FinancialCalculator
from clinic_finance.patient_financials.models import Patient
from clinic_finance.patient_financials.transactions import aggregate_transactions

FINANCIALS_SCHEMA = {
    "patient_id": pl.Utf8,
    "full_name": pl.Utf8,
    "therapist": pl.Utf8,
    "therapeutic_center": pl.Utf8,
    "status": pl.Utf8,
    "total_charged": pl.Float64,
    "total_paid": pl.Float64,
    "balance": pl.Float64,
    "last_payment_date": pl.Date,
    "split_anomalies": pl.Int64,
}

# Label the clinic app shows for patients without a therapeutic center
UNASSIGNED_CENTER = "לא שויך"


def financials_frame(patients: Sequence[Patient], *, as_of: date | None = None) -> pl.DataFrame:
    """One row per patient with totals from the financial engine."""
    calculator = FinancialCalculator(as_of=as_of)
    summaries = calculator.summarize_batch(patients)

    rows = []
    for patient, summary in zip(patients, summaries):
        rows.append(
            {
                "patient_id": patient.id,
                "full_name": patient.full_name,
                "therapist": patient.therapist,
                "therapeutic_center": patient.therapeutic_center,
                "status": patient.status.value,
                "total_charged": summary.total_charged,
                "total_paid": summary.total_paid,
                "balance": summary.balance,
                "last_payment_date": aggregate_transactions(patient.transactions).last_payment_date,
                "split_anomalies": len(summary.split_anomalies),
            }
        )
    return pl.DataFrame(rows, schema=FINANCIALS_SCHEMA)


def portfolio_totals(frame: pl.DataFrame) -> dict[str, float]:
    """Sum of charged, paid and balance across the clinic."""
    if frame.is_empty():
        return {"total_charged": 0.0, "total_paid": 0.0, "total_balance": 0.0}

    totals = frame.select(
        pl.col("total_charged").sum().round(2),
        pl.col("total_paid").sum().round(2),
        pl.col("balance").sum().round(2).alias("total_balance"),
    ).row(0, named=True)
    return {key: float(value) for key, value in totals.items()}


def patients_in_debt(frame: pl.DataFrame) -> pl.DataFrame:
    """Patients with a negative balance, most debt first."""
    return (
        frame.filter(pl.col("balance") < 0)
        .sort("balance")
        .select(
            "patient_id",
            "full_name",
            "therapist",
            "balance",
            "last_payment_date",
        )
    )


def revenue_by_therapist(patients: Sequence[Patient], start: date, end: date) -> pl.DataFrame:
    """Payments dated within [start, end], summed per therapist.

    Patients without a therapist are left out, as are refunds and charges.
    """
    rows = [
        {"therapist": patient.therapist, "amount": t.amount}
        for patient in patients
        if patient.therapist
        for t in patient.transactions
        if t.type == "payment" and start <= t.date <= end
    ]
    if not rows:
        return pl.DataFrame(schema={"therapist": pl.Utf8, "revenue": pl.Float64})

    return (
        pl.DataFrame(rows, schema={"therapist": pl.Utf8, "amount": pl.Float64})
        .group_by("therapist")
        .agg(pl.col("amount").sum().round(2).alias("revenue"))
        .sort(["revenue", "therapist"], descending=[True, False])
    )


def status_counts(
    patients: Sequence[Patient], start: date, end: date, *, as_of: date | None = None
) -> pl.DataFrame:
    """Count patients whose treatment overlaps [start, end], by current status.

    Open-ended treatments run through as_of (defaults to today).
    """
    as_of = as_of or date.today()
    statuses = [
        patient.status.value
        for patient in patients
        if patient.start_date is not None
        and patient.start_date <= end
        and (patient.end_date or as_of) >= start
    ]
    if not statuses:
        return pl.DataFrame(schema={"status": pl.Utf8, "patients": pl.UInt32})

    return (
        pl.DataFrame({"status": statuses})
        .group_by("status")
        .agg(pl.len().alias("patients"))
        .sort(["patients", "status"], descending=[True, False])
    )


def center_counts(patients: Sequence[Patient], start: date, end: date) -> pl.DataFrame:
    """Count patients who started treatment within [start, end], by therapeutic center.

    Patients without a center are counted under UNASSIGNED_CENTER.
    """
    centers = [
        patient.therapeutic_center or UNASSIGNED_CENTER
        for patient in patients
        if patient.start_date is not None and start <= patient.start_date <= end
    ]
    if not centers:
        return pl.DataFrame(schema={"therapeutic_center": pl.Utf8, "patients": pl.UInt32})

    return (
        pl.DataFrame({"therapeutic_center": centers})
        .group_by("therapeutic_center")
        .agg(pl.len().alias("patients"))
        .sort(["patients", "therapeutic_center"], descending=[True, False])
    )
