"""Patient financial engine.

Pro-rata monthly charges with freezes, ordered discounts, billing splits,
one-time charges and refunds, summarized per patient.
"""

from clinic_finance.patient_financials.calculator import (
    FinancialCalculator,
    calculate_base_charge,
    calculate_patient_financials,
)
from clinic_finance.patient_financials.history import resolve_rate, resolve_status
from clinic_finance.patient_financials.models import (
    BillingInfo,
    Discount,
    FinancialSummary,
    OneTimeCharge,
    Patient,
    PatientStatus,
    Payment,
    RateHistoryEntry,
    Refund,
    StatusHistoryEntry,
)

__all__ = [
    "FinancialCalculator",
    "calculate_base_charge",
    "calculate_patient_financials",
    "resolve_rate",
    "resolve_status",
    "BillingInfo",
    "Discount",
    "FinancialSummary",
    "OneTimeCharge",
    "Patient",
    "PatientStatus",
    "Payment",
    "RateHistoryEntry",
    "Refund",
    "StatusHistoryEntry",
]
