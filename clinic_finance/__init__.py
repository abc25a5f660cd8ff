"""Clinic finance - patient ledger calculators.

Available calculators:
    - FinancialCalculator: pro-rata, discount and split aware patient ledger
"""

from clinic_finance.patient_financials import FinancialCalculator, Patient, FinancialSummary

__all__ = ["FinancialCalculator", "Patient", "FinancialSummary"]
