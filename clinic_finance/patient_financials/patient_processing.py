from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any, Iterable

from pydantic import ValidationError

from clinic_finance.patient_financials.models import Patient

logger = logging.getLogger(__name__)

PATIENT_COLUMNS = (
    "patient_id",
    "first_name",
    "last_name",
    "therapist",
    "therapeutic_center",
    "start_date",
    "end_date",
    "status",
    "rate_history",
    "status_history",
    "discounts",
    "transactions",
    "billing_info",
)

# Discount states as the clinic application stores them
DISCOUNT_STATUS_LABELS = {
    "ממתין לאישור": "pending",
    "מאושר": "approved",
    "נדחה": "rejected",
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def normalize_keys(value: Any) -> Any:
    """Recursively convert camelCase dict keys (as exported by the clinic app) to snake_case."""
    if isinstance(value, dict):
        return {snake_case(str(k)): normalize_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_keys(v) for v in value]
    return value


def coerce_json(value: Any, *, default: Any) -> Any:
    """Decode a JSON column; DuckDB returns JSON as str, but lists/dicts pass through."""
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        text = value.decode() if isinstance(value, bytes) else value
        if not text.strip():
            return default
        return json.loads(text)
    return value


def normalize_discount(raw: dict[str, Any]) -> dict[str, Any]:
    discount = dict(raw)
    # The clinic app names the discount kind "type"
    if "kind" not in discount and "type" in discount:
        discount["kind"] = discount.pop("type")
    status = discount.get("status")
    if status in DISCOUNT_STATUS_LABELS:
        discount["status"] = DISCOUNT_STATUS_LABELS[status]
    return discount


def row_to_patient(row: tuple[Any, ...]) -> Patient:
    """Convert one warehouse row (PATIENT_COLUMNS order) into a Patient."""
    (
        patient_id,
        first_name,
        last_name,
        therapist,
        therapeutic_center,
        start_date,
        end_date,
        status,
        rate_history,
        status_history,
        discounts,
        transactions,
        billing_info,
    ) = row

    if isinstance(start_date, str) and start_date.strip():
        start_date = date.fromisoformat(start_date)
    if isinstance(end_date, str) and end_date.strip():
        end_date = date.fromisoformat(end_date)

    billing = normalize_keys(coerce_json(billing_info, default=None))

    return Patient(
        id=str(patient_id),
        first_name=first_name or "",
        last_name=last_name or "",
        therapist=therapist,
        therapeutic_center=therapeutic_center,
        start_date=start_date,
        end_date=end_date,
        status=status if status is not None else "WAITING",
        rate_history=normalize_keys(coerce_json(rate_history, default=[])),
        status_history=normalize_keys(coerce_json(status_history, default=[])),
        discounts=[
            normalize_discount(d) for d in normalize_keys(coerce_json(discounts, default=[]))
        ],
        transactions=normalize_keys(coerce_json(transactions, default=[])),
        billing_info=billing or None,
    )


def rows_to_patients(
    rows: Iterable[tuple[Any, ...]],
    *,
    invalid_rows: str = "skip",
) -> tuple[list[Patient], dict[str, Any]]:
    """
    Convert raw database rows into Patient objects with validation.

    Expected row format: PATIENT_COLUMNS.

    Rows that fail validation are skipped and counted, or re-raised as
    ValueError naming the patient when invalid_rows='error'.
    """
    if invalid_rows not in {"skip", "error"}:
        raise ValueError("invalid_rows must be one of: skip, error")

    patients: list[Patient] = []
    skipped = 0
    invalid_patient_ids: list[str] = []

    for row in rows:
        try:
            patients.append(row_to_patient(row))
        except (ValidationError, ValueError) as exc:
            patient_id = str(row[0]) if row else "<EMPTY>"
            if invalid_rows == "error":
                raise ValueError(f"Invalid patient row '{patient_id}': {exc}") from exc
            logger.warning("Skipping invalid patient row %s: %s", patient_id, exc)
            skipped += 1
            invalid_patient_ids.append(patient_id)

    return patients, {"skipped": skipped, "invalid_patient_ids": invalid_patient_ids}
