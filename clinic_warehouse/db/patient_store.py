from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from typing import Any

import duckdb
from pydantic import ValidationError

from clinic_finance.patient_financials.models import Patient
from clinic_finance.patient_financials.patient_processing import (
    PATIENT_COLUMNS,
    normalize_discount,
    normalize_keys,
    rows_to_patients,
)

logger = logging.getLogger(__name__)


def to_json_column(value: Any) -> str:
    """Encode a value for a DuckDB JSON column, keeping Hebrew labels readable."""
    return json.dumps(value, separators=(",", ":"), default=str, ensure_ascii=False)


def patient_to_row(patient: Patient) -> list[Any]:
    """Serialize a Patient into PATIENT_COLUMNS order."""
    data = patient.model_dump(mode="json")
    return [
        patient.id,
        patient.first_name,
        patient.last_name,
        patient.therapist,
        patient.therapeutic_center,
        patient.start_date,
        patient.end_date,
        patient.status.value,
        to_json_column(data["rate_history"]),
        to_json_column(data["status_history"]),
        to_json_column(data["discounts"]),
        to_json_column(data["transactions"]),
        to_json_column(data["billing_info"]) if patient.billing_info is not None else None,
    ]


def write_patients(con: duckdb.DuckDBPyConnection, patients: Sequence[Patient]) -> int:
    """Insert or replace patient snapshots in main_intermediate.patients."""
    if not patients:
        return 0
    placeholders = ", ".join("?" for _ in PATIENT_COLUMNS)
    con.executemany(
        f"""
        INSERT OR REPLACE INTO main_intermediate.patients ({", ".join(PATIENT_COLUMNS)})
        VALUES ({placeholders})
        """,
        [patient_to_row(p) for p in patients],
    )
    return len(patients)


def parse_patient_records(records: Iterable[dict[str, Any]]) -> list[Patient]:
    """Build patients from exported JSON records (camelCase or snake_case keys).

    Raises:
        ValueError: A record failed validation; the message names its patient id
    """
    patients: list[Patient] = []
    for position, record in enumerate(records):
        data = normalize_keys(record)
        data["discounts"] = [normalize_discount(d) for d in data.get("discounts") or []]
        try:
            patients.append(Patient.model_validate(data))
        except ValidationError as exc:
            patient_id = data.get("id", f"<record {position}>")
            raise ValueError(f"Invalid patient record '{patient_id}': {exc}") from exc
    return patients


def load_patients(
    con: duckdb.DuckDBPyConnection,
    *,
    patient_ids: Sequence[str] | None = None,
    invalid_rows: str = "skip",
) -> list[Patient]:
    """Read patient snapshots, optionally restricted to patient_ids."""
    sql = f"SELECT {', '.join(PATIENT_COLUMNS)} FROM main_intermediate.patients"
    params: list[Any] = []
    if patient_ids:
        sql += f" WHERE patient_id IN ({', '.join('?' for _ in patient_ids)})"
        params.extend(patient_ids)
    sql += " ORDER BY patient_id"

    rows = con.execute(sql, params).fetchall()
    patients, stats = rows_to_patients(rows, invalid_rows=invalid_rows)
    if stats["skipped"]:
        logger.warning("Skipped %d invalid patient rows", stats["skipped"])
    return patients
