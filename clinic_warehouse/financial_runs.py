from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from uuid import uuid4

import duckdb
import polars as pl

from clinic_finance.patient_financials import FinancialCalculator
from clinic_warehouse.db.bootstrap import ensure_clinic_warehouse, now_utc
from clinic_warehouse.db.patient_store import load_patients, to_json_column
from clinic_warehouse.resources.duckdb_resource import DuckDBResource

logger = logging.getLogger(__name__)

# Columns must match main_runs.patient_financials definition order
DB_COLUMNS = [
    "run_id",
    "patient_id",
    "total_charged",
    "total_paid",
    "balance",
    "base_charge",
    "months_billed",
    "therapist",
    "status",
    "as_of",
    "created_at",
    "monthly_breakdown",
    "split_anomalies",
]


@dataclass(frozen=True)
class FinancialRunResult:
    run_id: str
    as_of: date
    started_at: datetime
    patients_written: int


def _register_run(
    con: duckdb.DuckDBPyConnection,
    *,
    run_id: str,
    as_of: date,
    description: str,
    trigger_source: str,
    started_at: datetime,
) -> None:
    con.execute(
        """
        INSERT INTO main_runs.financial_runs
            (run_id, as_of, description, trigger_source, status, started_at)
        VALUES (?, ?, ?, ?, 'started', ?)
        """,
        [run_id, as_of, description, trigger_source, started_at],
    )


def _finish_run(
    con: duckdb.DuckDBPyConnection,
    *,
    run_id: str,
    status: str,
    patients_written: int | None = None,
) -> None:
    con.execute(
        """
        UPDATE main_runs.financial_runs
        SET status = ?, patients_written = ?, finished_at = ?
        WHERE run_id = ?
        """,
        [status, patients_written, now_utc(), run_id],
    )


def get_run_status(con: duckdb.DuckDBPyConnection, run_id: str) -> str | None:
    row = con.execute("SELECT status FROM main_runs.financial_runs WHERE run_id = ?", [run_id]).fetchone()
    return row[0] if row else None


def run_patient_financials(
    duckdb_resource: DuckDBResource,
    *,
    as_of: date | None = None,
    run_description: str = "Patient financials run",
    trigger_source: str = "cli",
    batch_size: int = 10000,
) -> FinancialRunResult:
    """Summarize every patient in main_intermediate.patients into main_runs.patient_financials.

    The run is logged in main_runs.financial_runs as 'started' and marked
    'success' or 'failed' when done; failures are re-raised. The connection
    is closed on every path, including a failed bootstrap or registration.
    """
    logger.info("Connecting to DuckDB at: %s", duckdb_resource.path)
    con = duckdb_resource.get_connection().connect()

    calculator = FinancialCalculator(as_of=as_of)
    run_id = str(uuid4())
    started_at = now_utc()

    try:
        ensure_clinic_warehouse(con)
        _register_run(
            con,
            run_id=run_id,
            as_of=calculator.as_of,
            description=run_description,
            trigger_source=trigger_source,
            started_at=started_at,
        )

        try:
            total_written = _write_summaries(con, calculator, run_id=run_id, batch_size=batch_size)
        except Exception:
            _finish_run(con, run_id=run_id, status="failed")
            raise

        _finish_run(con, run_id=run_id, status="success", patients_written=total_written)
        logger.info("Wrote %d rows to main_runs.patient_financials for run_id=%s", total_written, run_id)

    finally:
        con.close()

    return FinancialRunResult(
        run_id=run_id,
        as_of=calculator.as_of,
        started_at=started_at,
        patients_written=total_written,
    )


def _write_summaries(
    con: duckdb.DuckDBPyConnection,
    calculator: FinancialCalculator,
    *,
    run_id: str,
    batch_size: int,
) -> int:
    patients = load_patients(con)
    logger.info("Summarizing %d patients as of %s", len(patients), calculator.as_of)

    summaries = calculator.summarize_batch(patients)
    created_at = now_utc()
    out_rows: list[dict] = []
    total_written = 0

    def flush_batch(rows: list[dict]) -> None:
        if not rows:
            return
        df = pl.DataFrame(rows, schema_overrides={"therapist": pl.Utf8}).select(DB_COLUMNS)
        con.execute("INSERT OR REPLACE INTO main_runs.patient_financials SELECT * FROM df")

    for patient, summary in zip(patients, summaries):
        months = calculator.monthly_breakdown(patient)
        out_rows.append(
            {
                "run_id": run_id,
                "patient_id": patient.id,
                "total_charged": summary.total_charged,
                "total_paid": summary.total_paid,
                "balance": summary.balance,
                "base_charge": sum((m.net for m in months), 0.0),
                "months_billed": len(months),
                "therapist": patient.therapist,
                "status": patient.status.value,
                "as_of": calculator.as_of,
                "created_at": created_at,
                "monthly_breakdown": to_json_column([m.model_dump(mode="json") for m in months]),
                "split_anomalies": to_json_column([a.model_dump(mode="json") for a in summary.split_anomalies]),
            }
        )

        if len(out_rows) >= batch_size:
            flush_batch(out_rows)
            total_written += len(out_rows)
            out_rows = []
            logger.info("Wrote %d/%d patients", total_written, len(patients))

    flush_batch(out_rows)
    return total_written + len(out_rows)
