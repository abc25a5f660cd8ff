from __future__ import annotations

from datetime import UTC, datetime

import duckdb


def ensure_core_schemas(con: duckdb.DuckDBPyConnection) -> None:
    con.execute("CREATE SCHEMA IF NOT EXISTS main_intermediate")
    con.execute("CREATE SCHEMA IF NOT EXISTS main_runs")
    con.execute("CREATE SCHEMA IF NOT EXISTS main_analytics")


def ensure_patient_input(con: duckdb.DuckDBPyConnection) -> None:
    """Patient snapshot relation read by the financial runs.

    Histories, discounts, transactions and billing info are stored as JSON in
    the shape the clinic application exports (camelCase keys accepted).
    """
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_intermediate.patients (
            patient_id VARCHAR PRIMARY KEY,
            first_name VARCHAR,
            last_name VARCHAR,
            therapist VARCHAR,
            therapeutic_center VARCHAR,
            start_date DATE,
            end_date DATE,
            status VARCHAR,
            rate_history JSON,
            status_history JSON,
            discounts JSON,
            transactions JSON,
            billing_info JSON
        )
        """
    )


def ensure_financial_run_log(con: duckdb.DuckDBPyConnection) -> None:
    """One row per financial run; status moves from 'started' to 'success' or 'failed'."""
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_runs.financial_runs (
            run_id VARCHAR PRIMARY KEY,
            as_of DATE,
            description VARCHAR,
            trigger_source VARCHAR,
            status VARCHAR,
            patients_written INTEGER,
            started_at TIMESTAMP,
            finished_at TIMESTAMP
        )
        """
    )


def ensure_marts_tables(con: duckdb.DuckDBPyConnection) -> None:
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_runs.patient_financials (
            run_id VARCHAR,
            patient_id VARCHAR,
            total_charged DOUBLE,
            total_paid DOUBLE,
            balance DOUBLE,
            base_charge DOUBLE,
            months_billed INTEGER,
            therapist VARCHAR,
            status VARCHAR,
            as_of DATE,
            created_at TIMESTAMP,
            monthly_breakdown JSON,
            split_anomalies JSON,
            PRIMARY KEY (run_id, patient_id)
        )
        """
    )


def ensure_clinic_warehouse(con: duckdb.DuckDBPyConnection) -> None:
    ensure_core_schemas(con)
    ensure_patient_input(con)
    ensure_financial_run_log(con)
    ensure_marts_tables(con)


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)
