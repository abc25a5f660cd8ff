from __future__ import annotations

import json
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import typer

from clinic_finance.patient_financials import FinancialCalculator
from clinic_finance.patient_financials.duckdb_to_csv import default_duckdb_path, financials_from_duckdb_to_csv
from clinic_finance.patient_financials.portfolio import (
    financials_frame,
    patients_in_debt,
    portfolio_totals,
)
from clinic_warehouse.db.bootstrap import ensure_clinic_warehouse
from clinic_warehouse.db.patient_store import load_patients, parse_patient_records, write_patients
from clinic_warehouse.financial_runs import run_patient_financials
from clinic_warehouse.resources.duckdb_resource import DuckDBResource

app = typer.Typer(no_args_is_help=True, help="Clinic ledger CLI - Warehouse and financial utilities")

DEFAULT_DUCKDB_PATH = default_duckdb_path()


def _parse_as_of(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"expected an ISO date (YYYY-MM-DD), got {value!r}") from exc


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command(name="db-bootstrap")
def db_bootstrap(
    duckdb_path: str = typer.Option(DEFAULT_DUCKDB_PATH, "--duckdb-path"),
) -> None:
    """Create the clinic schemas + tables in DuckDB.

    Creates: `main_intermediate`, `main_runs`, `main_analytics`.
    """

    res = DuckDBResource(path=duckdb_path)
    con = res.get_connection().connect()
    try:
        ensure_clinic_warehouse(con)
    finally:
        con.close()

    typer.echo(f"Bootstrapped warehouse at {Path(duckdb_path).resolve()}")


@app.command(name="load-patients")
def load_patients_command(
    json_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON list of patient records"),
    duckdb_path: str = typer.Option(DEFAULT_DUCKDB_PATH, "--duckdb-path"),
) -> None:
    """Load exported patient records into main_intermediate.patients."""

    records = json.loads(json_path.read_text(encoding="utf-8"))
    try:
        patients = parse_patient_records(records)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="JSON_PATH") from exc

    con = DuckDBResource(path=duckdb_path).get_connection().connect()
    try:
        ensure_clinic_warehouse(con)
        written = write_patients(con, patients)
    finally:
        con.close()

    typer.echo(f"Loaded {written} patients into main_intermediate.patients")


@app.command(name="run-financials")
def run_financials(
    duckdb_path: str = typer.Option(DEFAULT_DUCKDB_PATH, "--duckdb-path"),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="ISO date; defaults to today"),
    description: str = typer.Option("Patient financials run", "--description"),
) -> None:
    """Summarize all patients into main_runs.patient_financials."""

    result = run_patient_financials(
        DuckDBResource(path=duckdb_path),
        as_of=_parse_as_of(as_of),
        run_description=description,
    )
    typer.echo(f"Run {result.run_id} wrote {result.patients_written} patients")


@app.command(name="export-csv")
def export_csv(
    duckdb_path: str = typer.Option(DEFAULT_DUCKDB_PATH, "--duckdb-path"),
    output_csv: Optional[Path] = typer.Option(None, "--output-csv"),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="ISO date; defaults to today"),
    limit: Optional[int] = typer.Option(None, "--limit"),
) -> None:
    """Write per-patient financial summaries to CSV."""

    if output_csv is None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S%f")
        output_csv = Path("tmp_exports") / f"{timestamp}_financials_out.csv"

    count = financials_from_duckdb_to_csv(
        duckdb_path=duckdb_path,
        output_csv_path=str(output_csv),
        as_of=_parse_as_of(as_of),
        limit=limit,
    )
    typer.echo(f"Wrote {count} rows to {output_csv.expanduser().resolve()}")


@app.command(name="patient-summary")
def patient_summary(
    patient_id: str = typer.Argument(...),
    duckdb_path: str = typer.Option(DEFAULT_DUCKDB_PATH, "--duckdb-path"),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="ISO date; defaults to today"),
) -> None:
    """Show charged, paid and balance for one patient, with the monthly breakdown."""

    con = DuckDBResource(path=duckdb_path).get_connection().connect()
    try:
        roster = load_patients(con)
    finally:
        con.close()

    patient = next((p for p in roster if p.id == patient_id), None)
    if patient is None:
        typer.echo(f"Unknown patient '{patient_id}'", err=True)
        raise typer.Exit(code=1)

    calculator = FinancialCalculator(as_of=_parse_as_of(as_of))
    summary = calculator.summarize(patient, roster)

    for month in calculator.monthly_breakdown(patient):
        typer.echo(
            f"{month.month:%Y-%m}  days={month.days_charged:>2}  frozen={month.days_frozen:>2}  "
            f"gross={month.gross:>10.2f}  net={month.net:>10.2f}"
        )
    typer.echo(f"Total charged: {summary.total_charged:.2f}")
    typer.echo(f"Total paid:    {summary.total_paid:.2f}")
    typer.echo(f"Balance:       {summary.balance:.2f}")
    for anomaly in summary.split_anomalies:
        typer.echo(f"Warning: {anomaly.detail}", err=True)


@app.command(name="debtors")
def debtors(
    duckdb_path: str = typer.Option(DEFAULT_DUCKDB_PATH, "--duckdb-path"),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="ISO date; defaults to today"),
) -> None:
    """List patients with a negative balance, most debt first."""

    con = DuckDBResource(path=duckdb_path).get_connection().connect()
    try:
        roster = load_patients(con)
    finally:
        con.close()

    frame = financials_frame(roster, as_of=_parse_as_of(as_of))
    totals = portfolio_totals(frame)
    typer.echo(
        f"Charged {totals['total_charged']:.2f} | Paid {totals['total_paid']:.2f} | "
        f"Balance {totals['total_balance']:.2f}"
    )
    for row in patients_in_debt(frame).iter_rows(named=True):
        last_payment = row["last_payment_date"].isoformat() if row["last_payment_date"] else "no payments"
        typer.echo(f"{row['patient_id']}  {row['full_name']}  {row['balance']:.2f}  last payment: {last_payment}")


if __name__ == "__main__":
    app()
