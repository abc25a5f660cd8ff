from __future__ import annotations

import argparse
import csv
import json
import logging
import os
from datetime import date, datetime
from pathlib import Path

import duckdb
import yaml

from clinic_finance.patient_financials.calculator import FinancialCalculator, round_money
from clinic_finance.patient_financials.patient_processing import PATIENT_COLUMNS, rows_to_patients

logger = logging.getLogger(__name__)

YAML_DETAIL_LIMIT = 20


def _get_repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def default_duckdb_path() -> str:
    """DuckDB file from CLINIC_DUCKDB_PATH, falling back to clinic_ledger.duckdb at the repo root."""
    env_path = os.environ.get("CLINIC_DUCKDB_PATH")
    if env_path:
        return env_path
    return str((_get_repo_root() / "clinic_ledger.duckdb").resolve())


def read_patient_rows(
    con: duckdb.DuckDBPyConnection,
    *,
    schema: str = "main_intermediate",
    table: str = "patients",
) -> list[tuple]:
    """Fetch raw patient rows in PATIENT_COLUMNS order."""
    sql = f"""
    SELECT
        {", ".join(PATIENT_COLUMNS)}
    FROM {schema}.{table}
    ORDER BY patient_id
    """.strip()
    return con.execute(sql).fetchall()


def financials_from_duckdb_to_csv(
    *,
    duckdb_path: str,
    output_csv_path: str,
    as_of: date | None = None,
    schema: str = "main_intermediate",
    table: str = "patients",
    limit: int | None = None,
    invalid_rows: str = "skip",
) -> int:
    """Read patients from DuckDB and write their financial summaries to CSV.

    Returns number of rows written.

    `limit` only truncates the output. Every valid patient is still
    summarized, so incoming split shares from payers past the limit are
    billed to their partners.

    Expected input relation: `{schema}.{table}` with the PATIENT_COLUMNS
    columns; histories, discounts, transactions and billing info are JSON.
    Monthly breakdowns for the first patients are written as YAML next to the
    CSV under `yaml_details/`.
    """

    con = duckdb.connect(str(Path(duckdb_path).expanduser().resolve()))
    try:
        rows = read_patient_rows(con, schema=schema, table=table)
    finally:
        con.close()

    patients, stats = rows_to_patients(rows, invalid_rows=invalid_rows)
    calculator = FinancialCalculator(as_of=as_of)
    summaries = calculator.summarize_batch(patients)
    exported = list(zip(patients, summaries))
    if limit is not None:
        exported = exported[: max(int(limit), 0)]

    output_path = Path(output_csv_path).expanduser().resolve()
    output_path.parent.mkdir(parents=True, exist_ok=True)

    fieldnames = [
        "patient_id",
        "full_name",
        "therapist",
        "status",
        "as_of",
        "total_charged",
        "total_paid",
        "balance",
        "split_anomalies",
    ]

    yaml_dir = output_path.parent / "yaml_details"
    yaml_dir.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()

        for i, (patient, summary) in enumerate(exported):
            if i < YAML_DETAIL_LIMIT:
                months = calculator.monthly_breakdown(patient)
                yaml_data = {
                    "patient_id": patient.id,
                    "full_name": patient.full_name,
                    "as_of": calculator.as_of.isoformat(),
                    "total_charged": summary.total_charged,
                    "total_paid": summary.total_paid,
                    "balance": summary.balance,
                    "months": [
                        {
                            "month": m.month.strftime("%Y-%m"),
                            "days_charged": m.days_charged,
                            "days_frozen": m.days_frozen,
                            "gross": round_money(m.gross),
                            "discounts": [
                                {
                                    "discount_id": a.discount_id,
                                    "kind": a.kind,
                                    "value": a.value,
                                    "charge_after": round_money(a.charge_after),
                                }
                                for a in m.discounts_applied
                            ],
                            "net": round_money(m.net),
                        }
                        for m in months
                    ],
                    "split_anomalies": [a.model_dump() for a in summary.split_anomalies],
                }
                with (yaml_dir / f"{patient.id}.yml").open("w", encoding="utf-8") as yf:
                    yaml.safe_dump(yaml_data, yf, sort_keys=False, allow_unicode=True)

            writer.writerow(
                {
                    "patient_id": patient.id,
                    "full_name": patient.full_name,
                    "therapist": patient.therapist or "",
                    "status": patient.status.value,
                    "as_of": calculator.as_of.isoformat(),
                    "total_charged": summary.total_charged,
                    "total_paid": summary.total_paid,
                    "balance": summary.balance,
                    "split_anomalies": json.dumps([a.kind for a in summary.split_anomalies]),
                }
            )

    skipped = int(stats.get("skipped", 0))
    if skipped:
        total_rows = len(rows)
        pct = (skipped / total_rows) * 100 if total_rows > 0 else 0
        logger.warning(
            "Skipped %d/%d (%.2f%%) invalid patient rows: %s",
            skipped,
            total_rows,
            pct,
            ", ".join(stats.get("invalid_patient_ids", [])),
        )

    return len(exported)


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="clinic_finance.patient_financials.duckdb_to_csv",
        description="Read main_intermediate.patients from DuckDB and write financial summaries to CSV.",
    )
    p.add_argument(
        "--duckdb-path",
        default=default_duckdb_path(),
        help="Path to DuckDB file (default: CLINIC_DUCKDB_PATH env var or repo clinic_ledger.duckdb)",
    )
    p.add_argument(
        "--output-csv",
        required=False,
        help="Output CSV path. Defaults to tmp_exports/YYYYMMDD_HHMMSSffffff_financials_out.csv",
    )
    p.add_argument(
        "--as-of",
        type=date.fromisoformat,
        default=None,
        help="Date open-ended treatments accrue through (ISO date, default: today)",
    )
    p.add_argument("--schema", default="main_intermediate", help="DuckDB schema of the input relation")
    p.add_argument("--table", default="patients", help="DuckDB table/view name of the input relation")
    p.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Optional output row limit for quick smoke tests; splits still resolve against every patient",
    )
    p.add_argument(
        "--invalid-rows",
        choices=["skip", "error"],
        default="skip",
        help="What to do with rows that fail validation",
    )
    return p


def main(argv: list[str] | None = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    output_csv = args.output_csv
    if not output_csv:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S%f")
        output_csv = str(Path(__file__).parent / "tmp_exports" / f"{timestamp}_financials_out.csv")

    count = financials_from_duckdb_to_csv(
        duckdb_path=args.duckdb_path,
        output_csv_path=output_csv,
        as_of=args.as_of,
        schema=str(args.schema),
        table=str(args.table),
        limit=args.limit,
        invalid_rows=str(args.invalid_rows),
    )

    print(f"Wrote {count} rows to {Path(output_csv).expanduser().resolve()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
