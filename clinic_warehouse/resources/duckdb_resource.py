from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import duckdb
from pydantic import BaseModel, Field

from clinic_finance.patient_financials.duckdb_to_csv import default_duckdb_path


@dataclass(frozen=True)
class DuckDBConnection:
    path: Path

    def connect(self) -> duckdb.DuckDBPyConnection:
        return duckdb.connect(str(self.path))


class DuckDBResource(BaseModel):
    """Connection settings for the clinic DuckDB warehouse."""

    path: str = Field(default_factory=default_duckdb_path)

    def get_connection(self) -> DuckDBConnection:
        return DuckDBConnection(path=Path(self.path).expanduser().resolve())
