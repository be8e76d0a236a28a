"""tuner.core.results

The harness's own ledger: one row per executed variant, append-only.

Schema creation is idempotent, so every sweep adds to the history instead of
resetting it. Parameter columns are derived from the variants being tuned and
grow over time; older rows simply hold NULL for keys they never tuned.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from tuner.core.collector import RunMetrics
from tuner.core.exceptions import ResultsStoreError
from tuner.core.variants import PARAM_KEY_RE, ParamValue

TABLE: Final = "tuning_results"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_name TEXT NOT NULL,
    run_seconds INTEGER NOT NULL,
    wr_pct REAL,
    pf REAL,
    mdd_pct REAL,
    mdd_abs REAL,
    trades INTEGER,
    pnl REAL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_{TABLE}_wr ON {TABLE}(wr_pct);
"""

# Highest win rate, then higher profit factor, then shallower drawdown.
# id breaks exact ties in favour of the earliest row.
RANK_ORDER: Final = "wr_pct DESC, pf DESC, mdd_pct ASC, id ASC"

_RESERVED_COLUMNS: Final = frozenset(
    {"id", "run_name", "run_seconds", "wr_pct", "pf", "mdd_pct", "mdd_abs", "trades", "pnl", "created_at"}
)
_COLUMN_TYPES: Final = frozenset({"INTEGER", "REAL", "TEXT"})


@dataclass(frozen=True, slots=True)
class BestResult:
    id: int
    run_name: str
    run_seconds: int
    wr_pct: float
    pf: float | None
    mdd_pct: float | None
    mdd_abs: float | None
    trades: int
    pnl: float
    created_at: str


def _sql_value(value: ParamValue | None) -> Any:
    if isinstance(value, bool):
        return int(value)
    return value


@dataclass
class ResultsStore:
    """SQLite-backed tuning results table."""

    db_path: Path
    parameter_columns: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        for name, col_type in self.parameter_columns.items():
            if not PARAM_KEY_RE.match(name) or name.lower() in _RESERVED_COLUMNS:
                raise ResultsStoreError(f"Invalid parameter column name: {name!r}")
            if col_type not in _COLUMN_TYPES:
                raise ResultsStoreError(f"Invalid column type for {name}: {col_type}")
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path)
        except (OSError, sqlite3.Error) as e:
            raise ResultsStoreError(f"Cannot open results database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> ResultsStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def ensure_schema(self) -> None:
        """Create the table if absent and add any missing parameter columns."""

        try:
            with self.conn:
                self.conn.executescript(SCHEMA)
                existing = {str(r["name"]).lower() for r in self.conn.execute(f"PRAGMA table_info({TABLE})")}
                for name, col_type in self.parameter_columns.items():
                    if name.lower() not in existing:
                        self.conn.execute(f'ALTER TABLE {TABLE} ADD COLUMN "{name}" {col_type}')
        except sqlite3.Error as e:
            raise ResultsStoreError(f"Failed to prepare {TABLE} in {self.db_path}: {e}") from e

    def append(
        self,
        variant_name: str,
        requested_duration: int,
        variant_parameters: Mapping[str, ParamValue],
        metrics: RunMetrics | None,
    ) -> int:
        """Insert exactly one row. Absent metrics become NULLs with zero trades/pnl."""

        unknown = set(variant_parameters) - set(self.parameter_columns)
        if unknown:
            raise ResultsStoreError(f"No result column for parameters: {sorted(unknown)}")

        columns = ["run_name", "run_seconds"]
        values: list[Any] = [variant_name, int(requested_duration)]
        for name in self.parameter_columns:
            columns.append(f'"{name}"')
            values.append(_sql_value(variant_parameters.get(name)))

        columns += ["wr_pct", "pf", "mdd_pct", "mdd_abs", "trades", "pnl"]
        if metrics is None:
            values += [None, None, None, None, 0, 0]
        else:
            values += [
                metrics.win_rate_pct,
                metrics.profit_factor,
                metrics.max_drawdown_pct,
                metrics.max_drawdown_abs,
                metrics.trade_count,
                metrics.total_pnl,
            ]

        placeholders = ", ".join("?" for _ in values)
        try:
            with self.conn:
                cur = self.conn.execute(
                    f"INSERT INTO {TABLE} ({', '.join(columns)}) VALUES ({placeholders})",
                    tuple(values),
                )
        except sqlite3.Error as e:
            raise ResultsStoreError(f"Failed to record result for {variant_name}: {e}") from e
        return int(cur.lastrowid or 0)

    def best(self) -> BestResult | None:
        rows = self.ranked(limit=1)
        return rows[0] if rows else None

    def ranked(self, *, limit: int = 10) -> list[BestResult]:
        rows = self.conn.execute(
            f"""
            SELECT id, run_name, run_seconds, wr_pct, pf, mdd_pct, mdd_abs, trades, pnl, created_at
            FROM {TABLE}
            WHERE wr_pct IS NOT NULL
            ORDER BY {RANK_ORDER}
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        return [
            BestResult(
                id=int(r["id"]),
                run_name=str(r["run_name"]),
                run_seconds=int(r["run_seconds"]),
                wr_pct=float(r["wr_pct"]),
                pf=None if r["pf"] is None else float(r["pf"]),
                mdd_pct=None if r["mdd_pct"] is None else float(r["mdd_pct"]),
                mdd_abs=None if r["mdd_abs"] is None else float(r["mdd_abs"]),
                trades=int(r["trades"] or 0),
                pnl=float(r["pnl"] or 0.0),
                created_at=str(r["created_at"]),
            )
            for r in rows
        ]

    def count(self) -> int:
        row = self.conn.execute(f"SELECT COUNT(*) FROM {TABLE}").fetchone()
        return int(row[0])

    def rows(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self.conn.execute(f"SELECT * FROM {TABLE} ORDER BY id ASC")]
