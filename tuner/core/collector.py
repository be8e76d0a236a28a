"""tuner.core.collector

Reads the engine's own performance summary after a run.

The engine appends a `performance_metrics` row whenever it finalizes its
statistics. The newest row by insertion id is the run's result. No row means
no finalized trades, which is an outcome, not an error.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Final

logger = logging.getLogger(__name__)

# Column order is part of the contract with the engine; keep it in sync with
# RunMetrics field order.
LATEST_METRICS_SQL: Final = """
SELECT
    win_rate_pct,
    COALESCE(profit_factor, 0),
    max_drawdown_pct,
    max_drawdown_abs,
    total_trades,
    total_pnl
FROM performance_metrics
ORDER BY id DESC
LIMIT 1
"""


@dataclass(frozen=True, slots=True)
class RunMetrics:
    win_rate_pct: float
    profit_factor: float
    max_drawdown_pct: float
    max_drawdown_abs: float
    trade_count: int
    total_pnl: float

    @classmethod
    def from_row(cls, row: tuple[object, ...]) -> RunMetrics:
        # The engine stores decimals as text.
        wr, pf, mdd_pct, mdd_abs, trades, pnl = row
        return cls(
            win_rate_pct=float(wr),  # type: ignore[arg-type]
            profit_factor=float(pf),  # type: ignore[arg-type]
            max_drawdown_pct=float(mdd_pct),  # type: ignore[arg-type]
            max_drawdown_abs=float(mdd_abs),  # type: ignore[arg-type]
            trade_count=int(float(trades)),  # type: ignore[arg-type]
            total_pnl=float(pnl),  # type: ignore[arg-type]
        )


def _connect_readonly(db_path: Path) -> sqlite3.Connection:
    uri = f"{db_path.resolve().as_uri()}?mode=ro"
    return sqlite3.connect(uri, uri=True)


def collect_metrics(db_path: Path) -> RunMetrics | None:
    """Return the most recent summarized performance record, or None."""

    db_path = Path(db_path)
    if not db_path.is_file():
        logger.warning("metrics_absent", extra={"reason": "store_missing", "db": str(db_path)})
        return None

    try:
        conn = _connect_readonly(db_path)
        try:
            row = conn.execute(LATEST_METRICS_SQL).fetchone()
        finally:
            conn.close()
    except sqlite3.Error as e:
        # Missing table, locked or truncated file: nothing we can trust.
        logger.warning("metrics_absent", extra={"reason": "query_failed", "db": str(db_path), "error": str(e)})
        return None

    if row is None:
        logger.warning("metrics_absent", extra={"reason": "no_rows", "db": str(db_path)})
        return None

    try:
        return RunMetrics.from_row(tuple(row))
    except (TypeError, ValueError) as e:
        logger.warning("metrics_absent", extra={"reason": "malformed_row", "db": str(db_path), "error": str(e)})
        return None
