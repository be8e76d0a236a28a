from __future__ import annotations

import sqlite3
from pathlib import Path

from tests._engine_fakes import PERFORMANCE_METRICS_DDL, insert_metrics
from tuner.core.collector import RunMetrics, collect_metrics


def test_missing_store_is_absent(tmp_path: Path) -> None:
    assert collect_metrics(tmp_path / "trades.db") is None
    # read-only open must not create the file
    assert not (tmp_path / "trades.db").exists()


def test_missing_table_is_absent(tmp_path: Path) -> None:
    db = tmp_path / "trades.db"
    conn = sqlite3.connect(db)
    conn.execute("CREATE TABLE trades (id INTEGER PRIMARY KEY)")
    conn.commit()
    conn.close()

    assert collect_metrics(db) is None


def test_empty_table_is_absent(tmp_path: Path) -> None:
    db = tmp_path / "trades.db"
    conn = sqlite3.connect(db)
    conn.execute(PERFORMANCE_METRICS_DDL)
    conn.commit()
    conn.close()

    assert collect_metrics(db) is None


def test_latest_row_by_id_wins_and_field_order_is_kept(tmp_path: Path) -> None:
    db = tmp_path / "trades.db"
    insert_metrics(db, win_rate_pct=40.0, profit_factor=0.8, max_drawdown_pct=12.0, total_trades=3)
    insert_metrics(
        db,
        win_rate_pct="57.5",
        profit_factor="1.25",
        max_drawdown_pct="4.5",
        max_drawdown_abs="45.0",
        total_trades=16,
        total_pnl="88.2",
    )

    assert collect_metrics(db) == RunMetrics(
        win_rate_pct=57.5,
        profit_factor=1.25,
        max_drawdown_pct=4.5,
        max_drawdown_abs=45.0,
        trade_count=16,
        total_pnl=88.2,
    )


def test_null_profit_factor_becomes_zero(tmp_path: Path) -> None:
    db = tmp_path / "trades.db"
    insert_metrics(db, win_rate_pct=100.0, profit_factor=None, max_drawdown_pct=0.0, total_trades=2, total_pnl=5.0)

    m = collect_metrics(db)
    assert m is not None
    assert m.profit_factor == 0.0
    assert m.trade_count == 2


def test_malformed_row_is_absent(tmp_path: Path) -> None:
    db = tmp_path / "trades.db"
    insert_metrics(db, win_rate_pct="n/a", profit_factor=1.0, max_drawdown_pct=1.0)

    assert collect_metrics(db) is None
