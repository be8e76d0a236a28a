"""tuner.pipeline

The sweep driver.

For each variant, in declared order: mutate config → run engine → collect
metrics → append one result row → notify. Then rank and announce the best.

Invariants:
- nothing is mutated before every precondition holds
- the engine config is restored on every exit path, signals included
- one row per executed variant, whatever the run did
- one engine process at a time
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import sqlite3
import subprocess
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from types import FrameType

import httpx

from tuner.core.artifact import ConfigArtifact
from tuner.core.collector import RunMetrics, collect_metrics
from tuner.core.config import Config
from tuner.core.exceptions import PreconditionError, SweepInterrupted
from tuner.core.notifier import Notifier
from tuner.core.results import BestResult, ResultsStore
from tuner.core.runner import EngineRunner, RunOutcome
from tuner.core.variants import ParameterVariant, parameter_columns

logger = logging.getLogger(__name__)

MIN_SQLITE_VERSION = (3, 7, 11)


@dataclass(frozen=True, slots=True)
class VariantResult:
    variant: ParameterVariant
    outcome: RunOutcome
    metrics: RunMetrics | None
    row_id: int
    notified: bool


@dataclass(frozen=True, slots=True)
class SweepReport:
    run_seconds: int
    results: tuple[VariantResult, ...]
    best: BestResult | None


def _fmt(value: float | None) -> str:
    return "NA" if value is None else f"{value:.2f}"


def format_variant_message(name: str, run_seconds: int, metrics: RunMetrics | None) -> str:
    head = f"Tune result [{name}] | {run_seconds}s"
    if metrics is None:
        return f"{head} | WR=NA PF=NA MDD=NA Trades=0 PnL=0"
    return (
        f"{head} | WR={_fmt(metrics.win_rate_pct)}% PF={_fmt(metrics.profit_factor)} "
        f"MDD={_fmt(metrics.max_drawdown_pct)}% Trades={metrics.trade_count} PnL={_fmt(metrics.total_pnl)}"
    )


def format_best_message(best: BestResult | None) -> str:
    if best is None:
        return "Tuning complete. No valid run with finalized trades."
    return (
        f"Tuning complete. BEST={best.run_name} | WR={_fmt(best.wr_pct)}% PF={_fmt(best.pf)} "
        f"MDD={_fmt(best.mdd_pct)}% Trades={best.trades} PnL={_fmt(best.pnl)}"
    )


@contextlib.contextmanager
def termination_signals_raise() -> Iterator[None]:
    """Turn SIGTERM/SIGHUP into SweepInterrupted for the duration of the block.

    SIGINT already raises KeyboardInterrupt. Together this lets every external
    stop unwind through the config restore.
    """

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _raise(signum: int, _frame: FrameType | None) -> None:
        raise SweepInterrupted(signum)

    previous: dict[int, object] = {}
    for name in ("SIGTERM", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, _raise)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)  # type: ignore[arg-type]


def _nearest_existing_dir(p: Path) -> Path:
    for candidate in [p, *p.parents]:
        if candidate.is_dir():
            return candidate
    return Path.cwd()


class TuningPipeline:
    def __init__(
        self,
        config: Config,
        *,
        runner: EngineRunner | None = None,
        notifier: Notifier | None = None,
        store: ResultsStore | None = None,
        collector: Callable[[Path], RunMetrics | None] = collect_metrics,
    ) -> None:
        self.config = config
        self.variants = config.variants()
        self.runner = runner or EngineRunner(
            config.executable_path,
            work_dir=config.work_dir,
            metrics_db=config.metrics_db_path,
            legacy_outputs=config.legacy_output_paths,
            grace_seconds=config.engine.grace_seconds,
        )
        self.collector = collector
        self._notifier = notifier
        self._store = store

    # Preconditions

    def check_preconditions(self) -> None:
        cfg = self.config

        if not cfg.config_path.is_file():
            raise PreconditionError(f"{cfg.engine.config_file} not found in {cfg.work_dir}")

        if cfg.engine.build_command:
            self._build()

        exe = cfg.executable_path
        if not exe.is_file():
            raise PreconditionError(f"Engine executable not found: {exe}")
        if not os.access(exe, os.X_OK):
            raise PreconditionError(f"Engine executable is not executable: {exe}")

        if sqlite3.sqlite_version_info < MIN_SQLITE_VERSION:
            raise PreconditionError(
                f"sqlite {sqlite3.sqlite_version} is too old; need "
                f"{'.'.join(str(p) for p in MIN_SQLITE_VERSION)}+"
            )
        results_dir = _nearest_existing_dir(cfg.results_db_path.parent)
        if not os.access(results_dir, os.W_OK):
            raise PreconditionError(f"Results directory is not writable: {results_dir}")

        if self._notifier is None:
            url = cfg.discord_webhook_url.strip()
            if not url:
                raise PreconditionError("DISCORD_WEBHOOK_URL is not set (.env or environment).")
            try:
                scheme = httpx.URL(url).scheme
            except httpx.InvalidURL as e:
                raise PreconditionError(f"DISCORD_WEBHOOK_URL is not a valid URL: {e}") from e
            if scheme not in {"http", "https"}:
                raise PreconditionError("DISCORD_WEBHOOK_URL must be an http(s) URL.")

    def _build(self) -> None:
        cmd = self.config.engine.build_command
        logger.info("engine_build_started", extra={"command": " ".join(cmd)})
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.config.work_dir,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise PreconditionError(f"Engine build could not start ({cmd[0]}): {e}") from e
        if proc.returncode != 0:
            tail = "\n".join(proc.stderr.strip().splitlines()[-20:])
            raise PreconditionError(f"Engine build failed with exit code {proc.returncode}:\n{tail}")
        logger.info("engine_build_finished")

    # Sweep

    def run(self, run_seconds: int | None = None) -> SweepReport:
        secs = int(run_seconds if run_seconds is not None else self.config.sweep.run_seconds)
        if secs <= 0:
            raise PreconditionError(f"run_seconds must be >= 1, got {secs}")

        self.check_preconditions()

        owned_notifier = self._notifier is None
        owned_store = self._store is None
        notifier = self._notifier or Notifier(
            self.config.discord_webhook_url.strip(),
            timeout_s=self.config.notify.timeout_seconds,
            max_chars=self.config.notify.max_chars,
        )
        store = self._store

        artifact = ConfigArtifact(self.config.config_path, self.config.backup_path)
        try:
            if store is None:
                store = ResultsStore(self.config.results_db_path, parameter_columns(self.variants))
            with termination_signals_raise(), artifact:
                store.ensure_schema()
                results: list[VariantResult] = []
                for i, variant in enumerate(self.variants, start=1):
                    logger.info(
                        "variant_started",
                        extra={"variant": variant.name, "index": i, "total": len(self.variants), "run_seconds": secs},
                    )
                    results.append(self._run_variant(artifact, store, notifier, variant, secs))

                best = store.best()
                if best is None:
                    logger.warning("sweep_no_valid_run")
                else:
                    logger.info("sweep_best", extra={"variant": best.run_name, "wr_pct": best.wr_pct})
                notifier.send(format_best_message(best))
        finally:
            if owned_notifier:
                notifier.close()
            if owned_store and store is not None:
                store.close()

        return SweepReport(run_seconds=secs, results=tuple(results), best=best)

    def _run_variant(
        self,
        artifact: ConfigArtifact,
        store: ResultsStore,
        notifier: Notifier,
        variant: ParameterVariant,
        secs: int,
    ) -> VariantResult:
        artifact.apply(variant.overrides)
        outcome = self.runner.run(variant.name, secs, self.config.log_path(variant.name))
        metrics = self.collector(self.config.metrics_db_path)
        if metrics is None:
            logger.info("variant_no_finalized_trades", extra={"variant": variant.name})
        row_id = store.append(variant.name, secs, variant.parameters(), metrics)
        notified = notifier.send(format_variant_message(variant.name, secs, metrics))
        return VariantResult(variant=variant, outcome=outcome, metrics=metrics, row_id=row_id, notified=notified)
