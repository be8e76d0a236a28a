"""tuner.cli

Command line interface entry point for tuner.

Design constraints:
- argparse-based.
- Lazy imports: do not import the pipeline (httpx, pydantic) at parse time.
- Run from the engine's repo root; relative paths resolve against it.

Exit codes: 0 ok, 1 precondition/store failure, 2 usage, 3 restore failure,
130 interrupted.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tuner.core.config import Config

EPILOG = "The config goes back the way it came. Always."

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_RESTORE_FAILED = 3
EXIT_INTERRUPTED = 130


@dataclass(frozen=True)
class CliContext:
    repo_root: Path


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def _positive_int(raw: str) -> int:
    try:
        v = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {raw}") from None
    if v <= 0:
        raise argparse.ArgumentTypeError(f"must be >= 1: {raw}")
    return v


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tuner",
        description="Run the engine under each parameter variant and rank the results.",
        epilog=EPILOG,
    )
    parser.add_argument(
        "run_seconds",
        nargs="?",
        type=_positive_int,
        default=None,
        help="Run duration per variant in seconds (default: sweep.run_seconds, 900).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Harness YAML config (default: ./tuning.yaml if present, else built-in defaults).",
    )
    parser.add_argument(
        "--report",
        nargs="?",
        type=_positive_int,
        const=10,
        default=None,
        metavar="N",
        help="Print the top N ranked results and exit without running (default N: 10).",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )
    return parser


def _print_version() -> None:
    from tuner import __version__

    print(f"tuner v{__version__}")


def _cmd_report(ctx: CliContext, config: Config, limit: int) -> int:
    from tuner.core.results import ResultsStore

    db_path = config.results_db_path
    if not db_path.exists():
        print(f"no results yet: {db_path}")
        return EXIT_OK

    with ResultsStore(db_path) as store:
        store.ensure_schema()
        ranked = store.ranked(limit=limit)
        total = store.count()

    print(f"tuning results ({db_path}, {total} rows)")
    if not ranked:
        print("- no valid run with finalized trades")
        return EXIT_OK
    for pos, r in enumerate(ranked, start=1):
        pf = "NA" if r.pf is None else f"{r.pf:.2f}"
        mdd = "NA" if r.mdd_pct is None else f"{r.mdd_pct:.2f}"
        print(
            f"{pos:>3}. {r.run_name:<20} WR={r.wr_pct:.2f}% PF={pf} MDD={mdd}% "
            f"Trades={r.trades} PnL={r.pnl:.2f} ({r.run_seconds}s, {r.created_at})"
        )
    return EXIT_OK


def _cmd_sweep(ctx: CliContext, config: Config, run_seconds: int | None) -> int:
    from tuner.core.exceptions import PreconditionError, RestoreError, ResultsStoreError
    from tuner.pipeline import TuningPipeline

    try:
        pipeline = TuningPipeline(config)
        report = pipeline.run(run_seconds)
    except PreconditionError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except RestoreError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        return EXIT_RESTORE_FAILED
    except ResultsStoreError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print(f"\ninterrupted; {config.engine.config_file} is as it was before the sweep", file=sys.stderr)
        return EXIT_INTERRUPTED

    print("")
    for r in report.results:
        status = "ok" if r.metrics is not None else "no finalized trades"
        print(f"- {r.variant.name}: {status} (exit={r.outcome.exit_code}, {r.outcome.elapsed_s:.1f}s)")
    if report.best is not None:
        print(f"best: {report.best.run_name} (WR={report.best.wr_pct:.2f}%)")
    else:
        print("best: none (no valid run with finalized trades)")
    print(f"SQLite results saved to {config.results_db_path} (table: tuning_results)")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return EXIT_OK

    from tuner.core.config import Config
    from tuner.core.exceptions import ConfigError
    from tuner.core.logs import configure_logging

    ctx = CliContext(repo_root=_repo_root_from_cwd())

    try:
        config = Config.load(args.config, root=ctx.repo_root)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE

    configure_logging(config.logging)

    if args.report is not None:
        return _cmd_report(ctx, config, args.report)
    return _cmd_sweep(ctx, config, args.run_seconds)


if __name__ == "__main__":
    raise SystemExit(main())
