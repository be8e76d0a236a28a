"""tuner.core.runner

One bounded engine execution.

Lifecycle:
STARTING → RUNNING → (GRACE_PERIOD →) TERMINATED

The runner measures whatever happened. It does not judge exit codes: a crash,
a non-zero exit and a forced kill are all just outcomes to record.
"""

from __future__ import annotations

import contextlib
import logging
import signal
import subprocess
import sys
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Final

logger = logging.getLogger(__name__)

# sqlite sidecars written next to a database file
_DB_SIDECARS: Final = ("-wal", "-shm", "-journal")


class RunState(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    GRACE_PERIOD = "grace_period"
    TERMINATED = "terminated"


ALLOWED_TRANSITIONS: Final[dict[RunState, set[RunState]]] = {
    RunState.STARTING: {RunState.RUNNING, RunState.TERMINATED},
    RunState.RUNNING: {RunState.GRACE_PERIOD, RunState.TERMINATED},
    RunState.GRACE_PERIOD: {RunState.TERMINATED},
    RunState.TERMINATED: set(),
}


@dataclass(frozen=True, slots=True)
class RunOutcome:
    variant_name: str
    requested_duration: float
    log_path: Path
    exit_code: int | None
    timed_out: bool
    forced_kill: bool
    elapsed_s: float
    states: tuple[RunState, ...]
    error: str | None = None

    @property
    def started(self) -> bool:
        return RunState.RUNNING in self.states


@dataclass(slots=True)
class _Lifecycle:
    state: RunState = RunState.STARTING
    history: list[RunState] = field(default_factory=lambda: [RunState.STARTING])

    def transition(self, new_state: RunState) -> None:
        allowed = ALLOWED_TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise ValueError(f"Invalid transition {self.state} -> {new_state}")
        self.state = new_state
        self.history.append(new_state)


def _db_files(db_path: Path) -> list[Path]:
    return [db_path] + [db_path.with_name(db_path.name + s) for s in _DB_SIDECARS]


class EngineRunner:
    """Start, bound, and stop the engine. At most one child at a time."""

    def __init__(
        self,
        executable: Path,
        *,
        work_dir: Path,
        metrics_db: Path,
        legacy_outputs: Iterable[Path] = (),
        grace_seconds: float = 15.0,
    ) -> None:
        self.executable = Path(executable)
        self.work_dir = Path(work_dir)
        self.metrics_db = Path(metrics_db)
        self.legacy_outputs = [Path(p) for p in legacy_outputs]
        self.grace_seconds = float(grace_seconds)
        self._proc: subprocess.Popen[bytes] | None = None

    @property
    def busy(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def clean_outputs(self) -> list[Path]:
        """Delete the previous iteration's outputs so they can't be read as ours."""

        removed: list[Path] = []
        for p in [*_db_files(self.metrics_db), *self.legacy_outputs]:
            try:
                p.unlink()
            except FileNotFoundError:
                continue
            removed.append(p)
        if removed:
            logger.debug("engine_outputs_removed", extra={"paths": [str(p) for p in removed]})
        return removed

    def run(self, variant_name: str, duration_s: float, log_path: Path) -> RunOutcome:
        if self.busy:
            raise RuntimeError("engine already running; runs are strictly serial")

        lifecycle = _Lifecycle()
        self.clean_outputs()
        log_path = Path(log_path)

        start = time.monotonic()
        timed_out = False
        forced_kill = False

        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log = log_path.open("wb")
        except OSError as e:
            return self._not_started(variant_name, duration_s, log_path, lifecycle, start, "engine_log_unavailable", e)

        with log:
            try:
                proc = subprocess.Popen(
                    [str(self.executable)],
                    cwd=self.work_dir,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=(sys.platform != "win32"),
                )
            except OSError as e:
                return self._not_started(variant_name, duration_s, log_path, lifecycle, start, "engine_spawn_failed", e)

            self._proc = proc
            lifecycle.transition(RunState.RUNNING)
            logger.info("engine_started", extra={"variant": variant_name, "pid": proc.pid, "duration_s": duration_s})

            try:
                try:
                    proc.wait(timeout=duration_s)
                except subprocess.TimeoutExpired:
                    timed_out = True
                    lifecycle.transition(RunState.GRACE_PERIOD)
                    logger.info("run_timed_out", extra={"variant": variant_name, "grace_s": self.grace_seconds})
                    forced_kill = self._stop(proc)
            except BaseException:
                # Harness interrupted mid-run: never leave the engine behind.
                # A second interrupt cuts the grace window short, not the kill.
                try:
                    if proc.poll() is None:
                        if lifecycle.state is RunState.RUNNING:
                            lifecycle.transition(RunState.GRACE_PERIOD)
                        self._stop(proc)
                finally:
                    self._kill(proc)
                raise
            finally:
                self._proc = None
                if proc.poll() is not None and lifecycle.state is not RunState.TERMINATED:
                    lifecycle.transition(RunState.TERMINATED)

        elapsed = time.monotonic() - start
        exit_code = proc.returncode
        if forced_kill:
            logger.warning("run_force_killed", extra={"variant": variant_name, "elapsed_s": round(elapsed, 3)})
        elif not timed_out and exit_code != 0:
            logger.warning("engine_exited_early", extra={"variant": variant_name, "exit_code": exit_code})
        logger.info(
            "engine_stopped",
            extra={"variant": variant_name, "exit_code": exit_code, "elapsed_s": round(elapsed, 3)},
        )

        return RunOutcome(
            variant_name=variant_name,
            requested_duration=duration_s,
            log_path=log_path,
            exit_code=exit_code,
            timed_out=timed_out,
            forced_kill=forced_kill,
            elapsed_s=elapsed,
            states=tuple(lifecycle.history),
        )

    def _not_started(
        self,
        variant_name: str,
        duration_s: float,
        log_path: Path,
        lifecycle: _Lifecycle,
        start: float,
        event: str,
        error: OSError,
    ) -> RunOutcome:
        lifecycle.transition(RunState.TERMINATED)
        logger.error(
            event,
            extra={
                "variant": variant_name,
                "executable": str(self.executable),
                "log_path": str(log_path),
                "error": str(error),
            },
        )
        return RunOutcome(
            variant_name=variant_name,
            requested_duration=duration_s,
            log_path=log_path,
            exit_code=None,
            timed_out=False,
            forced_kill=False,
            elapsed_s=time.monotonic() - start,
            states=tuple(lifecycle.history),
            error=f"{type(error).__name__}: {error}",
        )

    def _stop(self, proc: subprocess.Popen[bytes]) -> bool:
        """Interrupt, wait out the grace window, then kill. Returns True if killed."""

        if proc.poll() is not None:
            return False
        try:
            proc.send_signal(signal.SIGINT)
        except ValueError:
            # SIGINT cannot be delivered to a child on this platform.
            proc.terminate()
        except ProcessLookupError:
            return False

        try:
            proc.wait(timeout=self.grace_seconds)
            return False
        except subprocess.TimeoutExpired:
            pass

        self._kill(proc)
        return True

    def _kill(self, proc: subprocess.Popen[bytes]) -> None:
        if proc.poll() is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        proc.wait()
