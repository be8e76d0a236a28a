"""tuner.core.artifact

The engine config is a single shared mutable file. We treat it as a resource:
acquire (snapshot), mutate, restore. Nothing else writes to it.

Key matching is textual and section-unaware, like `key = value` grep. If two
TOML sections define the same key, only the first textual occurrence is
rewritten. That is a known hazard; we warn instead of guessing intent.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import signal
import stat
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path
from types import TracebackType

from tuner.core.exceptions import PreconditionError, RestoreError
from tuner.core.variants import ParamValue, render_value

logger = logging.getLogger(__name__)

_LINE_RE = re.compile(r"[^\n]*\n|[^\n]+")


def _key_pattern(key: str) -> re.Pattern[str]:
    return re.compile(rf"^\s*{re.escape(key)}\s*=")


def set_key(text: str, key: str, value: ParamValue) -> str:
    """Return ``text`` with ``key`` assigned to ``value``.

    The first line assigning ``key`` becomes ``key = value`` (its line ending
    is kept). Without such a line the pair is appended. Every other line is
    passed through untouched. Applying the same pair twice is a no-op.
    """

    canonical = f"{key} = {render_value(value)}"
    pattern = _key_pattern(key)
    lines = _LINE_RE.findall(text)

    matches = [i for i, line in enumerate(lines) if pattern.match(line)]
    if matches:
        if len(matches) > 1:
            logger.warning("config_key_ambiguous", extra={"key": key, "occurrences": len(matches)})
        i = matches[0]
        line = lines[i]
        ending = line[len(line.rstrip("\r\n")) :]
        lines[i] = canonical + ending
        return "".join(lines)

    if text and not text.endswith("\n"):
        text += "\n"
    return text + canonical + "\n"


def write_atomic(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` via a temp file in the same directory.

    Readers see either the old content or the new content, never a mix.
    """

    mode: int | None = None
    with contextlib.suppress(FileNotFoundError):
        mode = stat.S_IMODE(path.stat().st_mode)

    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "wb",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_path = Path(tmp.name)
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise


@contextlib.contextmanager
def _deferred_signals() -> Iterator[None]:
    """Hold SIGINT/SIGTERM/SIGHUP until the block finishes (POSIX only)."""

    if not hasattr(signal, "pthread_sigmask"):
        yield
        return
    sigs = {signal.SIGINT, signal.SIGTERM, signal.SIGHUP}
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, sigs)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


class ConfigArtifact:
    """Scoped handle on the engine config file.

    Usage::

        with ConfigArtifact(path, backup_path) as artifact:
            artifact.apply([("advanced_zone_ticks", 3)])
            ...
        # content is byte-identical to what it was at __enter__

    The snapshot is kept in memory and mirrored to ``backup_path`` so that a
    hard kill of the harness still leaves the original on disk.
    """

    def __init__(self, path: Path, backup_path: Path) -> None:
        self.path = Path(path)
        self.backup_path = Path(backup_path)
        self._snapshot: bytes | None = None

    @property
    def acquired(self) -> bool:
        return self._snapshot is not None

    def acquire(self) -> bytes:
        if self._snapshot is not None:
            return self._snapshot
        if not self.path.is_file():
            raise PreconditionError(f"{self.path.name} not found in {self.path.parent}")
        if self.backup_path.exists():
            raise PreconditionError(
                f"Backup {self.backup_path} already exists: a previous sweep did not restore "
                f"{self.path.name}. Inspect both files and remove the backup before retrying."
            )

        with _deferred_signals():
            snapshot = self.path.read_bytes()
            write_atomic(self.backup_path, snapshot)
            self._snapshot = snapshot
        logger.info("config_snapshot_taken", extra={"path": str(self.path), "bytes": len(snapshot)})
        return snapshot

    def read_text(self) -> str:
        return self.path.read_bytes().decode("utf-8")

    def apply(self, overrides: Iterable[tuple[str, ParamValue]]) -> None:
        if self._snapshot is None:
            raise RuntimeError("ConfigArtifact.apply() before acquire()")
        text = self.read_text()
        for key, value in overrides:
            text = set_key(text, key, value)
        write_atomic(self.path, text.encode("utf-8"))

    def restore(self) -> None:
        snapshot = self._snapshot
        if snapshot is None:
            return

        with _deferred_signals():
            try:
                write_atomic(self.path, snapshot)
                if self.path.read_bytes() != snapshot:
                    raise OSError("content mismatch after restore")
            except OSError as e:
                logger.critical(
                    "config_restore_failed",
                    extra={"path": str(self.path), "backup": str(self.backup_path), "error": str(e)},
                )
                raise RestoreError(self.path, self.backup_path, str(e)) from e

            self._snapshot = None
            self.backup_path.unlink(missing_ok=True)

        logger.info("config_restored", extra={"path": str(self.path)})

    def __enter__(self) -> ConfigArtifact:
        try:
            self.acquire()
        except BaseException:
            # A signal held back during the snapshot lands here, after the
            # backup exists but before __exit__ is armed.
            self.restore()
            raise
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.restore()
