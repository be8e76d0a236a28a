from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

# pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from tests._engine_fakes import ENGINE_CONFIG_TOML, WebhookRecorder  # noqa: E402
from tuner.core.config import Config  # noqa: E402

WEBHOOK_URL = "https://discord.test/api/webhooks/1/token"

TWO_VARIANTS = [
    {
        "name": "first",
        "overrides": {"advanced_zone_ticks": 3, "advanced_min_imbalance_ratio": 2.4},
    },
    {
        "name": "second",
        "overrides": {"advanced_zone_ticks": 2, "advanced_min_imbalance_ratio": 2.8},
    },
]


@pytest.fixture()
def engine_repo(tmp_path: Path) -> Path:
    """A bare engine repo root holding only config.toml."""

    (tmp_path / "config.toml").write_text(ENGINE_CONFIG_TOML, encoding="utf-8")
    return tmp_path


@pytest.fixture()
def webhook() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture()
def make_config(engine_repo: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[..., Config]:
    """Build a Config rooted at ``engine_repo`` with no build step and a short grace window."""

    for name in ("DISCORD_WEBHOOK_URL", "TUNER_DISCORD_WEBHOOK_URL"):
        monkeypatch.delenv(name, raising=False)

    def _make(**sections: Any) -> Config:
        raw: dict[str, Any] = {
            "work_dir": engine_repo,
            "engine": {"executable": "engine.sh", "build_command": [], "grace_seconds": 1.0},
            "sweep": {"run_seconds": 5, "variants": TWO_VARIANTS},
            "discord_webhook_url": WEBHOOK_URL,
        }
        for key, value in sections.items():
            if isinstance(value, dict) and isinstance(raw.get(key), dict):
                raw[key] = {**raw[key], **value}
            else:
                raw[key] = value
        return Config(_env_file=None, **raw)

    return _make


@pytest.fixture(autouse=True)
def _reset_tuner_logging() -> Iterator[None]:
    """The CLI installs a stderr handler; don't let it outlive the test's capture."""

    yield
    pkg_logger = logging.getLogger("tuner")
    for h in list(pkg_logger.handlers):
        pkg_logger.removeHandler(h)
    pkg_logger.setLevel(logging.NOTSET)
