from __future__ import annotations

from pathlib import Path

import pytest

from tests._engine_fakes import ENGINE_CONFIG_TOML
from tuner.cli import EXIT_FAILED, EXIT_INTERRUPTED, EXIT_OK, EXIT_USAGE, build_parser, main
from tuner.core.collector import RunMetrics
from tuner.core.results import ResultsStore


@pytest.fixture()
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    for name in ("DISCORD_WEBHOOK_URL", "TUNER_DISCORD_WEBHOOK_URL"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def test_cli_version_flag(capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["--version"])
    assert rc == EXIT_OK
    assert capsys.readouterr().out.strip().startswith("tuner v")


def test_run_seconds_is_optional_and_positive() -> None:
    parser = build_parser()
    assert parser.parse_args([]).run_seconds is None
    assert parser.parse_args(["1800"]).run_seconds == 1800
    with pytest.raises(SystemExit):
        parser.parse_args(["0"])
    with pytest.raises(SystemExit):
        parser.parse_args(["soon"])


def test_missing_engine_config_fails_fast(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["5"])
    assert rc == EXIT_FAILED
    assert "config.toml not found" in capsys.readouterr().err
    assert not (repo / "tuning_results.db").exists()


def test_missing_webhook_fails_before_any_mutation(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (repo / "config.toml").write_text(ENGINE_CONFIG_TOML)
    exe = repo / "target" / "release" / "rusto"
    exe.parent.mkdir(parents=True)
    exe.write_text("#!/bin/sh\nexit 0\n")
    exe.chmod(0o755)
    (repo / "tuning.yaml").write_text("engine:\n  build_command: []\n")

    rc = main(["5"])

    assert rc == EXIT_FAILED
    assert "DISCORD_WEBHOOK_URL is not set" in capsys.readouterr().err
    assert (repo / "config.toml").read_text() == ENGINE_CONFIG_TOML
    assert not (repo / "config.toml.tune.bak").exists()


def test_failed_build_fails_fast(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (repo / "config.toml").write_text(ENGINE_CONFIG_TOML)
    (repo / "tuning.yaml").write_text("engine:\n  build_command: [definitely-not-a-build-tool-xyz]\n")

    rc = main([])

    assert rc == EXIT_FAILED
    assert "Engine build could not start" in capsys.readouterr().err


def test_invalid_harness_config_is_a_usage_error(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (repo / "tuning.yaml").write_text("sweep:\n  run_seconds: -1\n")
    assert main([]) == EXIT_USAGE
    assert "run_seconds" in capsys.readouterr().err


def test_report_ranks_existing_results(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    with ResultsStore(repo / "tuning_results.db", {"advanced_zone_ticks": "INTEGER"}) as store:
        store.ensure_schema()
        store.append("tight_a", 900, {"advanced_zone_ticks": 3}, RunMetrics(52.0, 1.1, 6.0, 60.0, 25, 40.0))
        store.append("baseline", 900, {"advanced_zone_ticks": 3}, RunMetrics(58.0, 1.3, 4.0, 40.0, 31, 75.5))
        store.append("tight_b", 900, {"advanced_zone_ticks": 2}, None)

    rc = main(["--report"])

    out = capsys.readouterr().out
    assert rc == EXIT_OK
    assert "3 rows" in out
    lines = [line for line in out.splitlines() if "WR=" in line]
    assert "baseline" in lines[0]
    assert "tight_a" in lines[1]
    assert len(lines) == 2


def test_report_without_results(repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--report", "3"]) == EXIT_OK
    assert "no results yet" in capsys.readouterr().out



def test_interrupt_during_build_exits_130_without_touching_config(
    repo: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    (repo / "config.toml").write_text(ENGINE_CONFIG_TOML)

    def interrupted_build(self) -> None:  # noqa: ANN001
        raise KeyboardInterrupt

    monkeypatch.setattr("tuner.pipeline.TuningPipeline._build", interrupted_build)

    rc = main(["5"])

    err = capsys.readouterr().err
    assert rc == EXIT_INTERRUPTED
    assert "config.toml is as it was before the sweep" in err
    assert "restored" not in err
    assert (repo / "config.toml").read_text() == ENGINE_CONFIG_TOML
    assert not (repo / "config.toml.tune.bak").exists()
