"""tuner.core.config

Three config surfaces only:
1) a harness YAML file (`tuning.yaml`, or `config/default.yaml` as a template)
2) Environment variables, `TUNER_` prefixed (secrets only by convention)
3) `.env` in the working directory, same names as 2)

The engine's own `config.toml` is not configuration of the harness. It is the
artifact under test and lives in `tuner.core.artifact`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from tuner.core.exceptions import ConfigError
from tuner.core.variants import DEFAULT_VARIANTS, ParameterVariant, validate_variants


class EngineConfig(BaseModel):
    executable: Path = Path("target/release/rusto")
    build_command: list[str] = ["cargo", "build", "--release"]
    config_file: Path = Path("config.toml")
    backup_suffix: str = ".tune.bak"
    metrics_db: Path = Path("trades.db")
    legacy_outputs: list[Path] = [Path("trades.csv"), Path("trades.json")]
    grace_seconds: float = 15.0

    @field_validator("grace_seconds")
    @classmethod
    def grace_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("grace_seconds must be > 0")
        return v


class ResultsConfig(BaseModel):
    db_path: Path = Path("tuning_results.db")
    log_dir: Path = Path(".")
    log_template: str = "tune_{name}.log"

    @field_validator("log_template")
    @classmethod
    def template_needs_name(cls, v: str) -> str:
        if "{name}" not in v:
            raise ValueError("log_template must contain '{name}'")
        return v


class NotifyConfig(BaseModel):
    timeout_seconds: float = 10.0
    # Discord rejects message content above 2000 characters.
    max_chars: int = 2000


class VariantConfig(BaseModel):
    name: str
    overrides: dict[str, bool | int | float | str]

    def to_variant(self) -> ParameterVariant:
        return ParameterVariant.from_mapping(self.name, self.overrides)


def _default_variant_configs() -> list[VariantConfig]:
    return [VariantConfig(name=v.name, overrides=v.parameters()) for v in DEFAULT_VARIANTS]


class SweepConfig(BaseModel):
    run_seconds: int = 900
    variants: list[VariantConfig] = Field(default_factory=_default_variant_configs)

    @field_validator("run_seconds")
    @classmethod
    def run_seconds_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("run_seconds must be >= 1")
        return v

    @model_validator(mode="after")
    def variants_must_be_valid(self) -> SweepConfig:
        try:
            validate_variants(v.to_variant() for v in self.variants)
        except ConfigError as e:
            raise ValueError(str(e)) from e
        return self

    def parameter_variants(self) -> list[ParameterVariant]:
        return [v.to_variant() for v in self.variants]


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_output: bool = False


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    # Engine repo root; every relative path below resolves against it.
    work_dir: Path = Path(".")

    engine: EngineConfig = Field(default_factory=EngineConfig)
    results: ResultsConfig = Field(default_factory=ResultsConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    discord_webhook_url: str = Field(
        default="",
        validation_alias=AliasChoices(
            "discord_webhook_url",
            "TUNER_DISCORD_WEBHOOK_URL",
            "DISCORD_WEBHOOK_URL",
        ),
    )

    model_config = {
        "env_prefix": "TUNER_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "extra": "ignore",
    }

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file is not valid YAML: {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Config file must contain a mapping: {path}")

        raw.update(overrides)
        try:
            return cls(**raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid config {path}: {e}") from e

    @classmethod
    def load(cls, path: Path | None = None, *, root: Path | None = None) -> Config:
        """Load the harness config for a sweep started in ``root``.

        Without an explicit path, ``tuning.yaml`` in ``root`` is used when
        present; otherwise built-in defaults apply. A relative ``work_dir``
        resolves against ``root``.
        """

        root = root or Path.cwd()
        env_file = root / ".env"
        if path is None and (root / "tuning.yaml").exists():
            path = root / "tuning.yaml"
        if path is None:
            try:
                return cls(work_dir=root, _env_file=env_file)
            except ValidationError as e:
                raise ConfigError(f"Invalid environment config: {e}") from e

        if not path.is_absolute():
            path = root / path
        cfg = cls.from_yaml(path, _env_file=env_file)
        if not cfg.work_dir.is_absolute():
            cfg = cfg.model_copy(update={"work_dir": root / cfg.work_dir})
        return cfg

    # Derived paths

    def resolve(self, p: Path) -> Path:
        return p if p.is_absolute() else self.work_dir / p

    @property
    def config_path(self) -> Path:
        return self.resolve(self.engine.config_file)

    @property
    def backup_path(self) -> Path:
        p = self.config_path
        return p.with_name(p.name + self.engine.backup_suffix)

    @property
    def executable_path(self) -> Path:
        return self.resolve(self.engine.executable)

    @property
    def metrics_db_path(self) -> Path:
        return self.resolve(self.engine.metrics_db)

    @property
    def legacy_output_paths(self) -> list[Path]:
        return [self.resolve(p) for p in self.engine.legacy_outputs]

    @property
    def results_db_path(self) -> Path:
        return self.resolve(self.results.db_path)

    def log_path(self, variant_name: str) -> Path:
        return self.resolve(self.results.log_dir) / self.results.log_template.format(name=variant_name)

    def variants(self) -> list[ParameterVariant]:
        return self.sweep.parameter_variants()
