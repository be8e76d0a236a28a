"""tuner.core.variants

A variant is a named set of configuration overrides under test.

Variants are immutable and carry their overrides in declared order. The
order matters twice: overrides are written to the engine config in that
order, and the results table grows its parameter columns in that order.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Final

from tuner.core.exceptions import ConfigError

ParamValue = bool | int | float | str

VARIANT_NAME_RE: Final = re.compile(r"^[A-Za-z0-9_.-]+$")
PARAM_KEY_RE: Final = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True, slots=True)
class ParameterVariant:
    name: str
    overrides: tuple[tuple[str, ParamValue], ...]

    @classmethod
    def from_mapping(cls, name: str, overrides: Mapping[str, ParamValue]) -> ParameterVariant:
        return cls(name=name, overrides=tuple(overrides.items()))

    def parameters(self) -> dict[str, ParamValue]:
        return dict(self.overrides)


def render_value(value: ParamValue) -> str:
    """Render a value the way it is written into the engine config.

    Strings go in verbatim; quoting is the caller's business.
    """

    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def validate_variants(variants: Iterable[ParameterVariant]) -> list[ParameterVariant]:
    out: list[ParameterVariant] = []
    seen: set[str] = set()
    for v in variants:
        if not VARIANT_NAME_RE.match(v.name):
            raise ConfigError(f"Invalid variant name {v.name!r}: use letters, digits, '_', '.', '-'")
        if v.name in seen:
            raise ConfigError(f"Duplicate variant name: {v.name}")
        seen.add(v.name)
        if not v.overrides:
            raise ConfigError(f"Variant {v.name} has no overrides")
        keys = [k for k, _ in v.overrides]
        if len(set(keys)) != len(keys):
            raise ConfigError(f"Variant {v.name} overrides the same key twice")
        for k in keys:
            if not PARAM_KEY_RE.match(k):
                raise ConfigError(f"Invalid parameter key {k!r} in variant {v.name}")
        out.append(v)
    if not out:
        raise ConfigError("At least one variant is required")
    return out


def parameter_columns(variants: Iterable[ParameterVariant]) -> dict[str, str]:
    """Map each tuned key to an SQLite column type.

    int/bool -> INTEGER, float or mixed int/float -> REAL, anything else TEXT.
    Keys keep first-seen order.
    """

    kinds: dict[str, set[str]] = {}
    for v in variants:
        for k, val in v.overrides:
            if isinstance(val, bool | int):
                kind = "INTEGER"
            elif isinstance(val, float):
                kind = "REAL"
            else:
                kind = "TEXT"
            kinds.setdefault(k, set()).add(kind)

    columns: dict[str, str] = {}
    for k, ks in kinds.items():
        if len(ks) == 1:
            columns[k] = next(iter(ks))
        elif ks <= {"INTEGER", "REAL"}:
            columns[k] = "REAL"
        else:
            columns[k] = "TEXT"
    return columns


# name|advanced_min_imbalance_ratio|advanced_min_cvd_1min_change|advanced_zone_ticks|advanced_cooldown_bars
DEFAULT_VARIANTS: Final[tuple[ParameterVariant, ...]] = tuple(
    ParameterVariant.from_mapping(
        name,
        {
            "advanced_min_imbalance_ratio": imbalance,
            "advanced_min_cvd_1min_change": cvd,
            "advanced_zone_ticks": zone,
            "advanced_cooldown_bars": cooldown,
        },
    )
    for name, imbalance, cvd, zone, cooldown in (
        ("baseline", 2.2, 12.0, 3, 8),
        ("tight_a", 2.6, 14.0, 3, 10),
        ("tight_b", 2.8, 16.0, 2, 12),
        ("balanced", 2.4, 13.0, 3, 9),
    )
)
