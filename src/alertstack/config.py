#!/usr/bin/env python3
"""alertstack.config

Shared configuration utilities for the alertstack CLIs.

This module owns the run's configuration surface: everything that changes
from one export to the next (epoch, rule set, resolution, tiling, year ranges,
zone groupings, class tables) is read from YAML here and handed to the core
as plain, immutable values.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Validation happens once, before any shard is scheduled. Anything wrong
  raises ConfigurationError; nothing downstream re-checks.
- There is no global mutable configuration. parse_run_config() returns a
  frozen RunConfig that callers pass around explicitly.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

import yaml


class ConfigurationError(ValueError):
    """Fatal, non-recoverable configuration problem (raised before any work starts)."""


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises ConfigurationError on missing file or invalid format (non-mapping).
    Config errors should fail fast.
    """
    if not path.exists():
        raise ConfigurationError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Class tables (category code -> output field name)
# -----------------------------------------------------------------------------

_FIELD_RE = re.compile(r"^[a-z][a-z0-9_]*$")


@dataclass(frozen=True)
class ClassTable:
    """Static mapping of category code -> output field stem.

    Built once at startup, so column names never depend on which classes
    happen to occur in a given year.
    """

    entries: Tuple[Tuple[int, str], ...]

    @property
    def codes(self) -> List[int]:
        return [c for c, _ in self.entries]

    @property
    def names(self) -> List[str]:
        return [n for _, n in self.entries]

    def name_for(self, code: int) -> Optional[str]:
        for c, n in self.entries:
            if c == code:
                return n
        return None

    def area_fields(self) -> List[str]:
        return [f"ha_{n}" for n in self.names]

    def share_fields(self) -> List[str]:
        return [f"share_{n}" for n in self.names]


def class_table_from_lists(codes: Sequence[Any], names: Sequence[Any]) -> ClassTable:
    """Build a ClassTable from parallel code/name lists.

    Raises ConfigurationError if the lists differ in length, if a code or
    name repeats, or if a name isn't a usable column stem.
    """
    if len(codes) != len(names):
        raise ConfigurationError(
            f"Class table mismatch: {len(codes)} codes but {len(names)} names"
        )
    entries: List[Tuple[int, str]] = []
    seen_codes = set()
    seen_names = set()
    for raw_code, raw_name in zip(codes, names):
        try:
            code = int(raw_code)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Class code is not an integer: {raw_code!r}") from e
        name = str(raw_name).strip()
        if not _FIELD_RE.match(name):
            raise ConfigurationError(f"Class name must be lower_snake_case: {raw_name!r}")
        if code in seen_codes:
            raise ConfigurationError(f"Duplicate class code: {code}")
        if name in seen_names:
            raise ConfigurationError(f"Duplicate class name: {name}")
        seen_codes.add(code)
        seen_names.add(name)
        entries.append((code, name))
    return ClassTable(entries=tuple(entries))


# -----------------------------------------------------------------------------
# Run configuration
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceSpec:
    """One alert source feeding the fusion step."""

    name: str
    product: str
    schema: str


@dataclass(frozen=True)
class RunConfig:
    """Every per-run parameter, enumerated.

    Each field is a pure input to the components; nothing here is read from
    module state at call time.
    """

    epoch: dt.date
    calendar_mode: str = "exact"
    ruleset_id: str = "r1"
    spatial_buffer: float = 0.0
    temporal_buffer: int = 0
    confidence_filter: FrozenSet[int] = frozenset()
    resolution: float = 1000.0
    tile_factor: int = 1
    year_ranges: Tuple[Tuple[int, int], ...] = ()
    zone_groups: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    alert_sources: Tuple[SourceSpec, ...] = ()
    class_table: Optional[ClassTable] = None
    treecover_threshold: int = 30
    max_workers: int = 1
    retries: int = 0
    out_dir: Path = Path("data/exports")
    country_tag: str = "IDN"
    params: Mapping[str, Any] = field(default_factory=dict)

    def groups(self) -> Dict[str, Tuple[str, ...]]:
        return dict(self.zone_groups)


def _parse_date(x: Any, what: str) -> dt.date:
    if isinstance(x, dt.datetime):
        return x.date()
    if isinstance(x, dt.date):
        return x
    try:
        return dt.date.fromisoformat(str(x))
    except ValueError as e:
        raise ConfigurationError(f"{what} must be an ISO date (YYYY-MM-DD), got {x!r}") from e


def parse_year_ranges(raw: Any) -> Tuple[Tuple[int, int], ...]:
    """Parse `[[2019, 2021], [2022, 2024]]` into validated (start, end) pairs.

    Ranges must be non-empty, inclusive, ascending and non-overlapping.
    """
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError("year_ranges must be a non-empty list of [start, end] pairs")
    ranges: List[Tuple[int, int]] = []
    for r in raw:
        if not isinstance(r, (list, tuple)) or len(r) != 2:
            raise ConfigurationError(f"Bad year range: {r!r} (expected [start, end])")
        start, end = int(r[0]), int(r[1])
        if start > end:
            raise ConfigurationError(f"Non-monotonic year range: {start} > {end}")
        ranges.append((start, end))
    for (_, prev_end), (next_start, _) in zip(ranges, ranges[1:]):
        if next_start <= prev_end:
            raise ConfigurationError(
                f"Year ranges must be ascending and disjoint: {prev_end} >= {next_start}"
            )
    return tuple(ranges)


def parse_zone_groups(raw: Any) -> Tuple[Tuple[str, Tuple[str, ...]], ...]:
    """Parse `{group: [adm1 names...]}`; a parent region may belong to one group only."""
    if not isinstance(raw, dict) or not raw:
        raise ConfigurationError("zone_groups must be a non-empty mapping of group -> [adm1 names]")
    owner: Dict[str, str] = {}
    groups: List[Tuple[str, Tuple[str, ...]]] = []
    for name, members in raw.items():
        if not isinstance(members, list) or not members:
            raise ConfigurationError(f"Zone group {name!r} must list at least one parent region")
        for m in members:
            m = str(m)
            if m in owner:
                raise ConfigurationError(
                    f"Parent region {m!r} appears in both {owner[m]!r} and {name!r}"
                )
            owner[m] = str(name)
        groups.append((str(name), tuple(str(m) for m in members)))
    return tuple(groups)


def parse_confidence_filter(raw: Any) -> FrozenSet[int]:
    from alertstack.normalize import Confidence

    if raw is None:
        return frozenset()
    if not isinstance(raw, (list, tuple, set, frozenset)):
        raise ConfigurationError(f"confidence_filter must be a list, got {raw!r}")
    valid = {int(c) for c in Confidence if c != Confidence.NONE}
    out = set()
    for c in raw:
        code = int(c)
        if code not in valid:
            raise ConfigurationError(f"Unknown confidence code {c!r} (valid: {sorted(valid)})")
        out.add(code)
    return frozenset(out)


def _number(raw: Any, what: str, kind=float):
    try:
        return kind(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{what} must be a number, got {raw!r}") from e


def check_job_params(raw: Any) -> Dict[str, Any]:
    """Validate the per-job override blocks under `params`.

    `params.schemas` holds extra alert schemas and is parsed by the
    normalizer; every other entry is a `{job: {setting: value}}` block.
    Returns a plain dict copy.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError("params must be a mapping of job -> settings")
    for job, block in raw.items():
        if job == "schemas" or block is None:
            continue
        if not isinstance(block, Mapping):
            raise ConfigurationError(f"params.{job} must be a mapping, got {block!r}")
        if "resolution" in block:
            res = _number(block["resolution"], f"params.{job}.resolution")
            if res <= 0:
                raise ConfigurationError(f"params.{job}.resolution must be > 0, got {res}")
        if "tile_factor" in block:
            t = _number(block["tile_factor"], f"params.{job}.tile_factor", int)
            if t < 1:
                raise ConfigurationError(f"params.{job}.tile_factor must be >= 1, got {t}")
        for k in ("wet_start_month", "wet_end_month"):
            if k in block:
                month = _number(block[k], f"params.{job}.{k}", int)
                if not 1 <= month <= 12:
                    raise ConfigurationError(f"params.{job}.{k} must be 1..12, got {month}")
    return dict(raw)


def parse_run_config(data: Mapping[str, Any]) -> RunConfig:
    """Validate a parsed run YAML and return a frozen RunConfig.

    Raises ConfigurationError on the first problem found.
    """
    from alertstack.dates import CalendarMode
    from alertstack.fusion import RULESETS

    if "epoch" not in data:
        raise ConfigurationError("run config must set 'epoch' (days are counted from it)")
    epoch = _parse_date(data["epoch"], "epoch")

    mode = str(data.get("calendar_mode", CalendarMode.EXACT.value))
    if mode not in {m.value for m in CalendarMode}:
        raise ConfigurationError(f"Unknown calendar_mode {mode!r}")

    ruleset_id = str(data.get("ruleset", "r1"))
    if ruleset_id not in RULESETS:
        raise ConfigurationError(f"Unknown ruleset {ruleset_id!r} (known: {sorted(RULESETS)})")

    buffer = data.get("buffer") or {}
    if not isinstance(buffer, dict):
        raise ConfigurationError("buffer must be a mapping with spatial/temporal keys")
    spatial = float(buffer.get("spatial", 0))
    temporal = int(buffer.get("temporal", 0))
    if spatial < 0 or temporal < 0:
        raise ConfigurationError("buffer radii must be >= 0")

    resolution = float(data.get("resolution", 1000))
    if resolution <= 0:
        raise ConfigurationError(f"resolution must be > 0, got {resolution}")

    tile_factor = int(data.get("tile_factor", 1))
    if tile_factor < 1:
        raise ConfigurationError(f"tile_factor must be >= 1, got {tile_factor}")

    sources: List[SourceSpec] = []
    for s in data.get("alert_sources") or []:
        if not isinstance(s, dict) or "name" not in s:
            raise ConfigurationError(f"Bad alert source entry: {s!r}")
        sources.append(
            SourceSpec(
                name=str(s["name"]),
                product=str(s.get("product", s["name"])),
                schema=str(s.get("schema", s["name"])),
            )
        )

    class_table = None
    classes = data.get("classes")
    if classes is not None:
        if not isinstance(classes, dict):
            raise ConfigurationError("classes must be a mapping with 'codes' and 'names'")
        class_table = class_table_from_lists(classes.get("codes") or [], classes.get("names") or [])

    max_workers = int(data.get("max_workers", 1))
    if max_workers < 1:
        raise ConfigurationError("max_workers must be >= 1")
    retries = int(data.get("retries", 0))
    if retries < 0:
        raise ConfigurationError("retries must be >= 0")

    return RunConfig(
        epoch=epoch,
        calendar_mode=mode,
        ruleset_id=ruleset_id,
        spatial_buffer=spatial,
        temporal_buffer=temporal,
        confidence_filter=parse_confidence_filter(data.get("confidence_filter")),
        resolution=resolution,
        tile_factor=tile_factor,
        year_ranges=parse_year_ranges(data.get("year_ranges")),
        zone_groups=parse_zone_groups(data.get("zone_groups")),
        alert_sources=tuple(sources),
        class_table=class_table,
        treecover_threshold=int(data.get("treecover_threshold", 30)),
        max_workers=max_workers,
        retries=retries,
        out_dir=Path(data.get("out_dir", "data/exports")),
        country_tag=str(data.get("country_tag", "IDN")),
        params=check_job_params(data.get("params")),
    )


def load_run_config(path: Path) -> RunConfig:
    return parse_run_config(load_yaml(path))


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_RUN_YAML = Path("config/run.yaml")
DEFAULT_SOURCES_YAML = Path("config/sources.yaml")
DEFAULT_ZONES_GPKG = Path("data/interim/vectors/zones_adm2.gpkg")
