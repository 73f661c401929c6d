#!/usr/bin/env python3
"""alertstack.zones

Read-only access to the zone registry (ADM2 polygons written by
`python -m alertstack.registry prep-zones`).

Every zone row carries:
    adm2_code  unique key
    adm2_name  display name
    adm1_name  parent region (used to assign zones to shard groups)
    geometry   polygon / multipolygon
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Sequence

import geopandas as gpd
import pandas as pd

from alertstack.config import ConfigurationError

KEY_FIELD = "adm2_code"
NAME_FIELD = "adm2_name"
PARENT_FIELD = "adm1_name"
META_FIELDS = [PARENT_FIELD, KEY_FIELD, NAME_FIELD]


def check_zones(zones: gpd.GeoDataFrame, key: str = KEY_FIELD) -> gpd.GeoDataFrame:
    """Raise ConfigurationError if required fields are missing or the key repeats."""
    missing = [c for c in [key, PARENT_FIELD] if c not in zones.columns]
    if missing:
        raise ConfigurationError(f"Zones are missing fields {missing}; columns: {list(zones.columns)}")
    dupes = zones[key][zones[key].duplicated()].unique().tolist()
    if dupes:
        raise ConfigurationError(f"Zone key {key!r} is not unique: {dupes[:10]}")
    if zones.crs is None:
        raise ConfigurationError("Zones have no CRS")
    return zones


def load_zones(gpkg: Path, layer: str = "zones") -> gpd.GeoDataFrame:
    if not gpkg.exists():
        raise ConfigurationError(
            f"Zones GeoPackage not found: {gpkg}\n"
            "Run: python -m alertstack.registry prep-zones --gaul-shp <path>"
        )
    return check_zones(gpd.read_file(gpkg, layer=layer))


def select_zones(zones: gpd.GeoDataFrame, parents: Iterable[str]) -> gpd.GeoDataFrame:
    """Zones whose parent region is in `parents`, in registry order."""
    wanted = set(parents)
    return zones[zones[PARENT_FIELD].isin(wanted)].reset_index(drop=True)


def unknown_parents(zones: gpd.GeoDataFrame, parents: Sequence[str]) -> List[str]:
    """Parent names listed in a zone group that no zone carries (typos in run.yaml)."""
    present = set(zones[PARENT_FIELD].astype(str))
    return [p for p in parents if p not in present]


def zone_metadata(zones: gpd.GeoDataFrame) -> pd.DataFrame:
    """Attribute table of the zones (no geometry), for the metadata join."""
    cols = [c for c in META_FIELDS if c in zones.columns]
    return pd.DataFrame(zones[cols]).reset_index(drop=True)
