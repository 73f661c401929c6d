#!/usr/bin/env python3
"""prep_zones.py

Turn a GAUL 2015 level-2 boundary shapefile into the zone GeoPackage every
export reads (data/interim/vectors/zones_adm2.gpkg).

Called by `python -m alertstack.registry prep-zones ...`.

Steps:
1. keep one country's features (ADM0_NAME == country)
2. rename ADM1_NAME / ADM2_CODE / ADM2_NAME to adm1_name / adm2_code / adm2_name
3. repair invalid geometries and simplify (tolerance in metres)
4. dissolve repeated adm2_code rows into one zone
5. compute area_ha in an equal-area CRS, reproject to the output CRS
6. write the GeoPackage (and an optional QA CSV)

Notes:
- Zone codes are normalized so "07", 7 and 7.0 are the same zone.
- Parent names are kept verbatim; zone groups in run.yaml refer to them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import geopandas as gpd

from alertstack.join import normalize_code
from alertstack.zones import KEY_FIELD, META_FIELDS, NAME_FIELD, PARENT_FIELD

GAUL_FIELDS: Dict[str, str] = {
    "ADM1_NAME": PARENT_FIELD,
    "ADM2_CODE": KEY_FIELD,
    "ADM2_NAME": NAME_FIELD,
}


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def _make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Repair invalid geometries (GeoSeries.make_valid, shapely >= 2)."""
    gdf = gdf.copy()
    gdf["geometry"] = gdf.geometry.make_valid()
    return gdf


def _simplify(gdf: gpd.GeoDataFrame, tolerance_m: float, work_crs: str) -> gpd.GeoDataFrame:
    """Simplify in a metric CRS so the tolerance is in metres."""
    if tolerance_m <= 0:
        return gdf
    src_crs = gdf.crs
    tmp = gdf.to_crs(work_crs)
    tmp["geometry"] = tmp.geometry.simplify(tolerance_m, preserve_topology=True)
    return tmp.to_crs(src_crs)


def _compute_area_ha(gdf: gpd.GeoDataFrame, area_crs: str) -> list:
    if gdf.crs is None:
        raise ValueError("Input geometries have no CRS; can't compute area safely.")
    tmp = gdf.to_crs(area_crs)
    return (tmp.geometry.area / 10_000.0).astype(float).tolist()


def clean_zones(
    gdf: gpd.GeoDataFrame,
    *,
    country: Optional[str] = "Indonesia",
    country_field: str = "ADM0_NAME",
    simplify_m: float = 0.0,
    area_crs: str = "EPSG:6933",
    target_crs: str = "EPSG:4326",
) -> gpd.GeoDataFrame:
    """Filter, rename, repair and dissolve raw GAUL features (no IO)."""
    if gdf.crs is None:
        raise SystemExit(
            "Boundary file has no CRS (.prj missing or unreadable). "
            "Fix that first; everything downstream depends on CRS."
        )

    if country:
        if country_field not in gdf.columns:
            raise SystemExit(f"Country field {country_field!r} not found. Columns: {list(gdf.columns)}")
        gdf = gdf[gdf[country_field] == country]
        if gdf.empty:
            raise SystemExit(f"No features with {country_field} == {country!r}")

    missing = [c for c in GAUL_FIELDS if c not in gdf.columns]
    if missing:
        raise SystemExit(f"Boundary file lacks fields {missing}. Columns: {list(gdf.columns)}")

    out = gdf[list(GAUL_FIELDS) + ["geometry"]].rename(columns=GAUL_FIELDS).copy()
    out[KEY_FIELD] = out[KEY_FIELD].apply(normalize_code)
    out = out[out[KEY_FIELD] != ""].copy()
    out[KEY_FIELD] = out[KEY_FIELD].astype(int) if out[KEY_FIELD].str.isdigit().all() else out[KEY_FIELD]

    out = _make_valid(out)
    out = out[out.geometry.notna() & ~out.geometry.is_empty].copy()

    # One row per zone code
    if out[KEY_FIELD].duplicated().any():
        out = out.dissolve(by=KEY_FIELD, as_index=False, aggfunc="first")

    out = _simplify(out, simplify_m, area_crs)
    out["area_ha"] = _compute_area_ha(out, area_crs)
    out = out.to_crs(target_crs)

    out = out[META_FIELDS + ["area_ha", "geometry"]]
    return out.sort_values([PARENT_FIELD, KEY_FIELD]).reset_index(drop=True)


# -----------------------------------------------------------------------------
# Core function (called by the registry CLI)
# -----------------------------------------------------------------------------

def prep_zones(
    gaul_shp: Path,
    out_gpkg: Path,
    *,
    layer: str = "zones",
    country: Optional[str] = "Indonesia",
    country_field: str = "ADM0_NAME",
    simplify_m: float = 0.0,
    area_crs: str = "EPSG:6933",
    target_crs: str = "EPSG:4326",
    qa_csv: Optional[Path] = None,
) -> gpd.GeoDataFrame:
    """Process a GAUL level-2 shapefile into the zone GeoPackage.

    Returns the processed GeoDataFrame (also written to out_gpkg).

    Raises:
        SystemExit: On missing files, no matching features, or missing fields.
    """
    if not gaul_shp.exists():
        raise SystemExit(f"Boundary file not found: {gaul_shp}")

    gdf = gpd.read_file(gaul_shp)
    if gdf.empty:
        raise SystemExit("Loaded boundary file but it contains zero features. Wrong file?")

    out = clean_zones(
        gdf,
        country=country,
        country_field=country_field,
        simplify_m=simplify_m,
        area_crs=area_crs,
        target_crs=target_crs,
    )

    out_gpkg.parent.mkdir(parents=True, exist_ok=True)
    out.to_file(out_gpkg, layer=layer, driver="GPKG")

    if qa_csv:
        qa_csv.parent.mkdir(parents=True, exist_ok=True)
        out.drop(columns="geometry").to_csv(qa_csv, index=False)

    # --- Human-friendly summary ---
    print(f"Wrote {len(out)} zones -> {out_gpkg} (layer={layer})")
    per_parent = out.groupby(PARENT_FIELD)[KEY_FIELD].count()
    for parent, n in per_parent.items():
        print(f"  - {parent}: {n} zones")
    print(f"(Total area: {out['area_ha'].sum():,.0f} ha; output CRS: {target_crs})")

    return out
