#!/usr/bin/env python3
"""alertstack.zonal

Zonal statistics: reduce a per-pixel scalar band over a polygon collection.

    aggregate(layer, zones, resolution=..., tile_factor=..., reducer="sum")

returns one row per zone (or per zone x category when a group band is given)
with the zone key and the reduced value. Zone names and parents are NOT
attached here; that's the join step's job.

Semantics:
- A pixel belongs to a zone when its centre falls inside the polygon.
- Masked pixels contribute nothing (a zone with no valid pixels sums to 0).
- "sum" adds values as they are (use RasterLayer.area_ha() to turn a mask
  into hectares first). "mean" is area-weighted: sum(v * a) / sum(a) over
  valid pixels; None when a zone has no valid pixels.
- `resolution` (metres) coarsens the grid by an integer block factor
  before reducing; totals of extensive values are preserved.
- `tile_factor` splits each zone's window into t x t tiles that are reduced
  separately and then added. It only trades memory for more, smaller steps;
  the result doesn't depend on it (up to float rounding).
- layer=None means "no source coverage this year": every zone gets 0.

Two strategies produce the same numbers for non-overlapping zones:
- method="regions": one window per zone, polygon mask per tile. Overlapping
  zones each count shared pixels.
- method="grouped": rasterize all zones once into an id grid and do a
  grouped sum over it (faster for many small zones).
"""

from __future__ import annotations

import math
from typing import Dict, Iterator, List, Optional, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.features import geometry_mask, rasterize
from rasterio.windows import Window
from rasterio.windows import transform as window_transform
from shapely.geometry import mapping

from alertstack.config import ConfigurationError
from alertstack.raster import RasterLayer, coarsen, coarsen_factor

REDUCERS = ("sum", "mean")
METHODS = ("regions", "grouped")

# (zone index, category or None) -> [numerator, denominator]
_Acc = Dict[Tuple[int, Optional[int]], List[float]]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _check_params(resolution: float, tile_factor: int, reducer: str, method: str) -> None:
    if resolution is None or resolution <= 0:
        raise ConfigurationError(f"resolution must be > 0, got {resolution}")
    if int(tile_factor) != tile_factor or tile_factor < 1:
        raise ConfigurationError(f"tile_factor must be an integer >= 1, got {tile_factor}")
    if reducer not in REDUCERS:
        raise ConfigurationError(f"Unknown reducer {reducer!r} (known: {REDUCERS})")
    if method not in METHODS:
        raise ConfigurationError(f"Unknown method {method!r} (known: {METHODS})")


def _tiles(r0: int, r1: int, c0: int, c1: int, t: int) -> Iterator[Tuple[int, int, int, int]]:
    """Split [r0, r1) x [c0, c1) into a t x t grid of non-empty tiles."""
    row_edges = np.unique(np.linspace(r0, r1, t + 1).round().astype(int))
    col_edges = np.unique(np.linspace(c0, c1, t + 1).round().astype(int))
    for ra, rb in zip(row_edges[:-1], row_edges[1:]):
        for ca, cb in zip(col_edges[:-1], col_edges[1:]):
            yield int(ra), int(rb), int(ca), int(cb)


def _pixel_window(bounds: Tuple[float, float, float, float], layer: RasterLayer) -> Optional[Tuple[int, int, int, int]]:
    """Row/col range of the pixels whose centres can fall inside `bounds`."""
    minx, miny, maxx, maxy = bounds
    inv = ~layer.transform
    corners = [inv * (x, y) for x in (minx, maxx) for y in (miny, maxy)]
    cols = [c for c, _ in corners]
    rows = [r for _, r in corners]
    h, w = layer.shape
    r0 = max(0, int(math.floor(min(rows))))
    r1 = min(h, int(math.ceil(max(rows))))
    c0 = max(0, int(math.floor(min(cols))))
    c1 = min(w, int(math.ceil(max(cols))))
    if r0 >= r1 or c0 >= c1:
        return None
    return r0, r1, c0, c1


def _add(acc: _Acc, zone: int, cats: Optional[np.ndarray], num: np.ndarray, den: np.ndarray) -> None:
    if cats is None:
        cell = acc.setdefault((zone, None), [0.0, 0.0])
        cell[0] += float(num.sum())
        cell[1] += float(den.sum())
        return
    uniq, inverse = np.unique(cats, return_inverse=True)
    nsum = np.bincount(inverse, weights=num, minlength=len(uniq))
    dsum = np.bincount(inverse, weights=den, minlength=len(uniq))
    for i, c in enumerate(uniq.tolist()):
        cell = acc.setdefault((zone, int(c)), [0.0, 0.0])
        cell[0] += float(nsum[i])
        cell[1] += float(dsum[i])


def _prepare(
    layer: RasterLayer,
    band: Optional[str],
    group_band: Optional[RasterLayer],
    reducer: str,
    resolution: float,
) -> Tuple[RasterLayer, np.ndarray, np.ndarray, np.ndarray, Optional[np.ma.MaskedArray]]:
    """Coarsen to the requested resolution.

    Returns (grid, numerator, denominator, valid, categories).
    """
    values = layer.band(band)
    valid = ~np.ma.getmaskarray(values)
    area = layer.pixel_area_ha()
    v = np.ma.filled(values.astype("float64"), 0.0)
    num = v * area if reducer == "mean" else v
    den = np.where(valid, area, 0.0)

    work = RasterLayer(
        {
            "num": np.ma.array(num, mask=~valid),
            "den": np.ma.array(den, mask=~valid),
        },
        layer.transform,
        layer.crs,
    )
    cats = None
    if group_band is not None:
        if not group_band.same_grid(layer):
            raise ValueError("group_band must be on the same grid as the value layer")
        cats_layer = group_band.select(group_band.band_names[0])

    factor = coarsen_factor(layer, resolution)
    if factor > 1:
        work = coarsen(work, factor, "sum")
        if group_band is not None:
            cats_layer = coarsen(cats_layer, factor, "nearest")
    if group_band is not None:
        cats = cats_layer.band()

    num_c = np.ma.filled(work.band("num"), 0.0)
    den_c = np.ma.filled(work.band("den"), 0.0)
    valid_c = ~np.ma.getmaskarray(work.band("num"))
    if cats is not None:
        valid_c &= ~np.ma.getmaskarray(cats)
    return work, num_c, den_c, valid_c, cats


def _reduce_regions(grid, num, den, valid, cats, geoms, tile_factor: int) -> _Acc:
    acc: _Acc = {}
    for zi, geom in enumerate(geoms):
        if geom is None or geom.is_empty:
            continue
        win = _pixel_window(geom.bounds, grid)
        if win is None:
            continue
        shape = [mapping(geom)]
        for r0, r1, c0, c1 in _tiles(*win, tile_factor):
            t_transform = window_transform(Window(c0, r0, c1 - c0, r1 - r0), grid.transform)
            inside = geometry_mask(shape, out_shape=(r1 - r0, c1 - c0), transform=t_transform, invert=True)
            sel = inside & valid[r0:r1, c0:c1]
            if not sel.any():
                continue
            tile_cats = None if cats is None else np.ma.filled(cats[r0:r1, c0:c1], 0)[sel]
            _add(acc, zi, tile_cats, num[r0:r1, c0:c1][sel], den[r0:r1, c0:c1][sel])
    return acc


def _reduce_grouped(grid, num, den, valid, cats, geoms, tile_factor: int) -> _Acc:
    acc: _Acc = {}
    shapes = [(mapping(g), zi + 1) for zi, g in enumerate(geoms) if g is not None and not g.is_empty]
    if not shapes:
        return acc
    h, w = grid.shape
    for r0, r1, c0, c1 in _tiles(0, h, 0, w, tile_factor):
        t_transform = window_transform(Window(c0, r0, c1 - c0, r1 - r0), grid.transform)
        ids = rasterize(shapes, out_shape=(r1 - r0, c1 - c0), transform=t_transform, fill=0, dtype="int32")
        sel = (ids > 0) & valid[r0:r1, c0:c1]
        if not sel.any():
            continue
        zone_ids = ids[sel] - 1
        tile_num = num[r0:r1, c0:c1][sel]
        tile_den = den[r0:r1, c0:c1][sel]
        tile_cats = None if cats is None else np.ma.filled(cats[r0:r1, c0:c1], 0)[sel]
        for zi in np.unique(zone_ids).tolist():
            m = zone_ids == zi
            _add(acc, int(zi), None if tile_cats is None else tile_cats[m], tile_num[m], tile_den[m])
    return acc


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def aggregate(
    layer: Optional[RasterLayer],
    zones: gpd.GeoDataFrame,
    *,
    resolution: float,
    tile_factor: int = 1,
    band: Optional[str] = None,
    group_band: Optional[RasterLayer] = None,
    reducer: str = "sum",
    key: str = "adm2_code",
    output: str = "sum",
    group_field: str = "class_code",
    method: str = "regions",
) -> pd.DataFrame:
    """Reduce `band` of `layer` over every zone in `zones`.

    Returns columns [key, output] or, with a group band, [key, group_field,
    output] with one row per category present in the zone.
    """
    _check_params(resolution, tile_factor, reducer, method)
    if key not in zones.columns:
        raise KeyError(f"Zone key {key!r} not in zones columns: {list(zones.columns)}")

    keys = zones[key].tolist()
    if layer is None:
        if group_band is not None:
            return pd.DataFrame({key: [], group_field: [], output: []})
        return pd.DataFrame({key: keys, output: [0.0] * len(keys)})

    if zones.crs is not None and layer.crs is not None and zones.crs != layer.crs:
        zones = zones.to_crs(layer.crs)

    grid, num, den, valid, cats = _prepare(layer, band, group_band, reducer, resolution)
    reduce_fn = _reduce_regions if method == "regions" else _reduce_grouped
    acc = reduce_fn(grid, num, den, valid, cats, list(zones.geometry), int(tile_factor))

    def _value(cell: Optional[List[float]]) -> Optional[float]:
        if reducer == "sum":
            return cell[0] if cell else 0.0
        if not cell or cell[1] <= 0:
            return None
        return cell[0] / cell[1]

    if group_band is None:
        return pd.DataFrame({key: keys, output: [_value(acc.get((zi, None))) for zi in range(len(keys))]})

    rows = [
        {key: keys[zi], group_field: cat, output: _value(cell)}
        for (zi, cat), cell in sorted(acc.items(), key=lambda kv: (kv[0][0], kv[0][1]))
    ]
    return pd.DataFrame(rows, columns=[key, group_field, output])
