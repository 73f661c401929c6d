#!/usr/bin/env python3
"""alertstack.raster

In-memory raster layers.

A RasterLayer is a set of named 2-D bands (numpy masked arrays) sharing one
grid, described by an affine transform and a CRS. Layers are treated as
immutable: every operation returns a new layer and never writes into the
arrays of its input.

Design notes:
- Masked pixels are "undefined" (outside coverage, nodata, or masked out by
  an earlier step). Reductions treat them as contributing nothing.
- Pixel areas come from the grid: constant for projected CRSs, per-row
  spherical strips for geographic CRSs.
- Resolutions are given in metres, as in the rest of the project. For
  geographic grids a degree is taken as METERS_PER_DEGREE at the equator.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.transform import Affine
from rasterio.warp import Resampling, reproject
from rasterio.windows import from_bounds

EARTH_RADIUS_M = 6_371_008.8
METERS_PER_DEGREE = 111_320.0

BBox = Tuple[float, float, float, float]


def _as_masked(a: Any) -> np.ma.MaskedArray:
    arr = np.ma.array(a, copy=True)
    # Normalize so mask is always a full boolean array
    arr.mask = np.ma.getmaskarray(arr)
    return arr


@dataclass(frozen=True)
class RasterLayer:
    bands: Mapping[str, np.ma.MaskedArray]
    transform: Affine
    crs: Optional[Any] = None

    def __post_init__(self) -> None:
        if not self.bands:
            raise ValueError("RasterLayer needs at least one band")
        shapes = {np.shape(b) for b in self.bands.values()}
        if len(shapes) != 1 or len(next(iter(shapes))) != 2:
            raise ValueError(f"All bands must share one 2-D shape, got {sorted(shapes)}")
        object.__setattr__(self, "bands", {k: _as_masked(v) for k, v in self.bands.items()})

    # --- basic accessors ---

    @property
    def shape(self) -> Tuple[int, int]:
        return next(iter(self.bands.values())).shape

    @property
    def band_names(self) -> List[str]:
        return list(self.bands.keys())

    def has_band(self, name: str) -> bool:
        return name in self.bands

    def band(self, name: Optional[str] = None) -> np.ma.MaskedArray:
        """Return a band by name (first band if name is None)."""
        if name is None:
            return next(iter(self.bands.values()))
        if name not in self.bands:
            raise KeyError(f"Band {name!r} not in layer (bands: {self.band_names})")
        return self.bands[name]

    @property
    def bounds(self) -> BBox:
        h, w = self.shape
        x0, y0 = self.transform * (0, 0)
        x1, y1 = self.transform * (w, h)
        return (min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1))

    @property
    def is_geographic(self) -> bool:
        if self.crs is None:
            return False
        return bool(CRS.from_user_input(self.crs).is_geographic)

    @property
    def pixel_size_m(self) -> float:
        """Nominal pixel width in metres."""
        size = abs(self.transform.a)
        return size * METERS_PER_DEGREE if self.is_geographic else size

    def same_grid(self, other: "RasterLayer") -> bool:
        if self.shape != other.shape:
            return False
        if not self.transform.almost_equals(other.transform):
            return False
        if self.crs is None or other.crs is None:
            return self.crs is None and other.crs is None
        return CRS.from_user_input(self.crs) == CRS.from_user_input(other.crs)

    # --- derived layers ---

    def with_bands(self, **bands: np.ndarray) -> "RasterLayer":
        merged: Dict[str, np.ndarray] = dict(self.bands)
        merged.update(bands)
        return RasterLayer(merged, self.transform, self.crs)

    def select(self, *names: str) -> "RasterLayer":
        return RasterLayer({n: self.band(n) for n in names}, self.transform, self.crs)

    def rename(self, mapping: Mapping[str, str]) -> "RasterLayer":
        return RasterLayer({mapping.get(k, k): v for k, v in self.bands.items()}, self.transform, self.crs)

    def update_mask(self, keep: np.ndarray) -> "RasterLayer":
        """Mask every band where `keep` is False (ee's updateMask)."""
        keep = np.ma.filled(np.ma.asarray(keep), False).astype(bool)
        return RasterLayer(
            {k: np.ma.array(v, mask=np.ma.getmaskarray(v) | ~keep) for k, v in self.bands.items()},
            self.transform,
            self.crs,
        )

    def pixel_area_ha(self) -> np.ndarray:
        """Per-pixel area in hectares, shape (rows, cols)."""
        h, w = self.shape
        if not self.is_geographic:
            return np.full((h, w), abs(self.transform.a * self.transform.e) / 10_000.0)

        # Spherical strip area per row; every pixel in a row has the same area
        top = self.transform.f + self.transform.e * np.arange(h)
        bottom = top + self.transform.e
        dlon = math.radians(abs(self.transform.a))
        row_m2 = (
            EARTH_RADIUS_M ** 2
            * dlon
            * np.abs(np.sin(np.radians(top)) - np.sin(np.radians(bottom)))
        )
        return np.repeat((row_m2 / 10_000.0)[:, None], w, axis=1)

    def area_ha(self, mask: Optional[np.ndarray] = None, name: str = "area_ha") -> "RasterLayer":
        """Pixel area (ha) layer, masked to `mask` when given."""
        area = np.ma.array(self.pixel_area_ha())
        layer = RasterLayer({name: area}, self.transform, self.crs)
        return layer if mask is None else layer.update_mask(mask)

    def align_to(self, template: "RasterLayer", resampling: Resampling = Resampling.nearest) -> "RasterLayer":
        """Resample every band onto the template's grid (nearest by default)."""
        if self.same_grid(template):
            return self
        out: Dict[str, np.ma.MaskedArray] = {}
        for name, band in self.bands.items():
            src = np.ma.filled(band.astype("float64"), np.nan)
            dst = np.full(template.shape, np.nan, dtype="float64")
            reproject(
                source=src,
                destination=dst,
                src_transform=self.transform,
                src_crs=self.crs,
                dst_transform=template.transform,
                dst_crs=template.crs,
                src_nodata=np.nan,
                dst_nodata=np.nan,
                resampling=resampling,
            )
            hole = np.isnan(dst)
            out[name] = np.ma.array(np.where(hole, 0, dst).astype(band.dtype), mask=hole)
        return RasterLayer(out, template.transform, template.crs)

    @classmethod
    def zeros_like(cls, template: "RasterLayer", name: str = "value") -> "RasterLayer":
        return cls({name: np.ma.zeros(template.shape)}, template.transform, template.crs)


# -----------------------------------------------------------------------------
# Resolution changes
# -----------------------------------------------------------------------------

def coarsen_factor(layer: RasterLayer, resolution_m: float) -> int:
    """Integer block factor that brings `layer` closest to `resolution_m`.

    Requests finer than the native grid use the native grid (factor 1).
    """
    if resolution_m <= 0:
        raise ValueError(f"resolution must be > 0, got {resolution_m}")
    return max(1, int(round(resolution_m / layer.pixel_size_m)))


def _blocks(a: np.ndarray, factor: int, fill: Any) -> np.ndarray:
    h, w = a.shape
    ph, pw = (-h) % factor, (-w) % factor
    if ph or pw:
        a = np.pad(a, ((0, ph), (0, pw)), constant_values=fill)
    H, W = a.shape
    return a.reshape(H // factor, factor, W // factor, factor)


def coarsen(layer: RasterLayer, factor: int, how: str = "sum") -> RasterLayer:
    """Block-aggregate every band by an integer factor.

    how:
      sum      extensive values (areas, counts); masked pixels add 0
      mean     intensive values; mean of valid pixels
      nearest  categories; value at the block centre, else the first valid pixel
    A coarse pixel is masked when none of its fine pixels is valid.
    """
    if factor == 1:
        return layer
    out: Dict[str, np.ma.MaskedArray] = {}
    for name, band in layer.bands.items():
        valid = _blocks(~np.ma.getmaskarray(band), factor, False)
        any_valid = valid.any(axis=(1, 3))
        if how == "nearest":
            vals = _blocks(band.filled(0), factor, 0)
            hc, wc = any_valid.shape
            flat_vals = vals.transpose(0, 2, 1, 3).reshape(hc, wc, factor * factor)
            flat_ok = valid.transpose(0, 2, 1, 3).reshape(hc, wc, factor * factor)
            # Block centre, or the first valid fine pixel when the centre is masked or padding
            c = (factor // 2) * factor + factor // 2
            pick = np.where(flat_ok[:, :, c], c, flat_ok.argmax(axis=2))
            picked = np.take_along_axis(flat_vals, pick[:, :, None], axis=2)[:, :, 0]
            out[name] = np.ma.array(picked, mask=~any_valid)
            continue
        data = _blocks(np.ma.filled(band.astype("float64"), 0.0), factor, 0.0)
        total = data.sum(axis=(1, 3))
        if how == "sum":
            out[name] = np.ma.array(total, mask=~any_valid)
        elif how == "mean":
            count = valid.sum(axis=(1, 3))
            with np.errstate(invalid="ignore", divide="ignore"):
                out[name] = np.ma.array(np.where(count > 0, total / np.maximum(count, 1), 0.0), mask=~any_valid)
        else:
            raise ValueError(f"Unknown coarsen method: {how!r}")
    return RasterLayer(out, layer.transform * Affine.scale(factor), layer.crs)


# -----------------------------------------------------------------------------
# Compositing
# -----------------------------------------------------------------------------

def composite(layers: Sequence[RasterLayer], how: str = "max", band: Optional[str] = None) -> Optional[RasterLayer]:
    """Per-pixel reduction of a stack of same-grid layers.

    Returns None for an empty stack; callers decide what "no coverage" means.
    how: max | mean | sum | mosaic (first valid pixel wins).
    """
    if not layers:
        return None
    template = layers[0]
    for other in layers[1:]:
        if not other.same_grid(template):
            raise ValueError("composite() needs layers on the same grid; align_to() them first")
    name = band or template.band_names[0]
    stack = np.ma.stack([lyr.band(name) for lyr in layers])
    if how == "max":
        result = stack.max(axis=0)
    elif how == "mean":
        result = stack.mean(axis=0)
    elif how == "sum":
        result = stack.sum(axis=0)
    elif how == "mosaic":
        result = stack[0].copy()
        for nxt in stack[1:]:
            hole = np.ma.getmaskarray(result)
            result = np.ma.where(hole, nxt, result)
    else:
        raise ValueError(f"Unknown composite method: {how!r}")
    return RasterLayer({name: np.ma.asarray(result)}, template.transform, template.crs)


# -----------------------------------------------------------------------------
# File IO
# -----------------------------------------------------------------------------

def read_layer(
    path: Path,
    *,
    bounds: Optional[BBox] = None,
    band_names: Optional[Sequence[str]] = None,
) -> RasterLayer:
    """Read a raster file (optionally only the window covering `bounds`).

    Band names come from `band_names`, else the file's band descriptions,
    else b1, b2, ...
    """
    with rasterio.open(path) as src:
        window = None
        transform = src.transform
        if bounds is not None:
            window = from_bounds(*bounds, transform=src.transform)
            window = window.round_offsets().round_lengths()
            transform = src.window_transform(window)
        data = src.read(window=window, masked=True, boundless=window is not None)
        names = list(band_names or [])
        if not names:
            names = [d or f"b{i + 1}" for i, d in enumerate(src.descriptions or [None] * src.count)]
        if len(names) != data.shape[0]:
            raise ValueError(f"{path}: {data.shape[0]} bands but {len(names)} names")
        return RasterLayer({n: data[i] for i, n in enumerate(names)}, transform, src.crs)

