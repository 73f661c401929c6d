#!/usr/bin/env python3
"""alertstack.catalog

Raster source catalog: named, dated raster products queryable by date range
and bounding box.

    catalog.query("chirps", start, end, bounds)  -> List[RasterLayer]

A gap (no file for a date, a product with nothing in range) is an empty list,
never an error. Jobs turn an empty list into "no coverage" (zero-valued
rows).

Two implementations:
- FileCatalog reads GeoTIFFs / COGs declared in sources.yaml, reading ONLY
  the window covering the requested bounds.
- MemoryCatalog serves prepared in-memory layers (tests, notebooks).

sources.yaml layout:

    products:
      radd:
        cadence: static
        path: data/raw/alerts/radd_sea.tif
        bands: [Alert, Date]
      chirps:
        cadence: daily          # static | yearly | monthly | daily
        path_template: "data/raw/chirps/chirps-v2.0.{year}.{month:02d}.{day:02d}.tif"
        bands: [precipitation]

Paths and band names are templates over year, yy, month, day and doy. Remote
paths (http/https) are read through GDAL's /vsicurl/ with range requests.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import rasterio
from rasterio.crs import CRS
from rasterio.warp import transform_bounds

from alertstack.config import ConfigurationError, load_yaml
from alertstack.raster import BBox, RasterLayer, read_layer

CADENCES = ("static", "yearly", "monthly", "daily")


class RasterCatalog:
    """Interface: query(product, start, end, bounds) -> list of layers.

    `start` is inclusive, `end` exclusive. `bounds` are in `bounds_crs`.
    """

    def query(
        self,
        product: str,
        start: dt.date,
        end: dt.date,
        bounds: Optional[BBox] = None,
        bounds_crs: Optional[Any] = None,
    ) -> List[RasterLayer]:
        raise NotImplementedError

    def products(self) -> List[str]:
        raise NotImplementedError


# -----------------------------------------------------------------------------
# File-backed catalog
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ProductSpec:
    name: str
    cadence: str
    path: str
    bands: Tuple[str, ...] = ()


def _product_from_dict(name: str, d: Mapping[str, Any]) -> ProductSpec:
    cadence = str(d.get("cadence", "static"))
    if cadence not in CADENCES:
        raise ConfigurationError(f"Product {name!r}: unknown cadence {cadence!r} (known: {CADENCES})")
    path = d.get("path_template") or d.get("path")
    if not path:
        raise ConfigurationError(f"Product {name!r} needs 'path' or 'path_template'")
    bands = tuple(str(b) for b in (d.get("bands") or []))
    return ProductSpec(name=name, cadence=cadence, path=str(path), bands=bands)


def _steps(cadence: str, start: dt.date, end: dt.date) -> Iterator[dt.date]:
    """First day of every cadence period overlapping [start, end)."""
    if cadence == "yearly":
        d = dt.date(start.year, 1, 1)
    elif cadence == "monthly":
        d = dt.date(start.year, start.month, 1)
    else:
        d = start
    while d < end:
        yield d
        if cadence == "yearly":
            d = dt.date(d.year + 1, 1, 1)
        elif cadence == "monthly":
            d = dt.date(d.year + (d.month == 12), d.month % 12 + 1, 1)
        else:
            d = d + dt.timedelta(days=1)


def _render(template: str, day: dt.date) -> str:
    ctx = {
        "year": day.year,
        "yy": day.year % 100,
        "month": day.month,
        "day": day.day,
        "doy": day.timetuple().tm_yday,
    }
    try:
        return template.format(**ctx)
    except KeyError as e:
        raise ConfigurationError(f"Unknown key in path template {template!r}: {e.args[0]}") from e


def _vsi_path(path: str) -> str:
    """Force GDAL to use HTTP range requests for remote rasters."""
    if path.startswith(("http://", "https://")):
        return f"/vsicurl/{path}"
    return path


def _is_remote(path: str) -> bool:
    return path.startswith(("/vsicurl/", "http://", "https://"))


class FileCatalog(RasterCatalog):
    def __init__(self, products: Mapping[str, ProductSpec], root: Optional[Path] = None):
        self._products = dict(products)
        self._root = root

    @classmethod
    def from_sources_yaml(cls, path: Path) -> "FileCatalog":
        data = load_yaml(path)
        raw = data.get("products")
        if not isinstance(raw, dict) or not raw:
            raise ConfigurationError(f"{path} must have a non-empty 'products:' mapping")
        products = {str(k): _product_from_dict(str(k), v or {}) for k, v in raw.items()}
        return cls(products, root=path.parent.parent)

    def products(self) -> List[str]:
        return sorted(self._products)

    def spec(self, product: str) -> ProductSpec:
        if product not in self._products:
            raise ConfigurationError(f"Unknown product {product!r} (known: {self.products()})")
        return self._products[product]

    def _entries(self, product: str, start: dt.date, end: dt.date) -> List[Tuple[str, Tuple[str, ...]]]:
        """(path, band names) for every file the product declares in [start, end)."""
        spec = self.spec(product)
        if spec.cadence == "static":
            return [(spec.path, spec.bands)]
        out: List[Tuple[str, Tuple[str, ...]]] = []
        seen = set()
        for day in _steps(spec.cadence, start, end):
            p = _render(spec.path, day)
            if p in seen:
                continue
            seen.add(p)
            out.append((p, tuple(_render(b, day) for b in spec.bands)))
        return out

    def paths(self, product: str, start: dt.date, end: dt.date) -> List[str]:
        """Every path the product declares for [start, end), existing or not."""
        return [p for p, _ in self._entries(product, start, end)]

    def _resolve(self, p: str) -> Optional[str]:
        if _is_remote(p):
            return _vsi_path(p)
        path = Path(p)
        if not path.is_absolute() and self._root is not None and not path.exists():
            path = self._root / path
        return str(path) if path.exists() else None

    def query(
        self,
        product: str,
        start: dt.date,
        end: dt.date,
        bounds: Optional[BBox] = None,
        bounds_crs: Optional[Any] = None,
    ) -> List[RasterLayer]:
        layers: List[RasterLayer] = []
        env_opts = {
            "GDAL_DISABLE_READDIR_ON_OPEN": "EMPTY_DIR",
            "CPL_VSIL_CURL_ALLOWED_EXTENSIONS": ".tif,.tiff,.cog",
        }
        n_missing = 0
        with rasterio.Env(**env_opts):
            for p, bands in self._entries(product, start, end):
                resolved = self._resolve(p)
                if resolved is None:
                    n_missing += 1
                    continue
                window_bounds = bounds
                if bounds is not None and bounds_crs is not None:
                    with rasterio.open(resolved) as src:
                        if src.crs is not None and src.crs != CRS.from_user_input(bounds_crs):
                            window_bounds = transform_bounds(bounds_crs, src.crs, *bounds, densify_pts=21)
                layers.append(read_layer(resolved, bounds=window_bounds, band_names=bands or None))
        if n_missing:
            print(f"[CATALOG] {product}: {n_missing} file(s) missing for {start}..{end}; treated as gaps")
        return layers

    def verify(self, product: str, start: dt.date, end: dt.date) -> Dict[str, int]:
        """Count declared vs. present files (no pixel reads)."""
        declared = self.paths(product, start, end)
        present = [p for p in declared if _is_remote(p) or self._resolve(p) is not None]
        return {"declared": len(declared), "present": len(present)}


# -----------------------------------------------------------------------------
# In-memory catalog
# -----------------------------------------------------------------------------

class MemoryCatalog(RasterCatalog):
    """Catalog over prepared layers.

    Entries are (start, end, layer) with `end` exclusive; start=None means a
    static layer that matches every query.
    """

    def __init__(self, entries: Optional[Mapping[str, Sequence[Tuple[Optional[dt.date], Optional[dt.date], RasterLayer]]]] = None):
        self._entries: Dict[str, List[Tuple[Optional[dt.date], Optional[dt.date], RasterLayer]]] = {
            k: list(v) for k, v in (entries or {}).items()
        }

    def add(self, product: str, layer: RasterLayer, start: Optional[dt.date] = None, end: Optional[dt.date] = None) -> None:
        self._entries.setdefault(product, []).append((start, end, layer))

    def products(self) -> List[str]:
        return sorted(self._entries)

    def query(
        self,
        product: str,
        start: dt.date,
        end: dt.date,
        bounds: Optional[BBox] = None,
        bounds_crs: Optional[Any] = None,
    ) -> List[RasterLayer]:
        out: List[RasterLayer] = []
        for s, e, layer in self._entries.get(product, []):
            if s is None or (s < end and (e is None or e > start)):
                out.append(layer)
        return out
