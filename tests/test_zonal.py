#!/usr/bin/env python3

from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from rasterio.transform import Affine
from shapely.geometry import box

from alertstack.config import ConfigurationError
from alertstack.dates import EpochDateMapper
from alertstack.raster import RasterLayer, coarsen
from alertstack.zonal import aggregate

CRS = "EPSG:32748"
X0, Y0 = 500_000.0, 9_000_000.0


def _grid(rows, cols, values=None, mask=None):
    """100 m pixels (1 ha each) with the top-left corner at (X0, Y0)."""
    data = np.zeros((rows, cols)) if values is None else np.asarray(values, dtype="float64")
    band = np.ma.array(data, mask=np.zeros_like(data, dtype=bool) if mask is None else mask)
    return RasterLayer({"v": band}, Affine(100.0, 0.0, X0, 0.0, -100.0, Y0), CRS)


def _zones(*boxes_m, codes=None):
    """Zones from (xmin, ymin, xmax, ymax) offsets in metres from the grid's top-left corner."""
    geoms = [box(X0 + a, Y0 - d, X0 + c, Y0 - b) for a, b, c, d in boxes_m]
    codes = codes or list(range(1, len(geoms) + 1))
    return gpd.GeoDataFrame(
        {"adm1_name": ["Riau"] * len(geoms), "adm2_code": codes, "adm2_name": [f"z{c}" for c in codes]},
        geometry=geoms,
        crs=CRS,
    )


def test_area_sum_per_zone():
    layer = _grid(12, 12).area_ha()
    zones = _zones((0, 0, 600, 1200), (600, 0, 1200, 1200))
    out = aggregate(layer, zones, resolution=100)
    assert out.columns.tolist() == ["adm2_code", "sum"]
    assert out["sum"].tolist() == pytest.approx([72.0, 72.0])


def test_alert_area_in_year_window_independent_of_tiling():
    # Zone of 1000 ha; 200 ha of alerts dated inside the 2020 window, the rest in 2019
    mapper = EpochDateMapper(dt.date(2019, 1, 1))
    window = mapper.year_window(2020)
    dates = np.full((25, 40), 100)
    dates[:5, :] = 400
    layer = _grid(25, 40, dates)
    alerted = window.contains(layer.band("v"))
    assert alerted.sum() == 200

    zones = _zones((0, 0, 4000, 2500))
    area = layer.area_ha(alerted)
    for t in (1, 4, 8):
        out = aggregate(area, zones, resolution=100, tile_factor=t, output="ha_alerts")
        assert out["ha_alerts"].iloc[0] == pytest.approx(200.0)
    total = aggregate(layer.area_ha(), zones, resolution=100)
    assert total["sum"].iloc[0] == pytest.approx(1000.0)


def test_tiling_and_methods_agree():
    rng = np.random.default_rng(7)
    layer = _grid(12, 12, rng.random((12, 12)))
    zones = _zones((0, 0, 600, 1200), (600, 0, 1200, 600), (600, 600, 1200, 1200))
    base = aggregate(layer, zones, resolution=100)["sum"].tolist()
    for t in (2, 3, 5):
        for method in ("regions", "grouped"):
            out = aggregate(layer, zones, resolution=100, tile_factor=t, method=method)
            assert out["sum"].tolist() == pytest.approx(base)


def test_coarser_resolution_preserves_totals():
    rng = np.random.default_rng(1)
    layer = _grid(12, 12).area_ha(rng.random((12, 12)) > 0.5)
    zones = _zones((0, 0, 600, 1200), (600, 0, 1200, 1200))
    fine = aggregate(layer, zones, resolution=100)["sum"].tolist()
    for res in (200, 300):
        assert aggregate(layer, zones, resolution=res)["sum"].tolist() == pytest.approx(fine)


def test_coarsen_sum_keeps_grand_total():
    layer = _grid(5, 7, np.arange(35).reshape(5, 7))
    coarse = coarsen(layer, 2, "sum")
    assert coarse.shape == (3, 4)
    assert float(coarse.band().sum()) == pytest.approx(float(layer.band().sum()))
    assert coarse.transform.a == 200.0


def test_coarsen_nearest_uses_a_valid_pixel_for_edge_blocks():
    layer = _grid(3, 3, np.arange(1, 10).reshape(3, 3))
    coarse = coarsen(layer, 2, "nearest")
    assert not np.ma.getmaskarray(coarse.band()).any()
    # Centre pixel where it exists; the first valid pixel for blocks cut by the grid edge
    assert coarse.band().tolist() == [[5.0, 3.0], [7.0, 9.0]]


def test_grouped_area_matches_total_on_a_ragged_coarse_grid():
    lc = _grid(5, 5, np.full((5, 5), 2, dtype="int32"))
    zones = _zones((0, 0, 700, 700))
    total = aggregate(lc.area_ha(), zones, resolution=200, output="total_ha")
    by_class = aggregate(lc.area_ha(), zones, resolution=200, group_band=lc, output="ha")
    assert total["total_ha"].iloc[0] == pytest.approx(25.0)
    assert by_class["class_code"].tolist() == [2]
    assert by_class["ha"].sum() == pytest.approx(total["total_ha"].iloc[0])


def test_masked_pixels_contribute_nothing():
    mask = np.zeros((12, 12), dtype=bool)
    mask[:, :6] = True
    layer = _grid(12, 12, np.ones((12, 12)), mask=mask)
    zones = _zones((0, 0, 600, 1200), (600, 0, 1200, 1200))
    out = aggregate(layer, zones, resolution=100)
    assert out["sum"].tolist() == pytest.approx([0.0, 72.0])


def test_zone_outside_grid_and_no_coverage_are_zero():
    layer = _grid(12, 12, np.ones((12, 12)))
    zones = _zones((0, 0, 600, 1200), (5000, 5000, 6000, 6000))
    out = aggregate(layer, zones, resolution=100)
    assert out["sum"].tolist() == pytest.approx([72.0, 0.0])

    out = aggregate(None, zones, resolution=100, output="burned_ha")
    assert out["burned_ha"].tolist() == [0.0, 0.0]
    assert out["adm2_code"].tolist() == [1, 2]


def test_mean_is_area_weighted_and_absent_without_pixels():
    values = np.zeros((12, 12))
    values[:, 6:] = 4.0
    mask = np.zeros((12, 12), dtype=bool)
    mask[6:, :6] = True
    layer = _grid(12, 12, values, mask=mask)
    zones = _zones((0, 0, 1200, 1200), (0, 600, 600, 1200))
    out = aggregate(layer, zones, resolution=100, reducer="mean", output="mm")
    # 36 valid pixels at 0, 72 at 4
    assert out["mm"].iloc[0] == pytest.approx(8.0 / 3.0)
    assert pd.isna(out["mm"].iloc[1])


def test_group_band_splits_by_category():
    classes = np.zeros((12, 12), dtype="int32")
    classes[:, 4:] = 2
    classes[:, 9:] = 13
    lc = _grid(12, 12, classes)
    zones = _zones((0, 0, 600, 1200), (600, 0, 1200, 1200))
    out = aggregate(lc.area_ha(), zones, resolution=100, group_band=lc, output="ha")

    assert out.columns.tolist() == ["adm2_code", "class_code", "ha"]
    got = {(r.adm2_code, r.class_code): r.ha for r in out.itertuples()}
    assert got == pytest.approx({(1, 0): 48.0, (1, 2): 24.0, (2, 2): 36.0, (2, 13): 36.0})


def test_group_band_without_coverage_is_empty():
    zones = _zones((0, 0, 600, 1200))
    lc = _grid(12, 12)
    out = aggregate(None, zones, resolution=100, group_band=lc, output="ha")
    assert out.empty


def test_parameter_validation():
    layer = _grid(4, 4)
    zones = _zones((0, 0, 400, 400))
    with pytest.raises(ConfigurationError):
        aggregate(layer, zones, resolution=0)
    with pytest.raises(ConfigurationError):
        aggregate(layer, zones, resolution=100, tile_factor=0)
    with pytest.raises(ConfigurationError):
        aggregate(layer, zones, resolution=100, reducer="median")
    with pytest.raises(KeyError):
        aggregate(layer, zones, resolution=100, key="gid")
