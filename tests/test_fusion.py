#!/usr/bin/env python3

from __future__ import annotations

import datetime as dt
import itertools
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import numpy as np
import pytest
from rasterio.transform import Affine

from alertstack.config import ConfigurationError
from alertstack.dates import EpochDateMapper
from alertstack.fusion import BufferConfig, alert_mask, integrate
from alertstack.normalize import ALERT_BAND, DATE_BAND, NO_DATE, Confidence, alert_layer
from alertstack.raster import RasterLayer

TRANSFORM = Affine(100.0, 0.0, 500_000.0, 0.0, -100.0, 9_000_000.0)
CRS = "EPSG:32748"
TEMPLATE = RasterLayer({"x": np.zeros((3, 3))}, TRANSFORM, CRS)

N, L, H, X = (int(c) for c in (Confidence.NONE, Confidence.LOW, Confidence.HIGH, Confidence.HIGHEST))
D = NO_DATE


def _alerts(conf, date):
    return alert_layer(np.array(conf, dtype="uint8"), np.array(date, dtype="int32"), TEMPLATE)


def _arrays(layer):
    conf = np.ma.filled(layer.band(ALERT_BAND), 0).tolist()
    date = layer.band(DATE_BAND).filled(-1).tolist()
    return conf, date


def test_highest_confidence_wins_then_earliest_date():
    # Source X: HIGH on the left two columns at day 100.
    # Source Y: HIGHEST on the right two columns at day 95.
    x = _alerts([[H, H, N]] * 3, [[100, 100, D]] * 3)
    y = _alerts([[N, X, X]] * 3, [[D, 95, 95]] * 3)

    conf, date = _arrays(integrate([x, y]))
    assert conf == [[H, X, X]] * 3
    assert date == [[100, 95, 95]] * 3


def test_confidence_tie_takes_earliest_date():
    a = _alerts([[H, L, N]] * 3, [[50, 10, D]] * 3)
    b = _alerts([[H, L, N]] * 3, [[40, 20, D]] * 3)
    conf, date = _arrays(integrate([a, b]))
    assert conf == [[H, L, N]] * 3
    assert date == [[40, 10, -1]] * 3


def test_no_alert_anywhere_is_none():
    a = _alerts([[N] * 3] * 3, [[D] * 3] * 3)
    out = integrate([a, a])
    assert (np.ma.filled(out.band(ALERT_BAND), 0) == N).all()
    assert np.ma.getmaskarray(out.band(DATE_BAND)).all()


def test_order_of_sources_does_not_matter():
    a = _alerts([[H, L, N], [X, N, L], [N, N, H]], [[30, 5, D], [70, D, 1], [D, D, 9]])
    b = _alerts([[L, L, H], [X, H, N], [N, L, H]], [[1, 4, 8], [60, 2, D], [D, 3, 9]])
    c = _alerts([[N, X, N], [L, H, L], [N, N, N]], [[D, 50, D], [5, 1, 0], [D, D, D]])
    expected = _arrays(integrate([a, b, c]))
    for perm in itertools.permutations([a, b, c]):
        assert _arrays(integrate(list(perm))) == expected


def test_integrate_is_deterministic():
    a = _alerts([[H, L, N]] * 3, [[30, 5, D]] * 3)
    b = _alerts([[L, H, N]] * 3, [[3, 50, D]] * 3)
    assert _arrays(integrate([a, b])) == _arrays(integrate([a, b]))


def test_confidence_filter_is_idempotent():
    a = _alerts([[H, L, X]] * 3, [[30, 5, 7]] * 3)
    once = integrate([a], confidence_filter=[H, X])
    twice = integrate([once], confidence_filter=[H, X])
    assert _arrays(once) == _arrays(twice)
    conf, date = _arrays(once)
    assert conf == [[H, N, X]] * 3
    assert date == [[30, -1, 7]] * 3


def test_spatial_buffer_grows_confirmed_pixels():
    conf = [[N, N, N], [N, H, N], [N, N, N]]
    date = [[D, D, D], [D, 12, D], [D, D, D]]
    a = _alerts(conf, date)

    # 100 m reaches the four edge neighbours but not the diagonals (141 m)
    out_conf, out_date = _arrays(integrate([a], buffer=BufferConfig(spatial_radius=100)))
    assert out_conf == [[N, H, N], [H, H, H], [N, H, N]]
    assert out_date == [[-1, 12, -1], [12, 12, 12], [-1, 12, -1]]

    out_conf, _ = _arrays(integrate([a], buffer=BufferConfig(spatial_radius=150)))
    assert out_conf == [[H] * 3] * 3


def test_spatial_buffer_does_not_overwrite_alerts():
    a = _alerts([[L, H, N]] * 3, [[5, 12, D]] * 3)
    conf, date = _arrays(integrate([a], buffer=BufferConfig(spatial_radius=100)))
    assert conf == [[L, H, H]] * 3
    assert date == [[5, 12, 12]] * 3


def test_integrate_errors():
    a = _alerts([[N] * 3] * 3, [[D] * 3] * 3)
    with pytest.raises(ConfigurationError):
        integrate([a], ruleset="r9")
    with pytest.raises(ValueError):
        integrate([])
    other = RasterLayer({"x": np.zeros((2, 2))}, TRANSFORM, CRS)
    with pytest.raises(ValueError):
        integrate([a, alert_layer(np.zeros((2, 2), "uint8"), np.full((2, 2), D, "int32"), other)])
    with pytest.raises(ConfigurationError):
        BufferConfig(spatial_radius=-1)


def test_alert_mask_uses_year_window_and_temporal_buffer():
    mapper = EpochDateMapper(dt.date(2019, 1, 1))
    a = _alerts([[H, H, H]] * 3, [[364, 365, 731]] * 3)
    w2020 = mapper.year_window(2020)

    assert alert_mask(a, w2020).tolist() == [[False, True, False]] * 3
    assert alert_mask(a, w2020, temporal_radius=1).tolist() == [[True, True, True]] * 3
