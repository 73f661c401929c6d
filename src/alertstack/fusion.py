#!/usr/bin/env python3
"""alertstack.fusion

Combine normalized alert layers into one integrated Alert/Date layer.

Rule sets are pure functions over per-pixel stacks, registered by id in
RULESETS. Only "r1" is defined:

    highest confidence wins; on a confidence tie the earliest date wins;
    no alert anywhere -> NONE.

Because both choices are max/min reductions over the stack, the result does
not depend on the order sources are passed in.

After the rule set:
1. confidence filter (optional): codes not in the filter become NONE.
2. spatial buffer (optional): confirmed pixels grow into NONE neighbours
   within the radius, taking the nearest confirmed pixel's confidence and
   date. HIGH/HIGHEST grow first, LOW only fills what is still empty.

The temporal buffer isn't applied to pixels. It widens the year window a
consumer uses to decide which alerts fall into a year (see alert_mask()).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Sequence, Tuple

import numpy as np
from scipy import ndimage

from alertstack.config import ConfigurationError
from alertstack.dates import YearWindow
from alertstack.normalize import (
    ALERT_BAND,
    DATE_BAND,
    Confidence,
    NO_DATE,
    alert_layer,
    strongest,
)
from alertstack.raster import METERS_PER_DEGREE, RasterLayer

RuleSet = Callable[[np.ndarray, np.ndarray], Tuple[np.ndarray, np.ndarray]]


@dataclass(frozen=True)
class BufferConfig:
    spatial_radius: float = 0.0
    temporal_radius: int = 0

    def __post_init__(self) -> None:
        if self.spatial_radius < 0 or self.temporal_radius < 0:
            raise ConfigurationError("buffer radii must be >= 0")


NO_BUFFER = BufferConfig()


def _ruleset_r1(conf_stack: np.ndarray, date_stack: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    return strongest(conf_stack, date_stack)


RULESETS: Dict[str, RuleSet] = {
    "r1": _ruleset_r1,
}


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _canonical_arrays(layer: RasterLayer) -> Tuple[np.ndarray, np.ndarray]:
    conf = np.ma.filled(layer.band(ALERT_BAND), 0).astype("uint8")
    date_band = layer.band(DATE_BAND)
    date = np.where(np.ma.getmaskarray(date_band), NO_DATE, np.ma.filled(date_band, 0)).astype("int32")
    return conf, date


def _filter_confidence(conf: np.ndarray, date: np.ndarray, keep: Iterable[int]) -> Tuple[np.ndarray, np.ndarray]:
    keep = [int(c) for c in keep]
    drop = ~np.isin(conf, keep)
    conf = np.where(drop, int(Confidence.NONE), conf).astype("uint8")
    date = np.where(drop, NO_DATE, date).astype("int32")
    return conf, date


def _grow(conf: np.ndarray, date: np.ndarray, seeds: np.ndarray, radius: float, sampling: Tuple[float, float]):
    """Fill NONE pixels within `radius` of a seed with the nearest seed's values."""
    if not seeds.any():
        return conf, date
    dist, (ri, ci) = ndimage.distance_transform_edt(~seeds, sampling=sampling, return_indices=True)
    fill = (conf == int(Confidence.NONE)) & (dist <= radius)
    conf = np.where(fill, conf[ri, ci], conf).astype("uint8")
    date = np.where(fill, date[ri, ci], date).astype("int32")
    return conf, date


def _spatial_buffer(conf: np.ndarray, date: np.ndarray, radius_m: float, like: RasterLayer):
    scale = METERS_PER_DEGREE if like.is_geographic else 1.0
    sampling = (abs(like.transform.e) * scale, abs(like.transform.a) * scale)

    high = conf >= int(Confidence.HIGH)
    conf, date = _grow(conf, date, high, radius_m, sampling)
    low = conf == int(Confidence.LOW)
    return _grow(conf, date, low, radius_m, sampling)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def integrate(
    sources: Sequence[RasterLayer],
    ruleset: str = "r1",
    buffer: BufferConfig = NO_BUFFER,
    confidence_filter: Iterable[int] = (),
) -> RasterLayer:
    """Fuse canonical alert layers (all on one grid) into one Alert/Date layer."""
    rule = RULESETS.get(ruleset)
    if rule is None:
        raise ConfigurationError(f"Unknown ruleset {ruleset!r} (known: {sorted(RULESETS)})")
    if not sources:
        raise ValueError("integrate() needs at least one source layer")

    template = sources[0]
    for s in sources[1:]:
        if not s.same_grid(template):
            raise ValueError("All alert sources must share one grid; align_to() them first")

    arrays = [_canonical_arrays(s) for s in sources]
    conf, date = rule(np.stack([a[0] for a in arrays]), np.stack([a[1] for a in arrays]))

    keep = {int(c) for c in confidence_filter} - {int(Confidence.NONE)}
    if keep:
        conf, date = _filter_confidence(conf, date, keep)

    if buffer.spatial_radius > 0:
        conf, date = _spatial_buffer(conf, date, buffer.spatial_radius, template)

    return alert_layer(conf, date, template)


def alert_mask(layer: RasterLayer, window: YearWindow, temporal_radius: int = 0) -> np.ndarray:
    """Boolean mask of confirmed alerts whose date falls in `window`.

    A non-zero temporal radius widens the window on both sides.
    """
    if temporal_radius:
        window = window.widen(temporal_radius)
    alerted = np.ma.filled(layer.band(ALERT_BAND), 0) != int(Confidence.NONE)
    return alerted & window.contains(layer.band(DATE_BAND))
