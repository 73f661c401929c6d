#!/usr/bin/env python3
"""alertstack.normalize

Map each alert product's native bands onto the canonical alert schema:

    Alert  confidence code (Confidence: NONE=0, LOW=2, HIGH=3, HIGHEST=4)
    Date   days since the run epoch, masked where Alert == NONE

Products differ in how they encode both things:
- RADD (Sentinel-1): `Alert` 2=unconfirmed, 3=confirmed; `Date` as YYDDD.
- GLAD-L (Landsat): one `confYY` / `alertDateYY` pair per year; conf 2=probable,
  3=confirmed; dates are day-of-year within 20YY.
- GLAD-S2 (Sentinel-2): `Alert` 1..4 (rising confidence); `Date` as days since
  2018-12-31.

Those differences live in SourceSchema tables, not in code paths.

Design notes:
- A band that is absent for a given source or year normalizes to NONE; it is
  not an error (alert products come and go by year).
- Unknown native codes, masked pixels and undecodable dates are NONE too.
- A pixel with a confidence but no usable date is demoted to NONE so the
  Date-defined-iff-alert invariant always holds.
- Nothing is clipped here; callers clip to their area of interest.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from alertstack.config import ConfigurationError
from alertstack.dates import offsets_from_doy, offsets_from_yyddd, rebase_offsets
from alertstack.raster import RasterLayer

ALERT_BAND = "Alert"
DATE_BAND = "Date"


class Confidence(IntEnum):
    NONE = 0
    LOW = 2
    HIGH = 3
    HIGHEST = 4


# -----------------------------------------------------------------------------
# Schemas
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class DateEncoding:
    """How a native date band encodes a date.

    kind:
      yyddd       e.g. 21032 (RADD)
      doy         day-of-year within `year` (GLAD-L yearly bands)
      days_since  days since `epoch` (GLAD-S2)
    """

    kind: str
    year: Optional[int] = None
    epoch: Optional[dt.date] = None

    def decode(self, values: np.ndarray, epoch: dt.date) -> np.ma.MaskedArray:
        if self.kind == "yyddd":
            return offsets_from_yyddd(values, epoch)
        if self.kind == "doy":
            if self.year is None:
                raise ConfigurationError("doy date encoding needs a year")
            return offsets_from_doy(values, self.year, epoch)
        if self.kind == "days_since":
            if self.epoch is None:
                raise ConfigurationError("days_since date encoding needs an epoch")
            return rebase_offsets(values, self.epoch, epoch)
        raise ConfigurationError(f"Unknown date encoding: {self.kind!r}")


@dataclass(frozen=True)
class BandPair:
    confidence_band: str
    date_band: str
    encoding: DateEncoding


@dataclass(frozen=True)
class SourceSchema:
    name: str
    pairs: Tuple[BandPair, ...]
    confidence_map: Tuple[Tuple[int, Confidence], ...]

    def confidence_for(self, native: np.ndarray) -> np.ndarray:
        out = np.zeros(np.shape(native), dtype="uint8")
        for code, conf in self.confidence_map:
            out[native == code] = int(conf)
        return out


def _glad_l_pairs(years: Sequence[int]) -> Tuple[BandPair, ...]:
    return tuple(
        BandPair(f"conf{y % 100:02d}", f"alertDate{y % 100:02d}", DateEncoding("doy", year=y))
        for y in years
    )


SOURCE_SCHEMAS: Dict[str, SourceSchema] = {
    "radd": SourceSchema(
        name="radd",
        pairs=(BandPair("Alert", "Date", DateEncoding("yyddd")),),
        confidence_map=((2, Confidence.LOW), (3, Confidence.HIGH)),
    ),
    "glad_l": SourceSchema(
        name="glad_l",
        pairs=_glad_l_pairs(range(2019, 2031)),
        confidence_map=((2, Confidence.LOW), (3, Confidence.HIGH)),
    ),
    "glad_s2": SourceSchema(
        name="glad_s2",
        pairs=(BandPair("Alert", "Date", DateEncoding("days_since", epoch=dt.date(2018, 12, 31))),),
        confidence_map=(
            (1, Confidence.LOW),
            (2, Confidence.LOW),
            (3, Confidence.HIGH),
            (4, Confidence.HIGHEST),
        ),
    ),
}


def schema_from_dict(name: str, d: Mapping[str, Any]) -> SourceSchema:
    """Build a SourceSchema from a YAML block.

    Expects:
        pairs:
          - {confidence: conf22, date: alertDate22, encoding: doy, year: 2022}
        confidence_map: {2: LOW, 3: HIGH}
    """
    pairs: List[BandPair] = []
    for p in d.get("pairs") or []:
        epoch = p.get("epoch")
        pairs.append(
            BandPair(
                confidence_band=str(p["confidence"]),
                date_band=str(p["date"]),
                encoding=DateEncoding(
                    kind=str(p.get("encoding", "days_since")),
                    year=int(p["year"]) if "year" in p else None,
                    epoch=dt.date.fromisoformat(str(epoch)) if epoch else None,
                ),
            )
        )
    if not pairs:
        raise ConfigurationError(f"Source schema {name!r} has no band pairs")
    cmap: List[Tuple[int, Confidence]] = []
    for code, label in (d.get("confidence_map") or {}).items():
        try:
            cmap.append((int(code), Confidence[str(label).upper()]))
        except KeyError as e:
            raise ConfigurationError(f"Schema {name!r}: unknown confidence label {label!r}") from e
    return SourceSchema(name=name, pairs=tuple(pairs), confidence_map=tuple(cmap))


def resolve_schema(name: str, extra: Optional[Mapping[str, SourceSchema]] = None) -> SourceSchema:
    if extra and name in extra:
        return extra[name]
    if name in SOURCE_SCHEMAS:
        return SOURCE_SCHEMAS[name]
    raise ConfigurationError(f"Unknown alert source schema {name!r} (known: {sorted(SOURCE_SCHEMAS)})")


# -----------------------------------------------------------------------------
# Normalization
# -----------------------------------------------------------------------------

NO_DATE = np.iinfo("int32").max


def strongest(conf_stack: np.ndarray, date_stack: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Pick, per pixel, the highest confidence and the earliest date among ties.

    conf_stack: (n, rows, cols) uint8 codes
    date_stack: (n, rows, cols) int32 offsets with NO_DATE where undefined
    Returns (confidence, date) with date == NO_DATE where confidence is NONE.
    """
    best_conf = conf_stack.max(axis=0)
    tied = conf_stack == best_conf[None, :, :]
    best_date = np.where(tied, date_stack, NO_DATE).min(axis=0)
    none = best_conf == int(Confidence.NONE)
    best_date = np.where(none, NO_DATE, best_date)
    return best_conf.astype("uint8"), best_date.astype("int32")


def alert_layer(conf: np.ndarray, date: np.ndarray, like: RasterLayer) -> RasterLayer:
    """Wrap canonical arrays as a RasterLayer (Date masked where there's no alert)."""
    conf = np.asarray(conf, dtype="uint8")
    none = (conf == int(Confidence.NONE)) | (np.asarray(date) == NO_DATE)
    conf = np.where(none, int(Confidence.NONE), conf).astype("uint8")
    date_band = np.ma.array(np.where(none, 0, date).astype("int32"), mask=none)
    return RasterLayer({ALERT_BAND: np.ma.array(conf), DATE_BAND: date_band}, like.transform, like.crs)


def empty_alerts(like: RasterLayer) -> RasterLayer:
    h, w = like.shape
    return alert_layer(np.zeros((h, w), "uint8"), np.full((h, w), NO_DATE, "int32"), like)


def _pair_arrays(raw: RasterLayer, schema: SourceSchema, pair: BandPair, epoch: dt.date) -> Tuple[np.ndarray, np.ndarray]:
    native = raw.band(pair.confidence_band)
    conf = schema.confidence_for(np.ma.filled(native, 0))
    conf[np.ma.getmaskarray(native)] = int(Confidence.NONE)

    offsets = pair.encoding.decode(raw.band(pair.date_band), epoch)
    date = np.where(np.ma.getmaskarray(offsets), NO_DATE, np.ma.filled(offsets, 0)).astype("int32")
    # No usable date -> no alert
    conf[date == NO_DATE] = int(Confidence.NONE)
    date[conf == int(Confidence.NONE)] = NO_DATE
    return conf, date


def normalize(raw: RasterLayer, schema: SourceSchema, epoch: dt.date) -> RasterLayer:
    """Convert one product's native layer to canonical Alert/Date bands."""
    confs: List[np.ndarray] = []
    dates: List[np.ndarray] = []
    for pair in schema.pairs:
        if not (raw.has_band(pair.confidence_band) and raw.has_band(pair.date_band)):
            continue
        conf, date = _pair_arrays(raw, schema, pair, epoch)
        confs.append(conf)
        dates.append(date)

    if not confs:
        print(f"[NORMALIZE] {schema.name}: no recognized bands in {raw.band_names}; all NONE")
        return empty_alerts(raw)

    conf, date = strongest(np.stack(confs), np.stack(dates))
    return alert_layer(conf, date, raw)
