#!/usr/bin/env python3
"""alertstack.dates

Day-offset <-> calendar conversions.

Alert layers store dates as integer days since an epoch. Which epoch is a
run-level choice (the integrated layer, every year window cut from it and
every source being rebased must agree), so the epoch is always passed in,
never assumed.

Two calendar modes:
- EXACT (default): a year window is [Jan 1 of year, Jan 1 of year+1) in real
  days, so leap years are 366 days long.
- FIXED_365: every year is exactly 365 days after the anchor year's Jan 1.
  Kept for compatibility with tables that were produced that way. Leap days
  are NOT corrected, so windows drift one day per leap year from the
  calendar. Whether that drift was intended is unknown; use it only to
  reproduce such tables.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Union

import numpy as np


class CalendarMode(str, Enum):
    EXACT = "exact"
    FIXED_365 = "fixed365"


@dataclass(frozen=True)
class YearWindow:
    """Half-open [start, end) interval in day-offset space."""

    year: int
    start: int
    end: int

    @property
    def days(self) -> int:
        return self.end - self.start

    def widen(self, days: int) -> "YearWindow":
        """Return a window extended by `days` on both sides (temporal buffer)."""
        if days < 0:
            raise ValueError("temporal buffer must be >= 0")
        return YearWindow(self.year, self.start - days, self.end + days)

    def contains(self, offsets: np.ndarray) -> np.ndarray:
        """Boolean mask of offsets inside the window. Masked offsets are False."""
        if np.ma.isMaskedArray(offsets):
            inside = (offsets >= self.start) & (offsets < self.end)
            return np.ma.filled(inside, False).astype(bool)
        offsets = np.asarray(offsets)
        return (offsets >= self.start) & (offsets < self.end)


def _first_jan1_on_or_after(d: dt.date) -> int:
    return d.year if (d.month, d.day) == (1, 1) else d.year + 1


def year_window(
    epoch: dt.date,
    year: int,
    mode: Union[CalendarMode, str] = CalendarMode.EXACT,
    anchor_year: Optional[int] = None,
) -> YearWindow:
    """Day-offset window covering calendar `year`, counted from `epoch`.

    In FIXED_365 mode the anchor defaults to the first Jan 1 on or after the
    epoch; windows are then anchor_start + k*365.
    """
    mode = CalendarMode(mode)
    if mode is CalendarMode.EXACT:
        start = (dt.date(year, 1, 1) - epoch).days
        end = (dt.date(year + 1, 1, 1) - epoch).days
        return YearWindow(year, start, end)

    anchor = anchor_year if anchor_year is not None else _first_jan1_on_or_after(epoch)
    anchor_start = (dt.date(anchor, 1, 1) - epoch).days
    start = anchor_start + (year - anchor) * 365
    return YearWindow(year, start, start + 365)


@dataclass(frozen=True)
class EpochDateMapper:
    """Binds one epoch and calendar mode so every call site agrees on both."""

    epoch: dt.date
    mode: CalendarMode = CalendarMode.EXACT
    anchor_year: Optional[int] = None

    def year_window(self, year: int) -> YearWindow:
        return year_window(self.epoch, year, self.mode, self.anchor_year)

    def windows(self, years: Iterable[int]) -> List[YearWindow]:
        return [self.year_window(y) for y in years]

    def day_offset(self, d: dt.date) -> int:
        return (d - self.epoch).days

    def to_date(self, offset: int) -> dt.date:
        return self.epoch + dt.timedelta(days=int(offset))


# -----------------------------------------------------------------------------
# Native date codes -> day offsets
# -----------------------------------------------------------------------------
# All decoders are vectorized and return int32 masked arrays; codes that can't
# be decoded (zero, negative, out-of-range day) come back masked.

def _epoch64(epoch: dt.date) -> np.datetime64:
    return np.datetime64(epoch.isoformat(), "D")


def _years_to_days(years: np.ndarray) -> np.ndarray:
    return (years - 1970).astype("datetime64[Y]").astype("datetime64[D]")


def _is_leap(years: np.ndarray) -> np.ndarray:
    return ((years % 4 == 0) & (years % 100 != 0)) | (years % 400 == 0)


def offsets_from_yyddd(codes: np.ndarray, epoch: dt.date, century: int = 2000) -> np.ma.MaskedArray:
    """Decode YYDDD codes (e.g. 21032 = 2021-02-01) into day offsets since `epoch`."""
    raw = np.ma.asarray(codes)
    filled = np.ma.filled(raw.astype("int64"), 0)
    yy = filled // 1000
    ddd = filled % 1000
    years = century + yy
    max_day = np.where(_is_leap(years), 366, 365)
    bad = np.ma.getmaskarray(raw) | (filled <= 0) | (ddd < 1) | (ddd > max_day)
    days = _years_to_days(np.where(bad, 1970, years)) + (np.where(bad, 1, ddd) - 1)
    offsets = (days - _epoch64(epoch)).astype("int64")
    return np.ma.array(offsets.astype("int32"), mask=bad)


def offsets_from_doy(doy: np.ndarray, year: int, epoch: dt.date) -> np.ma.MaskedArray:
    """Decode day-of-year values (1-based) within `year` into day offsets since `epoch`."""
    raw = np.ma.asarray(doy)
    filled = np.ma.filled(raw.astype("int64"), 0)
    max_day = 366 if _is_leap(np.array([year]))[0] else 365
    bad = np.ma.getmaskarray(raw) | (filled < 1) | (filled > max_day)
    base = (dt.date(year, 1, 1) - epoch).days
    return np.ma.array((base + filled - 1).astype("int32"), mask=bad)


def rebase_offsets(offsets: np.ndarray, source_epoch: dt.date, epoch: dt.date) -> np.ma.MaskedArray:
    """Shift offsets counted from `source_epoch` so they count from `epoch`.

    Non-positive source offsets are treated as "no date" and masked.
    """
    raw = np.ma.asarray(offsets)
    filled = np.ma.filled(raw.astype("int64"), 0)
    bad = np.ma.getmaskarray(raw) | (filled <= 0)
    shift = (source_epoch - epoch).days
    return np.ma.array((filled + shift).astype("int32"), mask=bad)
