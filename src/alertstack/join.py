#!/usr/bin/env python3
"""alertstack.join

Key-based left joins between result tables.

Used to attach zone display metadata (names, parent region) to aggregation
fragments, and to attach a baseline value (e.g. year-2000 forest area) so a
rate can be derived.

Rules:
- Every primary row survives, in input order.
- At most one secondary row is attached per primary row: the first match
  when the secondary table repeats a key.
- No match -> the attached fields are NA (pd.isna() is True), never a
  dropped row and never an exception.
- derived_rate() is NA where the denominator is zero or missing.
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

Keys = Union[str, Sequence[str]]


def normalize_code(x) -> str:
    """Normalize a zone code to a comparable string.

    Handles ints, floats read back from CSV ('1234.0'), zero-padded and
    space-padded strings. Returns empty string for missing or invalid inputs.
    """
    if x is None:
        return ""
    if isinstance(x, float):
        if np.isnan(x):
            return ""
        if x.is_integer():
            x = int(x)
    s = str(x).strip()
    m = re.search(r"[A-Za-z0-9]+(\.0+)?", s)
    if not m:
        return ""
    token = m.group(0).split(".")[0]
    # Strip leading zeros for purely numeric codes
    if token.isdigit():
        token = str(int(token))
    return token


def _as_list(key: Keys) -> List[str]:
    return [key] if isinstance(key, str) else list(key)


def left_join(
    primary: pd.DataFrame,
    secondary: pd.DataFrame,
    key: Keys,
    fields: Optional[Sequence[str]] = None,
    *,
    normalize_keys: bool = False,
) -> pd.DataFrame:
    """Attach `fields` of the first matching secondary row to each primary row.

    Columns already present in `primary` keep their primary values; only
    missing fields are added. With normalize_keys, "07", 7 and " 7 " match;
    keys that are numeric on one side and text on the other always match that way.
    """
    keys = _as_list(key)
    for k in keys:
        if k not in primary.columns:
            raise KeyError(f"Join key {k!r} missing from primary table")
    if fields is None:
        fields = [c for c in secondary.columns if c not in keys]
    fields = [f for f in fields if f not in primary.columns and f not in keys]

    left = primary.reset_index(drop=True)
    if not fields:
        return left.copy()

    if secondary.empty or any(k not in secondary.columns for k in keys):
        out = left.copy()
        for f in fields:
            out[f] = pd.NA
        return out

    right = secondary[keys + [f for f in fields if f in secondary.columns]]
    # Numeric vs text keys (e.g. a code read back from CSV) are compared as codes
    mixed = any(
        pd.api.types.is_numeric_dtype(left[k]) != pd.api.types.is_numeric_dtype(right[k]) for k in keys
    )
    if normalize_keys or mixed:
        tmp = [f"__key_{i}" for i in range(len(keys))]
        left_on = pd.DataFrame({t: left[k].map(normalize_code) for t, k in zip(tmp, keys)})
        right_on = pd.DataFrame({t: right[k].map(normalize_code) for t, k in zip(tmp, keys)})
        right = pd.concat([right_on, right.drop(columns=keys)], axis=1)
        # Empty codes never match anything
        right = right[(right[tmp] != "").all(axis=1)]
        right = right.drop_duplicates(subset=tmp, keep="first")
        merged = pd.concat([left, left_on], axis=1).merge(right, on=tmp, how="left", validate="many_to_one")
        merged = merged.drop(columns=tmp)
    else:
        right = right.dropna(subset=keys).drop_duplicates(subset=keys, keep="first")
        merged = left.merge(right, on=keys, how="left", validate="many_to_one")

    for f in fields:
        if f not in merged.columns:
            merged[f] = pd.NA
    return merged


def derived_rate(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
    """numerator / denominator, NA where the denominator is zero, negative or missing."""
    num = pd.to_numeric(numerator, errors="coerce").astype("float64")
    den = pd.to_numeric(denominator, errors="coerce").astype("float64")
    ok = den.notna() & (den > 0)
    return (num / den.where(ok)).where(ok)
