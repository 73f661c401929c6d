#!/usr/bin/env python3
"""alertstack.jobs

Export job types. Each job knows, for one shard:
- which catalog products to read
- how to turn them into a per-pixel measure for one year
- which columns its table has

and builds a deferred graph (alertstack.graph) with one node per year that
materializes to a DataFrame fragment [adm2_code, year, <measures>]. The
pipeline concatenates the fragments, attaches zone metadata and calls
finalize() for derived columns.

Jobs:
  alerts         ha_alerts                                fused change alerts
  burned-area    burned_ha                                MCD64A1 BurnDate > 0
  landcover      total_ha, ha_<class>*, share_<class>*    MCD12Q1 LC_Type1
  forest-loss    loss_ha, forest2000_ha, defor_rate       Hansen GFC
  precipitation  calendar_year_mm, rainy_season_mm        CHIRPS daily
  clouds         cloud_share, clear_share                 S2 cloud probability

Design notes:
- A year without source rasters is not an error: the measure layer is None
  and every zone gets a zero-valued row.
- Per-job settings (product name, resolution, tile factor) can be
  overridden under `params: {<job>: {...}}` in run.yaml; otherwise the
  run-level resolution/tile_factor apply.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd

from alertstack.catalog import RasterCatalog
from alertstack.config import ClassTable, ConfigurationError, RunConfig, check_job_params
from alertstack.dates import CalendarMode, EpochDateMapper, YearWindow
from alertstack.fusion import BufferConfig, alert_mask, integrate
from alertstack.graph import Deferred, defer
from alertstack.join import derived_rate, left_join
from alertstack.normalize import SourceSchema, normalize, resolve_schema, schema_from_dict
from alertstack.raster import RasterLayer, composite
from alertstack.zonal import aggregate
from alertstack.zones import KEY_FIELD, META_FIELDS


# -----------------------------------------------------------------------------
# Context
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class JobContext:
    """Read-only state shared by every shard of a run."""

    catalog: RasterCatalog
    config: RunConfig
    zones: gpd.GeoDataFrame
    mapper: EpochDateMapper
    schemas: Mapping[str, SourceSchema] = field(default_factory=dict)

    def setting(self, job: str, name: str, default: Any = None) -> Any:
        job_params = self.config.params.get(job) or {}
        return job_params.get(name, default)

    def resolution(self, job: str) -> float:
        return float(self.setting(job, "resolution", self.config.resolution))

    def tile_factor(self, job: str) -> int:
        return int(self.setting(job, "tile_factor", self.config.tile_factor))


def make_context(catalog: RasterCatalog, config: RunConfig, zones: gpd.GeoDataFrame) -> JobContext:
    """Build the shared context; raises ConfigurationError before any shard is planned."""
    check_job_params(config.params)
    mapper = EpochDateMapper(config.epoch, CalendarMode(config.calendar_mode))
    extra = config.params.get("schemas") or {}
    schemas = {str(k): schema_from_dict(str(k), v) for k, v in extra.items()}
    for src in config.alert_sources:
        resolve_schema(src.schema, schemas)
    return JobContext(catalog=catalog, config=config, zones=zones, mapper=mapper, schemas=schemas)


# -----------------------------------------------------------------------------
# Shared helpers (graph node functions)
# -----------------------------------------------------------------------------

def _year_span(year: int) -> Tuple[dt.date, dt.date]:
    return dt.date(year, 1, 1), dt.date(year + 1, 1, 1)


def _bounds(zones: gpd.GeoDataFrame) -> Optional[Tuple[float, float, float, float]]:
    if zones.empty:
        return None
    return tuple(float(v) for v in zones.total_bounds)


def _query(ctx: JobContext, product: str, start: dt.date, end: dt.date, zones: gpd.GeoDataFrame) -> List[RasterLayer]:
    return ctx.catalog.query(product, start, end, bounds=_bounds(zones), bounds_crs=zones.crs)


def _align(layers: Sequence[RasterLayer]) -> List[RasterLayer]:
    if not layers:
        return []
    template = layers[0]
    return [template] + [lyr.align_to(template) for lyr in layers[1:]]


def _with_year(frag: pd.DataFrame, year: int) -> pd.DataFrame:
    frag = frag.copy()
    frag.insert(1, "year", int(year))
    return frag


def _zonal_sum(ctx: JobContext, job: str, layer: Optional[RasterLayer], zones, output: str, method: str = "regions"):
    return aggregate(
        layer,
        zones,
        resolution=ctx.resolution(job),
        tile_factor=ctx.tile_factor(job),
        output=output,
        method=method,
    )


def _zonal_mean(ctx: JobContext, job: str, layer: Optional[RasterLayer], zones, output: str):
    return aggregate(
        layer,
        zones,
        resolution=ctx.resolution(job),
        tile_factor=ctx.tile_factor(job),
        reducer="mean",
        output=output,
    )


def _measure_frame(zones: gpd.GeoDataFrame) -> pd.DataFrame:
    return pd.DataFrame({KEY_FIELD: zones[KEY_FIELD].tolist()})


# -----------------------------------------------------------------------------
# Job base
# -----------------------------------------------------------------------------

class ExportJob:
    name = ""
    stem = ""
    measures: Tuple[str, ...] = ()

    def prefix(self, config: RunConfig) -> str:
        return f"{config.country_tag}_{self.stem}_ADM2"

    def suffix(self, config: RunConfig) -> str:
        return ""

    def product(self, ctx: JobContext, default: str) -> str:
        return str(ctx.setting(self.name, "product", default))

    def measure_columns(self, ctx: JobContext) -> List[str]:
        return list(self.measures)

    def columns(self, ctx: JobContext) -> List[str]:
        return META_FIELDS + ["year"] + self.measure_columns(ctx)

    def build(self, ctx: JobContext, shard, zones: gpd.GeoDataFrame) -> List[Deferred]:
        return [
            defer(_with_year, self.year_node(ctx, shard, zones, year), year, label=f"{self.name} {year}")
            for year in shard.years
        ]

    def year_node(self, ctx: JobContext, shard, zones: gpd.GeoDataFrame, year: int) -> Deferred:
        raise NotImplementedError

    def finalize(self, ctx: JobContext, table: pd.DataFrame) -> pd.DataFrame:
        return table


# -----------------------------------------------------------------------------
# alerts
# -----------------------------------------------------------------------------

def _load_alert_sources(ctx: JobContext, zones: gpd.GeoDataFrame, start: dt.date, end: dt.date) -> List[RasterLayer]:
    normalized: List[RasterLayer] = []
    for src in ctx.config.alert_sources:
        schema = resolve_schema(src.schema, ctx.schemas)
        for raw in _query(ctx, src.product, start, end, zones):
            normalized.append(normalize(raw, schema, ctx.config.epoch))
    return normalized


def _fuse(ctx: JobContext, layers: List[RasterLayer]) -> Optional[RasterLayer]:
    if not layers:
        return None
    return integrate(
        _align(layers),
        ruleset=ctx.config.ruleset_id,
        buffer=BufferConfig(ctx.config.spatial_buffer, ctx.config.temporal_buffer),
        confidence_filter=ctx.config.confidence_filter,
    )


def _alert_area(fused: Optional[RasterLayer], window: YearWindow, temporal_radius: int) -> Optional[RasterLayer]:
    if fused is None:
        return None
    return fused.area_ha(alert_mask(fused, window, temporal_radius))


class AlertsJob(ExportJob):
    name = "alerts"
    stem = "alerts"
    measures = ("ha_alerts",)

    def build(self, ctx: JobContext, shard, zones: gpd.GeoDataFrame) -> List[Deferred]:
        if not ctx.config.alert_sources:
            raise ConfigurationError("alerts job needs at least one entry in alert_sources")
        pad = dt.timedelta(days=ctx.config.temporal_buffer)
        first = ctx.mapper.year_window(shard.start_year)
        last = ctx.mapper.year_window(shard.end_year)
        start = ctx.mapper.to_date(first.start) - pad
        end = ctx.mapper.to_date(last.end) + pad
        raw = defer(_load_alert_sources, ctx, zones, start, end, label=f"normalize {len(ctx.config.alert_sources)} source(s)")
        fused = defer(_fuse, ctx, raw, label=f"integrate ruleset={ctx.config.ruleset_id}")
        nodes = []
        for year in shard.years:
            window = ctx.mapper.year_window(year)
            area = defer(_alert_area, fused, window, ctx.config.temporal_buffer, label=f"mask {window.start}..{window.end}")
            frag = defer(_zonal_sum, ctx, self.name, area, zones, "ha_alerts", label="aggregate ha_alerts")
            nodes.append(defer(_with_year, frag, year, label=f"alerts {year}"))
        return nodes


# -----------------------------------------------------------------------------
# burned-area
# -----------------------------------------------------------------------------

def _burned_area(ctx: JobContext, product: str, band: str, zones, year: int) -> Optional[RasterLayer]:
    start, end = _year_span(year)
    flags = []
    for lyr in _query(ctx, product, start, end, zones):
        burn = lyr.band(band if lyr.has_band(band) else None)
        flag = np.ma.array(np.ma.filled(burn, 0) > 0, mask=np.ma.getmaskarray(burn)).astype("uint8")
        flags.append(RasterLayer({"burned": flag}, lyr.transform, lyr.crs))
    burned = composite(_align(flags), how="max")
    if burned is None:
        return None
    return burned.area_ha(np.ma.filled(burned.band(), 0) == 1)


class BurnedAreaJob(ExportJob):
    name = "burned-area"
    stem = "burned_ha"
    measures = ("burned_ha",)

    def year_node(self, ctx, shard, zones, year):
        product = self.product(ctx, "mcd64a1")
        area = defer(_burned_area, ctx, product, "BurnDate", zones, year, label=f"{product} BurnDate>0 {year}")
        return defer(_zonal_sum, ctx, self.name, area, zones, "burned_ha", label="aggregate burned_ha")


# -----------------------------------------------------------------------------
# landcover
# -----------------------------------------------------------------------------

def _landcover_layer(ctx: JobContext, product: str, band: str, zones, year: int) -> Optional[RasterLayer]:
    start, end = _year_span(year)
    layers = [lyr.select(band) if lyr.has_band(band) else lyr for lyr in _query(ctx, product, start, end, zones)]
    if not layers:
        return None
    lc = composite(_align(layers), how="mosaic")
    return lc.rename({lc.band_names[0]: "class_code"})


def _landcover_table(ctx: JobContext, job: str, lc: Optional[RasterLayer], zones, classes: ClassTable) -> pd.DataFrame:
    out = _measure_frame(zones)
    area_cols = classes.area_fields()
    if lc is None:
        out["total_ha"] = 0.0
        for c in area_cols:
            out[c] = 0.0
        return out

    total = _zonal_sum(ctx, job, lc.area_ha(), zones, "total_ha")
    by_class = aggregate(
        lc.area_ha(~np.ma.getmaskarray(lc.band())),
        zones,
        resolution=ctx.resolution(job),
        tile_factor=ctx.tile_factor(job),
        group_band=lc,
        output="ha",
    )
    if by_class.empty:
        wide = pd.DataFrame()
    else:
        wide = by_class.pivot_table(index=KEY_FIELD, columns="class_code", values="ha", aggfunc="sum")
    out = left_join(out, total, KEY_FIELD)
    for code, name in classes.entries:
        col = f"ha_{name}"
        values = wide[code] if code in wide.columns else pd.Series(dtype="float64")
        out[col] = out[KEY_FIELD].map(values).fillna(0.0).astype("float64")
    return out


class LandcoverJob(ExportJob):
    name = "landcover"
    stem = "landcover"

    def _classes(self, ctx: JobContext) -> ClassTable:
        if ctx.config.class_table is None:
            raise ConfigurationError("landcover job needs a 'classes' table in run.yaml")
        return ctx.config.class_table

    def measure_columns(self, ctx):
        classes = self._classes(ctx)
        return ["total_ha"] + classes.area_fields() + classes.share_fields()

    def year_node(self, ctx, shard, zones, year):
        product = self.product(ctx, "mcd12q1")
        band = str(ctx.setting(self.name, "band", "LC_Type1"))
        lc = defer(_landcover_layer, ctx, product, band, zones, year, label=f"{product} {band} {year}")
        return defer(_landcover_table, ctx, self.name, lc, zones, self._classes(ctx), label="aggregate per class")

    def finalize(self, ctx, table):
        table = table.copy()
        for name in self._classes(ctx).names:
            table[f"share_{name}"] = derived_rate(table[f"ha_{name}"], table["total_ha"])
        return table


# -----------------------------------------------------------------------------
# forest-loss
# -----------------------------------------------------------------------------

def _forest_mask(lyr: RasterLayer, threshold: int) -> np.ndarray:
    tree = np.ma.filled(lyr.band("treecover2000"), 0)
    land = np.ma.filled(lyr.band("datamask"), 0) == 1
    return (tree >= threshold) & land


def _gfc_layer(ctx: JobContext, product: str, zones) -> Optional[RasterLayer]:
    # Static product; the date range is irrelevant
    layers = _query(ctx, product, dt.date(2000, 1, 1), dt.date(2001, 1, 1), zones)
    if not layers:
        return None
    return layers[0]


def _forest_baseline(ctx: JobContext, job: str, gfc: Optional[RasterLayer], zones) -> pd.DataFrame:
    area = None if gfc is None else gfc.area_ha(_forest_mask(gfc, ctx.config.treecover_threshold))
    return _zonal_sum(ctx, job, area, zones, "forest2000_ha", method="grouped")


def _forest_loss(ctx: JobContext, job: str, gfc: Optional[RasterLayer], zones, year: int, baseline: pd.DataFrame) -> pd.DataFrame:
    area = None
    if gfc is not None:
        lossyear = np.ma.filled(gfc.band("lossyear"), 0)
        area = gfc.area_ha((lossyear == year - 2000) & _forest_mask(gfc, ctx.config.treecover_threshold))
    loss = _zonal_sum(ctx, job, area, zones, "loss_ha", method="grouped")
    return left_join(loss, baseline, KEY_FIELD, ["forest2000_ha"])


class ForestLossJob(ExportJob):
    name = "forest-loss"
    stem = "GFC_loss"
    measures = ("loss_ha", "forest2000_ha", "defor_rate")

    def suffix(self, config):
        return f"_tc{config.treecover_threshold}"

    def build(self, ctx, shard, zones):
        product = self.product(ctx, "gfc")
        gfc = defer(_gfc_layer, ctx, product, zones, label=f"{product} lossyear/treecover2000/datamask")
        baseline = defer(_forest_baseline, ctx, self.name, gfc, zones, label=f"forest2000 tc>={ctx.config.treecover_threshold}")
        return [
            defer(
                _with_year,
                defer(_forest_loss, ctx, self.name, gfc, zones, year, baseline, label=f"loss_ha {year}"),
                year,
                label=f"forest-loss {year}",
            )
            for year in shard.years
        ]

    def finalize(self, ctx, table):
        table = table.copy()
        table["defor_rate"] = derived_rate(table["loss_ha"], table["forest2000_ha"])
        return table


# -----------------------------------------------------------------------------
# precipitation
# -----------------------------------------------------------------------------

def _precip_total(ctx: JobContext, product: str, zones, start: dt.date, end: dt.date) -> Optional[RasterLayer]:
    layers = _query(ctx, product, start, end, zones)
    if not layers:
        return None
    return composite(_align(layers), how="sum")


def _precip_table(ctx: JobContext, job: str, annual, wet, zones) -> pd.DataFrame:
    cal = _zonal_mean(ctx, job, annual, zones, "calendar_year_mm")
    rainy = _zonal_mean(ctx, job, wet, zones, "rainy_season_mm")
    return left_join(cal, rainy, KEY_FIELD, ["rainy_season_mm"])


class PrecipitationJob(ExportJob):
    name = "precipitation"
    stem = "CHIRPS"
    measures = ("calendar_year_mm", "rainy_season_mm")

    def year_node(self, ctx, shard, zones, year):
        product = self.product(ctx, "chirps")
        wet_month = int(ctx.setting(self.name, "wet_start_month", 11))
        dry_month = int(ctx.setting(self.name, "wet_end_month", 4))
        annual = defer(_precip_total, ctx, product, zones, *_year_span(year), label=f"{product} sum {year}")
        wet = defer(
            _precip_total,
            ctx,
            product,
            zones,
            dt.date(year - 1, wet_month, 1),
            dt.date(year, dry_month, 1),
            label=f"{product} sum {year - 1}-{wet_month:02d}..{year}-{dry_month:02d}",
        )
        return defer(_precip_table, ctx, self.name, annual, wet, zones, label="aggregate mean mm")


# -----------------------------------------------------------------------------
# clouds
# -----------------------------------------------------------------------------

def _cloud_fraction(ctx: JobContext, product: str, band: str, zones, year: int) -> Optional[RasterLayer]:
    start, end = _year_span(year)
    layers = [lyr.select(band) if lyr.has_band(band) else lyr for lyr in _query(ctx, product, start, end, zones)]
    mean = composite(_align(layers), how="mean")
    if mean is None:
        return None
    return RasterLayer({"cloud": mean.band() / 100.0}, mean.transform, mean.crs)


class CloudsJob(ExportJob):
    """Mean cloud probability per zone and year.

    A year without any imagery reports cloud_share=0 and clear_share=1; that
    means "no data", not "fully clear".
    """

    name = "clouds"
    stem = "cloud"
    measures = ("cloud_share", "clear_share")

    def year_node(self, ctx, shard, zones, year):
        product = self.product(ctx, "s2_cloud_probability")
        frac = defer(_cloud_fraction, ctx, product, "probability", zones, year, label=f"{product} mean/100 {year}")
        return defer(_zonal_mean, ctx, self.name, frac, zones, "cloud_share", label="aggregate mean cloud_share")

    def finalize(self, ctx, table):
        table = table.copy()
        cloud = pd.to_numeric(table["cloud_share"], errors="coerce").astype("float64")
        table["cloud_share"] = cloud
        table["clear_share"] = 1.0 - cloud
        return table


JOBS: Dict[str, ExportJob] = {
    job.name: job
    for job in (AlertsJob(), BurnedAreaJob(), LandcoverJob(), ForestLossJob(), PrecipitationJob(), CloudsJob())
}


def get_job(name: str) -> ExportJob:
    if name not in JOBS:
        raise ConfigurationError(f"Unknown job {name!r} (known: {sorted(JOBS)})")
    return JOBS[name]
