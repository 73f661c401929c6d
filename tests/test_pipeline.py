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
from tenacity import wait_none

from alertstack.catalog import MemoryCatalog
from alertstack.config import ConfigurationError, RunConfig, SourceSpec, class_table_from_lists
from alertstack.graph import defer
from alertstack.jobs import ExportJob, get_job, make_context
from alertstack.pipeline import ShardedExportPipeline, assemble, plan_shards
from alertstack.raster import RasterLayer
from alertstack.sink import CsvSink, MemorySink
from alertstack.zones import META_FIELDS

CRS = "EPSG:32748"
X0, Y0 = 500_000.0, 9_000_000.0
TRANSFORM = Affine(100.0, 0.0, X0, 0.0, -100.0, Y0)
GROUPS = (("Riau", ("Riau",)), ("Jambi", ("Jambi",)))
RANGES = ((2019, 2020), (2021, 2021))


def _zones():
    # 12 x 12 grid of 1 ha pixels: zone 101 = west half, 102 = north-east, 201 = south-east
    return gpd.GeoDataFrame(
        {
            "adm1_name": ["Riau", "Riau", "Jambi"],
            "adm2_code": [101, 102, 201],
            "adm2_name": ["Kampar", "Siak", "Muaro Jambi"],
        },
        geometry=[
            box(X0, Y0 - 1200, X0 + 600, Y0),
            box(X0 + 600, Y0 - 600, X0 + 1200, Y0),
            box(X0 + 600, Y0 - 1200, X0 + 1200, Y0 - 600),
        ],
        crs=CRS,
    )


def _config(**overrides):
    kwargs = dict(
        epoch=dt.date(2019, 1, 1),
        year_ranges=RANGES,
        zone_groups=GROUPS,
        alert_sources=(SourceSpec("radd", "radd", "radd"),),
        confidence_filter=frozenset({2, 3, 4}),
        resolution=100.0,
        tile_factor=2,
    )
    kwargs.update(overrides)
    return RunConfig(**kwargs)


def _layer(**bands):
    return RasterLayer({k: np.asarray(v) for k, v in bands.items()}, TRANSFORM, CRS)


def _radd():
    alert = np.zeros((12, 12), dtype="int32")
    date = np.zeros((12, 12), dtype="int32")
    # 36 ha confirmed on 2020-01-01 in zone 101
    alert[:6, :6] = 3
    date[:6, :6] = 20001
    # 18 ha unconfirmed on 2021-01-10 in zone 102
    alert[:3, 6:] = 2
    date[:3, 6:] = 21010
    return _layer(Alert=alert, Date=date)


def _run(job_name, catalog, config=None, **kwargs):
    config = config or _config()
    ctx = make_context(catalog, config, _zones())
    sink = MemorySink()
    pipeline = ShardedExportPipeline(get_job(job_name), ctx, sink, wait=wait_none(), **kwargs)
    results = pipeline.run(plan_shards(config.zone_groups, config.year_ranges))
    return results, sink


# -----------------------------------------------------------------------------
# Shard planning
# -----------------------------------------------------------------------------

def test_plan_shards_is_the_cartesian_product_in_order():
    shards = plan_shards(GROUPS, RANGES)
    assert [s.tag for s in shards] == ["Riau_2019_2020", "Riau_2021_2021", "Jambi_2019_2020", "Jambi_2021_2021"]
    assert shards[0].years == [2019, 2020]
    assert shards[0].description("IDN_alerts_ADM2") == "IDN_alerts_ADM2_Riau_2019_2020"
    assert shards[0].file_prefix("IDN_GFC_loss_ADM2", "_tc30") == "idn_gfc_loss_adm2_Riau_2019_2020_tc30"


@pytest.mark.parametrize(
    "groups, ranges",
    [
        ((), RANGES),
        (GROUPS, ()),
        (GROUPS, ((2021, 2019),)),
        (GROUPS, ((2019, 2021), (2020, 2022))),
        ((("A", ("x",)), ("A", ("y",))), RANGES),
    ],
)
def test_plan_shards_rejects_bad_layouts(groups, ranges):
    with pytest.raises(ConfigurationError):
        plan_shards(groups, ranges)


def test_assemble_orders_rows_and_attaches_metadata():
    frags = [
        pd.DataFrame({"adm2_code": [102, 101], "year": [2020, 2020], "v": [1.0, 2.0]}),
        pd.DataFrame({"adm2_code": [102, 101], "year": [2019, 2019], "v": [3.0, 4.0]}),
    ]
    meta = pd.DataFrame({"adm1_name": ["Riau", "Riau"], "adm2_code": [101, 102], "adm2_name": ["Kampar", "Siak"]})
    out = assemble(frags, meta, META_FIELDS + ["year", "v", "extra"])
    assert out.columns.tolist() == META_FIELDS + ["year", "v", "extra"]
    assert list(zip(out["adm2_code"], out["year"])) == [(101, 2019), (101, 2020), (102, 2019), (102, 2020)]
    assert out["v"].tolist() == [4.0, 2.0, 3.0, 1.0]
    assert out["extra"].isna().all()


# -----------------------------------------------------------------------------
# End-to-end jobs (in-memory catalog and sink)
# -----------------------------------------------------------------------------

def test_alerts_job_end_to_end():
    catalog = MemoryCatalog()
    catalog.add("radd", _radd())
    results, sink = _run("alerts", catalog)

    assert [r.status for r in results] == ["ok"] * 4
    assert sorted(sink.tables) == sorted(
        [
            "IDN_alerts_ADM2_Riau_2019_2020",
            "IDN_alerts_ADM2_Riau_2021_2021",
            "IDN_alerts_ADM2_Jambi_2019_2020",
            "IDN_alerts_ADM2_Jambi_2021_2021",
        ]
    )

    riau = sink.tables["IDN_alerts_ADM2_Riau_2019_2020"]
    assert riau.columns.tolist() == META_FIELDS + ["year", "ha_alerts"]
    assert list(zip(riau["adm2_code"], riau["year"])) == [(101, 2019), (101, 2020), (102, 2019), (102, 2020)]
    assert riau["ha_alerts"].tolist() == pytest.approx([0.0, 36.0, 0.0, 0.0])
    assert riau["adm2_name"].tolist() == ["Kampar", "Kampar", "Siak", "Siak"]

    later = sink.tables["IDN_alerts_ADM2_Riau_2021_2021"]
    assert later["ha_alerts"].tolist() == pytest.approx([0.0, 18.0])

    jambi = sink.tables["IDN_alerts_ADM2_Jambi_2019_2020"]
    assert jambi["ha_alerts"].tolist() == pytest.approx([0.0, 0.0])


def test_alerts_confidence_filter_drops_low():
    catalog = MemoryCatalog()
    catalog.add("radd", _radd())
    _, sink = _run("alerts", catalog, _config(confidence_filter=frozenset({3, 4})))
    assert sink.tables["IDN_alerts_ADM2_Riau_2021_2021"]["ha_alerts"].tolist() == pytest.approx([0.0, 0.0])


def test_alerts_without_any_source_coverage_are_zero():
    results, sink = _run("alerts", MemoryCatalog())
    assert all(r.ok for r in results)
    for table in sink.tables.values():
        assert (table["ha_alerts"] == 0).all()


def test_rerun_writes_the_same_descriptions():
    catalog = MemoryCatalog()
    catalog.add("radd", _radd())
    _, first = _run("alerts", catalog)
    _, second = _run("alerts", catalog, max_workers=3)
    assert sorted(first.tables) == sorted(second.tables)
    for name, table in first.tables.items():
        pd.testing.assert_frame_equal(table, second.tables[name])


def _gfc():
    tree = np.full((12, 12), 10, dtype="int32")
    tree[:, :6] = 50
    lossyear = np.zeros((12, 12), dtype="int32")
    lossyear[:2, :6] = 20
    # Loss outside forest is not counted
    lossyear[:2, 6:] = 20
    return _layer(treecover2000=tree, lossyear=lossyear, datamask=np.ones((12, 12), dtype="int32"))


def test_forest_loss_rate_and_absent_rate_for_zero_baseline():
    catalog = MemoryCatalog()
    catalog.add("gfc", _gfc())
    results, sink = _run("forest-loss", catalog)
    assert all(r.ok for r in results)

    riau = sink.tables["IDN_GFC_loss_ADM2_Riau_2019_2020_tc30"]
    assert riau.columns.tolist() == META_FIELDS + ["year", "loss_ha", "forest2000_ha", "defor_rate"]
    assert riau["loss_ha"].tolist() == pytest.approx([0.0, 12.0, 0.0, 0.0])
    assert riau["forest2000_ha"].tolist() == pytest.approx([72.0, 72.0, 0.0, 0.0])
    assert riau["defor_rate"].iloc[1] == pytest.approx(12.0 / 72.0)
    assert riau["defor_rate"].iloc[0] == 0.0
    # No forest in 2000 -> rate is absent, not inf
    assert riau["defor_rate"].iloc[2:].isna().all()


def test_forest_loss_without_coverage_has_zero_area_and_absent_rate():
    results, sink = _run("forest-loss", MemoryCatalog())
    assert all(r.ok for r in results)
    table = sink.tables["IDN_GFC_loss_ADM2_Jambi_2021_2021_tc30"]
    assert table["loss_ha"].tolist() == [0.0]
    assert table["forest2000_ha"].tolist() == [0.0]
    assert table["defor_rate"].isna().all()


def test_landcover_columns_are_static_and_shares_derived():
    classes = np.zeros((12, 12), dtype="int32")
    classes[:, 4:] = 2
    classes[:, 9:] = 13
    catalog = MemoryCatalog()
    catalog.add("mcd12q1", _layer(LC_Type1=classes), dt.date(2019, 1, 1), dt.date(2020, 1, 1))
    config = _config(class_table=class_table_from_lists([0, 2, 13], ["water", "evergreen_broadleaf", "urban"]))
    results, sink = _run("landcover", catalog, config)
    assert all(r.ok for r in results)

    riau = sink.tables["IDN_landcover_ADM2_Riau_2019_2020"]
    assert riau.columns.tolist() == META_FIELDS + [
        "year",
        "total_ha",
        "ha_water",
        "ha_evergreen_broadleaf",
        "ha_urban",
        "share_water",
        "share_evergreen_broadleaf",
        "share_urban",
    ]
    kampar_2019 = riau.iloc[0]
    assert kampar_2019["total_ha"] == pytest.approx(72.0)
    assert kampar_2019["ha_water"] == pytest.approx(48.0)
    assert kampar_2019["share_evergreen_broadleaf"] == pytest.approx(1.0 / 3.0)
    assert kampar_2019["ha_urban"] == 0.0

    siak_2019 = riau.iloc[2]
    assert siak_2019["ha_evergreen_broadleaf"] == pytest.approx(18.0)
    assert siak_2019["share_urban"] == pytest.approx(0.5)

    # 2020 has no landcover raster: zero areas, absent shares
    kampar_2020 = riau.iloc[1]
    assert kampar_2020["total_ha"] == 0.0
    assert pd.isna(kampar_2020["share_water"])


def test_clouds_mean_and_clear_share():
    prob = np.full((12, 12), 40.0)
    prob[:, 6:] = 80.0
    catalog = MemoryCatalog()
    catalog.add("s2_cloud_probability", _layer(probability=prob), dt.date(2019, 1, 1), dt.date(2019, 2, 1))
    catalog.add("s2_cloud_probability", _layer(probability=prob / 2), dt.date(2019, 2, 1), dt.date(2019, 3, 1))
    _, sink = _run("clouds", catalog)

    riau = sink.tables["IDN_cloud_ADM2_Riau_2019_2020"]
    assert riau["cloud_share"].tolist() == pytest.approx([0.3, 0.0, 0.6, 0.0])
    assert riau["clear_share"].tolist() == pytest.approx([0.7, 1.0, 0.4, 1.0])


def test_burned_area_counts_each_pixel_once_per_year():
    jan = np.zeros((12, 12), dtype="int32")
    jan[:2, :6] = 15
    feb = np.zeros((12, 12), dtype="int32")
    feb[:4, :6] = 40
    catalog = MemoryCatalog()
    catalog.add("mcd64a1", _layer(BurnDate=jan), dt.date(2020, 1, 1), dt.date(2020, 2, 1))
    catalog.add("mcd64a1", _layer(BurnDate=feb), dt.date(2020, 2, 1), dt.date(2020, 3, 1))
    _, sink = _run("burned-area", catalog)

    riau = sink.tables["IDN_burned_ha_ADM2_Riau_2019_2020"]
    assert riau.columns.tolist() == META_FIELDS + ["year", "burned_ha"]
    assert riau["burned_ha"].tolist() == pytest.approx([0.0, 24.0, 0.0, 0.0])


def test_precipitation_calendar_year_and_wet_season():
    catalog = MemoryCatalog()
    for day, mm in ((dt.date(2019, 12, 1), 10.0), (dt.date(2020, 3, 1), 5.0), (dt.date(2020, 6, 1), 20.0)):
        catalog.add("chirps", _layer(precipitation=np.full((12, 12), mm)), day, day + dt.timedelta(days=1))
    _, sink = _run("precipitation", catalog)

    riau = sink.tables["IDN_CHIRPS_ADM2_Riau_2019_2020"]
    assert riau.columns.tolist() == META_FIELDS + ["year", "calendar_year_mm", "rainy_season_mm"]
    kampar = riau[riau["adm2_code"] == 101]
    assert kampar["calendar_year_mm"].tolist() == pytest.approx([10.0, 25.0])
    # Nov 2019 .. Apr 2020 feeds 2020; nothing declared for the 2019 wet season
    assert kampar["rainy_season_mm"].tolist() == pytest.approx([0.0, 15.0])


# -----------------------------------------------------------------------------
# Failure isolation, retries, dry run
# -----------------------------------------------------------------------------

class _CountingJob(ExportJob):
    name = "counting"
    stem = "count"
    measures = ("n",)

    def __init__(self, fail_group):
        self.fail_group = fail_group
        self.calls = []

    def _count(self, zones, shard):
        self.calls.append(shard.tag)
        if shard.group == self.fail_group:
            raise RuntimeError(f"source offline for {shard.group}")
        return pd.DataFrame({"adm2_code": zones["adm2_code"].tolist(), "n": [float(len(zones))] * len(zones)})

    def year_node(self, ctx, shard, zones, year):
        return defer(self._count, zones, shard, label="count")


@pytest.mark.parametrize("max_workers", [1, 3])
def test_failed_shard_is_retried_then_reported_without_stopping_others(max_workers):
    config = _config(year_ranges=((2019, 2019), (2020, 2020)))
    job = _CountingJob(fail_group="Jambi")
    sink = MemorySink()
    pipeline = ShardedExportPipeline(
        job, make_context(MemoryCatalog(), config, _zones()), sink, max_workers=max_workers, retries=2, wait=wait_none()
    )
    shards = plan_shards(config.zone_groups, config.year_ranges)
    results = pipeline.run(shards)

    assert [r.shard for r in results] == shards
    assert [r.status for r in results] == ["ok", "ok", "failed", "failed"]
    failed = results[2]
    assert failed.attempts == 3
    assert failed.error == "RuntimeError: source offline for Jambi"
    assert job.calls.count("Jambi_2019_2019") == 3
    assert sorted(sink.tables) == ["IDN_count_ADM2_Riau_2019_2019", "IDN_count_ADM2_Riau_2020_2020"]
    assert results[0].rows == 2


def test_describe_builds_graphs_without_running_them(capsys):
    config = _config()
    job = _CountingJob(fail_group="Riau")
    pipeline = ShardedExportPipeline(job, make_context(MemoryCatalog(), config, _zones()), MemorySink())
    results = pipeline.describe(plan_shards(config.zone_groups, config.year_ranges))

    assert [r.status for r in results] == ["planned"] * 4
    assert job.calls == []
    assert "IDN_count_ADM2_Riau_2019_2020" in capsys.readouterr().out


def test_pipeline_rejects_bad_worker_settings():
    ctx = make_context(MemoryCatalog(), _config(), _zones())
    with pytest.raises(ConfigurationError):
        ShardedExportPipeline(get_job("alerts"), ctx, MemorySink(), max_workers=0)
    with pytest.raises(ConfigurationError):
        ShardedExportPipeline(get_job("alerts"), ctx, MemorySink(), retries=-1)
    with pytest.raises(ConfigurationError):
        get_job("nope")


@pytest.mark.parametrize(
    "params",
    [
        {"alerts": {"resolution": 0}},
        {"landcover": {"tile_factor": 0}},
        {"precipitation": {"wet_start_month": 13}},
    ],
)
def test_bad_job_settings_fail_before_any_shard_runs(params):
    catalog = MemoryCatalog()
    catalog.add("radd", _radd())
    with pytest.raises(ConfigurationError):
        _run("alerts", catalog, config=_config(params=params), retries=1)


def test_csv_sink_writes_absent_values_as_empty_cells(tmp_path):
    table = pd.DataFrame({"adm2_code": [101, 102], "defor_rate": [0.5, np.nan]})
    sink = CsvSink(tmp_path / "exports")
    path = sink.write(table, "IDN_GFC_loss_ADM2_Riau_2019_2020_tc30", "idn_gfc_loss_adm2_Riau_2019_2020_tc30")

    assert path == tmp_path / "exports" / "idn_gfc_loss_adm2_Riau_2019_2020_tc30.csv"
    assert path.read_text(encoding="utf-8").splitlines() == ["adm2_code,defor_rate", "101,0.5", "102,"]
    assert not list((tmp_path / "exports").glob("*.part"))
