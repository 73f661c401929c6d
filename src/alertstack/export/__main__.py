#!/usr/bin/env python3
"""alertstack.export

Zonal export CLI.

This is one of two alertstack subsystem CLIs:
- alertstack.registry → zone definition (prep-zones)
- alertstack.export   → per-zone, per-year tables (this file)

One subcommand per job type; each run is split into (zone group x year
range) shards from run.yaml and writes one CSV per shard.

Design notes:
- Configuration is validated before any shard is scheduled; problems exit
  with a message (ConfigurationError -> SystemExit).
- Existing shard outputs are skipped unless --overwrite.
- Exit code 2 when any shard failed (the others are still written).
- Heavy modules are lazy-imported so --help stays fast.

Examples:
  # Fused alert area per ADM2 and year
  python -m alertstack.export alerts

  # Only two island groups, 4 parallel shards
  python -m alertstack.export landcover --group Sumatra --group Kalimantan --max-workers 4

  # Show shards and their job graphs without reading any raster
  python -m alertstack.export --dry-run forest-loss

  # List shards / check catalog files
  python -m alertstack.export plan
  python -m alertstack.export verify --product all
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from alertstack.config import (
    ConfigurationError,
    DEFAULT_RUN_YAML,
    DEFAULT_SOURCES_YAML,
    DEFAULT_ZONES_GPKG,
    RunConfig,
    load_run_config,
)

JOB_COMMANDS = ["alerts", "burned-area", "landcover", "forest-loss", "precipitation", "clouds"]


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for alertstack.export."""
    ap = argparse.ArgumentParser(
        prog="alertstack.export",
        description="Per-zone, per-year exports (sharded by zone group and year range)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m alertstack.registry  # Zone definition
  python -m alertstack.export    # Zonal exports (this)
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--run-yaml",
        type=Path,
        default=DEFAULT_RUN_YAML,
        help=f"Path to run YAML (default: {DEFAULT_RUN_YAML})",
    )
    ap.add_argument(
        "--sources-yaml",
        type=Path,
        default=DEFAULT_SOURCES_YAML,
        help=f"Path to sources YAML (default: {DEFAULT_SOURCES_YAML})",
    )
    ap.add_argument(
        "--zones-gpkg",
        type=Path,
        default=DEFAULT_ZONES_GPKG,
        help=f"Zones GeoPackage from registry prep-zones (default: {DEFAULT_ZONES_GPKG})",
    )
    ap.add_argument("--zones-layer", default="zones", help="Layer name in the zones GeoPackage")
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned shards (and job graphs) without reading rasters or writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Rewrite shard outputs that already exist",
    )

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    for name in JOB_COMMANDS:
        job = sub.add_parser(name, help=f"Export the {name} table")
        job.add_argument(
            "--group",
            action="append",
            default=None,
            help="Only run this zone group (repeatable; default: all groups in run.yaml)",
        )
        job.add_argument("--max-workers", type=int, default=None, help="Parallel shards (default from run.yaml)")
        job.add_argument("--retries", type=int, default=None, help="Retries per failed shard (default from run.yaml)")
        job.add_argument("--out-dir", type=Path, default=None, help="Output directory (default from run.yaml)")

    # --- plan ---
    plan = sub.add_parser("plan", help="List shards and output names for a job")
    plan.add_argument("--job", default="alerts", choices=JOB_COMMANDS, help="Job whose names to show")

    # --- verify ---
    ver = sub.add_parser("verify", help="Check that catalog files exist for the configured years")
    ver.add_argument("--product", default="all", help="Product id to verify (or 'all')")
    ver.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _select_shards(config: RunConfig, groups: Optional[List[str]]):
    from alertstack.pipeline import plan_shards

    shards = plan_shards(config.zone_groups, config.year_ranges)
    if groups:
        known = {g for g, _ in config.zone_groups}
        unknown = [g for g in groups if g not in known]
        if unknown:
            raise ConfigurationError(f"Unknown zone group(s) {unknown} (known: {sorted(known)})")
        shards = [s for s in shards if s.group in groups]
    return shards


def _handle_job(args: argparse.Namespace, config: RunConfig) -> int:
    """Run one export job over every selected shard."""
    from alertstack.jobs import get_job

    job = get_job(args.command)
    shards = _select_shards(config, args.group)
    out_dir = args.out_dir or config.out_dir
    max_workers = args.max_workers or config.max_workers
    retries = config.retries if args.retries is None else args.retries

    if args.dry_run and not args.zones_gpkg.exists():
        print(f"[dry-run] {job.name}: {len(shards)} shard(s) -> {out_dir}")
        for s in shards:
            print(f"  - {s.tag}: {', '.join(s.parents)}")
        print(f"  (zones GeoPackage {args.zones_gpkg} not found; job graphs not shown)")
        return 0

    # Lazy imports (geopandas / rasterio)
    from alertstack.catalog import FileCatalog
    from alertstack.jobs import make_context
    from alertstack.pipeline import ShardedExportPipeline
    from alertstack.sink import CsvSink
    from alertstack.zones import load_zones

    zones = load_zones(args.zones_gpkg, layer=args.zones_layer)
    catalog = FileCatalog.from_sources_yaml(args.sources_yaml)
    ctx = make_context(catalog, config, zones)
    sink = CsvSink(out_dir)

    if not args.overwrite:
        todo = []
        for s in shards:
            path = sink.path_for(s.file_prefix(job.prefix(config), job.suffix(config)))
            if path.exists():
                print(f"[SKIP] {path.name}")
                continue
            todo.append(s)
        shards = todo

    pipeline = ShardedExportPipeline(job, ctx, sink, max_workers=max_workers, retries=retries)
    if args.dry_run:
        pipeline.describe(shards)
        return 0

    results = pipeline.run(shards)
    failed = [r for r in results if not r.ok]
    print(f"[EXPORT] {job.name}: {len(results) - len(failed)} ok, {len(failed)} failed")
    for r in failed:
        print(f"  - {r.description}: {r.error}")
    return 2 if failed else 0


def _handle_plan(args: argparse.Namespace, config: RunConfig) -> int:
    """Print every shard with its description and output file."""
    from alertstack.jobs import get_job

    job = get_job(args.job)
    shards = _select_shards(config, None)
    print(f"{job.name}: {len(shards)} shard(s), epoch={config.epoch}, calendar_mode={config.calendar_mode}")
    for s in shards:
        prefix, suffix = job.prefix(config), job.suffix(config)
        print(f"  - {s.description(prefix, suffix)} -> {s.file_prefix(prefix, suffix)}.csv ({len(s.parents)} parent regions)")
    return 0


def _verify_products(args: argparse.Namespace, config: RunConfig) -> List[Dict[str, Any]]:
    from alertstack.catalog import FileCatalog

    catalog = FileCatalog.from_sources_yaml(args.sources_yaml)
    products = catalog.products() if args.product == "all" else [args.product]
    first = config.year_ranges[0][0]
    last = config.year_ranges[-1][1]
    results = []
    for p in products:
        counts = catalog.verify(p, dt.date(first, 1, 1), dt.date(last + 1, 1, 1))
        results.append({"product": p, "ok": counts["present"] == counts["declared"], **counts})
    return results


def _handle_verify(args: argparse.Namespace, config: RunConfig) -> int:
    results = _verify_products(args, config)
    ok = all(r["ok"] for r in results)
    if args.json:
        print(json.dumps({"ok": ok, "results": results}, indent=2))
    else:
        for r in results:
            status = "OK" if r["ok"] else "MISSING"
            print(f"[{status}] {r['product']} ({r['present']}/{r['declared']} files)")
        print(f"Overall: {'OK' if ok else 'NOT OK'}")
    return 0 if ok else 2


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for alertstack.export CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {name: _handle_job for name in JOB_COMMANDS}
    handlers["plan"] = _handle_plan
    handlers["verify"] = _handle_verify

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        # Load config once, inside main (so import has no side effects)
        config = load_run_config(args.run_yaml)
        return handler(args, config)
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
