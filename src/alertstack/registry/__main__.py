#!/usr/bin/env python3
"""alertstack.registry

Zone definition CLI for alertstack.

This is one of two alertstack subsystem CLIs:
- alertstack.registry → zone definition (this file)
- alertstack.export   → per-zone, per-year tables

alertstack.registry is the source of truth for the aggregation zones. It
defines WHAT EXISTS spatially; every export reads its GeoPackage read-only.

Outputs:
- data/interim/vectors/zones_adm2.gpkg  → canonical ADM2 geometries

Design notes:
- Zone groups (run.yaml) refer to adm1_name values written here; `check-groups`
  reports group members that match no zone.

Examples:
  python -m alertstack.registry prep-zones \
    --gaul-shp data/raw/boundaries/gaul2015/g2015_2014_2.shp --simplify-m 500

  python -m alertstack.registry check-groups
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from alertstack.config import (
    ConfigurationError,
    DEFAULT_RUN_YAML,
    DEFAULT_ZONES_GPKG,
    load_run_config,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for alertstack.registry."""
    ap = argparse.ArgumentParser(
        prog="alertstack.registry",
        description="Zone definition for alertstack (source of truth for aggregation zones)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m alertstack.registry  # Zone definition (this)
  python -m alertstack.export    # Zonal exports

Registry outputs:
  data/interim/vectors/zones_adm2.gpkg   # Canonical ADM2 geometries
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
        "--dry-run",
        action="store_true",
        help="Print planned actions without writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    # --- prep-zones ---
    prep = sub.add_parser(
        "prep-zones",
        help="Prepare ADM2 zones from a GAUL level-2 shapefile",
        description="""
Process a GAUL 2015 level-2 shapefile into the canonical zone GeoPackage.

This command:
1. Keeps one country's features
2. Renames ADM1_NAME/ADM2_CODE/ADM2_NAME to adm1_name/adm2_code/adm2_name
3. Repairs, simplifies and dissolves geometries
4. Computes zone areas (ha)
5. Writes the GeoPackage
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    prep.add_argument("--gaul-shp", required=True, type=Path, help="Path to GAUL level-2 shapefile")
    prep.add_argument(
        "--out-gpkg",
        type=Path,
        default=DEFAULT_ZONES_GPKG,
        help=f"Output GeoPackage path (default: {DEFAULT_ZONES_GPKG})",
    )
    prep.add_argument("--layer", default="zones", help="Layer name in output GeoPackage (default: zones)")
    prep.add_argument("--country", default="Indonesia", help="ADM0_NAME to keep (default: Indonesia)")
    prep.add_argument("--country-field", default="ADM0_NAME", help="Country name column (default: ADM0_NAME)")
    prep.add_argument("--simplify-m", type=float, default=0.0, help="Simplification tolerance in metres (default: 0, off)")
    prep.add_argument("--target-crs", default="EPSG:4326", help="Output CRS (default: EPSG:4326 / WGS84)")
    prep.add_argument("--area-crs", default="EPSG:6933", help="CRS for area calculations (default: EPSG:6933, equal-area)")
    prep.add_argument("--qa-csv", type=Path, default=None, help="Optional QA CSV (attributes + area_ha)")

    # --- check-groups ---
    check = sub.add_parser("check-groups", help="Check run.yaml zone groups against the zone GeoPackage")
    check.add_argument("--zones-gpkg", type=Path, default=DEFAULT_ZONES_GPKG, help="Zones GeoPackage")
    check.add_argument("--layer", default="zones", help="Layer name in the GeoPackage")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_prep_zones(args: argparse.Namespace) -> int:
    """Handle the prep-zones subcommand."""
    if args.out_gpkg.exists() and not args.overwrite and not args.dry_run:
        print(f"[SKIP] {args.out_gpkg} exists (use --overwrite)")
        return 0

    if args.dry_run:
        print("[dry-run] Would prepare zones:")
        print(f"  Input shapefile: {args.gaul_shp}")
        print(f"  Output GeoPackage: {args.out_gpkg} (layer={args.layer})")
        print(f"  Country: {args.country_field} == {args.country}")
        print(f"  Simplify: {args.simplify_m} m")
        return 0

    # Lazy import to keep CLI startup fast
    from alertstack.registry.prep_zones import prep_zones

    prep_zones(
        gaul_shp=args.gaul_shp,
        out_gpkg=args.out_gpkg,
        layer=args.layer,
        country=args.country,
        country_field=args.country_field,
        simplify_m=args.simplify_m,
        area_crs=args.area_crs,
        target_crs=args.target_crs,
        qa_csv=args.qa_csv,
    )
    return 0


def _handle_check_groups(args: argparse.Namespace) -> int:
    """Report zone-group members that match no zone, and zones in no group."""
    config = load_run_config(args.run_yaml)

    from alertstack.zones import PARENT_FIELD, load_zones, unknown_parents

    zones = load_zones(args.zones_gpkg, layer=args.layer)
    ok = True
    grouped = set()
    for name, parents in config.zone_groups:
        grouped.update(parents)
        missing = unknown_parents(zones, parents)
        n = int(zones[PARENT_FIELD].isin(parents).sum())
        status = "OK" if not missing else "MISSING"
        print(f"[{status}] {name}: {n} zones from {len(parents)} parent regions")
        for m in missing:
            print(f"  - no zones for {m!r}")
        ok = ok and not missing

    orphans = sorted(set(zones[PARENT_FIELD].astype(str)) - grouped)
    if orphans:
        print(f"Parent regions in no group (not exported): {orphans}")
    print(f"Overall: {'OK' if ok else 'NOT OK'}")
    return 0 if ok else 2


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for alertstack.registry CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "prep-zones": _handle_prep_zones,
        "check-groups": _handle_check_groups,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(args)
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
