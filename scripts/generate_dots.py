"""Generate the dot-density table for one city.

Usage:
    python scripts/generate_dots.py --city london
    python scripts/generate_dots.py --city berlin --ensure-presence --workers 4

Input and output paths default to $DATA_DIR/<city>/ (see config.py / .env):
    boundaries.gpkg   region polygons with a region_id column
    counts.csv        one row of category counts per region
    dots.csv          output, one row per dot (lon, lat, category, region_id)
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for path in (ROOT, SRC):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from citydots.categories import get_scheme
from citydots.pipeline import run_pipeline, summarize_dots

import config


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate dot-density points for a city.")
    parser.add_argument("--city", required=True, help="City / scheme preset (london, berlin) or a scheme JSON.")
    parser.add_argument("--boundaries", help="Region polygons (default $DATA_DIR/<city>/boundaries.gpkg).")
    parser.add_argument("--counts", help="Category counts per region (default $DATA_DIR/<city>/counts.csv).")
    parser.add_argument("--out", help="Output table (default $DATA_DIR/<city>/dots.csv).")
    parser.add_argument("--id-field", default="region_id", help="Region id column (default region_id).")
    parser.add_argument("--ratio", type=float, default=config.DOT_RATIO, help="People per dot.")
    parser.add_argument("--seed", type=int, default=config.DOT_SEED, help="Seed for a reproducible run.")
    parser.add_argument("--workers", type=int, default=config.DOT_WORKERS, help="Regions processed in parallel.")
    parser.add_argument(
        "--ensure-presence",
        action="store_true",
        help="Force one dot for categories that would otherwise have none.",
    )
    args = parser.parse_args()

    scheme = get_scheme(args.city)
    city_dir = config.DATA_DIR / scheme.name
    out_path = Path(args.out) if args.out else city_dir / "dots.csv"

    print(f"Running {scheme.name} ({len(scheme.labels)} categories)")
    regions, dots = run_pipeline(
        boundaries_path=Path(args.boundaries) if args.boundaries else city_dir / "boundaries.gpkg",
        counts_path=Path(args.counts) if args.counts else city_dir / "counts.csv",
        scheme=scheme,
        boundary_id_field=args.id_field,
        ratio=args.ratio,
        seed=args.seed,
        workers=args.workers,
        ensure_presence=args.ensure_presence,
        output_path=out_path,
    )
    print(f"Wrote {len(dots):,} dots for {len(regions):,} regions to {out_path}")
    for _, row in summarize_dots(dots, scheme).iterrows():
        print(f"  {row['category']}: {row['dots']:,}")


if __name__ == "__main__":  # pragma: no cover
    main()
