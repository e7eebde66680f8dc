from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional, Tuple

import geopandas as gpd
import pandas as pd
import pyarrow as pa  # type: ignore
import pyarrow.parquet as pq  # type: ignore

from .categories import CategoryScheme, aggregate_counts, get_scheme
from .dots import DEFAULT_RATIO, DOT_COLUMNS, generate_dots

WGS84 = "EPSG:4326"
CATEGORY_COLORS = ["#1b9e77", "#d95f02", "#7570b3", "#e7298a", "#66a61e", "#e6ab02", "#a6761d", "#666666"]


def _normalize_id(series: pd.Series) -> pd.Series:
    """Ids are joined as stripped strings so '01001' and ' 01001' match."""
    return series.astype(str).str.strip().str.replace(r"\.0$", "", regex=True)


def _pad_numeric_ids(*id_columns: pd.Series) -> List[pd.Series]:
    """Zero-pad all-digit ids to a common width, so 1011101 read as an integer matches '01011101'."""
    digits = pd.concat([ids[ids.str.isdigit()] for ids in id_columns])
    if digits.empty:
        return list(id_columns)
    width = int(digits.str.len().max())
    return [ids.where(~ids.str.isdigit(), ids.str.zfill(width)) for ids in id_columns]


def load_counts(counts_path: Path, id_field: str) -> pd.DataFrame:
    """Load the per-region count table (CSV or Parquet), keeping the id as text."""
    suffix = counts_path.suffix.lower()
    if suffix == ".parquet":
        df = pd.read_parquet(counts_path)
    else:
        df = pd.read_csv(counts_path, dtype={id_field: str}, low_memory=False)
    if id_field not in df.columns:
        raise KeyError(f"Id field '{id_field}' not found in {counts_path}")
    return df


def load_boundaries(boundaries_path: Path, id_field: str, layer: Optional[str] = None) -> gpd.GeoDataFrame:
    """Load region polygons; the CRS must be known so dots can be reprojected later."""
    boundaries = gpd.read_file(boundaries_path, layer=layer) if layer else gpd.read_file(boundaries_path)
    if boundaries.crs is None:
        raise ValueError(f"{boundaries_path} has no CRS; set one before generating dots")
    if id_field not in boundaries.columns:
        raise KeyError(f"Id field '{id_field}' not found in {boundaries_path}")
    return boundaries


def join_regions(
    boundaries: gpd.GeoDataFrame,
    counts: pd.DataFrame,
    scheme: CategoryScheme,
    boundary_id_field: str = "region_id",
    counts_id_field: str = "region_id",
) -> gpd.GeoDataFrame:
    """Attach polygons to the aggregated category counts.

    Every counted region is kept. Regions missing from the boundaries keep an
    empty geometry and fail at generation time instead of being dropped.
    """
    counts = aggregate_counts(counts, scheme)
    count_ids, shape_ids = _pad_numeric_ids(
        _normalize_id(counts[counts_id_field]), _normalize_id(boundaries[boundary_id_field])
    )
    if len(count_ids) and not count_ids.isin(set(shape_ids)).any():
        raise KeyError(
            f"No ids in '{counts_id_field}' match '{boundary_id_field}' "
            f"(e.g. {count_ids.iloc[0]!r} vs {shape_ids.iloc[0] if len(shape_ids) else None!r})"
        )
    counts = counts.assign(region_id=count_ids.to_numpy())
    shapes = gpd.GeoDataFrame(
        {"region_id": shape_ids.to_numpy()},
        geometry=boundaries.geometry.to_numpy(),
        crs=boundaries.crs,
    )
    merged = counts[["region_id"] + scheme.labels].merge(shapes, how="left", on="region_id", validate="1:1")
    return gpd.GeoDataFrame(merged, geometry="geometry", crs=boundaries.crs)


def load_regions(
    boundaries_path: Path,
    counts_path: Path,
    scheme: CategoryScheme,
    boundary_id_field: str = "region_id",
    counts_id_field: Optional[str] = None,
    layer: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """Read boundaries and counts and return one row per region with a count column per category."""
    counts_id_field = counts_id_field or boundary_id_field
    boundaries = load_boundaries(boundaries_path, boundary_id_field, layer=layer)
    counts = load_counts(counts_path, counts_id_field)
    return join_regions(boundaries, counts, scheme, boundary_id_field, counts_id_field)


def to_wgs84(dots: pd.DataFrame, crs) -> pd.DataFrame:
    """Reproject dot coordinates from the regions' CRS to WGS84 longitude/latitude."""
    if crs is None:
        raise ValueError("Cannot reproject dots without a source CRS")
    points = gpd.GeoSeries(gpd.points_from_xy(dots["lon"], dots["lat"]), crs=crs)
    if points.crs.to_epsg() == 4326:
        return dots
    points = points.to_crs(WGS84)
    out = dots.copy()
    out["lon"] = points.x.to_numpy()
    out["lat"] = points.y.to_numpy()
    return out


def write_dots(dots: pd.DataFrame, out_path: Path, crs=WGS84) -> Path:
    """Write the dot table as CSV, Parquet or GeoJSON, replacing any previous run's file.

    ``crs`` is the reference of the ``lon``/``lat`` columns; dots in any other
    CRS are reprojected so the written file is always WGS84.

    The table is written next to the target first and moved into place, so a
    failed write never leaves a partial output behind.
    """
    suffix = out_path.suffix.lower()
    if suffix not in {".csv", ".parquet", ".geojson"}:
        raise ValueError(f"Unsupported output format '{suffix}' (use .csv, .parquet or .geojson)")

    out_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = out_path.with_name(f".{out_path.name}.tmp")
    table = to_wgs84(dots[DOT_COLUMNS], crs)
    try:
        if suffix == ".parquet":
            pq.write_table(pa.Table.from_pandas(table, preserve_index=False), tmp_path)
        elif suffix == ".geojson":
            gdf = gpd.GeoDataFrame(table, geometry=gpd.points_from_xy(table["lon"], table["lat"]), crs=WGS84)
            gdf.to_file(tmp_path, driver="GeoJSON")
        else:
            table.to_csv(tmp_path, index=False)
        tmp_path.replace(out_path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    return out_path


def summarize_dots(dots: pd.DataFrame, scheme: CategoryScheme) -> pd.DataFrame:
    """Dots per category in scheme order, including categories with no dots."""
    counts = dots["category"].value_counts().reindex(scheme.labels, fill_value=0)
    return counts.rename_axis("category").reset_index(name="dots")


def run_pipeline(
    boundaries_path: Path,
    counts_path: Path,
    scheme: CategoryScheme,
    boundary_id_field: str = "region_id",
    counts_id_field: Optional[str] = None,
    layer: Optional[str] = None,
    ratio: float = DEFAULT_RATIO,
    seed: Optional[int] = None,
    workers: int = 1,
    ensure_presence: bool = False,
    output_path: Optional[Path] = None,
) -> Tuple[gpd.GeoDataFrame, pd.DataFrame]:
    """Load regions, generate dots, reproject to WGS84 and optionally write the table."""
    regions = load_regions(
        boundaries_path,
        counts_path,
        scheme,
        boundary_id_field=boundary_id_field,
        counts_id_field=counts_id_field,
        layer=layer,
    )
    dots = generate_dots(
        regions,
        scheme,
        ratio=ratio,
        seed=seed,
        id_field="region_id",
        ensure_presence=ensure_presence,
        workers=workers,
    )
    dots = to_wgs84(dots, regions.crs)

    if output_path:
        write_dots(dots, output_path)

    return regions, dots


def export_dot_map(
    dots: pd.DataFrame,
    scheme: CategoryScheme,
    output_html: Path,
    sample_size: int = 20000,
) -> None:
    """Write a preview map of the dots using folium, one layer per category."""
    try:
        import folium  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise ImportError("Install folium to export the HTML map (e.g., `pip install folium`).") from exc

    if dots.empty:
        raise ValueError("No dots to map")
    sample = dots.sample(min(len(dots), sample_size), random_state=1)
    fmap = folium.Map(location=[sample["lat"].mean(), sample["lon"].mean()], zoom_start=11, tiles="CartoDB positron")

    for i, label in enumerate(scheme.labels):
        color = CATEGORY_COLORS[i % len(CATEGORY_COLORS)]
        layer = folium.FeatureGroup(name=label)
        for lon, lat in sample.loc[sample["category"] == label, ["lon", "lat"]].itertuples(index=False, name=None):
            folium.CircleMarker(location=[lat, lon], radius=1, color=color, fill=True, weight=0, fill_opacity=0.8).add_to(
                layer
            )
        layer.add_to(fmap)

    folium.LayerControl().add_to(fmap)
    output_html.parent.mkdir(parents=True, exist_ok=True)
    fmap.save(output_html)


def _main() -> None:
    parser = argparse.ArgumentParser(description="Dot-density generator for city population maps")
    parser.add_argument("--boundaries", required=True, help="Region polygons (GeoPackage/Shapefile/GeoJSON).")
    parser.add_argument("--counts", required=True, help="CSV or Parquet with one row of category counts per region.")
    parser.add_argument(
        "--scheme",
        required=True,
        help="Category scheme: a preset (london, berlin) or a JSON file mapping labels to source columns.",
    )
    parser.add_argument("--out", required=True, help="Output table (.csv, .parquet or .geojson).")
    parser.add_argument("--id-field", default="region_id", help="Region id column in the boundaries file.")
    parser.add_argument("--counts-id-field", help="Region id column in the counts file (defaults to --id-field).")
    parser.add_argument("--layer", help="Layer name when reading a multi-layer GeoPackage.")
    parser.add_argument("--ratio", type=float, default=DEFAULT_RATIO, help="People per dot (default 100).")
    parser.add_argument("--seed", type=int, help="Seed for a reproducible run.")
    parser.add_argument("--workers", type=int, default=1, help="Regions processed in parallel (default 1).")
    parser.add_argument(
        "--ensure-presence",
        action="store_true",
        help="Force one dot for categories that round to zero dots everywhere (biases that category).",
    )
    parser.add_argument("--map-html", help="Optional path to save an interactive HTML preview (requires folium).")
    args = parser.parse_args()

    scheme = get_scheme(args.scheme)
    regions, dots = run_pipeline(
        boundaries_path=Path(args.boundaries),
        counts_path=Path(args.counts),
        scheme=scheme,
        boundary_id_field=args.id_field,
        counts_id_field=args.counts_id_field,
        layer=args.layer,
        ratio=args.ratio,
        seed=args.seed,
        workers=args.workers,
        ensure_presence=args.ensure_presence,
        output_path=Path(args.out),
    )

    print(f"Regions: {len(regions):,} ({regions.crs})")
    print(f"Dots written to {args.out}: {len(dots):,} (1 dot = {args.ratio:g} people)")
    for _, row in summarize_dots(dots, scheme).iterrows():
        print(f"  {row['category']}: {row['dots']:,}")
    if args.map_html:
        export_dot_map(dots, scheme, Path(args.map_html))
        print(f"Saved interactive map to {args.map_html}")


if __name__ == "__main__":  # pragma: no cover
    _main()
