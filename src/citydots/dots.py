"""Dot-density generation: bias-free rounding of counts and uniform sampling inside polygons.

One dot stands for ``ratio`` people of one category. The number of dots per
(region, category) cell is ``count / ratio`` rounded stochastically, so the
expected number of dots equals the real-valued quotient and small groups are
not erased by always rounding down.

All randomness comes from explicit ``numpy.random.Generator`` objects. Each
region gets its own stream derived from the run seed and the region id, so a
seeded run gives a region the same dots regardless of row order or of which
other regions are present.
"""

from __future__ import annotations

import hashlib
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Hashable, List, Mapping, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely
from shapely.geometry.base import BaseGeometry
from shapely.validation import explain_validity

from .categories import CategoryMismatchError, CategoryScheme, check_labels

DEFAULT_RATIO = 100
DOT_COLUMNS = ["lon", "lat", "category", "region_id"]
POLYGONAL_TYPES = {"Polygon", "MultiPolygon"}


class GeometryError(ValueError):
    """Raised when a region's geometry cannot be sampled (missing, empty, invalid)."""


def _coerce_counts(values) -> np.ndarray:
    """Flatten to floats with missing, non-numeric, infinite and negative entries set to 0."""
    flat = pd.Series(np.asarray(values, dtype=object).ravel())
    numeric = pd.to_numeric(flat, errors="coerce").to_numpy(dtype=float, copy=True)
    numeric = np.where(np.isfinite(numeric), numeric, 0.0)
    return np.clip(numeric, 0.0, None)


def stochastic_round(x, rng: Optional[np.random.Generator] = None):
    """Round ``x`` down or up at random so that ``E[result] == x``.

    With ``v = floor(x)`` and remainder ``r = x - v`` the result is ``v + 1``
    when ``r`` exceeds a uniform draw on ``[0, 1)`` and ``v`` otherwise.
    Scalars return an ``int``; array-likes return an int array of the same
    shape with one independent draw per element. Negative or missing inputs
    round to 0.
    """
    if rng is None:
        rng = np.random.default_rng()
    values = _coerce_counts(x)
    floor = np.floor(values)
    remainder = values - floor
    rounded = floor.astype(np.int64) + (remainder > rng.random(values.size))
    if np.ndim(x) == 0:
        return int(rounded[0])
    return rounded.reshape(np.shape(x))


def dot_counts(
    counts: Mapping[str, float],
    scheme: CategoryScheme,
    ratio: float = DEFAULT_RATIO,
    rng: Optional[np.random.Generator] = None,
) -> Dict[str, int]:
    """Number of dots to draw per category for one region.

    The result always has one entry per scheme label, in scheme order, including
    labels whose count is zero.
    """
    if ratio <= 0:
        raise ValueError(f"Density ratio must be positive, got {ratio}")
    check_labels(counts.keys(), scheme)
    labels = scheme.labels
    raw = _coerce_counts([counts[label] for label in labels])
    rounded = stochastic_round(raw / ratio, rng=rng)
    return {label: int(n) for label, n in zip(labels, rounded)}


def validate_polygon(polygon, region_id: Hashable = None) -> BaseGeometry:
    """Return ``polygon`` if it can be sampled, otherwise raise ``GeometryError``."""
    if polygon is None or not isinstance(polygon, BaseGeometry):
        raise GeometryError(f"Region {region_id!r} has no geometry")
    if polygon.is_empty:
        raise GeometryError(f"Region {region_id!r} has an empty geometry")
    if polygon.geom_type not in POLYGONAL_TYPES:
        raise GeometryError(f"Region {region_id!r} geometry is a {polygon.geom_type}, expected a polygon")
    if not polygon.is_valid:
        raise GeometryError(f"Region {region_id!r} has an invalid geometry: {explain_validity(polygon)}")
    if polygon.area <= 0:
        raise GeometryError(f"Region {region_id!r} has a zero-area geometry")
    return polygon


def _sample_polygon(polygon: BaseGeometry, n: int, rng: np.random.Generator) -> np.ndarray:
    """Uniform points inside an already validated polygon, as an ``(n, 2)`` array."""
    if n == 0:
        return np.empty((0, 2))
    sampled = gpd.GeoSeries([polygon]).sample_points(n, rng=rng)
    return shapely.get_coordinates(sampled.iloc[0])


def sample_points(
    polygon: BaseGeometry,
    n: int,
    rng: Optional[np.random.Generator] = None,
    region_id: Hashable = None,
) -> np.ndarray:
    """Draw ``n`` points uniformly over the interior of ``polygon``.

    Sampling is delegated to ``GeoSeries.sample_points``. Returns an ``(n, 2)``
    array of x/y in the polygon's own coordinate reference.
    """
    if n < 0:
        raise ValueError(f"Cannot sample a negative number of points ({n})")
    validate_polygon(polygon, region_id)
    if rng is None:
        rng = np.random.default_rng()
    return _sample_polygon(polygon, n, rng)


def region_dots(
    region_id: Hashable,
    polygon: BaseGeometry,
    dot_table: Mapping[str, int],
    rng: Optional[np.random.Generator] = None,
    shuffle: bool = True,
) -> pd.DataFrame:
    """Place every category's dots for one region and tag them with label and region id."""
    if rng is None:
        rng = np.random.default_rng()
    validate_polygon(polygon, region_id)

    frames = []
    for label, n in dot_table.items():
        coords = _sample_polygon(polygon, int(n), rng)
        if not len(coords):
            continue
        frames.append(
            pd.DataFrame({"lon": coords[:, 0], "lat": coords[:, 1], "category": label, "region_id": region_id})
        )
    dots = pd.concat(frames, ignore_index=True) if frames else _empty_dots()
    if shuffle and len(dots) > 1:
        # Keeps one category from being drawn on top of the others.
        dots = dots.iloc[rng.permutation(len(dots))].reset_index(drop=True)
    return dots[DOT_COLUMNS]


def _empty_dots() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "lon": pd.Series(dtype=float),
            "lat": pd.Series(dtype=float),
            "category": pd.Series(dtype=object),
            "region_id": pd.Series(dtype=object),
        }
    )


def force_presence(
    tables: Sequence[Dict[str, int]],
    raw_counts: pd.DataFrame,
    labels: Sequence[str],
    rng: np.random.Generator,
) -> List[str]:
    """Give one dot to each category that rounded to zero dots in every region.

    The receiving region is picked at random among regions with a positive raw
    count for the category; categories with no population anywhere are left
    empty. This biases the affected cell upwards and is only meant for maps
    where every category should be visible. Returns the labels that were forced.
    """
    forced = []
    for label in labels:
        if sum(table[label] for table in tables) > 0:
            continue
        populated = np.flatnonzero(_coerce_counts(raw_counts[label].to_numpy()) > 0)
        if populated.size == 0:
            continue
        tables[int(rng.choice(populated))][label] = 1
        forced.append(label)
    return forced


def region_seed(master: np.random.SeedSequence, region_id: Hashable) -> np.random.SeedSequence:
    """Seed for one region's stream, keyed by the region id rather than its row position."""
    digest = hashlib.sha256(str(region_id).encode("utf-8")).digest()
    words = np.frombuffer(digest[:16], dtype="<u4")
    return np.random.SeedSequence(master.entropy, spawn_key=tuple(int(w) for w in words))


def generate_dots(
    regions: gpd.GeoDataFrame,
    scheme: CategoryScheme,
    ratio: float = DEFAULT_RATIO,
    seed: Optional[int] = None,
    id_field: str = "region_id",
    ensure_presence: bool = False,
    workers: int = 1,
) -> pd.DataFrame:
    """Build the dot table for every region of a city.

    ``regions`` needs an id column, a polygon geometry and one count column per
    scheme label. Any region failure aborts the whole run. Coordinates are left
    in the regions' CRS; see ``pipeline.to_wgs84`` for reprojection.
    """
    if id_field not in regions.columns:
        raise KeyError(f"Region id field '{id_field}' not found in regions")
    missing = [label for label in scheme.labels if label not in regions.columns]
    if missing:
        raise CategoryMismatchError(f"Regions lack count columns for scheme '{scheme.name}': {', '.join(missing)}")
    if regions[id_field].duplicated().any():
        dupes = regions.loc[regions[id_field].duplicated(), id_field].unique()[:5]
        raise ValueError(f"Duplicate region ids: {list(dupes)}")

    master = np.random.SeedSequence(seed)
    ids = regions[id_field].tolist()
    rngs = [np.random.default_rng(region_seed(master, region_id)) for region_id in ids]
    geometries = list(regions.geometry)
    counts = regions[scheme.labels]
    tables = [
        dot_counts(dict(zip(scheme.labels, values)), scheme, ratio=ratio, rng=rng)
        for values, rng in zip(counts.itertuples(index=False, name=None), rngs)
    ]

    if ensure_presence:
        force_presence(tables, counts, scheme.labels, np.random.default_rng(master))

    def _one(i: int) -> pd.DataFrame:
        return region_dots(ids[i], geometries[i], tables[i], rng=rngs[i])

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            frames = list(pool.map(_one, range(len(ids))))
    else:
        frames = [_one(i) for i in range(len(ids))]

    frames = [frame for frame in frames if len(frame)]
    if not frames:
        return _empty_dots()
    return pd.concat(frames, ignore_index=True)[DOT_COLUMNS]
