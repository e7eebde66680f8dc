import numpy as np
import pandas as pd
import geopandas as gpd
import pytest
from pandas.testing import assert_frame_equal
from shapely.geometry import LineString, MultiPolygon, Point, Polygon, box

from citydots import dots as dots_module
from citydots.categories import CategoryMismatchError, CategoryScheme
from citydots.dots import (
    DOT_COLUMNS,
    GeometryError,
    dot_counts,
    force_presence,
    generate_dots,
    region_dots,
    sample_points,
    stochastic_round,
)

ABC = CategoryScheme("abc", {"A": "A", "B": "B", "C": "C"})
SIX = CategoryScheme("six", {label: label for label in ["g1", "g2", "g3", "g4", "g5", "g6"]})


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def city():
    """Ten adjacent 100 x 100 squares with six category counts each."""
    counts = np.random.default_rng(7).integers(0, 800, size=(10, 6))
    data = {"region_id": [f"R{i:02d}" for i in range(10)]}
    for j, label in enumerate(SIX.labels):
        data[label] = counts[:, j]
    geometry = [box(i * 100, 0, (i + 1) * 100, 100) for i in range(10)]
    return gpd.GeoDataFrame(data, geometry=geometry, crs="EPSG:27700")


# ---------------------------------------------------------------------
# stochastic rounding
# ---------------------------------------------------------------------
def test_stochastic_round_is_unbiased(rng):
    draws = stochastic_round(np.full(10_000, 0.5), rng=rng)
    assert set(np.unique(draws)) <= {0, 1}
    assert abs(draws.mean() - 0.5) < 0.02

    draws = stochastic_round(np.full(10_000, 2.3), rng=rng)
    assert set(np.unique(draws)) <= {2, 3}
    assert abs(draws.mean() - 2.3) < 0.02


def test_scalar_draws_are_unbiased(rng):
    draws = [stochastic_round(0.25, rng=rng) for _ in range(10_000)]
    assert all(isinstance(d, int) for d in draws)
    assert abs(np.mean(draws) - 0.25) < 0.02


@pytest.mark.parametrize("value", [0, 0.0, -3.7, -1, None, np.nan, "abc", np.inf])
def test_zero_negative_and_missing_round_to_zero(value, rng):
    assert all(stochastic_round(value, rng=rng) == 0 for _ in range(200))


def test_integral_input_has_no_variance(rng):
    assert all(stochastic_round(5.0, rng=rng) == 5 for _ in range(200))
    assert stochastic_round(np.array([3.0, 0.0, 12.0]), rng=rng).tolist() == [3, 0, 12]


def test_array_shape_preserved(rng):
    out = stochastic_round(np.full((3, 4), 1.5), rng=rng)
    assert out.shape == (3, 4)
    assert out.dtype.kind == "i"


def test_read_only_input(rng):
    values = np.array([2.5, np.nan, -1.0, np.inf, 4.0])
    values.setflags(write=False)
    out = stochastic_round(values, rng=rng)
    assert out[0] in (2, 3)
    assert out[1:].tolist() == [0, 0, 0, 4]
    assert np.isnan(values[1])


def test_read_only_counts_from_frame(rng):
    frame = pd.DataFrame({"A": [250.0], "B": [np.nan], "C": [-5.0]})
    row = frame.iloc[0].to_numpy()
    row.setflags(write=False)
    table = dot_counts(dict(zip("ABC", row)), ABC, rng=rng)
    assert table["A"] in (2, 3)
    assert table["B"] == table["C"] == 0


def test_default_generator_used_when_none_given():
    assert stochastic_round(7.0) == 7


# ---------------------------------------------------------------------
# dot counts
# ---------------------------------------------------------------------
def test_dot_counts_conserve_expected_value(rng):
    tables = [dot_counts({"A": 250, "B": 0, "C": 99}, ABC, ratio=100, rng=rng) for _ in range(4000)]
    a = np.array([t["A"] for t in tables])
    b = np.array([t["B"] for t in tables])
    c = np.array([t["C"] for t in tables])

    assert set(np.unique(a)) <= {2, 3}
    assert abs((a == 3).mean() - 0.5) < 0.03
    assert (b == 0).all()
    assert set(np.unique(c)) <= {0, 1}
    assert abs((c == 1).mean() - 0.99) < 0.01


def test_dot_counts_keys_follow_scheme(rng):
    table = dot_counts({"C": 100, "A": None, "B": "x"}, ABC, rng=rng)
    assert list(table) == ["A", "B", "C"]
    assert table == {"A": 0, "B": 0, "C": 1}


def test_dot_counts_custom_ratio(rng):
    assert dot_counts({"A": 500, "B": 50, "C": 0}, ABC, ratio=50, rng=rng) == {"A": 10, "B": 1, "C": 0}


def test_dot_counts_rejects_label_mismatch(rng):
    with pytest.raises(CategoryMismatchError):
        dot_counts({"A": 1, "B": 2}, ABC, rng=rng)
    with pytest.raises(CategoryMismatchError):
        dot_counts({"A": 1, "B": 2, "C": 3, "D": 4}, ABC, rng=rng)


@pytest.mark.parametrize("ratio", [0, -100])
def test_dot_counts_rejects_non_positive_ratio(ratio, rng):
    with pytest.raises(ValueError):
        dot_counts({"A": 1, "B": 2, "C": 3}, ABC, ratio=ratio, rng=rng)


# ---------------------------------------------------------------------
# sampling
# ---------------------------------------------------------------------
def test_sampled_points_lie_inside_polygon(rng):
    l_shape = Polygon([(0, 0), (10, 0), (10, 1), (1, 1), (1, 10), (0, 10)])
    coords = sample_points(l_shape, 500, rng=rng)
    assert coords.shape == (500, 2)
    assert all(l_shape.contains(Point(x, y)) for x, y in coords)


def test_sampled_points_respect_holes(rng):
    donut = Polygon(
        [(0, 0), (10, 0), (10, 10), (0, 10)],
        holes=[[(2, 2), (8, 2), (8, 8), (2, 8)]],
    )
    coords = sample_points(donut, 300, rng=rng)
    hole = box(2, 2, 8, 8)
    assert not any(hole.contains(Point(x, y)) for x, y in coords)


def test_sampled_points_cover_multipolygon(rng):
    parts = MultiPolygon([box(0, 0, 1, 1), box(10, 10, 11, 11)])
    coords = sample_points(parts, 400, rng=rng)
    assert all(parts.contains(Point(x, y)) for x, y in coords)
    left = (coords[:, 0] < 5).mean()
    assert 0.35 < left < 0.65


def test_sampled_points_roughly_uniform(rng):
    coords = sample_points(box(0, 0, 2, 1), 4000, rng=rng)
    assert abs((coords[:, 0] < 1).mean() - 0.5) < 0.04


def test_sample_zero_points(rng):
    coords = sample_points(box(0, 0, 1, 1), 0, rng=rng)
    assert coords.shape == (0, 2)


def test_sample_negative_points(rng):
    with pytest.raises(ValueError):
        sample_points(box(0, 0, 1, 1), -1, rng=rng)


def test_sampling_is_reproducible():
    a = sample_points(box(0, 0, 1, 1), 50, rng=np.random.default_rng(3))
    b = sample_points(box(0, 0, 1, 1), 50, rng=np.random.default_rng(3))
    np.testing.assert_array_equal(a, b)


def test_sampling_uses_geopandas_sampler():
    triangle = Polygon([(0, 0), (4, 0), (0, 3)])
    ours = sample_points(triangle, 25, rng=np.random.default_rng(4))
    expected = gpd.GeoSeries([triangle]).sample_points(25, rng=np.random.default_rng(4))
    np.testing.assert_array_equal(ours, expected.get_coordinates().to_numpy())


@pytest.mark.parametrize(
    "geom",
    [
        None,
        Polygon(),
        LineString([(0, 0), (1, 1)]),
        Point(0, 0),
        Polygon([(0, 0), (1, 1), (1, 0), (0, 1)]),
    ],
    ids=["none", "empty", "line", "point", "bowtie"],
)
def test_bad_geometry_is_a_data_error(geom, rng):
    with pytest.raises(GeometryError, match="R1"):
        sample_points(geom, 3, rng=rng, region_id="R1")


# ---------------------------------------------------------------------
# per-region and per-city drivers
# ---------------------------------------------------------------------
def test_region_dots_tags_every_point(rng):
    square = box(0, 0, 1, 1)
    dots = region_dots("R1", square, {"A": 3, "B": 0, "C": 5}, rng=rng)
    assert list(dots.columns) == DOT_COLUMNS
    assert dots["category"].value_counts().to_dict() == {"C": 5, "A": 3}
    assert (dots["region_id"] == "R1").all()
    assert all(square.contains(Point(x, y)) for x, y in zip(dots["lon"], dots["lat"]))


def test_region_dots_shuffle(rng):
    table = {"A": 50, "B": 50}
    ordered = region_dots("R1", box(0, 0, 1, 1), table, rng=rng, shuffle=False)
    assert list(ordered["category"]) == ["A"] * 50 + ["B"] * 50

    shuffled = region_dots("R1", box(0, 0, 1, 1), table, rng=rng)
    assert sorted(shuffled["category"]) == ["A"] * 50 + ["B"] * 50
    assert list(shuffled["category"]) != ["A"] * 50 + ["B"] * 50


def test_region_dots_without_population_still_checks_geometry(rng):
    with pytest.raises(GeometryError):
        region_dots("R9", None, {"A": 0})
    assert region_dots("R9", box(0, 0, 1, 1), {"A": 0, "B": 0}, rng=rng).empty


def test_region_geometry_checked_once(monkeypatch, rng):
    calls = []
    original = dots_module.validate_polygon

    def counting(polygon, region_id=None):
        calls.append(region_id)
        return original(polygon, region_id)

    monkeypatch.setattr(dots_module, "validate_polygon", counting)
    dots = region_dots("R1", box(0, 0, 1, 1), {"A": 2, "B": 3, "C": 0}, rng=rng)
    assert len(dots) == 5
    assert calls == ["R1"]


def test_unit_square_scenario():
    scheme = CategoryScheme("xy", {"X": "X", "Y": "Y"})
    regions = gpd.GeoDataFrame({"region_id": ["R"], "X": [1000], "Y": [0]}, geometry=[box(0, 0, 1, 1)])
    dots = generate_dots(regions, scheme, ratio=100, seed=1)

    assert (dots["category"] == "X").sum() == 10
    assert (dots["category"] == "Y").sum() == 0
    assert dots["lon"].between(0, 1).all()
    assert dots["lat"].between(0, 1).all()


def test_city_output_uses_known_labels_and_regions(city):
    dots = generate_dots(city, SIX, seed=11)
    assert list(dots.columns) == DOT_COLUMNS
    assert set(dots["category"]) <= set(SIX.labels)
    assert set(dots["region_id"]) <= set(city["region_id"])

    expected = city[SIX.labels].to_numpy().sum() / 100
    assert abs(len(dots) - expected) < 20

    for region_id, polygon in zip(city["region_id"], city.geometry):
        own = dots[dots["region_id"] == region_id]
        assert all(polygon.contains(Point(x, y)) for x, y in zip(own["lon"], own["lat"]))


def test_city_run_reproducible_across_worker_counts(city):
    serial = generate_dots(city, SIX, seed=5)
    parallel = generate_dots(city, SIX, seed=5, workers=4)
    assert_frame_equal(serial, parallel)

    other = generate_dots(city, SIX, seed=6)
    assert not serial.equals(other)


def test_region_stream_independent_of_other_regions(city):
    full = generate_dots(city, SIX, seed=5)
    head = generate_dots(city.iloc[:3], SIX, seed=5)
    assert_frame_equal(full[full["region_id"].isin(head["region_id"].unique())].reset_index(drop=True), head)


def test_region_stream_keyed_by_region_id(city):
    full = generate_dots(city, SIX, seed=5)
    # reversed row order with the first region dropped
    partial = generate_dots(city.iloc[::-1].iloc[:-1], SIX, seed=5)

    assert "R00" not in set(partial["region_id"])
    for region_id in partial["region_id"].unique():
        assert_frame_equal(
            full[full["region_id"] == region_id].reset_index(drop=True),
            partial[partial["region_id"] == region_id].reset_index(drop=True),
        )


def test_missing_geometry_fails_the_run(city):
    city = city.copy()
    city.loc[4, "geometry"] = None
    with pytest.raises(GeometryError, match="R04"):
        generate_dots(city, SIX, seed=1)


def test_missing_category_column(city):
    with pytest.raises(CategoryMismatchError, match="g6"):
        generate_dots(city.drop(columns=["g6"]), SIX, seed=1)


def test_missing_id_field(city):
    with pytest.raises(KeyError):
        generate_dots(city, SIX, id_field="oa_code")


def test_duplicate_region_ids(city):
    city = city.copy()
    city.loc[1, "region_id"] = "R00"
    with pytest.raises(ValueError, match="R00"):
        generate_dots(city, SIX, seed=1)


def test_empty_city():
    regions = gpd.GeoDataFrame({"region_id": [], "A": [], "B": [], "C": []}, geometry=[])
    dots = generate_dots(regions, ABC, seed=1)
    assert dots.empty
    assert list(dots.columns) == DOT_COLUMNS


# ---------------------------------------------------------------------
# forced presence of rare categories
# ---------------------------------------------------------------------
def test_force_presence_picks_a_populated_region():
    tables = [{"a": 0, "b": 1, "c": 0}, {"a": 0, "b": 0, "c": 0}, {"a": 0, "b": 0, "c": 0}]
    raw = pd.DataFrame({"a": [0, 5, 0], "b": [100, 0, 0], "c": [0, 0, 0]})
    forced = force_presence(tables, raw, ["a", "b", "c"], np.random.default_rng(0))

    assert forced == ["a"]
    assert [t["a"] for t in tables] == [0, 1, 0]
    assert [t["b"] for t in tables] == [1, 0, 0]
    assert all(t["c"] == 0 for t in tables)


def test_ensure_presence_is_opt_in(city):
    sparse = city.copy()
    sparse[SIX.labels] = 0
    sparse["g3"] = 1
    off = generate_dots(sparse, SIX, ratio=1e9, seed=2)
    on = generate_dots(sparse, SIX, ratio=1e9, seed=2, ensure_presence=True)

    assert off.empty
    assert len(on) == 1
    assert on["category"].iloc[0] == "g3"
