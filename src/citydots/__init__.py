"""Dot-density maps of city population counts."""

from .categories import (  # noqa: F401
    BERLIN_ORIGIN,
    LONDON_ETHNICITY,
    CategoryMismatchError,
    CategoryScheme,
    aggregate_counts,
    check_labels,
    get_scheme,
)
from .dots import (  # noqa: F401
    DEFAULT_RATIO,
    DOT_COLUMNS,
    GeometryError,
    dot_counts,
    force_presence,
    generate_dots,
    region_dots,
    region_seed,
    sample_points,
    stochastic_round,
    validate_polygon,
)
from .pipeline import (  # noqa: F401
    export_dot_map,
    join_regions,
    load_boundaries,
    load_counts,
    load_regions,
    run_pipeline,
    summarize_dots,
    to_wgs84,
    write_dots,
)
