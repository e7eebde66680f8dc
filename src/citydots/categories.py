from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Tuple

import pandas as pd


class CategoryMismatchError(KeyError):
    """Raised when count columns disagree with the fixed category enumeration."""


@dataclass(frozen=True)
class CategoryScheme:
    """Closed, ordered set of category labels and the source columns summed into each.

    Every region must report exactly these labels, so the output table has a
    consistent set of categories even where a region's population is zero.
    """

    name: str
    columns: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.columns:
            raise ValueError(f"Category scheme '{self.name}' has no categories")
        normalized = {}
        for label, sources in self.columns.items():
            if isinstance(sources, str):
                sources = (sources,)
            sources = tuple(sources)
            if not sources:
                raise ValueError(f"Category '{label}' in scheme '{self.name}' has no source columns")
            normalized[label] = sources
        object.__setattr__(self, "columns", normalized)

    @property
    def labels(self) -> List[str]:
        return list(self.columns)

    @property
    def source_columns(self) -> List[str]:
        seen: List[str] = []
        for sources in self.columns.values():
            seen.extend(col for col in sources if col not in seen)
        return seen

    @classmethod
    def from_json(cls, path: Path) -> "CategoryScheme":
        """Load a scheme from ``{"name": ..., "categories": {label: [columns...]}}``."""
        with open(path, encoding="utf-8") as fh:
            raw = json.load(fh)
        if "categories" not in raw:
            raise KeyError(f"'categories' not found in scheme file {path}")
        return cls(name=raw.get("name", Path(path).stem), columns=raw["categories"])


# Census 2011 ethnic group counts per output area, collapsed to six groups.
LONDON_ETHNICITY = CategoryScheme(
    name="london",
    columns={
        "white_british": ("white_british",),
        "white_other": ("white_irish", "white_gypsy_traveller", "white_other"),
        "mixed": ("mixed",),
        "asian": ("asian",),
        "black": ("black",),
        "other": ("arab", "other"),
    },
)

# Einwohnerregister migration background by region of origin per Planungsraum.
BERLIN_ORIGIN = CategoryScheme(
    name="berlin",
    columns={
        "eu": ("HK_EU15", "HK_EU28"),
        "poland": ("HK_Polen",),
        "former_yugoslavia": ("HK_EheJug",),
        "former_soviet_union": ("HK_EheSU",),
        "turkey": ("HK_Turk",),
        "arab_states": ("HK_Arab",),
        "other": ("HK_Sonst", "HK_NZOrd"),
    },
)

PRESETS: Dict[str, CategoryScheme] = {
    LONDON_ETHNICITY.name: LONDON_ETHNICITY,
    BERLIN_ORIGIN.name: BERLIN_ORIGIN,
}


def get_scheme(name_or_path: str | Path) -> CategoryScheme:
    """Resolve a preset name (``london``, ``berlin``) or a path to a JSON scheme."""
    key = str(name_or_path).lower()
    if key in PRESETS:
        return PRESETS[key]
    path = Path(name_or_path)
    if path.suffix.lower() == ".json" and path.exists():
        return CategoryScheme.from_json(path)
    raise KeyError(f"Unknown category scheme '{name_or_path}' (presets: {', '.join(sorted(PRESETS))})")


def _clean_counts(series: pd.Series) -> pd.Series:
    """Coerce a raw count column to non-negative floats; blanks and junk become 0."""
    values = pd.to_numeric(series.astype(str).str.replace(",", "", regex=False), errors="coerce")
    return values.fillna(0).clip(lower=0)


def aggregate_counts(table: pd.DataFrame, scheme: CategoryScheme) -> pd.DataFrame:
    """Sum the scheme's source columns into one count column per category label.

    Non-count columns of ``table`` are carried through unchanged; source columns
    that are not themselves labels are dropped.
    """
    missing = [col for col in scheme.source_columns if col not in table.columns]
    if missing:
        raise CategoryMismatchError(
            f"Scheme '{scheme.name}' expects columns missing from the count table: {', '.join(missing)}"
        )

    out = table.drop(columns=[c for c in scheme.source_columns if c not in scheme.columns])
    for label, sources in scheme.columns.items():
        out[label] = sum(_clean_counts(table[col]) for col in sources)
    return out


def check_labels(labels: Iterable[str], scheme: CategoryScheme) -> None:
    """Fail unless ``labels`` is exactly the scheme's enumeration."""
    given = set(labels)
    expected = set(scheme.labels)
    if given == expected:
        return
    extra = sorted(given - expected)
    absent = sorted(expected - given)
    parts: List[str] = []
    if extra:
        parts.append(f"unknown categories {extra}")
    if absent:
        parts.append(f"missing categories {absent}")
    raise CategoryMismatchError(f"Counts do not match scheme '{scheme.name}': {'; '.join(parts)}")
