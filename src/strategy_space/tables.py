"""
Species tables: loading, validation and trait preparation.

All tables are keyed by one species identifier column. Trait tables may have
absent cells (NaN); group, risk and predictor tables are looked up by the same
identifier.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import InputTableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TraitRecord:
    """One species: identifier, trait values (None/NaN when absent), taxonomic group."""

    species_id: str
    traits: Dict[str, Optional[float]] = field(default_factory=dict)
    group: str = ""


def load_table(path, species_column: str = "species_id") -> pd.DataFrame:
    """Load a CSV or Parquet table and index it by species identifier."""
    path = Path(path)
    if not path.exists():
        raise InputTableError(f"Table not found: {path}", stage="load")
    if path.suffix == ".parquet":
        df = pd.read_parquet(path)
    else:
        df = pd.read_csv(path)
    if species_column not in df.columns and df.index.name == species_column:
        df = df.reset_index()
    if species_column not in df.columns:
        raise InputTableError(
            f"Missing species identifier column in {path.name}",
            stage="load", shape=df.shape, column=species_column,
        )
    df[species_column] = df[species_column].astype(str)
    df = df.set_index(species_column)
    check_unique_species(df, source=path.name)
    logger.info("Loaded %s: %d species x %d columns", path.name, df.shape[0], df.shape[1])
    return df


def save_table(df: pd.DataFrame, path, index: bool = True) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == ".parquet":
        df.to_parquet(path, index=index, compression="zstd")
    else:
        df.to_csv(path, index=index)
    return path


def check_unique_species(df: pd.DataFrame, source: str = "table") -> None:
    duplicated = df.index[df.index.duplicated()]
    if len(duplicated):
        sample = ", ".join(map(str, duplicated[:5]))
        raise InputTableError(
            f"{len(duplicated)} duplicate species identifiers in {source}: {sample}",
            stage="load", shape=df.shape,
        )


def frame_from_records(records: Iterable[TraitRecord]) -> Tuple[pd.DataFrame, pd.Series]:
    """Build a trait table and a group series from TraitRecords."""
    records = list(records)
    ids = [r.species_id for r in records]
    dupes = sorted({i for i in ids if ids.count(i) > 1})
    if dupes:
        raise InputTableError(f"Duplicate species identifiers: {dupes[:5]}", stage="load")
    traits = pd.DataFrame(
        [{k: (np.nan if v is None else float(v)) for k, v in r.traits.items()} for r in records],
        index=pd.Index(ids, name="species_id"),
    )
    groups = pd.Series([r.group for r in records], index=traits.index, name="group")
    return traits, groups


def records_from_frame(traits: pd.DataFrame, groups: pd.Series) -> List[TraitRecord]:
    out = []
    for species_id, row in traits.iterrows():
        values = {k: (None if pd.isna(v) else float(v)) for k, v in row.items()}
        out.append(TraitRecord(str(species_id), values, str(groups.get(species_id, ""))))
    return out


def log_transform(traits: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """log10-transform positive-valued traits; absent cells stay absent."""
    out = traits.copy()
    for col in columns:
        if col not in out.columns:
            raise InputTableError("Log trait not in trait table", stage="prepare",
                                  shape=out.shape, column=col)
        values = out[col]
        bad = values.notna() & (values <= 0)
        if bad.any():
            raise InputTableError(
                f"{int(bad.sum())} non-positive values cannot be log-transformed",
                stage="prepare", shape=out.shape, column=col,
            )
        out[col] = np.log10(values)
    return out


def select_traits(traits: pd.DataFrame, columns: Sequence[str] = ()) -> pd.DataFrame:
    if not columns:
        return traits.select_dtypes(include=[np.number]).astype(float)
    missing = [c for c in columns if c not in traits.columns]
    if missing:
        raise InputTableError(f"Trait columns not found: {missing}", stage="prepare",
                              shape=traits.shape, column=missing[0])
    return traits[list(columns)].astype(float)


def predictor_columns(predictors: pd.DataFrame, prefix: str = "phylo_ev") -> List[str]:
    cols = [c for c in predictors.columns if str(c).startswith(prefix)]
    return cols or list(predictors.select_dtypes(include=[np.number]).columns)


def align_species(traits: pd.DataFrame, *others: pd.Series | pd.DataFrame,
                  names: Sequence[str] = ()) -> None:
    """Fail unless every other table covers every species in ``traits``."""
    for i, other in enumerate(others):
        name = names[i] if i < len(names) else f"table {i + 1}"
        missing = traits.index.difference(other.index)
        if len(missing):
            raise InputTableError(
                f"{len(missing)} species missing from {name} (e.g. {list(missing[:3])})",
                stage="load", shape=getattr(other, "shape", None),
            )


def assign_risk_categories(
    species: Sequence[str],
    risk: pd.Series,
    categories: Sequence[str],
    default_category: str,
) -> pd.Series:
    """
    Risk category per species, in the order of ``species``.

    Species without a category (absent from the table or NaN) receive the
    least-risk ``default_category``; the count is logged. Unknown category
    labels are an input error.
    """
    risk = risk.reindex(pd.Index(species))
    unknown = sorted(set(risk.dropna().astype(str)) - set(categories))
    if unknown:
        raise InputTableError(f"Unknown risk categories {unknown}", stage="extinction",
                              column=str(risk.name))
    n_missing = int(risk.isna().sum())
    if n_missing:
        logger.warning("%d species without risk category treated as '%s'",
                       n_missing, default_category)
    return risk.fillna(default_category).astype(str)
