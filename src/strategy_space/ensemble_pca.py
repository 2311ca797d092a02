"""
Consensus principal components over an imputation ensemble.

Each completed table is z-transformed on its own (mean and sample SD of that
table) and decomposed with scikit-learn's PCA. PCA signs are arbitrary per
run, so before averaging every run's components are aligned to a reference
run: a component whose scores correlate negatively with the reference's is
flipped (scores and loadings). The consensus is then the plain arithmetic
mean of the aligned scores, loadings and explained variance.

The consensus itself gets one canonical orientation (largest absolute loading
of each component positive), which makes it independent of which run served
as reference and therefore of the order of the ensemble.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from .errors import DegenerateMatrixError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PCARun:
    scores: pd.DataFrame        # species x component
    loadings: pd.DataFrame      # trait x component
    variance_explained: pd.Series

    def flipped(self, signs: np.ndarray) -> "PCARun":
        return PCARun(self.scores * signs, self.loadings * signs, self.variance_explained)


@dataclass(frozen=True)
class ConsensusTraitSpace:
    """Ensemble-averaged coordinates, loadings and variance explained."""

    scores: pd.DataFrame
    loadings: pd.DataFrame
    variance_explained: pd.Series
    runs: Tuple[PCARun, ...]

    @property
    def components(self) -> List[str]:
        return list(self.scores.columns)

    def member_scores(self, species_id: str) -> pd.DataFrame:
        """Aligned per-run coordinates of one species (run x component)."""
        return pd.DataFrame([run.scores.loc[species_id] for run in self.runs]).reset_index(drop=True)


def component_names(n: int) -> List[str]:
    return [f"PC{i + 1}" for i in range(n)]


def zscore(table: pd.DataFrame) -> pd.DataFrame:
    """Column-wise (x - mean) / sample SD over this table only."""
    if table.isna().any().any():
        column = str(table.columns[table.isna().any()][0])
        raise DegenerateMatrixError("Absent values after imputation", stage="pca",
                                    shape=table.shape, column=column)
    sd = table.std(axis=0, ddof=1)
    zero = sd.index[~(sd > 0)]
    if len(zero):
        raise DegenerateMatrixError("Zero-variance trait cannot be standardized",
                                    stage="pca", shape=table.shape, column=str(zero[0]))
    return (table - table.mean(axis=0)) / sd


def pca_run(table: pd.DataFrame, n_components: int) -> PCARun:
    z = zscore(table)
    if n_components > min(z.shape):
        raise DegenerateMatrixError(
            f"Cannot extract {n_components} components", stage="pca", shape=z.shape,
        )
    pca = PCA(n_components=n_components, svd_solver="full")
    scores = pca.fit_transform(z.to_numpy())
    names = component_names(n_components)
    return PCARun(
        scores=pd.DataFrame(scores, index=table.index, columns=names),
        loadings=pd.DataFrame(pca.components_.T, index=table.columns, columns=names),
        variance_explained=pd.Series(pca.explained_variance_ratio_, index=names,
                                     name="variance_explained"),
    )


def align_signs(run: PCARun, reference: PCARun) -> PCARun:
    """Flip components whose scores correlate negatively with the reference run."""
    a = run.scores.to_numpy()
    b = reference.scores.to_numpy()
    cross = np.sum((a - a.mean(axis=0)) * (b - b.mean(axis=0)), axis=0)
    signs = np.where(cross < 0, -1.0, 1.0)
    return run.flipped(signs)


def _canonical_signs(loadings: pd.DataFrame) -> np.ndarray:
    values = loadings.to_numpy()
    pivot = values[np.argmax(np.abs(values), axis=0), np.arange(values.shape[1])]
    return np.where(pivot < 0, -1.0, 1.0)


def consensus(runs: Sequence[PCARun]) -> ConsensusTraitSpace:
    """Align every run to the first one and average."""
    if not runs:
        raise DegenerateMatrixError("Empty PCA ensemble", stage="pca")
    reference = runs[0]
    aligned = [reference] + [align_signs(run, reference) for run in runs[1:]]

    scores = sum(run.scores for run in aligned) / len(aligned)
    loadings = sum(run.loadings for run in aligned) / len(aligned)
    variance = sum(run.variance_explained for run in aligned) / len(aligned)

    signs = _canonical_signs(loadings)
    aligned = tuple(run.flipped(signs) for run in aligned)
    return ConsensusTraitSpace(
        scores=scores * signs,
        loadings=loadings * signs,
        variance_explained=variance,
        runs=aligned,
    )


def ensemble_pca(ensemble, n_components: int) -> ConsensusTraitSpace:
    """
    Consensus trait space of an ImputedEnsemble (or any sequence of complete tables).

    Args:
        ensemble: Iterable of complete species x trait tables with identical identity.
        n_components: Number of principal components to keep.

    Returns:
        ConsensusTraitSpace with species x component scores and trait x component loadings.
    """
    runs = [pca_run(table, n_components) for table in ensemble]
    result = consensus(runs)
    logger.info(
        "Consensus PCA over %d runs: %s",
        len(runs),
        ", ".join(f"{k}={v:.1%}" for k, v in result.variance_explained.items()),
    )
    return result
