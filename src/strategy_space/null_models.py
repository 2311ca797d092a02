"""
Null models for the observed trait space.

Four randomisations of a standardized species x trait matrix, each returning
a synthetic matrix with the observed shape and column names:

- ``uniform``: every column drawn independently from U(min, max) of that column.
- ``normal``: every column drawn from N(0, 1), then column-standardized.
- ``column_shuffle``: every column permuted independently across rows; keeps
  marginal distributions, destroys cross-trait correlation.
- ``correlated_normal``: N(0, 1) matrix multiplied by the Cholesky factor of
  the observed correlation matrix, then re-standardized; keeps the covariance
  structure, randomises the individual values.

Plus a label permutation for overlap tests: group labels are shuffled across
the pooled species, group sizes preserved.

Trial ``i`` of a batch is generated from seed ``base_seed + i``.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterator, Optional

import numpy as np
import pandas as pd

from .errors import DegenerateMatrixError, StrategySpaceError
from .hypervolume import HypervolumeEstimator, overlap_statistic
from .trials import TrialCheckpoint, TrialSet, run_trials

logger = logging.getLogger(__name__)


def _standardize(values: np.ndarray) -> np.ndarray:
    sd = values.std(axis=0, ddof=1)
    return (values - values.mean(axis=0)) / sd


def null_uniform(X: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    return rng.uniform(X.min(axis=0), X.max(axis=0), size=X.shape)


def null_normal(X: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    return _standardize(rng.standard_normal(X.shape))


def null_column_shuffle(X: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    out = np.empty_like(X)
    for j in range(X.shape[1]):
        out[:, j] = rng.permutation(X[:, j])
    return out


def null_correlated_normal(X: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    corr = np.atleast_2d(np.corrcoef(X, rowvar=False))
    try:
        L = np.linalg.cholesky(corr)
    except np.linalg.LinAlgError as exc:
        raise DegenerateMatrixError("Observed correlation matrix is not positive definite",
                                    stage="null:correlated_normal", shape=X.shape) from exc
    return _standardize(rng.standard_normal(X.shape) @ L.T)


GENERATORS: Dict[str, Callable[[np.ndarray, np.random.Generator], np.ndarray]] = {
    "uniform": null_uniform,
    "normal": null_normal,
    "column_shuffle": null_column_shuffle,
    "correlated_normal": null_correlated_normal,
}


class NullModelGenerator:
    """Synthetic matrices shaped like one observed standardized trait matrix."""

    def __init__(self, observed: pd.DataFrame, mode: str):
        if mode not in GENERATORS:
            raise StrategySpaceError(f"Unknown null mode '{mode}'", stage="null")
        X = observed.to_numpy(dtype=float)
        if X.shape[0] < 2 or not np.isfinite(X).all():
            raise DegenerateMatrixError("Observed matrix unusable for null models",
                                        stage=f"null:{mode}", shape=X.shape)
        self.observed = observed
        self.mode = mode
        self._X = X

    def draw(self, seed: int) -> pd.DataFrame:
        rng = np.random.default_rng(seed)
        values = GENERATORS[self.mode](self._X, rng)
        return pd.DataFrame(values, index=self.observed.index, columns=self.observed.columns)

    def generate(self, n_trials: int, base_seed: int) -> Iterator[pd.DataFrame]:
        """Yield ``n_trials`` independent synthetic matrices (trial i from seed base_seed + i)."""
        for trial in range(n_trials):
            yield self.draw(base_seed + trial)


class NullVolumeTrial:
    """One null trial: draw a synthetic matrix and return its hypervolume volume."""

    def __init__(self, generator: NullModelGenerator, estimator: HypervolumeEstimator):
        self.generator = generator
        self.estimator = estimator

    def __call__(self, trial: int, seed: int) -> float:
        matrix = self.generator.draw(seed)
        return self.estimator.fit(matrix, name=f"null:{self.generator.mode}", seed=seed).volume


def null_volumes(
    observed: pd.DataFrame,
    mode: str,
    estimator: HypervolumeEstimator,
    n_trials: int,
    base_seed: int,
    n_workers: int = 1,
    checkpoint: Optional[TrialCheckpoint] = None,
    checkpoint_every: int = 25,
    show_progress: bool = True,
) -> TrialSet:
    """Hypervolume volumes of ``n_trials`` synthetic matrices under one null mode."""
    logger.info("Null model %s: %d trials on %d x %d matrix", mode, n_trials, *observed.shape)
    trial = NullVolumeTrial(NullModelGenerator(observed, mode), estimator)
    return run_trials(
        trial, n_trials, base_seed, name=f"null volumes ({mode})",
        n_workers=n_workers, checkpoint=checkpoint,
        checkpoint_every=checkpoint_every, show_progress=show_progress,
    )


def permute_labels(labels: pd.Series, rng: np.random.Generator) -> pd.Series:
    return pd.Series(rng.permutation(labels.to_numpy()), index=labels.index, name=labels.name)


class LabelPermutationTrial:
    """
    One overlap null trial: shuffle group labels, refit both hypervolumes, measure overlap.

    Only the species of the two compared groups are pooled and relabelled.
    """

    def __init__(self, space: pd.DataFrame, labels: pd.Series, first: str, second: str,
                 estimator: HypervolumeEstimator, statistic: str = "jaccard"):
        labels = labels.loc[space.index]
        pooled = labels.isin([first, second])
        self.space = space[pooled]
        self.labels = labels[pooled]
        self.first = first
        self.second = second
        self.estimator = estimator
        self.statistic = statistic

    def __call__(self, trial: int, seed: int) -> float:
        rng = np.random.default_rng(seed)
        shuffled = permute_labels(self.labels, rng)
        hv1 = self.estimator.fit(self.space[shuffled == self.first], name=self.first, seed=seed)
        hv2 = self.estimator.fit(self.space[shuffled == self.second], name=self.second, seed=seed + 1)
        return overlap_statistic(hv1, hv2, self.statistic, seed=seed)


def null_overlaps(
    space: pd.DataFrame,
    labels: pd.Series,
    first: str,
    second: str,
    estimator: HypervolumeEstimator,
    n_trials: int,
    base_seed: int,
    statistic: str = "jaccard",
    n_workers: int = 1,
    checkpoint: Optional[TrialCheckpoint] = None,
    checkpoint_every: int = 25,
    show_progress: bool = True,
) -> TrialSet:
    """Overlap statistics between two groups under random reassignment of group labels."""
    trial = LabelPermutationTrial(space, labels, first, second, estimator, statistic)
    return run_trials(
        trial, n_trials, base_seed, name=f"label permutation ({first} vs {second})",
        n_workers=n_workers, checkpoint=checkpoint,
        checkpoint_every=checkpoint_every, show_progress=show_progress,
    )
