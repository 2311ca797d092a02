"""
Multiple imputation of trait tables by chained equations with predictive mean matching.

For each taxonomic group separately, M independent chains are run. A chain
starts by filling every absent cell with a random draw from that column's
observed values, then cycles ``n_iterations`` times over the incomplete
columns. Each column is regressed on all other trait columns plus the
auxiliary predictors (phylogenetic eigenvectors) using Bayesian linear
regression (Rubin 1987, as in mice's ``norm.draw``): fitted values for the
observed rows use the least-squares coefficients, fitted values for the
absent rows use a posterior draw, and every absent cell takes the observed
value of one of its ``n_donors`` closest donors, chosen at random (type-1
predictive mean matching; van Buuren 2018, §3.4).

Chain ``m`` uses seed ``seed + m`` so the ensemble is reproducible whatever the
scheduling order. Observed cells are never modified.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import ImputationConfig
from .errors import ImputationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImputedEnsemble:
    """M complete trait tables sharing row/column identity."""

    members: tuple
    missing_mask: pd.DataFrame

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self) -> Iterator[pd.DataFrame]:
        return iter(self.members)

    def __getitem__(self, index: int) -> pd.DataFrame:
        return self.members[index]

    @property
    def species(self) -> pd.Index:
        return self.missing_mask.index

    @property
    def traits(self) -> pd.Index:
        return self.missing_mask.columns

    def mean(self) -> pd.DataFrame:
        """Cell-wise ensemble mean, on the (log) scale the traits were imputed on."""
        stacked = np.stack([m.to_numpy() for m in self.members])
        return pd.DataFrame(stacked.mean(axis=0), index=self.species, columns=self.traits)

    def to_long(self) -> pd.DataFrame:
        frames = []
        for m, member in enumerate(self.members):
            frame = member.copy()
            frame.insert(0, "imputation", m)
            frames.append(frame)
        return pd.concat(frames)

    @classmethod
    def from_long(cls, long: pd.DataFrame, missing_mask: pd.DataFrame) -> "ImputedEnsemble":
        members = tuple(
            frame.drop(columns="imputation").loc[missing_mask.index, missing_mask.columns]
            for _, frame in long.groupby("imputation", sort=True)
        )
        return cls(members, missing_mask)


def _norm_draw(y: np.ndarray, X: np.ndarray, rng: np.random.Generator, ridge: float):
    """Least-squares coefficients and one posterior draw of them."""
    n, p = X.shape
    xtx = X.T @ X
    penalty = ridge * np.diag(xtx)
    v = np.linalg.inv(xtx + np.diag(penalty))
    coef = v @ X.T @ y
    residuals = y - X @ coef
    df = max(n - p, 1)
    sigma_star = np.sqrt(residuals @ residuals / rng.chisquare(df))
    v = (v + v.T) / 2
    try:
        chol = np.linalg.cholesky(v)
    except np.linalg.LinAlgError:
        # near-singular posterior covariance: jitter the diagonal
        chol = np.linalg.cholesky(v + np.eye(p) * 1e-10 * np.trace(v))
    beta_star = coef + sigma_star * (chol @ rng.standard_normal(p))
    return coef, beta_star


def _match_donors(yhat_obs: np.ndarray, yhat_mis: np.ndarray, y_obs: np.ndarray,
                  n_donors: int, rng: np.random.Generator) -> np.ndarray:
    k = min(n_donors, len(yhat_obs))
    # tiny jitter breaks ties between identical fitted values
    yhat_obs = yhat_obs + rng.uniform(0, 1e-12, size=yhat_obs.shape)
    out = np.empty(len(yhat_mis))
    for i, target in enumerate(yhat_mis):
        dist = np.abs(yhat_obs - target)
        nearest = np.argpartition(dist, k - 1)[:k]
        out[i] = y_obs[rng.choice(nearest)]
    return out


def impute_group(
    traits: pd.DataFrame,
    predictors: pd.DataFrame,
    n_iterations: int,
    n_donors: int,
    seed: int,
    ridge: float = 1e-5,
) -> pd.DataFrame:
    """
    Complete one group's trait table with one chained-equations chain.

    Args:
        traits: Species x traits, NaN where absent.
        predictors: Species x auxiliary predictors, complete, same index.
        n_iterations: Number of full cycles over the incomplete columns.
        n_donors: Donor pool size for predictive mean matching.
        seed: Seed for initial draws, posterior draws and donor choice.
        ridge: Relative ridge penalty keeping X'X invertible.

    Returns:
        Completed copy of ``traits``.
    """
    rng = np.random.default_rng(seed)
    values = traits.to_numpy(dtype=float).copy()
    missing = np.isnan(values)
    aux = predictors.loc[traits.index].to_numpy(dtype=float)
    incomplete = [j for j in range(values.shape[1]) if missing[:, j].any()]

    for j in incomplete:
        observed = values[~missing[:, j], j]
        values[missing[:, j], j] = rng.choice(observed, size=missing[:, j].sum())

    intercept = np.ones((values.shape[0], 1))
    for _ in range(n_iterations):
        for j in incomplete:
            others = np.delete(values, j, axis=1)
            X = np.hstack([intercept, others, aux])
            obs_rows = ~missing[:, j]
            y_obs = values[obs_rows, j]
            coef, beta_star = _norm_draw(y_obs, X[obs_rows], rng, ridge)
            yhat_obs = X[obs_rows] @ coef
            yhat_mis = X[missing[:, j]] @ beta_star
            values[missing[:, j], j] = _match_donors(yhat_obs, yhat_mis, y_obs, n_donors, rng)

    return pd.DataFrame(values, index=traits.index, columns=traits.columns)


def check_imputable(traits: pd.DataFrame, predictors: pd.DataFrame, groups: pd.Series) -> None:
    """Raise ImputationError for configurations the chained equations cannot run on."""
    missing_pred = traits.index.difference(predictors.index)
    if len(missing_pred):
        raise ImputationError(
            f"{len(missing_pred)} species have no predictor row (e.g. {list(missing_pred[:3])})",
            stage="imputation", shape=predictors.shape,
        )
    pred = predictors.loc[traits.index]
    if pred.isna().any().any():
        column = str(pred.columns[pred.isna().any()][0])
        raise ImputationError("Predictor data has absent cells", stage="imputation",
                              shape=pred.shape, column=column)
    for group, members in traits.groupby(groups.loc[traits.index], sort=True):
        empty = [c for c in members.columns if members[c].isna().all()]
        if empty:
            raise ImputationError(
                f"Trait entirely missing for group '{group}'",
                stage="imputation", shape=members.shape, column=str(empty[0]),
            )


def _impute_member(member: int, seed: int, traits: pd.DataFrame, predictors: pd.DataFrame,
                   groups: pd.Series, n_iterations: int, n_donors: int, ridge: float):
    parts = []
    for group in sorted(groups.loc[traits.index].unique()):
        rows = groups.loc[traits.index] == group
        parts.append(impute_group(traits[rows], predictors, n_iterations, n_donors, seed, ridge))
    return pd.concat(parts).sort_index()


class _MemberTask:
    """Picklable trial function producing one completed table per call."""

    def __init__(self, traits, predictors, groups, config: ImputationConfig):
        self.run = partial(
            _impute_member,
            traits=traits,
            predictors=predictors,
            groups=groups,
            n_iterations=config.n_iterations,
            n_donors=config.n_donors,
            ridge=config.ridge,
        )

    def __call__(self, member: int, seed: int) -> pd.DataFrame:
        return self.run(member, seed)


def impute_ensemble(
    traits: pd.DataFrame,
    predictors: pd.DataFrame,
    groups: pd.Series,
    config: ImputationConfig,
    extinct: Sequence[str] = (),
    n_workers: int = 1,
) -> ImputedEnsemble:
    """
    Run M chained-equations chains, separately per taxonomic group.

    Known-extinct species take part in the imputation model (they inform the
    regressions and donor pools) and are dropped from the returned tables.

    Raises:
        ImputationError: a trait is entirely missing within a group, or the
            predictor table is incomplete.
    """
    traits = traits.astype(float)
    check_imputable(traits, predictors, groups)
    logger.info(
        "Imputing %d species x %d traits: %d absent cells, %d groups, M=%d, %d iterations",
        traits.shape[0], traits.shape[1], int(traits.isna().sum().sum()),
        groups.loc[traits.index].nunique(), config.n_imputations, config.n_iterations,
    )

    task = _MemberTask(traits, predictors, groups, config)
    members: List[Optional[pd.DataFrame]] = [None] * config.n_imputations
    if n_workers > 1:
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                m: executor.submit(task, m, config.seed + m) for m in range(config.n_imputations)
            }
            for m, future in futures.items():
                members[m] = future.result()
    else:
        for m in range(config.n_imputations):
            members[m] = task(m, config.seed + m)

    keep = traits.index.difference(pd.Index(extinct)).sort_values().rename(traits.index.name)
    dropped = len(traits.index) - len(keep)
    if dropped:
        logger.info("Dropped %d known-extinct species after imputation", dropped)
    mask = traits.isna().loc[keep]
    return ImputedEnsemble(tuple(m.loc[keep] for m in members), mask)
