"""
One-class SVM hypervolumes in standardized trait space.

A hypervolume is fitted as in Blonder et al.'s ``hypervolume_svm``: a
one-class SVM with a Gaussian kernel learns the boundary of the occupied
region, uniform random points are thrown into the (padded) bounding box of
the data, and the points the SVM classifies as inside form the hypervolume's
random point cloud. Volume = box volume x fraction of points inside.

Set operations classify both operands' random points (thinned to a common
point density) against both boundaries. Every result is itself a Hypervolume
whose membership is the corresponding composition of operand boundaries, so
results can be combined and queried again.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.svm import OneClassSVM

from .config import HypervolumeConfig
from .errors import DegenerateMatrixError

logger = logging.getLogger(__name__)

_BATCH = 50_000


class SVMBoundary:
    def __init__(self, model: OneClassSVM):
        self.model = model

    def contains(self, points: np.ndarray) -> np.ndarray:
        out = np.empty(len(points), dtype=bool)
        for start in range(0, len(points), _BATCH):
            block = points[start:start + _BATCH]
            out[start:start + _BATCH] = self.model.decision_function(block) >= 0
        return out


class IntersectionOf:
    def __init__(self, a, b):
        self.a, self.b = a, b

    def contains(self, points: np.ndarray) -> np.ndarray:
        return self.a.contains(points) & self.b.contains(points)


class UnionOf:
    def __init__(self, a, b):
        self.a, self.b = a, b

    def contains(self, points: np.ndarray) -> np.ndarray:
        return self.a.contains(points) | self.b.contains(points)


class DifferenceOf:
    def __init__(self, a, b):
        self.a, self.b = a, b

    def contains(self, points: np.ndarray) -> np.ndarray:
        return self.a.contains(points) & ~self.b.contains(points)


@dataclass(frozen=True)
class Hypervolume:
    name: str
    volume: float
    random_points: np.ndarray
    columns: tuple
    membership: object

    def __post_init__(self):
        self.random_points.setflags(write=False)

    @property
    def dimensionality(self) -> int:
        return len(self.columns)

    @property
    def is_empty(self) -> bool:
        return self.volume <= 0 or len(self.random_points) == 0

    @property
    def point_density(self) -> float:
        return len(self.random_points) / self.volume if self.volume > 0 else 0.0

    def contains(self, points) -> np.ndarray:
        """Inclusion test for an array (or DataFrame with the same columns) of points."""
        if isinstance(points, pd.DataFrame):
            points = points[list(self.columns)].to_numpy(dtype=float)
        return self.membership.contains(np.asarray(points, dtype=float))


def check_fit_matrix(X: np.ndarray, columns: Sequence[str], name: str = "") -> None:
    stage = f"hypervolume:{name}" if name else "hypervolume"
    n, d = X.shape
    if n < d or n < 2:
        raise DegenerateMatrixError("Fewer observations than dimensions", stage=stage,
                                    shape=X.shape)
    if not np.isfinite(X).all():
        raise DegenerateMatrixError("Non-finite values in trait matrix", stage=stage,
                                    shape=X.shape)
    spread = X.max(axis=0) - X.min(axis=0)
    if np.any(spread <= 0):
        raise DegenerateMatrixError("Zero-variance column", stage=stage, shape=X.shape,
                                    column=str(columns[int(np.argmin(spread))]))


class HypervolumeEstimator:
    """Fits SVM hypervolumes with fixed boundary and sampling parameters."""

    def __init__(
        self,
        nu: float = 0.01,
        gamma: float = 0.5,
        samples_per_point: Optional[int] = None,
        range_padding: float = 0.5,
        seed: int = 20251022,
    ):
        self.nu = nu
        self.gamma = gamma
        self.samples_per_point = samples_per_point
        self.range_padding = range_padding
        self.seed = seed

    @classmethod
    def from_config(cls, config: HypervolumeConfig) -> "HypervolumeEstimator":
        return cls(
            nu=config.svm_nu,
            gamma=config.svm_gamma,
            samples_per_point=config.samples_per_point,
            range_padding=config.range_padding,
            seed=config.seed,
        )

    def n_samples(self, n: int, d: int) -> int:
        per_point = self.samples_per_point or math.ceil(10 ** (3 + math.sqrt(d)) / n)
        return per_point * n

    def fit(self, data, name: str = "", seed: Optional[int] = None) -> Hypervolume:
        """
        Fit a hypervolume to an n x d matrix (array or DataFrame).

        Raises:
            DegenerateMatrixError: fewer rows than dimensions, a zero-variance or
                non-finite column, or no random point inside the boundary.
        """
        if isinstance(data, pd.DataFrame):
            columns = tuple(str(c) for c in data.columns)
            X = data.to_numpy(dtype=float)
        else:
            X = np.asarray(data, dtype=float)
            columns = tuple(f"x{i + 1}" for i in range(X.shape[1]))
        check_fit_matrix(X, columns, name)

        n, d = X.shape
        model = OneClassSVM(kernel="rbf", nu=self.nu, gamma=self.gamma).fit(X)
        boundary = SVMBoundary(model)

        lo, hi = X.min(axis=0), X.max(axis=0)
        pad = self.range_padding * (hi - lo)
        lo, hi = lo - pad, hi + pad
        box_volume = float(np.prod(hi - lo))

        rng = np.random.default_rng(self.seed if seed is None else seed)
        samples = rng.uniform(lo, hi, size=(self.n_samples(n, d), d))
        inside = boundary.contains(samples)
        if not inside.any():
            raise DegenerateMatrixError("No random point fell inside the SVM boundary",
                                        stage=f"hypervolume:{name}" if name else "hypervolume",
                                        shape=X.shape)
        volume = box_volume * float(inside.mean())
        logger.debug("Hypervolume %s: n=%d d=%d volume=%.4g (%d/%d points inside)",
                     name, n, d, volume, int(inside.sum()), len(samples))
        return Hypervolume(name, volume, samples[inside], columns, boundary)


@dataclass(frozen=True)
class HypervolumeSet:
    """Results of combining two hypervolumes."""

    first: Hypervolume
    second: Hypervolume
    intersection: Hypervolume
    union: Hypervolume
    unique_first: Hypervolume
    unique_second: Hypervolume

    def overlap(self) -> Dict[str, float]:
        v1, v2 = self.first.volume, self.second.volume
        vi, vu = self.intersection.volume, self.union.volume
        return {
            "volume_first": v1,
            "volume_second": v2,
            "intersection": vi,
            "union": vu,
            "unique_first": self.unique_first.volume,
            "unique_second": self.unique_second.volume,
            "jaccard": vi / vu if vu > 0 else 0.0,
            "sorensen": 2 * vi / (v1 + v2) if v1 + v2 > 0 else 0.0,
            "frac_unique_first": self.unique_first.volume / v1 if v1 > 0 else 0.0,
            "frac_unique_second": self.unique_second.volume / v2 if v2 > 0 else 0.0,
        }


def _thin(points: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    if k >= len(points):
        return points
    return points[rng.choice(len(points), size=k, replace=False)]


def set_operations(first: Hypervolume, second: Hypervolume, seed: int = 0) -> HypervolumeSet:
    """
    Intersection, union and unique components of two hypervolumes.

    Both point clouds are thinned to the smaller of the two point densities.
    The intersection volume averages the two estimates (fraction of each
    operand's points inside the other, times that operand's volume) and is
    capped at the smaller operand volume, so intersection <= min and
    union = v1 + v2 - intersection >= max hold exactly. An empty operand
    (zero volume or no random points) intersects nothing.
    """
    if first.columns != second.columns:
        raise DegenerateMatrixError(
            f"Hypervolumes span different axes: {first.columns} vs {second.columns}",
            stage="hypervolume:set",
        )
    rng = np.random.default_rng(seed)
    v1, v2 = first.volume, second.volume
    if first.is_empty or second.is_empty:
        p1, p2 = first.random_points, second.random_points
        p1_in_2 = np.zeros(len(p1), dtype=bool)
        p2_in_1 = np.zeros(len(p2), dtype=bool)
        vi = 0.0
        both = np.empty((0, first.dimensionality))
    else:
        density = min(first.point_density, second.point_density)
        p1 = _thin(first.random_points, max(1, round(density * v1)), rng)
        p2 = _thin(second.random_points, max(1, round(density * v2)), rng)

        p1_in_2 = second.contains(p1)
        p2_in_1 = first.contains(p2)

        vi = 0.5 * (p1_in_2.mean() * v1 + p2_in_1.mean() * v2)
        vi = float(min(vi, v1, v2))

        both = np.vstack([p1[p1_in_2], p2[p2_in_1]])
        both = _thin(both, max(0, round(density * vi)), rng)
    vu = v1 + v2 - vi

    cols = first.columns
    a, b = first.membership, second.membership
    return HypervolumeSet(
        first=first,
        second=second,
        intersection=Hypervolume(f"{first.name}∩{second.name}", vi, both, cols, IntersectionOf(a, b)),
        union=Hypervolume(f"{first.name}∪{second.name}", vu,
                          np.vstack([p1, p2[~p2_in_1]]), cols, UnionOf(a, b)),
        unique_first=Hypervolume(f"{first.name}\\{second.name}", v1 - vi,
                                 p1[~p1_in_2].copy(), cols, DifferenceOf(a, b)),
        unique_second=Hypervolume(f"{second.name}\\{first.name}", v2 - vi,
                                  p2[~p2_in_1].copy(), cols, DifferenceOf(b, a)),
    )


def overlap_statistic(first: Hypervolume, second: Hypervolume, statistic: str = "jaccard",
                      seed: int = 0) -> float:
    return set_operations(first, second, seed).overlap()[statistic]
