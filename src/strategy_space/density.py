"""
Kernel density surfaces over the consensus trait space, for visualisation.

Bandwidth selection:
- ``plugin``: full 2x2 bandwidth matrix minimising the AMISE of a bivariate
  Gaussian kernel estimator (Wand & Jones 1994). The fourth-order density
  functionals psi_r in the AMISE bias term are estimated on pre-sphered data
  with a single normal-reference pilot bandwidth, and the AMISE is minimised
  over the Cholesky factor of H with Nelder-Mead.
- ``normal_scale``: H = (4 / (n (d + 2)))^(2/(d+4)) S, any dimension.

Probability contours follow the usual highest-density-region construction:
the threshold for mass p is the density level whose exceedance region holds a
fraction p of the total grid mass.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from scipy.special import eval_hermitenorm

from .errors import DegenerateMatrixError

logger = logging.getLogger(__name__)

_CHUNK = 512


def _check_points(points, stage: str = "density",
                  columns: Optional[Sequence[str]] = None) -> np.ndarray:
    if isinstance(points, pd.DataFrame):
        columns = [str(c) for c in points.columns]
    points = np.asarray(points, dtype=float)
    if points.ndim != 2:
        raise DegenerateMatrixError("Expected a 2-D array of points", stage=stage,
                                    shape=points.shape)
    n, d = points.shape
    if n <= d:
        raise DegenerateMatrixError("Fewer points than dimensions + 1", stage=stage,
                                    shape=points.shape)
    if not np.isfinite(points).all():
        raise DegenerateMatrixError("Non-finite coordinates", stage=stage, shape=points.shape)
    sd = points.std(axis=0, ddof=1)
    if np.any(sd <= 0):
        raise DegenerateMatrixError("Zero-variance coordinate", stage=stage, shape=points.shape,
                                    column=_column_name(columns, int(np.argmin(sd))))
    return points


def _column_name(columns: Optional[Sequence[str]], j: int) -> str:
    return str(columns[j]) if columns is not None else f"x{j + 1}"


def normal_scale_bandwidth(points: np.ndarray) -> np.ndarray:
    points = _check_points(points)
    n, d = points.shape
    S = np.atleast_2d(np.cov(points, rowvar=False))
    return (4.0 / (n * (d + 2))) ** (2.0 / (d + 4)) * S


def _kernel_derivative(u: np.ndarray, r: int, g: float) -> np.ndarray:
    """r-th derivative of the univariate N(0, g^2) density at u."""
    z = u / g
    return (-1) ** r * g ** (-(r + 1)) * eval_hermitenorm(r, z) * np.exp(-0.5 * z * z) / math.sqrt(2 * math.pi)


def _psi4(y: np.ndarray, g: float) -> Dict[tuple, float]:
    """Estimates of psi_(r1, r2), r1 + r2 = 4, from sphered bivariate data."""
    n = len(y)
    orders = [(4, 0), (3, 1), (2, 2), (1, 3), (0, 4)]
    totals = dict.fromkeys(orders, 0.0)
    for start in range(0, n, _CHUNK):
        block = y[start:start + _CHUNK]
        dx = block[:, None, 0] - y[None, :, 0]
        dy = block[:, None, 1] - y[None, :, 1]
        kx = {r: _kernel_derivative(dx, r, g) for r in range(5)}
        ky = {r: _kernel_derivative(dy, r, g) for r in range(5)}
        for r1, r2 in orders:
            totals[(r1, r2)] += float(np.sum(kx[r1] * ky[r2]))
    return {k: v / (n * n) for k, v in totals.items()}


def _amise(H: np.ndarray, psi: Dict[tuple, float], n: int) -> float:
    h11, h12, h22 = H[0, 0], H[0, 1], H[1, 1]
    det = h11 * h22 - h12 * h12
    if det <= 0:
        return np.inf
    variance = 1.0 / (n * 4 * math.pi * math.sqrt(det))
    bias = 0.25 * (
        h11 ** 2 * psi[(4, 0)]
        + 4 * h11 * h12 * psi[(3, 1)]
        + (2 * h11 * h22 + 4 * h12 ** 2) * psi[(2, 2)]
        + 4 * h12 * h22 * psi[(1, 3)]
        + h22 ** 2 * psi[(0, 4)]
    )
    return variance + bias


def _from_params(theta: np.ndarray) -> np.ndarray:
    L = np.array([[math.exp(theta[0]), 0.0], [theta[1], math.exp(theta[2])]])
    return L @ L.T


def plugin_bandwidth(points: np.ndarray) -> np.ndarray:
    """AMISE plug-in bandwidth matrix for 2-D data."""
    points = _check_points(points)
    n, d = points.shape
    if d != 2:
        raise DegenerateMatrixError("Plug-in bandwidth is implemented for 2-D data",
                                    stage="density", shape=points.shape)
    S = np.cov(points, rowvar=False)
    L_s = np.linalg.cholesky(S)
    y = np.linalg.solve(L_s, (points - points.mean(axis=0)).T).T

    g = (2.0 / (d + 4)) ** (1.0 / (d + 6)) * n ** (-1.0 / (d + 6))
    psi = _psi4(y, g)
    bias_form = np.array([
        [psi[(4, 0)], 2 * psi[(3, 1)], psi[(2, 2)]],
        [2 * psi[(3, 1)], 4 * psi[(2, 2)], 2 * psi[(1, 3)]],
        [psi[(2, 2)], 2 * psi[(1, 3)], psi[(0, 4)]],
    ])
    if np.linalg.eigvalsh(bias_form).min() <= 0:
        logger.warning("Estimated AMISE bias term is not positive definite; "
                       "using normal-scale bandwidth")
        return normal_scale_bandwidth(points)

    h0 = (4.0 / (n * (d + 2))) ** (1.0 / (d + 4))
    start = np.array([math.log(h0), 0.0, math.log(h0)])
    result = minimize(lambda t: _amise(_from_params(t), psi, n), start, method="Nelder-Mead",
                      options={"xatol": 1e-6, "fatol": 1e-12, "maxiter": 2000})
    if not np.isfinite(result.fun):
        logger.warning("Plug-in AMISE minimisation failed (%s); using normal-scale bandwidth",
                       result.message)
        return normal_scale_bandwidth(points)
    H_y = _from_params(result.x)
    return L_s @ H_y @ L_s.T


def kde_evaluate(eval_points: np.ndarray, data: np.ndarray, H: np.ndarray) -> np.ndarray:
    """Gaussian kernel density estimate with bandwidth matrix H, at ``eval_points``."""
    data = np.asarray(data, dtype=float)
    eval_points = np.asarray(eval_points, dtype=float)
    n, d = data.shape
    C = np.linalg.cholesky(np.atleast_2d(H))
    norm = (2 * math.pi) ** (-d / 2) / np.prod(np.diag(C)) / n
    white_data = np.linalg.solve(C, data.T).T
    white_eval = np.linalg.solve(C, eval_points.T).T
    out = np.empty(len(eval_points))
    for start in range(0, len(eval_points), _CHUNK):
        block = white_eval[start:start + _CHUNK]
        sq = ((block[:, None, :] - white_data[None, :, :]) ** 2).sum(axis=2)
        out[start:start + _CHUNK] = np.exp(-0.5 * sq).sum(axis=1) * norm
    return out


def contour_levels(density: np.ndarray, cell_area: float,
                   probabilities: Sequence[float]) -> Dict[float, float]:
    """
    Density thresholds whose exceedance regions hold the requested probability mass.

    Grid values are sorted ascending and their cumulative mass (density x cell
    area, normalised by the grid total) is interpolated at 1 - p.
    """
    values = np.sort(np.asarray(density, dtype=float).ravel())
    mass = np.cumsum(values * cell_area)
    total = mass[-1]
    if not total > 0:
        raise DegenerateMatrixError("Density grid carries no mass", stage="density",
                                    shape=np.shape(density))
    cumulative = mass / total
    return {float(p): float(np.interp(1.0 - p, cumulative, values)) for p in probabilities}


@dataclass(frozen=True)
class DensitySurface:
    x: np.ndarray
    y: np.ndarray
    density: np.ndarray          # density[i, j] at (x[i], y[j])
    bandwidth: np.ndarray
    levels: Dict[float, float] = field(default_factory=dict)
    columns: tuple = ("x", "y")

    @property
    def cell_area(self) -> float:
        return float((self.x[1] - self.x[0]) * (self.y[1] - self.y[0]))

    def mass_above(self, threshold: float) -> float:
        """Fraction of grid mass in cells with density >= threshold."""
        total = self.density.sum()
        return float(self.density[self.density >= threshold].sum() / total)

    def to_frame(self) -> pd.DataFrame:
        xx, yy = np.meshgrid(self.x, self.y, indexing="ij")
        return pd.DataFrame({
            self.columns[0]: xx.ravel(),
            self.columns[1]: yy.ravel(),
            "density": self.density.ravel(),
        })

    def levels_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{"probability": p, "threshold": t, "mass_above": self.mass_above(t)}
             for p, t in sorted(self.levels.items())]
        )


def estimate_density(
    points,
    grid_size: int = 151,
    probabilities: Sequence[float] = (0.50, 0.95, 0.99),
    bandwidth: str = "plugin",
) -> DensitySurface:
    """
    Kernel density surface on a regular grid over a 2-D point cloud.

    Args:
        points: n x 2 array or two-column DataFrame.
        grid_size: Grid points per axis.
        probabilities: Probability masses for the contour thresholds.
        bandwidth: ``plugin`` or ``normal_scale``.

    Returns:
        DensitySurface with grid axes, density matrix, bandwidth and contour levels.
    """
    columns = ("x", "y")
    if isinstance(points, pd.DataFrame):
        columns = tuple(str(c) for c in points.columns)
        points = points.to_numpy(dtype=float)
    points = _check_points(points, columns=columns)
    if points.shape[1] != 2:
        raise DegenerateMatrixError("Density grids need exactly 2 coordinates",
                                    stage="density", shape=points.shape)

    if bandwidth == "plugin":
        H = plugin_bandwidth(points)
    else:
        H = normal_scale_bandwidth(points)

    pad = 3.7 * np.sqrt(np.diag(H))
    lo = points.min(axis=0) - pad
    hi = points.max(axis=0) + pad
    gx = np.linspace(lo[0], hi[0], grid_size)
    gy = np.linspace(lo[1], hi[1], grid_size)
    xx, yy = np.meshgrid(gx, gy, indexing="ij")
    grid = np.column_stack([xx.ravel(), yy.ravel()])
    density = kde_evaluate(grid, points, H).reshape(grid_size, grid_size)

    cell_area = float((gx[1] - gx[0]) * (gy[1] - gy[0]))
    levels = contour_levels(density, cell_area, probabilities)
    logger.info("Density surface %dx%d, H=[[%.4g, %.4g], [%.4g, %.4g]], levels %s",
                grid_size, grid_size, H[0, 0], H[0, 1], H[1, 0], H[1, 1],
                {p: round(t, 6) for p, t in levels.items()})
    return DensitySurface(gx, gy, density, H, levels, columns)
