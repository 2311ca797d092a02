"""
Monte Carlo significance of an observed statistic against a simulated null.

    less:      p = (1 + #{sim <= obs}) / (1 + N)
    greater:   p = (1 + #{sim >= obs}) / (1 + N)
    two-sided: p = min(1, 2 * min(p_less, p_greater))

The +1 terms keep p inside (0, 1]. The standardized effect size is
(observed - mean(sim)) / sd(sim). Non-finite simulated values (failed
trials) are excluded and counted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Sequence

import numpy as np
from scipy.stats import mannwhitneyu

from .config import ALTERNATIVES
from .errors import PermutationInputError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermutationResult:
    observed: float
    simulated: np.ndarray = field(repr=False)
    p_value: float
    alternative: str
    effect_size: float
    null_mean: float
    null_sd: float
    n_excluded: int = 0
    label: str = ""

    @property
    def n_simulated(self) -> int:
        return len(self.simulated)

    def summary(self) -> Dict[str, object]:
        return {
            "test": self.label,
            "observed": self.observed,
            "null_mean": self.null_mean,
            "null_sd": self.null_sd,
            "effect_size": self.effect_size,
            "p_value": self.p_value,
            "alternative": self.alternative,
            "n_simulated": self.n_simulated,
            "n_excluded": self.n_excluded,
        }


def _tail_p(observed: float, simulated: np.ndarray, alternative: str) -> float:
    n = len(simulated)
    if alternative == "less":
        return (1 + int(np.sum(simulated <= observed))) / (1 + n)
    if alternative == "greater":
        return (1 + int(np.sum(simulated >= observed))) / (1 + n)
    p_less = _tail_p(observed, simulated, "less")
    p_greater = _tail_p(observed, simulated, "greater")
    return min(1.0, 2 * min(p_less, p_greater))


def permutation_test(
    observed: float,
    simulated: Sequence[float],
    alternative: str = "less",
    label: str = "",
) -> PermutationResult:
    """
    Monte Carlo p-value and standardized effect of ``observed`` against ``simulated``.

    Raises:
        PermutationInputError: unknown alternative, non-finite observed value, or
            fewer than one usable simulated value.
    """
    if alternative not in ALTERNATIVES:
        raise PermutationInputError(f"Unknown alternative '{alternative}'",
                                    stage=f"permutation:{label}" if label else "permutation")
    if not np.isfinite(observed):
        raise PermutationInputError("Observed statistic is not finite",
                                    stage=f"permutation:{label}" if label else "permutation")
    sims = np.asarray(simulated, dtype=float).ravel()
    finite = np.isfinite(sims)
    n_excluded = int((~finite).sum())
    sims = sims[finite]
    if len(sims) < 1:
        raise PermutationInputError(
            f"Need at least 1 simulated statistic, got 0 ({n_excluded} excluded)",
            stage=f"permutation:{label}" if label else "permutation", shape=(len(sims),),
        )
    if n_excluded:
        logger.warning("%s: %d non-finite simulated values excluded", label or "permutation", n_excluded)

    null_mean = float(sims.mean())
    null_sd = float(sims.std(ddof=1)) if len(sims) > 1 else float("nan")
    if null_sd > 0:
        effect = (observed - null_mean) / null_sd
    else:
        effect = float("nan")

    result = PermutationResult(
        observed=float(observed),
        simulated=sims,
        p_value=_tail_p(float(observed), sims, alternative),
        alternative=alternative,
        effect_size=float(effect),
        null_mean=null_mean,
        null_sd=null_sd,
        n_excluded=n_excluded,
        label=label,
    )
    logger.info("%s: observed=%.4g null=%.4g±%.4g SES=%.3f p=%.4g (%s, N=%d)",
                label or "permutation", result.observed, null_mean, null_sd,
                result.effect_size, result.p_value, alternative, len(sims))
    return result


@dataclass(frozen=True)
class RankTestResult:
    statistic: float
    p_value: float
    alternative: str
    n_first: int
    n_second: int


def rank_test(first: Sequence[float], second: Sequence[float],
              alternative: str = "two-sided") -> RankTestResult:
    """Wilcoxon rank-sum (Mann-Whitney U) test between two simulated distributions."""
    if alternative not in ALTERNATIVES:
        raise PermutationInputError(f"Unknown alternative '{alternative}'", stage="rank test")
    a = np.asarray(first, dtype=float)
    b = np.asarray(second, dtype=float)
    a, b = a[np.isfinite(a)], b[np.isfinite(b)]
    if len(a) < 1 or len(b) < 1:
        raise PermutationInputError("Rank test needs values in both samples", stage="rank test",
                                    shape=(len(a), len(b)))
    res = mannwhitneyu(a, b, alternative=alternative)
    return RankTestResult(float(res.statistic), float(res.pvalue), alternative, len(a), len(b))
