import numpy as np
import pandas as pd
import pytest

from strategy_space.config import (
    ExtinctionConfig,
    HypervolumeConfig,
    ImputationConfig,
    NullConfig,
    PCAConfig,
    PipelineConfig,
    RuntimeConfig,
)
from strategy_space.ensemble_pca import zscore
from strategy_space.hypervolume import HypervolumeEstimator

N_SPECIES = 40
MISSING_CELLS = [(1, 0), (5, 1), (12, 2), (25, 0), (33, 1), (38, 2)]


def species_ids(n):
    return pd.Index([f"sp{i:03d}" for i in range(n)], name="species_id")


def correlated_traits(n, seed=7):
    """Three positive traits driven by one latent size axis."""
    rng = np.random.default_rng(seed)
    size = rng.normal(0, 1, n)
    return pd.DataFrame(
        {
            "body_mass": np.exp(2.0 + size + rng.normal(0, 0.2, n)),
            "generation_length": np.exp(1.0 + 0.6 * size + rng.normal(0, 0.3, n)),
            "clutch_size": np.exp(0.5 - 0.4 * size + rng.normal(0, 0.3, n)),
        },
        index=species_ids(n),
    )


@pytest.fixture
def traits():
    return correlated_traits(N_SPECIES)


@pytest.fixture
def incomplete_traits(traits):
    out = traits.copy()
    for row, col in MISSING_CELLS:
        out.iloc[row, col] = np.nan
    return out


@pytest.fixture
def groups():
    labels = ["birds"] * (N_SPECIES // 2) + ["mammals"] * (N_SPECIES - N_SPECIES // 2)
    return pd.Series(labels, index=species_ids(N_SPECIES), name="group")


@pytest.fixture
def predictors():
    rng = np.random.default_rng(3)
    return pd.DataFrame(
        rng.normal(0, 1, (N_SPECIES, 3)),
        index=species_ids(N_SPECIES),
        columns=["phylo_ev1", "phylo_ev2", "phylo_ev3"],
    )


@pytest.fixture
def risk():
    categories = ["LC", "NT", "VU", "EN", "CR"]
    values = [categories[i % 5] for i in range(N_SPECIES)]
    values[3] = None
    values[17] = None
    return pd.Series(values, index=species_ids(N_SPECIES), name="risk_category")


@pytest.fixture
def space(traits):
    """Standardized two-axis trait space."""
    return zscore(np.log10(traits[["body_mass", "clutch_size"]]))


@pytest.fixture
def estimator():
    return HypervolumeEstimator(samples_per_point=200, seed=11)


@pytest.fixture
def small_config(tmp_path):
    return PipelineConfig(
        imputation=ImputationConfig(n_imputations=3, n_iterations=5, seed=5),
        pca=PCAConfig(n_components=2),
        hypervolume=HypervolumeConfig(samples_per_point=100, seed=11),
        null=NullConfig(n_trials=10, modes=("column_shuffle",), seed=13),
        extinction=ExtinctionConfig(n_trials=10, seed=17),
        runtime=RuntimeConfig(cache_dir=str(tmp_path / "cache"), show_progress=False),
        log_traits=("body_mass", "generation_length", "clutch_size"),
    )


@pytest.fixture
def make_traits():
    return correlated_traits
