import numpy as np
import pandas as pd
import pytest

from strategy_space.config import ImputationConfig
from strategy_space.errors import ImputationError
from strategy_space.imputation import ImputedEnsemble, check_imputable, impute_ensemble

CONFIG = ImputationConfig(n_imputations=3, n_iterations=5, seed=5)


def test_observed_cells_unchanged(incomplete_traits, predictors, groups):
    ensemble = impute_ensemble(incomplete_traits, predictors, groups, CONFIG)
    assert len(ensemble) == 3
    observed = ~ensemble.missing_mask.to_numpy()
    original = incomplete_traits.loc[ensemble.species].to_numpy()
    for member in ensemble:
        assert not member.isna().any().any(), "Every absent cell should be filled"
        assert np.array_equal(member.to_numpy()[observed], original[observed])


def test_imputed_values_are_donor_values_from_same_group(incomplete_traits, predictors, groups):
    ensemble = impute_ensemble(incomplete_traits, predictors, groups, CONFIG)
    for member in ensemble:
        for row, col in np.argwhere(ensemble.missing_mask.to_numpy()):
            species_id, column = ensemble.species[row], ensemble.traits[col]
            group = groups[species_id]
            pool = incomplete_traits.loc[groups == group, column].dropna().to_numpy()
            assert member.loc[species_id, column] in pool


def test_only_missing_cells_vary(incomplete_traits, predictors, groups):
    config = ImputationConfig(n_imputations=5, n_iterations=5, seed=5)
    ensemble = impute_ensemble(incomplete_traits, predictors, groups, config)
    stacked = np.stack([m.to_numpy() for m in ensemble])
    spread = stacked.max(axis=0) - stacked.min(axis=0)
    assert np.all(spread[~ensemble.missing_mask.to_numpy()] == 0)


def test_reproducible_with_same_seed(incomplete_traits, predictors, groups):
    a = impute_ensemble(incomplete_traits, predictors, groups, CONFIG)
    b = impute_ensemble(incomplete_traits, predictors, groups, CONFIG)
    for x, y in zip(a, b):
        pd.testing.assert_frame_equal(x, y)


def test_worker_pool_matches_serial(incomplete_traits, predictors, groups):
    serial = impute_ensemble(incomplete_traits, predictors, groups, CONFIG, n_workers=1)
    pooled = impute_ensemble(incomplete_traits, predictors, groups, CONFIG, n_workers=2)
    for x, y in zip(serial, pooled):
        pd.testing.assert_frame_equal(x, y)


def test_extinct_species_dropped_after_imputation(incomplete_traits, predictors, groups):
    extinct = ["sp001", "sp030"]
    ensemble = impute_ensemble(incomplete_traits, predictors, groups, CONFIG, extinct=extinct)
    assert len(ensemble.species) == len(incomplete_traits) - 2
    for member in ensemble:
        assert not member.index.isin(extinct).any()
    assert list(ensemble.missing_mask.index) == list(ensemble[0].index)


def test_trait_missing_for_whole_group_is_fatal(incomplete_traits, predictors, groups):
    broken = incomplete_traits.copy()
    broken.loc[groups == "birds", "clutch_size"] = np.nan
    with pytest.raises(ImputationError) as info:
        impute_ensemble(broken, predictors, groups, CONFIG)
    assert info.value.column == "clutch_size"
    assert "imputation" in str(info.value)


def test_missing_predictor_data_is_fatal(incomplete_traits, predictors, groups):
    holes = predictors.copy()
    holes.iloc[4, 1] = np.nan
    with pytest.raises(ImputationError, match="Predictor data has absent cells"):
        check_imputable(incomplete_traits, holes, groups)
    with pytest.raises(ImputationError, match="no predictor row"):
        check_imputable(incomplete_traits, predictors.iloc[:-3], groups)


def test_long_format_round_trip(incomplete_traits, predictors, groups):
    ensemble = impute_ensemble(incomplete_traits, predictors, groups, CONFIG)
    long = ensemble.to_long()
    assert sorted(long["imputation"].unique()) == [0, 1, 2]
    assert len(long) == 3 * len(ensemble.species)
    back = ImputedEnsemble.from_long(long, ensemble.missing_mask)
    for x, y in zip(ensemble, back):
        pd.testing.assert_frame_equal(x, y)


def test_ensemble_mean_keeps_observed_values(incomplete_traits, predictors, groups):
    ensemble = impute_ensemble(incomplete_traits, predictors, groups, CONFIG)
    mean = ensemble.mean().to_numpy()
    observed = ~ensemble.missing_mask.to_numpy()
    original = incomplete_traits.loc[ensemble.species].to_numpy()
    assert np.allclose(mean[observed], original[observed])
