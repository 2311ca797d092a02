import numpy as np
import pandas as pd
import pytest

from strategy_space.cache import ArtifactCache, fingerprint
from strategy_space.config import RISK_CATEGORIES, section_dict
from strategy_space.extinction import ExtinctionTrial, TraitMeanStatistic
from strategy_space.pipeline import Pipeline
from strategy_space.tables import assign_risk_categories
from strategy_space.trials import TrialCheckpoint, run_one_trial, run_trials


def fragile(trial, seed):
    if trial == 2:
        raise ValueError("degenerate draw")
    return float(seed)


def test_failed_trial_is_isolated():
    trials = run_trials(fragile, 5, base_seed=10, show_progress=False)
    assert trials.n_trials == 5
    assert trials.n_failed == 1
    assert "ValueError: degenerate draw" in trials.failed["error"].iloc[0]
    assert list(trials.values()) == [10.0, 11.0, 13.0, 14.0]


def test_non_finite_statistic_counts_as_failure():
    record = run_one_trial(lambda trial, seed: float("nan"), 0, 1)
    assert record["error"] == "non-finite statistic"


def test_dict_results_keep_extra_columns():
    trials = run_trials(lambda t, s: {"value": t * 1.0, "n_removed": 2 * t}, 3, 0,
                        show_progress=False)
    assert list(trials.column("n_removed")) == [0.0, 2.0, 4.0]


def test_checkpoint_resume(tmp_path):
    checkpoint = TrialCheckpoint(tmp_path / "trials")
    first = run_trials(lambda t, s: float(t), 5, 0, checkpoint=checkpoint,
                       checkpoint_every=2, show_progress=False)
    assert first.n_failed == 0
    assert checkpoint.completed_trials() == {0, 1, 2, 3, 4}

    calls = []

    def later(trial, seed):
        calls.append(trial)
        return 100.0 + trial

    resumed = run_trials(later, 7, 0, checkpoint=checkpoint, show_progress=False)
    assert sorted(calls) == [5, 6]
    assert list(resumed.values()) == [0.0, 1.0, 2.0, 3.0, 4.0, 105.0, 106.0]



def test_checkpoint_directory_with_quote(tmp_path):
    checkpoint = TrialCheckpoint(tmp_path / "o'brien's run" / "trials")
    run_trials(lambda t, s: float(s), 4, 10, checkpoint=checkpoint, checkpoint_every=1,
               show_progress=False)
    loaded = checkpoint.load()
    assert list(loaded["trial"]) == [0, 1, 2, 3]
    assert checkpoint.completed_trials() == {0, 1, 2, 3}


def test_worker_pool_matches_serial(traits, risk):
    statistic = TraitMeanStatistic(np.log10(traits), "body_mass")
    categories = assign_risk_categories(traits.index, risk, RISK_CATEGORIES, "LC")
    trial = ExtinctionTrial(categories, dict(zip(RISK_CATEGORIES, [0.1, 0.2, 0.3, 0.4, 0.5])),
                            statistic)
    serial = run_trials(trial, 6, 3, n_workers=1, show_progress=False)
    pooled = run_trials(trial, 6, 3, n_workers=2, show_progress=False)
    pd.testing.assert_frame_equal(serial.records, pooled.records)


def test_fingerprint_tracks_content(traits):
    assert fingerprint(traits) == fingerprint(traits.copy())
    changed = traits.copy()
    changed.iloc[0, 0] += 1.0
    assert fingerprint(changed) != fingerprint(traits)
    assert fingerprint({"a": 1, "b": 2}) == fingerprint({"b": 2, "a": 1})


def test_cache_hit_skips_compute(tmp_path, traits):
    cache = ArtifactCache(tmp_path / "cache")
    calls = []

    def compute():
        calls.append(1)
        return {"table": traits * 2}

    first = cache.get_or_compute("double", {"factor": 2}, {"traits": traits}, compute)
    second = cache.get_or_compute("double", {"factor": 2}, {"traits": traits}, compute)
    assert len(calls) == 1
    pd.testing.assert_frame_equal(first["table"], second["table"], check_freq=False)

    cache.get_or_compute("double", {"factor": 3}, {"traits": traits}, compute)
    assert len(calls) == 2


def test_cache_keeps_checkpoints_with_entry(tmp_path, traits):
    cache = ArtifactCache(tmp_path / "cache")
    checkpoint = cache.checkpoint("stage", {}, {"traits": traits})
    checkpoint.append([{"trial": 0, "seed": 0, "value": 1.0, "error": ""}])
    key = cache.key("stage", {}, {"traits": traits})
    cache.save("stage", key, {"table": traits})
    assert cache.has("stage", key)
    assert (cache.entry("stage", key) / "trials" / "part-00000.parquet").exists()


def test_pipeline_null_volumes_are_cached(small_config, space):
    pipeline = Pipeline(small_config)
    observed = pipeline.observe(space)
    first = pipeline.null_volumes(observed, "column_shuffle")
    assert first.n_trials == small_config.null.n_trials
    key = pipeline.cache.key(
        "null_column_shuffle",
        {"hypervolume": section_dict(small_config.hypervolume), "n_trials": 10, "seed": 13,
         "mode": "column_shuffle"},
        {"space": observed.space},
    )
    assert pipeline.cache.has("null_column_shuffle", key)
    second = pipeline.null_volumes(observed, "column_shuffle")
    assert np.allclose(first.values(), second.values())
