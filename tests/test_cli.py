import json

import pandas as pd
import pytest

from strategy_space.cli import build_parser, main, overrides_from_args


@pytest.fixture
def inputs(tmp_path, incomplete_traits, groups, predictors, risk):
    data = tmp_path / "data"
    data.mkdir()
    incomplete_traits.to_csv(data / "traits.csv")
    groups.to_frame().to_csv(data / "groups.csv")
    predictors.to_csv(data / "predictors.csv")
    risk.to_frame().to_csv(data / "risk.csv")
    config = {
        "imputation": {"n_imputations": 2, "n_iterations": 3},
        "pca": {"n_components": 2},
        "density": {"grid_size": 41},
        "hypervolume": {"samples_per_point": 50},
        "null": {"n_trials": 5, "modes": ["column_shuffle"]},
        "extinction": {"n_trials": 5},
        "runtime": {"show_progress": False, "cache_dir": str(tmp_path / "cache")},
        "log_traits": ["body_mass", "generation_length", "clutch_size"],
    }
    (data / "params.json").write_text(json.dumps(config))
    return data


def test_overrides_from_flags():
    args = build_parser().parse_args([
        "null-test", "--scores_csv", "s.csv", "--out_dir", "out", "--mode", "uniform",
        "--n_trials", "20", "--seed", "3", "--no_progress",
    ])
    overrides = overrides_from_args(args)
    assert overrides["null"] == {"n_trials": 20, "modes": ["uniform"], "seed": 3}
    assert overrides["runtime"] == {"show_progress": False}
    assert overrides["hypervolume"] == {"seed": 3}


def test_stage_by_stage(inputs, tmp_path):
    out = tmp_path / "out"
    common = ["--out_dir", str(out), "--config", str(inputs / "params.json")]

    assert main(["impute", "--traits_csv", str(inputs / "traits.csv"),
                 "--groups_csv", str(inputs / "groups.csv"),
                 "--predictors_csv", str(inputs / "predictors.csv")] + common) == 0
    long = pd.read_parquet(out / "imputed_ensemble.parquet")
    assert sorted(long["imputation"].unique()) == [0, 1]
    assert (out / "config_resolved.json").exists()

    assert main(["pca", "--ensemble_parquet", str(out / "imputed_ensemble.parquet")] + common) == 0
    scores = pd.read_csv(out / "consensus_scores.csv", index_col="species_id")
    assert scores.shape == (40, 2)

    scores_csv = str(out / "consensus_scores.csv")
    assert main(["density", "--scores_csv", scores_csv] + common) == 0
    levels = json.loads((out / "density_levels.json").read_text())
    assert [row["probability"] for row in levels["levels"]] == [0.5, 0.95, 0.99]
    assert len(pd.read_parquet(out / "density_grid.parquet")) == 41 * 41

    assert main(["null-test", "--scores_csv", scores_csv] + common) == 0
    assert len(pd.read_parquet(out / "null_volumes_column_shuffle.parquet")) == 5
    results = pd.read_csv(out / "permutation_results.csv")
    assert results["p_value"].between(0, 1, inclusive="right").all()

    assert main(["overlap", "--scores_csv", scores_csv,
                 "--groups_csv", str(inputs / "groups.csv")] + common) == 0
    overlap = pd.read_csv(out / "overlap_statistics.csv")
    assert overlap[["first", "second"]].values.tolist() == [["birds", "mammals"]]
    assert (out / "overlap_tests.csv").exists()

    assert main(["extinction", "--scores_csv", scores_csv,
                 "--risk_csv", str(inputs / "risk.csv"),
                 "--raw_traits_csv", str(out / "imputed_mean.csv"),
                 "--trait", "body_mass"] + common) == 0
    tests = pd.read_csv(out / "extinction_tests.csv")
    assert len(tests) == 4
    assert (out / "extinction_volume.parquet").exists()
    assert (out / "extinction_mean_body_mass.parquet").exists()


def test_full_run(inputs, tmp_path):
    out = tmp_path / "run"
    status = main([
        "run",
        "--traits_csv", str(inputs / "traits.csv"),
        "--groups_csv", str(inputs / "groups.csv"),
        "--predictors_csv", str(inputs / "predictors.csv"),
        "--risk_csv", str(inputs / "risk.csv"),
        "--out_dir", str(out),
        "--config", str(inputs / "params.json"),
    ])
    assert status == 0
    for name in ("consensus_scores.csv", "consensus_loadings.csv", "variance_explained.csv",
                 "observed_volumes.csv", "null_volumes_column_shuffle.parquet",
                 "permutation_results.csv", "overlap_tests.csv", "extinction_tests.csv",
                 "extinction_rank_tests.csv", "density_grid.parquet"):
        assert (out / name).exists(), name
    assert any((tmp_path / "cache" / "imputation").iterdir())


def test_errors_exit_with_status_one(tmp_path, capsys):
    status = main(["pca", "--ensemble_parquet", str(tmp_path / "absent.parquet"),
                   "--out_dir", str(tmp_path / "out")])
    assert status == 1
    assert "✗ ERROR" in capsys.readouterr().err

    status = main(["density", "--scores_csv", "s.csv", "--out_dir", str(tmp_path / "out"),
                   "--config", str(tmp_path / "absent.json")])
    assert status == 1
