import json

import pytest

from strategy_space.config import PipelineConfig, config_from_dict, load_config
from strategy_space.errors import ConfigError, DegenerateMatrixError, StrategySpaceError


def test_defaults_are_valid():
    config = load_config()
    assert config.imputation.n_imputations == 25
    assert config.hypervolume.svm_nu == 0.01
    assert config.hypervolume.svm_gamma == 0.5
    assert config.extinction.probabilities["CR"] == 0.999


def test_file_values_merge_over_defaults(tmp_path):
    path = tmp_path / "params.json"
    path.write_text(json.dumps({
        "imputation": {"n_imputations": 5},
        "null": {"modes": ["column_shuffle"], "n_trials": 50},
        "log_traits": ["body_mass"],
    }))
    config = load_config(path, overrides={"runtime": {"n_workers": 4}})
    assert config.imputation.n_imputations == 5
    assert config.imputation.n_iterations == 100
    assert config.null.modes == ("column_shuffle",)
    assert config.log_traits == ("body_mass",)
    assert config.runtime.n_workers == 4


def test_saved_config_loads_back(tmp_path, small_config):
    path = small_config.save(tmp_path / "config_resolved.json")
    assert load_config(path) == small_config


@pytest.mark.parametrize("raw", [
    {"imputaton": {}},
    {"imputation": {"n_chains": 3}},
    {"imputation": 5},
])
def test_unknown_keys_rejected(raw):
    with pytest.raises(ConfigError):
        config_from_dict(raw)


@pytest.mark.parametrize("raw, column", [
    ({"imputation": {"n_imputations": 0}}, "imputation.n_imputations"),
    ({"null": {"n_trials": 0}}, "null.n_trials"),
    ({"null": {"modes": ["gaussian"]}}, "null.modes"),
    ({"hypervolume": {"svm_nu": 0.0}}, "hypervolume.svm_nu"),
    ({"hypervolume": {"svm_gamma": -1.0}}, "hypervolume.svm_gamma"),
    ({"extinction": {"probabilities": {"LC": 0.5, "NT": 0.1, "VU": 0.2, "EN": 0.3, "CR": 0.4}}},
     "extinction.probabilities"),
    ({"extinction": {"probabilities": {"LC": 0.0, "NT": 0.1, "VU": 0.2, "EN": 0.3}}},
     "extinction.probabilities"),
    ({"extinction": {"alternative": "smaller"}}, "extinction.alternative"),
    ({"density": {"bandwidth": "silverman"}}, "density.bandwidth"),
])
def test_invalid_values_rejected(raw, column):
    with pytest.raises(ConfigError) as info:
        config_from_dict(raw)
    assert info.value.column == column


def test_missing_or_broken_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ConfigError, match="Invalid JSON"):
        load_config(broken)


def test_error_message_names_stage_trial_shape_and_column():
    error = DegenerateMatrixError("Zero-variance column", stage="null:uniform", trial=7,
                                  shape=(10, 3), column="PC2")
    text = str(error)
    assert text.startswith("[null:uniform] Zero-variance column")
    assert "trial=7" in text
    assert "shape=10×3" in text
    assert "column=PC2" in text
    assert isinstance(error, StrategySpaceError)


def test_to_dict_is_json_serialisable():
    json.dumps(PipelineConfig().to_dict())
