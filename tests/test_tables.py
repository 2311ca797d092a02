import numpy as np
import pandas as pd
import pytest

from strategy_space.errors import InputTableError
from strategy_space.tables import (
    TraitRecord,
    align_species,
    frame_from_records,
    load_table,
    log_transform,
    predictor_columns,
    records_from_frame,
    save_table,
    select_traits,
)


def test_csv_and_parquet_round_trip(tmp_path, incomplete_traits):
    for name in ("traits.csv", "traits.parquet"):
        path = save_table(incomplete_traits, tmp_path / name)
        loaded = load_table(path)
        assert list(loaded.index) == list(incomplete_traits.index)
        assert np.allclose(loaded.to_numpy(), incomplete_traits.to_numpy(), equal_nan=True)


def test_duplicate_species_rejected(tmp_path):
    path = tmp_path / "dupes.csv"
    pd.DataFrame({"species_id": ["a", "b", "a"], "x": [1, 2, 3]}).to_csv(path, index=False)
    with pytest.raises(InputTableError, match="duplicate species"):
        load_table(path)


def test_missing_identifier_column(tmp_path):
    path = tmp_path / "noid.csv"
    pd.DataFrame({"taxon": ["a"], "x": [1]}).to_csv(path, index=False)
    with pytest.raises(InputTableError) as info:
        load_table(path)
    assert info.value.column == "species_id"


def test_log_transform(traits):
    logged = log_transform(traits, ["body_mass"])
    assert np.allclose(logged["body_mass"], np.log10(traits["body_mass"]))
    assert np.allclose(logged["clutch_size"], traits["clutch_size"])


def test_log_transform_rejects_non_positive(traits):
    bad = traits.copy()
    bad.iloc[0, 0] = 0.0
    with pytest.raises(InputTableError) as info:
        log_transform(bad, ["body_mass"])
    assert info.value.column == "body_mass"


def test_log_transform_keeps_absent_cells(incomplete_traits):
    logged = log_transform(incomplete_traits, list(incomplete_traits.columns))
    assert logged.isna().equals(incomplete_traits.isna())


def test_records_round_trip(incomplete_traits, groups):
    records = records_from_frame(incomplete_traits, groups)
    assert records[1].traits["body_mass"] is None
    assert isinstance(records[0], TraitRecord)
    traits, back_groups = frame_from_records(records)
    assert np.allclose(traits.to_numpy(), incomplete_traits.to_numpy(), equal_nan=True)
    assert list(back_groups) == list(groups)


def test_duplicate_records_rejected():
    records = [TraitRecord("a", {"x": 1.0}), TraitRecord("a", {"x": 2.0})]
    with pytest.raises(InputTableError):
        frame_from_records(records)


def test_select_and_predictor_columns(traits, predictors):
    table = traits.assign(note="text")
    assert list(select_traits(table).columns) == list(traits.columns)
    with pytest.raises(InputTableError):
        select_traits(traits, ["wing_length"])
    assert predictor_columns(predictors.assign(other=1.0)) == ["phylo_ev1", "phylo_ev2", "phylo_ev3"]


def test_align_species(traits, groups):
    align_species(traits, groups, names=["groups"])
    with pytest.raises(InputTableError, match="missing from groups"):
        align_species(traits, groups.iloc[:-1], names=["groups"])
