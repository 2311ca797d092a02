import numpy as np
import pandas as pd
import pytest

from strategy_space.density import (
    contour_levels,
    estimate_density,
    kde_evaluate,
    normal_scale_bandwidth,
    plugin_bandwidth,
)
from strategy_space.errors import DegenerateMatrixError


@pytest.fixture
def cloud():
    rng = np.random.default_rng(21)
    cov = np.array([[1.0, 0.6], [0.6, 1.5]])
    return rng.multivariate_normal([0.0, 1.0], cov, size=200)


def test_plugin_bandwidth_is_positive_definite(cloud):
    H = plugin_bandwidth(cloud)
    assert H.shape == (2, 2)
    assert np.allclose(H, H.T)
    assert np.all(np.linalg.eigvalsh(H) > 0)


def test_normal_scale_bandwidth_any_dimension():
    rng = np.random.default_rng(4)
    points = rng.normal(size=(100, 3))
    H = normal_scale_bandwidth(points)
    assert H.shape == (3, 3)
    assert np.all(np.linalg.eigvalsh(H) > 0)


def test_contour_thresholds_are_ordered(cloud):
    surface = estimate_density(cloud, grid_size=101)
    t50, t95, t99 = (surface.levels[p] for p in (0.50, 0.95, 0.99))
    assert t99 <= t95 <= t50


def test_thresholds_enclose_requested_mass(cloud):
    surface = estimate_density(cloud, grid_size=151)
    for p, threshold in surface.levels.items():
        assert surface.mass_above(threshold) == pytest.approx(p, abs=0.02)


def test_grid_density_integrates_to_one(cloud):
    surface = estimate_density(cloud, grid_size=151, bandwidth="normal_scale")
    assert surface.density.sum() * surface.cell_area == pytest.approx(1.0, abs=0.01)


def test_surface_frames_keep_axis_names(cloud):
    points = pd.DataFrame(cloud, columns=["PC1", "PC2"])
    surface = estimate_density(points, grid_size=21)
    frame = surface.to_frame()
    assert list(frame.columns) == ["PC1", "PC2", "density"]
    assert len(frame) == 21 * 21
    levels = surface.levels_frame()
    assert list(levels["probability"]) == [0.50, 0.95, 0.99]


def test_contour_levels_on_flat_grid():
    flat = np.ones((10, 10))
    levels = contour_levels(flat, 1.0, [0.5, 0.9])
    assert levels[0.5] == pytest.approx(1.0)
    assert levels[0.9] == pytest.approx(1.0)


def test_kde_evaluate_three_dimensions():
    rng = np.random.default_rng(5)
    data = rng.normal(size=(50, 3))
    H = normal_scale_bandwidth(data)
    values = kde_evaluate(np.zeros((1, 3)), data, H)
    far = kde_evaluate(np.full((1, 3), 10.0), data, H)
    assert values[0] > far[0] >= 0


def test_degenerate_inputs():
    with pytest.raises(DegenerateMatrixError):
        estimate_density(np.array([[0.0, 1.0], [1.0, 2.0]]))
    with pytest.raises(DegenerateMatrixError):
        estimate_density(np.column_stack([np.arange(10.0), np.ones(10)]))
    with pytest.raises(DegenerateMatrixError):
        estimate_density(np.random.default_rng(0).normal(size=(20, 3)))


def test_zero_variance_error_names_the_column():
    frame = pd.DataFrame({"PC1": np.arange(10.0), "PC2": np.ones(10)})
    with pytest.raises(DegenerateMatrixError) as info:
        estimate_density(frame)
    assert info.value.column == "PC2"
    with pytest.raises(DegenerateMatrixError) as info:
        normal_scale_bandwidth(frame)
    assert info.value.column == "PC2"
    with pytest.raises(DegenerateMatrixError) as info:
        plugin_bandwidth(np.column_stack([np.ones(10), np.arange(10.0)]))
    assert info.value.column == "x1"
