import numpy as np
import pytest

from covstack.errors import InvalidGridError
from covstack.prep.ogc import get_oblique_layers

from conftest import make_grid


@pytest.mark.parametrize("n", [3, 0, 4.5, "6", True])
def test_invalid_direction_count(grid, n):
    with pytest.raises(ValueError):
        get_oblique_layers(grid, n)


def test_geographic_grid_rejected():
    with pytest.raises(InvalidGridError):
        get_oblique_layers(make_grid(crs="EPSG:4326", res=0.001), 4)


def test_layer_names_and_grid(grid):
    ogc = get_oblique_layers(grid, 6)
    assert ogc.names == tuple(f"ogc_{i}" for i in range(1, 7))
    assert ogc.same_grid(grid)


def test_first_and_orthogonal_directions_are_x_and_y(grid):
    ogc = get_oblique_layers(grid, 4)
    rows, cols = np.mgrid[0:grid.height, 0:grid.width]
    x = grid.transform.c + (cols + 0.5) * grid.transform.a
    y = grid.transform.f + (rows + 0.5) * grid.transform.e
    np.testing.assert_allclose(ogc.data[0], x, rtol=1e-6)
    np.testing.assert_allclose(ogc.data[2], y, rtol=1e-6)


def test_missing_grid_cells_stay_missing():
    values = np.ones((20, 30), dtype=np.float32)
    values[5, 5] = np.nan
    ogc = get_oblique_layers(make_grid(values), 5)
    assert np.isnan(ogc.data[:, 5, 5]).all()
    assert np.isfinite(ogc.data[:, 0, 0]).all()
