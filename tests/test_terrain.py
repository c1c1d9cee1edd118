import numpy as np
import pytest

from covstack.errors import InvalidGridError, UnknownToolError
from covstack.prep import terrain
from covstack.raster import Raster, write_raster

from conftest import make_grid

INPUT_PARAMS = ("ELEV", "ELEVATION", "DEM")


@pytest.fixture
def saga_cmd(tmp_path):
    path = tmp_path / "saga_cmd"
    path.touch()
    return path


@pytest.fixture
def fake_saga(monkeypatch):
    """Replace saga_cmd with a writer of random grids for every output param."""
    calls = []

    def run_saga(saga_path, library, tool, params, cores=4, verbose=True):
        calls.append((library, tool))
        dem = make_grid()
        rng = np.random.default_rng(len(calls))
        for key, path in params.items():
            if key in INPUT_PARAMS:
                continue
            values = rng.normal(size=dem.shape).astype(np.float32)
            # SAGA grids come back without a CRS
            write_raster(Raster(values, dem.transform, None, (key.lower(),)), path)

    monkeypatch.setattr(terrain, "run_saga", run_saga)
    return calls


def test_all_expands_to_every_group():
    assert terrain.parse_tool_groups("all") == list(terrain.ToolGroup)
    assert len(terrain.parse_tool_groups(["basic", "all"])) == 6


def test_unknown_tool_group():
    with pytest.raises(UnknownToolError):
        terrain.parse_tool_groups(["basic", "canyon"])


def test_every_group_has_a_tool():
    for group in terrain.ToolGroup:
        tool = terrain.saga_tool(group)
        assert tool.outputs
        assert tool.library.startswith("ta_")


def test_missing_saga_executable(grid, tmp_path):
    with pytest.raises(FileNotFoundError):
        terrain.get_terrain_layers(grid, tmp_path / "no_saga_here")


def test_geographic_dem_rejected(saga_cmd):
    with pytest.raises(InvalidGridError):
        terrain.get_terrain_layers(make_grid(crs="EPSG:4326", res=0.001), saga_cmd)


def test_terrain_layers_on_dem_grid(grid, saga_cmd, fake_saga, tmp_path):
    layers = terrain.get_terrain_layers(grid, saga_cmd, tools=["basic", "hydrologic"],
                                        work_dir=tmp_path / "work")

    assert fake_saga[0] == ("ta_preprocessor", "4")
    assert fake_saga[1:] == [("ta_compound", "0"), ("ta_hydrology", "15")]
    assert layers.names[0] == "dem_filled"
    assert layers.names.count("slope") == 1
    assert "twi" in layers.names
    assert len(set(layers.names)) == layers.count
    assert layers.same_grid(grid)


def test_unknown_tool_group_fails_before_saga_runs(grid, saga_cmd, fake_saga):
    with pytest.raises(UnknownToolError):
        terrain.get_terrain_layers(grid, saga_cmd, tools="ridges")
    assert fake_saga == []


def test_slope_of_planar_ramp(grid):
    result = terrain.compute_slope_aspect(grid)
    assert result.names == ("slope", "aspect")
    assert result.same_grid(grid)

    # 2 m per column, 3 m per row at 30 m cells
    expected = np.degrees(np.arctan(np.hypot(2 / 30, 3 / 30)))
    np.testing.assert_allclose(result.data[0, 1:-1, 1:-1], expected, rtol=1e-4)


def test_flat_dem_has_no_aspect():
    flat = make_grid(np.full((20, 30), 250.0, dtype=np.float32))
    result = terrain.compute_slope_aspect(flat)
    assert np.all(result.data[0] == 0)
    assert np.all(result.data[1] == -1)


def test_unknown_slope_algorithm(grid):
    with pytest.raises(ValueError):
        terrain.compute_slope_aspect(grid, algorithm="zevenbergen")
