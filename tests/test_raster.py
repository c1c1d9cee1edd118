import numpy as np
import pytest
from rasterio.transform import from_origin

from covstack.raster import Raster, is_raster, read_raster, stack_rasters, write_raster

from conftest import make_grid


def test_two_dimensional_data_becomes_one_band():
    r = Raster(np.zeros((4, 5)), from_origin(0, 100, 10, 10), "EPSG:32633", "dem")
    assert r.count == 1
    assert r.shape == (4, 5)
    assert r.names == ("dem",)
    assert r.res == (10.0, 10.0)
    assert tuple(r.bounds) == (0.0, 60.0, 50.0, 100.0)


def test_band_name_count_must_match():
    with pytest.raises(ValueError):
        Raster(np.zeros((2, 4, 5)), from_origin(0, 100, 10, 10), "EPSG:32633", ("only_one",))


def test_masked_replaces_nodata_with_nan():
    data = np.array([[1, -9999], [3, 4]], dtype=np.int16)
    r = Raster(data, from_origin(0, 20, 10, 10), "EPSG:32633", ("v",), -9999)
    masked = r.masked()
    assert np.isnan(masked[0, 0, 1])
    assert masked[0, 1, 0] == 3.0
    assert r.data[0, 0, 1] == -9999


def test_empty_crs_treated_as_undefined():
    from rasterio.crs import CRS
    r = Raster(np.zeros((2, 2)), from_origin(0, 20, 10, 10), CRS(), ("v",))
    assert r.crs is None


def test_is_raster():
    assert is_raster(make_grid())
    assert not is_raster(np.zeros((2, 2)))
    assert not is_raster("slope.tif")


def test_stack_rasters_requires_one_grid(grid):
    shifted = Raster(grid.data, from_origin(0, 0, 30, 30), grid.crs, ("other",), np.nan)
    with pytest.raises(ValueError):
        stack_rasters([grid, shifted])


def test_stack_rasters_mixed_nodata(grid):
    ints = Raster(np.full(grid.shape, -1, dtype=np.int16), grid.transform, grid.crs, ("ints",), -1)
    stacked = stack_rasters([grid, ints])
    assert stacked.names == ("elevation", "ints")
    assert np.isnan(stacked.nodata)
    assert np.isnan(stacked.data[1]).all()


def test_written_band_names_are_read_back(tmp_path, grid):
    two = stack_rasters([grid, grid.rename(["copy"])])
    path = write_raster(two, tmp_path / "out" / "two.tif")
    back = read_raster(path)
    assert back.names == ("elevation", "copy")
    assert back.same_grid(two)
    np.testing.assert_array_equal(back.data, two.data)
