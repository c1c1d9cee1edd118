"""Synthetic rasters shared by the test modules."""

import numpy as np
import pytest
from rasterio.crs import CRS
from rasterio.transform import from_bounds, from_origin
from rasterio.warp import transform_bounds

from covstack.raster import Raster

# 30 x 20 pixel grid at 30 m in UTM 33N
GRID_CRS = "EPSG:32633"
GRID_ORIGIN = (500000.0, 4500000.0)
GRID_RES = 30.0
GRID_SHAPE = (20, 30)


def make_grid(values: np.ndarray = None, crs=GRID_CRS, res: float = GRID_RES, name: str = "elevation") -> Raster:
    rows, cols = GRID_SHAPE
    if values is None:
        yy, xx = np.mgrid[0:rows, 0:cols]
        values = (100 + 2.0 * xx + 3.0 * yy).astype(np.float32)
    transform = from_origin(GRID_ORIGIN[0], GRID_ORIGIN[1], res, res)
    return Raster(values, transform, crs, (name,), np.nan)


def random_layer(name: str, grid: Raster, crs: str, res: float, pad: float = 300.0, seed: int = 0) -> Raster:
    """Random-valued layer in crs that covers grid plus a margin of pad meters."""
    if CRS.from_user_input(crs) == grid.crs:
        west, south, east, north = grid.bounds
    else:
        west, south, east, north = transform_bounds(grid.crs, crs, *grid.bounds)
    if crs == "EPSG:4326":
        pad_x = pad_y = pad / 111000.0
    else:
        pad_x = pad_y = pad
    west, south, east, north = west - pad_x, south - pad_y, east + pad_x, north + pad_y
    width = max(2, int(round((east - west) / res)))
    height = max(2, int(round((north - south) / res)))
    rng = np.random.default_rng(seed)
    data = rng.uniform(0, 100, (height, width)).astype(np.float32)
    return Raster(data, from_bounds(west, south, east, north, width, height), crs, (name,), None)


@pytest.fixture
def grid() -> Raster:
    return make_grid()


@pytest.fixture
def same_grid_layer(grid):
    def _make(name: str, values: np.ndarray = None, seed: int = 1) -> Raster:
        if values is None:
            values = np.random.default_rng(seed).normal(10, 2, grid.shape).astype(np.float32)
        return Raster(values, grid.transform, grid.crs, (name,), None)
    return _make
