"""Oblique geographic coordinates (Møller et al., 2020) on the reference grid."""

import numbers

import numpy as np
from rasterio.transform import xy

from ..raster import Raster
from ..utils import setup_logger
from .stack import validate_reference_grid

logger = setup_logger(__name__)


def get_oblique_layers(grid: Raster, n_directions: int = 6) -> Raster:
    """
    Compute oblique geographic coordinate layers.

    Layer i holds the pixel-centre coordinates projected onto an axis
    rotated by pi * i / n_directions from the x axis:
    sqrt(x^2 + y^2) * cos(theta_i - atan2(y, x)).

    Args:
        grid: Reference grid in projected coordinates
        n_directions: Number of directions, at least 4

    Returns:
        Raster with bands "ogc_1" ... "ogc_<n_directions>"
    """
    if isinstance(n_directions, bool) or not isinstance(n_directions, numbers.Integral) or n_directions < 4:
        raise ValueError(f"n_directions must be an integer >= 4, got {n_directions!r}")

    validate_reference_grid(grid)

    rows, cols = np.meshgrid(np.arange(grid.height), np.arange(grid.width), indexing='ij')
    x, y = xy(grid.transform, rows.ravel(), cols.ravel(), offset='center')
    x = np.asarray(x, dtype=np.float64).reshape(grid.shape)
    y = np.asarray(y, dtype=np.float64).reshape(grid.shape)

    radius = np.hypot(x, y)
    azimuth = np.arctan2(y, x)
    missing = np.isnan(grid.masked()[0])

    layers = []
    for i in range(n_directions):
        theta = np.pi * i / n_directions
        layer = (radius * np.cos(theta - azimuth)).astype(np.float32)
        layer[missing] = np.nan
        layers.append(layer)

    names = tuple(f"ogc_{i}" for i in range(1, n_directions + 1))
    logger.info(f"Oblique geographic coordinates generated ({n_directions} directions)")

    return Raster(np.stack(layers), grid.transform, grid.crs, names, np.nan)
