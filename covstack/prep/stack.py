"""Covariate alignment engine: reproject, crop, resample and stack onto a reference grid."""

import math
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from rasterio.coords import BoundingBox
from rasterio.warp import calculate_default_transform, reproject, Resampling
from rasterio.windows import Window
from rasterio.windows import transform as window_transform

from ..errors import (
    EmptyInputError, InvalidGridError, NoValidLayersError, UndefinedCRSError
)
from ..raster import Raster, is_raster, stack_rasters
from ..utils import setup_logger

logger = setup_logger(__name__)

RESAMPLING_METHODS = {
    'near': Resampling.nearest,
    'bilinear': Resampling.bilinear,
    'cubic': Resampling.cubic,
    'bicubic': Resampling.cubic,
    'cubicspline': Resampling.cubic_spline,
    'lanczos': Resampling.lanczos,
    'average': Resampling.average,
    'mode': Resampling.mode,
    'min': Resampling.min,
    'max': Resampling.max,
    'med': Resampling.med,
    'q1': Resampling.q1,
    'q3': Resampling.q3,
    'sum': Resampling.sum,
}

# Pixel-edge tolerance when snapping crop bounds to the layer grid
_EDGE_EPS = 1e-6

ResampleMethod = Union[str, Resampling]


def resolve_resampling(method: ResampleMethod) -> Resampling:
    """Map a resampling method name (e.g. "near", "bilinear") to rasterio's enum."""
    if isinstance(method, Resampling):
        return method
    try:
        return RESAMPLING_METHODS[method]
    except KeyError:
        raise ValueError(
            f"Unknown resampling method '{method}'. "
            f"Options: {', '.join(RESAMPLING_METHODS)}"
        ) from None


def validate_reference_grid(grid) -> Raster:
    """
    Check that a candidate reference grid can serve as the spatial template.

    Raises:
        InvalidGridError: If grid is not a Raster, has no CRS, or is in
            geographic (lon/lat) coordinates
    """
    if not is_raster(grid):
        raise InvalidGridError(f"Reference grid must be a Raster, got {type(grid).__name__}")

    if grid.crs is None:
        raise InvalidGridError("Reference grid has no CRS defined")

    if grid.crs.is_geographic:
        raise InvalidGridError(
            f"Reference grid must be in projected (planar) coordinates, "
            f"got geographic CRS {grid.crs.to_string()}"
        )

    return grid


def _iter_elements(items) -> Iterator[object]:
    for item in items:
        if is_raster(item):
            yield item
        elif isinstance(item, Mapping):
            yield from _iter_elements(item.values())
        elif isinstance(item, (list, tuple)):
            yield from _iter_elements(item)
        else:
            yield item


def flatten_covariates(*covariates, verbose: bool = True) -> List[Raster]:
    """
    Flatten (possibly nested) covariate collections into a list of rasters.

    Lists, tuples and mapping values are walked recursively in order.
    Elements that are not rasters are dropped without error.

    Raises:
        EmptyInputError: If flattening yields nothing
        NoValidLayersError: If no flattened element is a raster
    """
    elements = list(_iter_elements(covariates))

    if not elements:
        raise EmptyInputError("At least one covariate set must be provided")

    layers = [e for e in elements if is_raster(e)]

    if not layers:
        raise NoValidLayersError(
            f"No valid rasters found among {len(elements)} covariate elements"
        )

    skipped = len(elements) - len(layers)
    if skipped and verbose:
        logger.info(f"Ignored {skipped} non-raster covariate elements")

    return layers


def reproject_layer(layer: Raster, grid: Raster, resampling: ResampleMethod = 'near') -> Raster:
    """Reproject layer into the grid's CRS at the grid's resolution."""
    resampling = resolve_resampling(resampling)

    transform, width, height = calculate_default_transform(
        layer.crs, grid.crs, layer.width, layer.height, *layer.bounds,
        resolution=grid.res
    )

    destination = np.full((layer.count, height, width), np.nan, dtype=np.float32)
    reproject(
        source=layer.masked(np.float32),
        destination=destination,
        src_transform=layer.transform,
        src_crs=layer.crs,
        src_nodata=np.nan,
        dst_transform=transform,
        dst_crs=grid.crs,
        dst_nodata=np.nan,
        resampling=resampling
    )

    return Raster(destination, transform, grid.crs, layer.names, np.nan)


def crop_layer(layer: Raster, bounds: BoundingBox) -> Raster:
    """
    Crop layer to bounds, snapping outward to whole layer pixels.

    A layer lying inside bounds is returned unchanged. A layer that does
    not intersect bounds is returned unchanged with a warning.
    """
    lb = layer.bounds
    left, right = max(lb.left, bounds.left), min(lb.right, bounds.right)
    bottom, top = max(lb.bottom, bounds.bottom), min(lb.top, bounds.top)

    if left >= right or bottom >= top:
        logger.warning(f"Covariate {list(layer.names)} does not overlap the reference grid; crop skipped")
        return layer

    t = layer.transform
    # Pixel offsets of the edges; sorted so south-up layers snap the same way
    col_lo, col_hi = sorted(((left - t.c) / t.a, (right - t.c) / t.a))
    row_lo, row_hi = sorted(((top - t.f) / t.e, (bottom - t.f) / t.e))
    col_start = max(0, math.floor(col_lo + _EDGE_EPS))
    col_stop = min(layer.width, math.ceil(col_hi - _EDGE_EPS))
    row_start = max(0, math.floor(row_lo + _EDGE_EPS))
    row_stop = min(layer.height, math.ceil(row_hi - _EDGE_EPS))

    if (col_start, row_start, col_stop, row_stop) == (0, 0, layer.width, layer.height):
        return layer

    window = Window(col_start, row_start, col_stop - col_start, row_stop - row_start)
    data = layer.data[:, row_start:row_stop, col_start:col_stop]

    return Raster(data, window_transform(window, t), layer.crs, layer.names, layer.nodata)


def resample_layer(layer: Raster, grid: Raster, resampling: ResampleMethod = 'near') -> Raster:
    """Resample layer onto the exact pixel grid of the reference grid."""
    if layer.same_grid(grid):
        return Raster(layer.masked(np.float32), grid.transform, grid.crs, layer.names, np.nan)

    destination = np.full((layer.count, grid.height, grid.width), np.nan, dtype=np.float32)
    reproject(
        source=layer.masked(np.float32),
        destination=destination,
        src_transform=layer.transform,
        src_crs=layer.crs,
        src_nodata=np.nan,
        dst_transform=grid.transform,
        dst_crs=grid.crs,
        dst_nodata=np.nan,
        resampling=resolve_resampling(resampling)
    )

    return Raster(destination, grid.transform, grid.crs, layer.names, np.nan)


def align_layer(
    layer: Raster,
    grid: Raster,
    resample_method: ResampleMethod = 'near',
    crop: bool = True
) -> Raster:
    """
    Align one covariate layer to the reference grid.

    Steps run in a fixed order: reproject (only when the CRS differs), crop
    to the grid extent (optional), then resample onto the grid's pixels.

    Args:
        layer: Covariate layer
        grid: Reference grid
        resample_method: Resampling method name or rasterio Resampling
        crop: Crop the layer to the grid extent before resampling

    Returns:
        Float32 layer on the reference grid with NaN as nodata
    """
    if layer.crs is None:
        raise UndefinedCRSError(f"Covariate {list(layer.names)} has no CRS defined")

    resampling = resolve_resampling(resample_method)

    if layer.crs != grid.crs:
        layer = reproject_layer(layer, grid, resampling)

    if crop:
        layer = crop_layer(layer, grid.bounds)

    return resample_layer(layer, grid, resampling)


def assemble_stack(aligned: Sequence[Raster]) -> Raster:
    """Combine aligned layers into one multi-band raster in input order."""
    return stack_rasters(aligned)


def band_std(stack: Raster) -> np.ndarray:
    """
    Spatial standard deviation per band, ignoring missing cells.

    Bands whose valid cells all hold one value get exactly 0, and bands
    without valid cells get NaN.
    """
    values = stack.masked()
    result = np.full(stack.count, np.nan)

    for i in range(stack.count):
        valid = values[i][~np.isnan(values[i])]
        if valid.size == 0:
            continue
        if valid.min() == valid.max():
            result[i] = 0.0
        else:
            result[i] = valid.std()

    return result


def drop_constant_bands(stack: Raster, verbose: bool = True) -> Tuple[Raster, List[str]]:
    """
    Remove bands with zero or undefined spatial variance.

    Returns:
        Tuple of (filtered stack, names of removed bands)
    """
    sd = band_std(stack)
    keep = [i for i, s in enumerate(sd) if np.isfinite(s) and s > 0]
    dropped = [stack.names[i] for i, s in enumerate(sd) if not (np.isfinite(s) and s > 0)]

    if verbose:
        if dropped:
            logger.info(f"Removed {len(dropped)} constant or zero-variance covariates:")
            logger.info(f"  - {', '.join(dropped)}")
        else:
            logger.info("No constant covariates found")

    if not keep:
        raise NoValidLayersError(
            f"All {stack.count} covariate bands are constant or empty"
        )

    return stack.select(keep), dropped


def make_unique(names: Sequence[str]) -> List[str]:
    """
    Make band names unique by appending numeric suffixes.

    The first occurrence of a name is kept; each repeat gets the smallest
    ".N" suffix (N >= 1) not already taken, so ["idx", "idx"] becomes
    ["idx", "idx.1"]. Already-unique names are returned unchanged.
    """
    taken = set(names)
    seen = set()
    next_suffix = {}
    unique = []

    for name in names:
        if name not in seen:
            seen.add(name)
            unique.append(name)
            continue

        k = next_suffix.get(name, 1)
        while f"{name}.{k}" in taken:
            k += 1
        candidate = f"{name}.{k}"
        taken.add(candidate)
        next_suffix[name] = k + 1
        unique.append(candidate)

    return unique


def summarize_stack(stack: Raster) -> pd.DataFrame:
    """Per-band summary statistics of a stack."""
    values = stack.masked()
    rows = []

    for i, name in enumerate(stack.names):
        band = values[i]
        valid = band[~np.isnan(band)]
        rows.append({
            'name': name,
            'min': float(valid.min()) if valid.size else np.nan,
            'max': float(valid.max()) if valid.size else np.nan,
            'mean': float(valid.mean()) if valid.size else np.nan,
            'std': float(valid.std()) if valid.size else np.nan,
            'valid_fraction': valid.size / band.size if band.size else 0.0,
        })

    return pd.DataFrame(rows, columns=['name', 'min', 'max', 'mean', 'std', 'valid_fraction'])


def align_covariates(
    grid: Raster,
    *covariates,
    resample_method: ResampleMethod = 'near',
    crop: bool = True,
    remove_constant: bool = True,
    verbose: bool = True,
    max_workers: Optional[int] = None
) -> Raster:
    """
    Build a harmonized covariate stack on the reference grid.

    Args:
        grid: Reference grid (projected CRS) used as spatial template
        *covariates: Rasters, or (nested) lists/tuples/dicts of rasters.
            Non-raster elements are ignored.
        resample_method: Resampling method for reprojection and resampling
        crop: Crop covariates to the grid extent before resampling
        remove_constant: Drop bands with zero or undefined spatial variance
        verbose: Log informational messages about filtering and stack size
        max_workers: Align layers on a thread pool of this size when > 1

    Returns:
        Multi-band raster grid-identical to the reference grid with unique
        band names
    """
    validate_reference_grid(grid)
    resampling = resolve_resampling(resample_method)
    layers = flatten_covariates(*covariates, verbose=verbose)

    for layer in layers:
        if layer.crs is None:
            raise UndefinedCRSError(f"Covariate {list(layer.names)} has no CRS defined")

    if verbose:
        logger.info(
            f"Aligning {len(layers)} covariates to {grid.crs.to_string()} "
            f"grid {grid.height}x{grid.width} at {grid.res[0]:g} m"
        )

    if max_workers and max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            aligned = list(pool.map(lambda r: align_layer(r, grid, resampling, crop), layers))
    else:
        aligned = [align_layer(r, grid, resampling, crop) for r in layers]

    stack = assemble_stack(aligned)

    if remove_constant:
        stack, _ = drop_constant_bands(stack, verbose=verbose)

    stack = stack.rename(make_unique(stack.names))

    if verbose:
        logger.info(f"Final stack with {stack.count} covariates")

    return stack
