"""Sentinel-1/2 composites and spectral indices on the reference grid."""

import warnings
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
import planetary_computer
import pystac_client
import rasterio
from rasterio.enums import Resampling
from rasterio.vrt import WarpedVRT

from ..prep.stack import validate_reference_grid
from ..raster import Raster
from ..utils import setup_logger
from .dem import validate_aoi

logger = setup_logger(__name__)

STAC_URL = "https://planetarycomputer.microsoft.com/api/stac/v1"

S2_COLLECTION = "sentinel-2-l2a"
S1_COLLECTION = "sentinel-1-rtc"

# STAC asset key -> spectral band symbol used by the index formulas
S2_BANDS = {
    "B02": "B", "B03": "G", "B04": "R", "B05": "RE1", "B06": "RE2",
    "B07": "RE3", "B08": "N", "B8A": "N2", "B11": "S1", "B12": "S2",
}
S1_BANDS = {"vv": "VV", "vh": "VH"}

SCL_ASSET = "SCL"
# Everything but vegetation (4), bare soil (5), water (6) and unclassified (7):
# saturated/defective, dark area, cloud shadow, clouds, cirrus, snow
SCL_MASK_VALUES = (1, 2, 3, 8, 9, 10, 11)
S2_SCALE_FACTOR = 1 / 10000
S2_BASELINE_OFFSET = 1000  # processing baseline >= 04.00

SENSORS = ("S2", "S1")
COMPOSITES = {
    "median": np.nanmedian,
    "mean": np.nanmean,
}


@dataclass(frozen=True)
class SpectralIndex:
    short_name: str
    long_name: str
    application_domain: str
    bands: Tuple[str, ...]
    formula: Callable[[Dict[str, np.ndarray]], np.ndarray]


SPECTRAL_INDICES = (
    SpectralIndex("NDVI", "Normalized Difference Vegetation Index", "vegetation", ("N", "R"),
                  lambda b: (b["N"] - b["R"]) / (b["N"] + b["R"])),
    SpectralIndex("EVI", "Enhanced Vegetation Index", "vegetation", ("N", "R", "B"),
                  lambda b: 2.5 * (b["N"] - b["R"]) / (b["N"] + 6 * b["R"] - 7.5 * b["B"] + 1)),
    SpectralIndex("SAVI", "Soil-Adjusted Vegetation Index", "vegetation", ("N", "R"),
                  lambda b: 1.5 * (b["N"] - b["R"]) / (b["N"] + b["R"] + 0.5)),
    SpectralIndex("GNDVI", "Green Normalized Difference Vegetation Index", "vegetation", ("N", "G"),
                  lambda b: (b["N"] - b["G"]) / (b["N"] + b["G"])),
    SpectralIndex("NDREI", "Normalized Difference Red Edge Index", "vegetation", ("N", "RE1"),
                  lambda b: (b["N"] - b["RE1"]) / (b["N"] + b["RE1"])),
    SpectralIndex("NDMI", "Normalized Difference Moisture Index", "vegetation", ("N", "S1"),
                  lambda b: (b["N"] - b["S1"]) / (b["N"] + b["S1"])),
    SpectralIndex("NBR", "Normalized Burn Ratio", "burn", ("N", "S2"),
                  lambda b: (b["N"] - b["S2"]) / (b["N"] + b["S2"])),
    SpectralIndex("NDWI", "Normalized Difference Water Index", "water", ("G", "N"),
                  lambda b: (b["G"] - b["N"]) / (b["G"] + b["N"])),
    SpectralIndex("MNDWI", "Modified Normalized Difference Water Index", "water", ("G", "S1"),
                  lambda b: (b["G"] - b["S1"]) / (b["G"] + b["S1"])),
    SpectralIndex("NDBI", "Normalized Difference Built-up Index", "urban", ("S1", "N"),
                  lambda b: (b["S1"] - b["N"]) / (b["S1"] + b["N"])),
    SpectralIndex("NDSI", "Normalized Difference Snow Index", "snow", ("G", "S1"),
                  lambda b: (b["G"] - b["S1"]) / (b["G"] + b["S1"])),
    SpectralIndex("BI", "Bare Soil Index", "soil", ("S1", "R", "N", "B"),
                  lambda b: ((b["S1"] + b["R"]) - (b["N"] + b["B"])) / ((b["S1"] + b["R"]) + (b["N"] + b["B"]))),
    SpectralIndex("NDTI", "Normalized Difference Tillage Index", "soil", ("S1", "S2"),
                  lambda b: (b["S1"] - b["S2"]) / (b["S1"] + b["S2"])),
    SpectralIndex("RVI", "Radar Vegetation Index", "radar", ("VV", "VH"),
                  lambda b: 4 * b["VH"] / (b["VV"] + b["VH"])),
    SpectralIndex("VHVVR", "VH-VV Ratio", "radar", ("VV", "VH"),
                  lambda b: b["VH"] / b["VV"]),
    SpectralIndex("DPDD", "Dual-Pol Diagonal Distance", "radar", ("VV", "VH"),
                  lambda b: (b["VV"] + b["VH"]) / np.sqrt(2)),
)


def index_catalog() -> pd.DataFrame:
    """Spectral index catalog as a DataFrame (one row per index)."""
    return pd.DataFrame(
        [
            {
                'short_name': idx.short_name,
                'long_name': idx.long_name,
                'application_domain': idx.application_domain,
                'bands': idx.bands,
            }
            for idx in SPECTRAL_INDICES
        ]
    )


def filter_indices(
    available_bands: Sequence[str],
    exclude_domains: Sequence[str] = ()
) -> pd.DataFrame:
    """Indices computable from the available bands, excluding some application domains."""
    catalog = index_catalog()
    available = set(available_bands)
    computable = catalog['bands'].apply(lambda bands: set(bands) <= available)
    excluded = catalog['application_domain'].isin(list(exclude_domains))
    return catalog[computable & ~excluded].reset_index(drop=True)


def compute_indices(
    bands: Dict[str, np.ndarray],
    grid: Raster,
    prefix: str,
    exclude_domains: Sequence[str] = ()
) -> Optional[Raster]:
    """
    Compute every applicable spectral index from band arrays on the grid.

    Args:
        bands: Band symbol (e.g. "N", "R") -> 2-D array on the grid
        grid: Reference grid the arrays lie on
        prefix: Name prefix for the index bands (e.g. "S2")
        exclude_domains: Application domains to skip

    Returns:
        Raster of indices named "<prefix>_<index>", or None if none applies
    """
    selected = filter_indices(list(bands), exclude_domains)
    if selected.empty:
        return None

    formulas = {idx.short_name: idx.formula for idx in SPECTRAL_INDICES}
    layers = []
    with np.errstate(divide='ignore', invalid='ignore'):
        for name in selected['short_name']:
            values = np.asarray(formulas[name](bands), dtype=np.float32)
            values[~np.isfinite(values)] = np.nan
            layers.append(values)

    names = tuple(f"{prefix}_{name}" for name in selected['short_name'])
    return Raster(np.stack(layers), grid.transform, grid.crs, names, np.nan)


@lru_cache(maxsize=1)
def _stac_client():
    return pystac_client.Client.open(STAC_URL, modifier=planetary_computer.sign_inplace)


def search_items(
    collection: str,
    bbox: Tuple[float, float, float, float],
    dates: Tuple[str, str],
    max_cloud_cover: Optional[float] = None,
    max_items: Optional[int] = None
) -> List:
    """Search the STAC catalog for items intersecting a WGS84 bbox within a date range."""
    query = {"eo:cloud_cover": {"lt": max_cloud_cover}} if max_cloud_cover is not None else None
    search = _stac_client().search(
        collections=[collection],
        bbox=list(bbox),
        datetime=f"{dates[0]}/{dates[1]}",
        query=query,
        max_items=max_items,
    )
    items = list(search.items())
    logger.info(f"Found {len(items)} {collection} items between {dates[0]} and {dates[1]}")
    return items


def read_asset(href: str, grid: Raster, resampling: Resampling = Resampling.bilinear) -> np.ndarray:
    """Read the first band of a remote asset warped directly onto the grid."""
    with rasterio.open(href) as src:
        with WarpedVRT(
            src,
            crs=grid.crs,
            transform=grid.transform,
            width=grid.width,
            height=grid.height,
            resampling=resampling,
            src_nodata=src.nodata if src.nodata is not None else 0,
            nodata=np.nan,
            dtype='float32',
        ) as vrt:
            return vrt.read(1)


def composite_scenes(scenes: Sequence[np.ndarray], method: str = "median") -> np.ndarray:
    """Per-pixel composite of co-registered scenes, ignoring missing values."""
    try:
        reducer = COMPOSITES[method]
    except KeyError:
        raise ValueError(f"Unknown composite '{method}'. Options: {', '.join(COMPOSITES)}") from None

    with warnings.catch_warnings():
        # All-NaN pixels stay NaN
        warnings.simplefilter("ignore", RuntimeWarning)
        return reducer(np.stack(scenes), axis=0).astype(np.float32)


def _s2_scene(item, asset_key: str, grid: Raster, mask: Optional[np.ndarray]) -> np.ndarray:
    values = read_asset(item.assets[asset_key].href, grid)
    baseline = float(item.properties.get("s2:processing_baseline", "0") or 0)
    if baseline >= 4.0:
        values = values - S2_BASELINE_OFFSET
    values = values * S2_SCALE_FACTOR
    if mask is not None:
        values[mask] = np.nan
    return values


def sentinel2_bands(
    items: Sequence,
    grid: Raster,
    composite: str = "median",
    mask: bool = True
) -> Dict[str, np.ndarray]:
    """Composite Sentinel-2 surface reflectance bands, keyed by asset name."""
    scenes = {key: [] for key in S2_BANDS}

    for item in items:
        scl_mask = None
        if mask and SCL_ASSET in item.assets:
            scl = read_asset(item.assets[SCL_ASSET].href, grid, Resampling.nearest)
            scl_mask = np.isin(scl, SCL_MASK_VALUES)

        for key in S2_BANDS:
            if key in item.assets:
                scenes[key].append(_s2_scene(item, key, grid, scl_mask))

    return {key: composite_scenes(v, composite) for key, v in scenes.items() if v}


def sentinel1_bands(items: Sequence, grid: Raster, composite: str = "median") -> Dict[str, np.ndarray]:
    """Composite Sentinel-1 RTC backscatter bands, keyed by asset name."""
    scenes = {key: [] for key in S1_BANDS}

    for item in items:
        for key in S1_BANDS:
            if key in item.assets:
                scenes[key].append(read_asset(item.assets[key].href, grid))

    return {key: composite_scenes(v, composite) for key, v in scenes.items() if v}


def _sensor_layers(
    sensor: str,
    composited: Dict[str, np.ndarray],
    band_map: Dict[str, str],
    grid: Raster,
    exclude_domains: Sequence[str]
) -> List[Raster]:
    if not composited:
        raise ValueError(f"No {sensor} band assets found in the matching scenes")

    keys = list(composited)
    raw = Raster(np.stack([composited[k] for k in keys]), grid.transform, grid.crs,
                 tuple(f"{sensor}_{k}" for k in keys), np.nan)

    symbols = {band_map[k]: composited[k] for k in keys}
    indices = compute_indices(symbols, grid, sensor, exclude_domains)

    return [raw] if indices is None else [raw, indices]


def _check_dates(dates, sensor: str) -> Tuple[str, str]:
    if dates is None or len(dates) != 2:
        raise ValueError(f"dates for {sensor} must be a (start, end) pair, got {dates!r}")
    return str(dates[0]), str(dates[1])


def get_index_layers(
    aoi: gpd.GeoDataFrame,
    grid: Raster,
    sensors: Sequence[str] = SENSORS,
    dates_s1: Optional[Tuple[str, str]] = None,
    dates_s2: Optional[Tuple[str, str]] = None,
    s2_composite: str = "median",
    mask_s2: bool = True,
    exclude_domains: Sequence[str] = ("urban", "snow"),
    max_cloud_cover: Optional[float] = None,
    max_items: Optional[int] = None,
    verbose: bool = True
) -> Dict[str, List[Raster]]:
    """
    Download Sentinel imagery and compute spectral indices on the reference grid.

    Args:
        aoi: Polygonal area of interest with a CRS
        grid: Reference grid in projected coordinates
        sensors: Any of "S2", "S1"
        dates_s1: (start, end) ISO dates for Sentinel-1
        dates_s2: (start, end) ISO dates for Sentinel-2
        s2_composite: "median" or "mean" composite for both sensors
        mask_s2: Mask defective pixels, dark areas, clouds, shadows and snow
            with the SCL band
        exclude_domains: Index application domains to skip
        max_cloud_cover: Optional Sentinel-2 scene cloud cover limit (%)
        max_items: Optional cap on scenes per sensor
        verbose: Log progress messages

    Returns:
        Dict of sensor -> [band composite raster, index raster]
    """
    validate_aoi(aoi)
    validate_reference_grid(grid)

    sensors = [sensors] if isinstance(sensors, str) else list(sensors)
    invalid = [s for s in sensors if s not in SENSORS]
    if invalid or not sensors:
        raise ValueError(f"sensors must be a subset of {SENSORS}, got {sensors}")

    bbox = tuple(aoi.to_crs("EPSG:4326").total_bounds)
    out = {}

    if "S1" in sensors:
        dates = _check_dates(dates_s1, "S1")
        if verbose:
            logger.info("Downloading Sentinel-1 imagery...")
        items = search_items(S1_COLLECTION, bbox, dates, max_items=max_items)
        if not items:
            raise ValueError(f"No {S1_COLLECTION} scenes found for {dates[0]}/{dates[1]}")

        if verbose:
            logger.info("Computing Sentinel-1 indices...")
        composited = sentinel1_bands(items, grid, s2_composite)
        out["S1"] = _sensor_layers("S1", composited, S1_BANDS, grid, exclude_domains)

    if "S2" in sensors:
        dates = _check_dates(dates_s2, "S2")
        if verbose:
            logger.info("Downloading Sentinel-2 imagery...")
        items = search_items(S2_COLLECTION, bbox, dates, max_cloud_cover, max_items)
        if not items:
            raise ValueError(f"No {S2_COLLECTION} scenes found for {dates[0]}/{dates[1]}")

        if verbose:
            logger.info("Computing Sentinel-2 indices...")
        composited = sentinel2_bands(items, grid, s2_composite, mask_s2)
        out["S2"] = _sensor_layers("S2", composited, S2_BANDS, grid, exclude_domains)

    if verbose:
        logger.info("Spectral indices generated successfully")

    return out
