"""Reference DEM acquisition from the OpenTopography global DEM API."""

import os
import time
from pathlib import Path
from typing import Optional, Tuple

import geopandas as gpd
import numpy as np
import requests
from rasterio.coords import BoundingBox
from rasterio.features import geometry_mask
from rasterio.warp import calculate_default_transform, reproject, Resampling

from ..errors import InvalidAOIError, MissingCredentialError
from ..prep.stack import crop_layer
from ..raster import Raster, read_raster
from ..utils import setup_logger, timestamp_filename, ensure_dir, save_checksum

logger = setup_logger(__name__)

OPENTOPO_URL = "https://portal.opentopography.org/API/globaldem"
API_KEY_ENV = "OPENTOPOGRAPHY_API_KEY"
CLIP_MODES = ("tile", "bbox", "locations")


def determine_utm_zone(lon: float, lat: float) -> str:
    """
    Determine UTM zone EPSG code from longitude and latitude.

    Args:
        lon: Longitude in decimal degrees
        lat: Latitude in decimal degrees

    Returns:
        EPSG code string (e.g., "EPSG:32610")
    """
    zone_number = min(int((lon + 180) / 6) + 1, 60)

    # Determine hemisphere
    if lat >= 0:
        epsg = 32600 + zone_number  # Northern hemisphere
    else:
        epsg = 32700 + zone_number  # Southern hemisphere

    return f"EPSG:{epsg}"


def validate_aoi(aoi) -> gpd.GeoDataFrame:
    """
    Check that an area of interest is a polygonal GeoDataFrame with a CRS.

    Raises:
        InvalidAOIError: On any other input
    """
    if not isinstance(aoi, gpd.GeoDataFrame):
        raise InvalidAOIError(f"AOI must be a GeoDataFrame, got {type(aoi).__name__}")

    if aoi.crs is None:
        raise InvalidAOIError("AOI must have a valid CRS")

    geom_types = set(aoi.geom_type.dropna().unique())
    if not geom_types or not geom_types <= {"Polygon", "MultiPolygon"}:
        raise InvalidAOIError(
            f"AOI must be Polygon or MultiPolygon, got {sorted(geom_types) or 'no geometries'}"
        )

    return aoi


def aoi_utm_crs(aoi: gpd.GeoDataFrame) -> str:
    """UTM CRS for the centroid of the AOI."""
    union = aoi.to_crs("EPSG:4326").geometry.union_all()
    centroid = union.centroid
    return determine_utm_zone(centroid.x, centroid.y)


def download_dem(
    bbox: Tuple[float, float, float, float],
    api_key: str,
    output_dir: Path,
    demtype: str = "AW3D30",
    max_retries: int = 3,
    retry_delay: int = 5
) -> Path:
    """
    Download a DEM GeoTIFF from OpenTopography.

    Args:
        bbox: Bounding box (west, south, east, north) in WGS84
        api_key: OpenTopography API key
        output_dir: Directory to save DEM file
        demtype: OpenTopography global dataset (AW3D30 is ALOS World 3D)
        max_retries: Maximum retry attempts
        retry_delay: Delay between retries in seconds

    Returns:
        Path to saved DEM GeoTIFF
    """
    west, south, east, north = bbox
    logger.info(f"Fetching {demtype} DEM for bbox={bbox}")

    params = {
        'demtype': demtype,
        'south': south,
        'north': north,
        'west': west,
        'east': east,
        'outputFormat': 'GTiff',
        'API_Key': api_key,
    }

    ensure_dir(output_dir)
    output_path = output_dir / timestamp_filename(f"dem_{demtype.lower()}", "tif")

    # Retry logic
    for attempt in range(max_retries):
        try:
            logger.info(f"Requesting DEM (attempt {attempt + 1}/{max_retries})")
            response = requests.get(OPENTOPO_URL, params=params, timeout=300, stream=True)
            response.raise_for_status()

            with open(output_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=1 << 20):
                    f.write(chunk)

            save_checksum(output_path)
            logger.info(f"Saved DEM to {output_path}")
            return output_path

        except requests.exceptions.RequestException as e:
            logger.warning(f"DEM request failed: {e}")
            if attempt < max_retries - 1:
                logger.info(f"Retrying in {retry_delay} seconds...")
                time.sleep(retry_delay)
            else:
                logger.error(f"Failed to fetch DEM after {max_retries} attempts")
                raise

    raise RuntimeError("Failed to fetch DEM")


def project_raster(raster: Raster, dst_crs: str, resolution_m: Optional[float] = None) -> Raster:
    """Reproject a raster to dst_crs (bilinear), optionally at a fixed resolution."""
    transform, width, height = calculate_default_transform(
        raster.crs, dst_crs, raster.width, raster.height, *raster.bounds,
        resolution=resolution_m
    )

    destination = np.full((raster.count, height, width), np.nan, dtype=np.float32)
    reproject(
        source=raster.masked(np.float32),
        destination=destination,
        src_transform=raster.transform,
        src_crs=raster.crs,
        src_nodata=np.nan,
        dst_transform=transform,
        dst_crs=dst_crs,
        dst_nodata=np.nan,
        resampling=Resampling.bilinear
    )

    return Raster(destination, transform, dst_crs, raster.names, np.nan)


def get_reference_grid(
    aoi: gpd.GeoDataFrame,
    clip: str = "bbox",
    api_key: Optional[str] = None,
    demtype: str = "AW3D30",
    output_dir: Path = Path("data/raw/dem"),
    resolution_m: Optional[float] = None
) -> Raster:
    """
    Download a DEM for the AOI and project it to the AOI's UTM zone.

    Args:
        aoi: Polygon or MultiPolygon GeoDataFrame with a CRS
        clip: "tile" (no clipping), "bbox" (AOI bounds) or "locations"
            (AOI bounds, cells outside the polygons set to nodata)
        api_key: OpenTopography API key (default: OPENTOPOGRAPHY_API_KEY env var)
        demtype: OpenTopography global dataset
        output_dir: Directory for the downloaded GeoTIFF
        resolution_m: Target resolution in meters (native if None)

    Returns:
        Single-band "elevation" raster in UTM coordinates
    """
    validate_aoi(aoi)

    if clip not in CLIP_MODES:
        raise ValueError(f"clip must be one of: {', '.join(CLIP_MODES)}")

    api_key = api_key or os.getenv(API_KEY_ENV)
    if not api_key:
        raise MissingCredentialError(
            f"The environment variable {API_KEY_ENV} was not found. "
            "Get a free key at https://opentopography.org and set it before requesting a DEM."
        )

    utm_crs = aoi_utm_crs(aoi)
    aoi_utm = aoi.to_crs(utm_crs)
    logger.info(f"Target CRS: {utm_crs}")

    bbox = tuple(aoi.to_crs("EPSG:4326").total_bounds)
    dem_path = download_dem(bbox, api_key, Path(output_dir), demtype=demtype)

    dem = project_raster(read_raster(dem_path, names=["elevation"]), utm_crs, resolution_m)

    if clip in ("bbox", "locations"):
        dem = crop_layer(dem, BoundingBox(*aoi_utm.total_bounds))

    if clip == "locations":
        outside = geometry_mask(aoi_utm.geometry, out_shape=dem.shape, transform=dem.transform)
        data = dem.data.copy()
        data[:, outside] = np.nan
        dem = dem.with_data(data)

    logger.info(f"Reference grid ready: {dem.height}x{dem.width} at {dem.res[0]:.1f} m")
    return dem
