"""CHELSA v2.1 bioclimatic covariates with a local download cache."""

import time
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, Union

import geopandas as gpd
import rasterio
import requests
from rasterio.windows import Window, from_bounds

from ..errors import UnknownToolError
from ..prep.stack import align_layer, validate_reference_grid
from ..raster import Raster, stack_rasters
from ..utils import setup_logger, ensure_dir
from .dem import validate_aoi

logger = setup_logger(__name__)

BBox = Tuple[float, float, float, float]

CHELSA_BASE_URL = "https://os.unil.cloud.switch.ch/chelsa02/chelsa/global/bioclim"
CHELSA_PERIOD = "1981-2010"
CHELSA_VARIABLES = (
    "bio01", "bio05", "bio06", "bio08", "bio09", "bio10", "bio11", "bio12",
    "bio13", "bio14", "bio15", "bio16", "bio17", "bio18", "bio19", "npp",
)

DEFAULT_CACHE_DIR = Path("data/cache/chelsa")


def chelsa_url(variable: str) -> str:
    """Remote GeoTIFF URL of a CHELSA bioclimatic variable."""
    return (
        f"{CHELSA_BASE_URL}/{variable}/{CHELSA_PERIOD}/"
        f"CHELSA_{variable}_{CHELSA_PERIOD}_V.2.1.tif"
    )


class ContentCache(Protocol):
    """Keyed store of downloaded files (key = remote filename)."""

    def lookup(self, key: str) -> Optional[Path]:
        """Local path of a cached entry, or None when absent."""
        ...

    def target(self, key: str) -> Path:
        """Local path a new download for key should be written to."""
        ...


class DirectoryCache:
    """File cache in a single directory, one file per key. No eviction."""

    def __init__(self, cache_dir: Path = DEFAULT_CACHE_DIR):
        self.cache_dir = Path(cache_dir)

    def lookup(self, key: str) -> Optional[Path]:
        path = self.cache_dir / key
        return path if path.exists() else None

    def target(self, key: str) -> Path:
        ensure_dir(self.cache_dir)
        return self.cache_dir / key


def download_file(url: str, dest: Path, max_retries: int = 3, retry_delay: int = 10) -> Path:
    """Stream url to dest, retrying on request errors."""
    partial = dest.with_name(dest.name + ".part")

    for attempt in range(max_retries):
        try:
            logger.info(f"Downloading {url} (attempt {attempt + 1}/{max_retries})")
            with requests.get(url, stream=True, timeout=120) as response:
                response.raise_for_status()
                with open(partial, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=1 << 20):
                        f.write(chunk)

            partial.replace(dest)
            return dest

        except requests.exceptions.RequestException as e:
            logger.warning(f"Download failed: {e}")
            if attempt < max_retries - 1:
                logger.info(f"Retrying in {retry_delay} seconds...")
                time.sleep(retry_delay)
            else:
                logger.error(f"Failed to download {url} after {max_retries} attempts")
                raise

    raise RuntimeError(f"Failed to download {url}")


def resolve_variables(variables: Union[str, Sequence[str]]) -> List[str]:
    """
    Expand "all" and validate requested CHELSA variable names.

    Raises:
        UnknownToolError: If a name is not in the CHELSA catalog
    """
    if isinstance(variables, str):
        variables = [variables]

    if any(not isinstance(v, str) for v in variables):
        raise TypeError("variables must be a string or a sequence of strings")

    if list(variables) == ["all"]:
        return list(CHELSA_VARIABLES)

    invalid = [v for v in variables if v not in CHELSA_VARIABLES]
    if invalid:
        raise UnknownToolError(f"Invalid CHELSA variables: {', '.join(invalid)}")

    return list(variables)


def fetch_variable(
    variable: str,
    cache: ContentCache,
    overwrite: bool = False,
    downloader: Callable[[str, Path], Path] = download_file
) -> Path:
    """Return the local file for a variable, downloading it when not cached or overwrite is set."""
    url = chelsa_url(variable)
    key = url.rsplit("/", 1)[-1]

    cached = cache.lookup(key)
    if cached is not None and not overwrite:
        logger.info(f"Using CHELSA from cache: {variable}")
        return cached

    logger.info(f"Downloading CHELSA: {variable}")
    return downloader(url, cache.target(key))


def read_variable(path: Path, name: str, bbox: Optional[BBox] = None) -> Raster:
    """
    Read a CHELSA GeoTIFF, limited to a WGS84 bbox window when given.

    The window is padded by one pixel so edge cells survive resampling.
    """
    with rasterio.open(path) as src:
        if bbox is None:
            return Raster(src.read(), src.transform, src.crs, (name,), src.nodata)

        dx, dy = src.res
        west, south, east, north = bbox
        window = from_bounds(west - dx, south - dy, east + dx, north + dy, transform=src.transform)
        window = window.round_offsets().round_lengths()
        window = window.intersection(Window(0, 0, src.width, src.height))

        data = src.read(window=window)
        return Raster(data, src.window_transform(window), src.crs, (name,), src.nodata)


def get_climate_layers(
    grid: Raster,
    aoi: gpd.GeoDataFrame,
    variables: Union[str, Sequence[str]] = "all",
    overwrite: bool = False,
    crop: bool = True,
    cache: Optional[ContentCache] = None,
    resample_method: str = "cubic",
    downloader: Callable[[str, Path], Path] = download_file
) -> Raster:
    """
    Download CHELSA bioclimatic variables and align them to the reference grid.

    Args:
        grid: Reference grid in projected coordinates
        aoi: Polygonal area of interest with a CRS
        variables: Variable names, or "all"
        overwrite: Re-download files already in the cache
        crop: Read only the AOI window of each global tile
        cache: Download cache (default: DirectoryCache(DEFAULT_CACHE_DIR))
        resample_method: Resampling method onto the grid
        downloader: Callable(url, dest) writing url to dest

    Returns:
        Raster with one band per variable, named by variable
    """
    validate_reference_grid(grid)
    validate_aoi(aoi)
    variables = resolve_variables(variables)
    cache = cache if cache is not None else DirectoryCache()

    if crop and not aoi.crs.equals(grid.crs.to_wkt()):
        logger.info(
            f"AOI CRS ({aoi.crs.to_string()}) differs from grid CRS "
            f"({grid.crs.to_string()}); AOI is reprojected to EPSG:4326 for cropping"
        )
    bbox = tuple(aoi.to_crs("EPSG:4326").total_bounds) if crop else None

    layers = []
    for variable in variables:
        path = fetch_variable(variable, cache, overwrite=overwrite, downloader=downloader)
        layer = read_variable(path, variable, bbox)
        layers.append(align_layer(layer, grid, resample_method, crop=crop))

    logger.info(f"CHELSA covariates generated: {', '.join(variables)}")
    return stack_rasters(layers)
