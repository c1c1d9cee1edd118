"""In-memory raster model shared by the producers and the alignment engine."""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
from rasterio.coords import BoundingBox
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds

from .utils import setup_logger

logger = setup_logger(__name__)

CRSLike = Union[CRS, str, int, dict, None]


def _as_crs(crs: CRSLike) -> Optional[CRS]:
    if crs is None:
        return None
    if not isinstance(crs, CRS):
        crs = CRS.from_user_input(crs)
    # rasterio represents "no CRS" as an empty CRS object in some code paths
    return crs if crs else None


def _nodata_equal(a: Optional[float], b: Optional[float]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a == b or (np.isnan(a) and np.isnan(b))


@dataclass(frozen=True, eq=False)
class Raster:
    """
    Named multi-band raster held in memory.

    Attributes:
        data: Pixel values with shape (bands, rows, cols). A 2-D array is
            promoted to a single band.
        transform: North-up affine transform of the pixel grid
        crs: Coordinate reference system, or None when undefined
        names: One name per band
        nodata: Missing-value sentinel, or None
    """

    data: np.ndarray
    transform: Affine
    crs: Optional[CRS]
    names: Tuple[str, ...]
    nodata: Optional[float] = None

    def __post_init__(self):
        data = np.asarray(self.data)
        if data.ndim == 2:
            data = data[np.newaxis, ...]
        if data.ndim != 3:
            raise ValueError(f"Raster data must be 2-D or 3-D, got shape {data.shape}")

        names = (self.names,) if isinstance(self.names, str) else tuple(str(n) for n in self.names)
        if len(names) != data.shape[0]:
            raise ValueError(
                f"Got {len(names)} band names for {data.shape[0]} bands"
            )

        object.__setattr__(self, 'data', data)
        object.__setattr__(self, 'names', names)
        object.__setattr__(self, 'crs', _as_crs(self.crs))

    @property
    def count(self) -> int:
        return self.data.shape[0]

    @property
    def height(self) -> int:
        return self.data.shape[1]

    @property
    def width(self) -> int:
        return self.data.shape[2]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.height, self.width

    @property
    def res(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> BoundingBox:
        # array_bounds follows the transform, so south-up grids come back flipped
        west, south, east, north = array_bounds(self.height, self.width, self.transform)
        return BoundingBox(min(west, east), min(south, north), max(west, east), max(south, north))

    def masked(self, dtype=np.float64) -> np.ndarray:
        """Return a float copy of the data with nodata cells set to NaN."""
        values = np.array(self.data, dtype=dtype, copy=True)
        if self.nodata is not None and not np.isnan(self.nodata):
            values[self.data == self.nodata] = np.nan
        return values

    def same_grid(self, other: "Raster") -> bool:
        """True when both rasters share CRS, transform and pixel shape."""
        return (
            self.crs == other.crs
            and self.shape == other.shape
            and self.transform.almost_equals(other.transform)
        )

    def select(self, indices: Iterable[int]) -> "Raster":
        indices = list(indices)
        return Raster(
            self.data[indices],
            self.transform,
            self.crs,
            tuple(self.names[i] for i in indices),
            self.nodata,
        )

    def rename(self, names: Sequence[str]) -> "Raster":
        return Raster(self.data, self.transform, self.crs, tuple(names), self.nodata)

    def with_data(
        self,
        data: np.ndarray,
        transform: Optional[Affine] = None,
        crs: CRSLike = None,
        nodata: Optional[float] = None
    ) -> "Raster":
        """Derive a raster with new values, keeping names and any grid attribute not given."""
        return Raster(
            data,
            transform if transform is not None else self.transform,
            crs if crs is not None else self.crs,
            self.names,
            nodata if nodata is not None else self.nodata,
        )

    def __repr__(self) -> str:
        return (
            f"Raster(names={list(self.names)}, shape={self.shape}, "
            f"res={self.res}, crs={self.crs.to_string() if self.crs else None})"
        )


def is_raster(obj) -> bool:
    """True for objects the alignment engine accepts as covariate layers."""
    return isinstance(obj, Raster)


def stack_rasters(rasters: Sequence[Raster]) -> Raster:
    """
    Concatenate rasters sharing one grid into a single multi-band raster.

    Args:
        rasters: Rasters on an identical grid, in band order

    Returns:
        Multi-band raster with all bands and names in input order
    """
    if not rasters:
        raise ValueError("Cannot stack an empty sequence of rasters")

    first = rasters[0]
    for r in rasters[1:]:
        if not r.same_grid(first):
            raise ValueError(f"Raster {list(r.names)} is not on the same grid as {list(first.names)}")

    names = tuple(n for r in rasters for n in r.names)

    if all(_nodata_equal(r.nodata, first.nodata) for r in rasters):
        data = np.concatenate([r.data for r in rasters], axis=0)
        return Raster(data, first.transform, first.crs, names, first.nodata)

    # Mixed sentinels: fall back to float with NaN as the common sentinel
    data = np.concatenate([r.masked(np.float32) for r in rasters], axis=0)
    return Raster(data, first.transform, first.crs, names, np.nan)


def read_raster(path: Path, names: Optional[Sequence[str]] = None) -> Raster:
    """
    Read a raster file into memory.

    Band descriptions are used as names when every band has one, otherwise
    names are derived from the file stem.
    """
    path = Path(path)
    with rasterio.open(path) as src:
        data = src.read()
        if names is None:
            if all(src.descriptions):
                names = list(src.descriptions)
            elif src.count == 1:
                names = [path.stem]
            else:
                names = [f"{path.stem}_{i}" for i in range(1, src.count + 1)]

        return Raster(data, src.transform, src.crs, tuple(names), src.nodata)


def write_raster(raster: Raster, path: Path) -> Path:
    """Write raster to a GeoTIFF, storing band names as band descriptions."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    profile = {
        'driver': 'GTiff',
        'height': raster.height,
        'width': raster.width,
        'count': raster.count,
        'dtype': raster.data.dtype,
        'crs': raster.crs,
        'transform': raster.transform,
        'nodata': raster.nodata,
        'compress': 'lzw',
    }

    with rasterio.open(path, 'w', **profile) as dst:
        dst.write(raster.data)
        for i, name in enumerate(raster.names, start=1):
            dst.set_band_description(i, name)

    logger.info(f"Raster with {raster.count} bands saved to {path}")
    return path
