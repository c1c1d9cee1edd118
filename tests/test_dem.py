import geopandas as gpd
import numpy as np
import pytest
from rasterio.transform import from_bounds
from shapely.geometry import Point, Polygon, box

from covstack.errors import InvalidAOIError, MissingCredentialError
from covstack.ingest import dem
from covstack.raster import Raster, write_raster

AOI_BOUNDS = (14.9, 40.5, 15.0, 40.6)


@pytest.fixture
def aoi():
    return gpd.GeoDataFrame(geometry=[box(*AOI_BOUNDS)], crs="EPSG:4326")


@pytest.fixture
def fake_download(monkeypatch):
    """Serve a synthetic WGS84 DEM tile slightly larger than the requested bbox."""
    requests = []

    def download_dem(bbox, api_key, output_dir, demtype="AW3D30"):
        requests.append((bbox, api_key, demtype))
        west, south, east, north = bbox
        west, south, east, north = west - 0.01, south - 0.01, east + 0.01, north + 0.01
        rows, cols = 120, 120
        yy, xx = np.mgrid[0:rows, 0:cols]
        values = (200 + xx + 0.5 * yy).astype(np.float32)
        tile = Raster(values, from_bounds(west, south, east, north, cols, rows), "EPSG:4326", ("tile",))
        return write_raster(tile, output_dir / "dem.tif")

    monkeypatch.setattr(dem, "download_dem", download_dem)
    return requests


@pytest.mark.parametrize("lon, lat, expected", [
    (-122.4, 37.8, "EPSG:32610"),
    (151.2, -33.9, "EPSG:32756"),
    (14.95, 40.55, "EPSG:32633"),
    (180.0, 0.0, "EPSG:32660"),
])
def test_determine_utm_zone(lon, lat, expected):
    assert dem.determine_utm_zone(lon, lat) == expected


def test_aoi_must_be_geodataframe():
    with pytest.raises(InvalidAOIError):
        dem.validate_aoi(box(*AOI_BOUNDS))


def test_aoi_must_have_crs():
    with pytest.raises(InvalidAOIError):
        dem.validate_aoi(gpd.GeoDataFrame(geometry=[box(*AOI_BOUNDS)]))


def test_aoi_must_be_polygonal():
    points = gpd.GeoDataFrame(geometry=[Point(14.95, 40.55)], crs="EPSG:4326")
    with pytest.raises(InvalidAOIError):
        dem.validate_aoi(points)


def test_missing_api_key(aoi, monkeypatch, fake_download):
    monkeypatch.delenv(dem.API_KEY_ENV, raising=False)
    with pytest.raises(MissingCredentialError):
        dem.get_reference_grid(aoi)
    assert fake_download == []


def test_invalid_clip_mode(aoi):
    with pytest.raises(ValueError):
        dem.get_reference_grid(aoi, clip="circle", api_key="key")


def test_reference_grid_in_utm(aoi, tmp_path, fake_download):
    grid = dem.get_reference_grid(aoi, api_key="key", output_dir=tmp_path, resolution_m=30)
    assert grid.crs.to_string() == "EPSG:32633"
    assert grid.names == ("elevation",)
    assert grid.res == (30.0, 30.0)
    assert fake_download[0][1] == "key"
    np.testing.assert_allclose(fake_download[0][0], AOI_BOUNDS)


def test_api_key_from_environment(aoi, tmp_path, monkeypatch, fake_download):
    monkeypatch.setenv(dem.API_KEY_ENV, "from-env")
    dem.get_reference_grid(aoi, clip="tile", output_dir=tmp_path, resolution_m=60)
    assert fake_download[0][1] == "from-env"


def test_bbox_clip_is_smaller_than_tile(aoi, tmp_path, fake_download):
    tile = dem.get_reference_grid(aoi, clip="tile", api_key="key", output_dir=tmp_path, resolution_m=30)
    clipped = dem.get_reference_grid(aoi, clip="bbox", api_key="key", output_dir=tmp_path, resolution_m=30)
    assert clipped.width < tile.width
    assert clipped.height < tile.height


def test_locations_clip_masks_outside_polygon(tmp_path, fake_download):
    triangle = Polygon([(14.9, 40.5), (15.0, 40.5), (14.9, 40.6)])
    aoi = gpd.GeoDataFrame(geometry=[triangle], crs="EPSG:4326")
    grid = dem.get_reference_grid(aoi, clip="locations", api_key="key", output_dir=tmp_path, resolution_m=30)
    assert np.isnan(grid.data).any()
    assert np.isfinite(grid.data).any()
