import json

import geopandas as gpd
import numpy as np
import pytest
import yaml
from click.testing import CliRunner
from shapely.geometry import box

import covstack.run as run
from covstack.raster import Raster, read_raster, stack_rasters

from conftest import make_grid


@pytest.fixture
def config(tmp_path, monkeypatch):
    grid = make_grid()
    aoi_path = tmp_path / "aoi.geojson"
    gpd.GeoDataFrame(geometry=[box(*grid.bounds)], crs=grid.crs.to_string()).to_file(aoi_path)

    monkeypatch.setattr(run, "get_reference_grid", lambda aoi, **kwargs: grid)

    return {
        'aoi': str(aoi_path),
        'ogc': {'n_directions': 5},
        'terrain': {'saga_path': None},
        'stack': {'resample_method': 'near'},
        'output': {'directory': str(tmp_path / 'products')},
    }


def test_workflow_writes_stack_and_metadata(config, tmp_path):
    stack_path = run.run_workflow(config, skip=('terrain', 'sentinel', 'climate'))

    stack = read_raster(stack_path)
    assert stack.names == tuple(f"ogc_{i}" for i in range(1, 6))
    assert stack.same_grid(make_grid())

    metadata = json.loads((tmp_path / 'products' / 'metadata.json').read_text())
    assert metadata['bands'] == list(stack.names)
    assert metadata['grid_meta']['crs'] == "EPSG:32633"
    assert len(metadata['summary']) == 5


def test_workflow_falls_back_to_slope_without_saga(config, tmp_path):
    stack_path = run.run_workflow(config, skip=('sentinel', 'climate'), output_dir=tmp_path / 'out')
    names = read_raster(stack_path).names
    assert "slope" in names
    assert names[-1] == "ogc_5"


def test_cli(config, tmp_path):
    config_path = tmp_path / 'stack.yml'
    config_path.write_text(yaml.safe_dump(config))

    result = CliRunner().invoke(run.main, [
        '--config', str(config_path),
        '--skip', 'terrain', '--skip', 'sentinel', '--skip', 'climate',
        '--output-dir', str(tmp_path / 'cli'),
    ])

    assert result.exit_code == 0, result.output
    assert (tmp_path / 'cli' / 'covariates.tif').exists()
    assert np.isfinite(read_raster(tmp_path / 'cli' / 'covariates.tif').data).all()


def test_cli_rejects_unknown_producer(config, tmp_path):
    result = CliRunner().invoke(run.main, ['--skip', 'lidar'])
    assert result.exit_code != 0


def test_metadata_is_strict_json_with_empty_bands(tmp_path):
    grid = make_grid()
    empty = Raster(np.full(grid.shape, np.nan, dtype=np.float32), grid.transform, grid.crs, ("empty",), np.nan)
    run.save_products(stack_rasters([grid, empty]), tmp_path)

    def reject(token):
        raise ValueError(f"non-standard JSON token {token}")

    text = (tmp_path / 'metadata.json').read_text()
    metadata = json.loads(text, parse_constant=reject)
    summary = {row['name']: row for row in metadata['summary']}
    assert summary['empty']['min'] is None
    assert summary['empty']['valid_fraction'] == 0.0
    assert summary['elevation']['min'] == 100.0
