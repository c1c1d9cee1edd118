"""Main covariate-stack orchestrator."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

import click
import geopandas as gpd
from dotenv import load_dotenv

from covstack.ingest import get_reference_grid, get_climate_layers, get_index_layers, DirectoryCache
from covstack.prep import align_covariates, compute_slope_aspect, get_oblique_layers, get_terrain_layers
from covstack.prep.stack import summarize_stack
from covstack.raster import Raster, write_raster
from covstack.utils import setup_logger, load_config, ensure_dir

# Load environment variables
load_dotenv()

logger = setup_logger(__name__)

PRODUCERS = ('terrain', 'ogc', 'sentinel', 'climate')


def collect_covariates(
    dem: Raster,
    aoi: gpd.GeoDataFrame,
    config: dict,
    skip: Sequence[str] = ()
) -> List[object]:
    """Run every configured covariate producer not listed in skip."""
    collections = []

    if 'terrain' not in skip:
        terrain_config = config.get('terrain', {})
        saga_path = terrain_config.get('saga_path')
        if saga_path:
            collections.append(get_terrain_layers(
                dem,
                Path(saga_path),
                tools=terrain_config.get('tools', 'all'),
                cores=terrain_config.get('cores', 4)
            ))
        else:
            logger.warning("terrain.saga_path not set - computing slope and aspect in-process")
            collections.append(compute_slope_aspect(dem))

    if 'ogc' not in skip:
        collections.append(get_oblique_layers(dem, config.get('ogc', {}).get('n_directions', 6)))

    if 'sentinel' not in skip:
        s_config = config.get('sentinel', {})
        collections.append(get_index_layers(
            aoi,
            dem,
            sensors=s_config.get('sensors', ['S2', 'S1']),
            dates_s1=s_config.get('dates_s1'),
            dates_s2=s_config.get('dates_s2'),
            s2_composite=s_config.get('composite', 'median'),
            mask_s2=s_config.get('mask_s2', True),
            exclude_domains=s_config.get('exclude_domains', ['urban', 'snow']),
            max_cloud_cover=s_config.get('max_cloud_cover'),
            max_items=s_config.get('max_items')
        ))

    if 'climate' not in skip:
        c_config = config.get('climate', {})
        collections.append(get_climate_layers(
            dem,
            aoi,
            variables=c_config.get('variables', 'all'),
            overwrite=c_config.get('overwrite', False),
            cache=DirectoryCache(Path(c_config.get('cache_dir', 'data/cache/chelsa')))
        ))

    return collections


def save_products(stack: Raster, output_dir: Path) -> Path:
    """Write the stack GeoTIFF and its metadata JSON."""
    ensure_dir(output_dir)

    stack_path = write_raster(stack, output_dir / 'covariates.tif')

    # All-missing bands (kept when remove_constant is off) have NaN statistics
    summary = summarize_stack(stack)
    summary = summary.astype(object).where(summary.notna(), None)

    metadata = {
        'generated_at': datetime.now(timezone.utc).isoformat(),
        'bands': list(stack.names),
        'grid_meta': {
            'crs': stack.crs.to_string(),
            'resolution_m': list(stack.res),
            'shape': list(stack.shape),
            'bounds': list(stack.bounds),
        },
        'summary': summary.to_dict(orient='records'),
    }

    metadata_path = output_dir / 'metadata.json'
    with open(metadata_path, 'w') as f:
        json.dump(metadata, f, indent=2, allow_nan=False)
    logger.info(f"Saved metadata: {metadata_path}")

    return stack_path


def run_workflow(config: dict, skip: Sequence[str] = (), output_dir: Optional[Path] = None) -> Path:
    """Reference grid -> covariate producers -> aligned stack on disk."""
    logger.info("=" * 60)
    logger.info("STEP 1: Reference grid")
    logger.info("=" * 60)

    aoi = gpd.read_file(config['aoi'])
    dem_config = config.get('dem', {})
    dem = get_reference_grid(
        aoi,
        clip=dem_config.get('clip', 'bbox'),
        demtype=dem_config.get('demtype', 'AW3D30'),
        output_dir=Path(dem_config.get('output_dir', 'data/raw/dem')),
        resolution_m=dem_config.get('resolution_m')
    )

    logger.info("=" * 60)
    logger.info("STEP 2: Covariate producers")
    logger.info("=" * 60)

    collections = collect_covariates(dem, aoi, config, skip)

    logger.info("=" * 60)
    logger.info("STEP 3: Alignment")
    logger.info("=" * 60)

    stack_config = config.get('stack', {})
    stack = align_covariates(
        dem,
        *collections,
        resample_method=stack_config.get('resample_method', 'near'),
        crop=stack_config.get('crop', True),
        remove_constant=stack_config.get('remove_constant', True),
        verbose=stack_config.get('verbose', True),
        max_workers=stack_config.get('max_workers')
    )

    logger.info("=" * 60)
    logger.info("STEP 4: Saving products")
    logger.info("=" * 60)

    output_dir = output_dir or Path(config.get('output', {}).get('directory', 'data/products'))
    stack_path = save_products(stack, Path(output_dir))

    logger.info(f"Stack complete: {stack.count} covariates saved to {stack_path}")
    return stack_path


@click.command()
@click.option('--config', default='configs/stack.yml', help='Path to configuration file')
@click.option('--skip', multiple=True, type=click.Choice(PRODUCERS), help='Covariate producer to skip (repeatable)')
@click.option('--output-dir', default=None, type=click.Path(path_type=Path), help='Output directory override')
def main(config: str, skip: tuple, output_dir: Optional[Path]):
    """Build an aligned covariate stack for the configured area of interest."""
    run_workflow(load_config(config), skip=skip, output_dir=output_dir)


if __name__ == '__main__':
    main()
