"""Data ingestion modules for DEM, CHELSA climate and Sentinel imagery."""

from .dem import get_reference_grid, determine_utm_zone
from .climate import get_climate_layers, DirectoryCache
from .sentinel import get_index_layers

__all__ = ['get_reference_grid', 'determine_utm_zone', 'get_climate_layers',
           'DirectoryCache', 'get_index_layers']
