"""Covariate preparation: grid alignment, terrain derivatives and oblique coordinates."""

from .stack import align_covariates, align_layer, flatten_covariates, make_unique, validate_reference_grid
from .terrain import get_terrain_layers, compute_slope_aspect
from .ogc import get_oblique_layers

__all__ = ['align_covariates', 'align_layer', 'flatten_covariates', 'make_unique',
           'validate_reference_grid', 'get_terrain_layers', 'compute_slope_aspect',
           'get_oblique_layers']
