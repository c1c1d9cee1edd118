"""covstack - harmonized environmental covariate stacks for spatial modeling."""

from .errors import (
    CovariateError, InvalidGridError, UndefinedCRSError, EmptyInputError,
    NoValidLayersError, UnknownToolError, MissingCredentialError, InvalidAOIError
)
from .raster import Raster, read_raster, write_raster, stack_rasters
from .prep.stack import align_covariates

__version__ = "0.1.0"

__all__ = [
    'Raster', 'read_raster', 'write_raster', 'stack_rasters', 'align_covariates',
    'CovariateError', 'InvalidGridError', 'UndefinedCRSError', 'EmptyInputError',
    'NoValidLayersError', 'UnknownToolError', 'MissingCredentialError', 'InvalidAOIError',
]
