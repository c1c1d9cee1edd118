"""Exceptions raised while acquiring and aligning covariates."""

from typing import Optional


class CovariateError(Exception):
    """Base covariate error."""
    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(message)
        self.original_exception = original_exception


class InvalidGridError(CovariateError):
    """Raised when the reference grid is not a raster, has no CRS, or is geographic."""
    pass


class UndefinedCRSError(CovariateError):
    """Raised when a covariate layer has no coordinate reference system."""
    pass


class EmptyInputError(CovariateError):
    """Raised when no covariates were supplied at all."""
    pass


class NoValidLayersError(CovariateError):
    """Raised when no usable raster band remains (none supplied, or all constant or empty)."""
    pass


class UnknownToolError(CovariateError):
    """Raised for an unknown terrain tool group or unsupported climate variable."""
    pass


class MissingCredentialError(CovariateError):
    """Raised when a required API key is not configured."""
    pass


class InvalidAOIError(CovariateError):
    """Raised when an area of interest is not a polygonal GeoDataFrame with a CRS."""
    pass
