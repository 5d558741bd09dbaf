"""Batch image to WebP converter."""

__version__ = "1.0.0"

from .batch import ImageConverter, convert
from .results import ConversionResult, FailedFile
from .settings import RunConfiguration

__all__ = ["ImageConverter", "convert", "ConversionResult", "FailedFile", "RunConfiguration", "__version__"]
