"""Per-site extractor implementations."""

from .realtor import RealtorExtractor
from .centris import CentrisExtractor

__all__ = ['RealtorExtractor', 'CentrisExtractor']
