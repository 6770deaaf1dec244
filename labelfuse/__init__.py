"""
labelfuse - Consensus labeling from multiple segmentations

Combines several label volumes of the same scene into one consensus labeling
with multi-label STAPLE, estimating each observer's confusion matrix on the way.
"""

from src.staple.engine import StapleResult, combine_segmentations
from src.staple.options import StapleConfigurationError, StapleOptions

__version__ = "0.1.0"

__all__ = [
    "StapleConfigurationError",
    "StapleOptions",
    "StapleResult",
    "combine_segmentations",
]
