"""
Predictor selection.
"""

from .selection import correlation_matrix, dist_pres_vs_bg, filter_high_cor

__all__ = [
    "correlation_matrix",
    "dist_pres_vs_bg",
    "filter_high_cor",
]
