"""
Occurrence data processing: cleaning, thinning and pseudo-absence sampling.
"""

from .cleaning import check_sdm_presence, clean_occurrences, filter_species
from .sampling import (
    BackgroundMethod,
    SamplingMethod,
    TransformMethod,
    occurrence_density_surface,
    sample_background,
    sample_pseudoabs,
    sample_pseudoabs_time,
)
from .thinning import thin_by_cell, thin_by_cell_time, thin_by_dist, thin_by_dist_time

__all__ = [
    "check_sdm_presence",
    "clean_occurrences",
    "filter_species",
    "BackgroundMethod",
    "SamplingMethod",
    "TransformMethod",
    "occurrence_density_surface",
    "sample_background",
    "sample_pseudoabs",
    "sample_pseudoabs_time",
    "thin_by_cell",
    "thin_by_cell_time",
    "thin_by_dist",
    "thin_by_dist_time",
]
