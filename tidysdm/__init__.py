"""
Species distribution modelling with spatially aware resampling and ensembles.
"""

__version__ = "0.1.0"
