"""
Relevance Analysis for Statistical Downscaling Models.

This package provides tools to compute and visualize relevance maps showing
which predictor variables and grid regions most influence a downscaling
model's predicted distribution at a given location.
"""

from .config import MarginalizationMode, RelevanceConfig, SamplerType, ScoreType
from .core import RelevanceEngine, compute_relevance_maps
from .relevance_map import RelevanceMap
from .visualization import visualize_relevance

__all__ = [
    "MarginalizationMode",
    "RelevanceConfig",
    "RelevanceEngine",
    "RelevanceMap",
    "SamplerType",
    "ScoreType",
    "compute_relevance_maps",
    "visualize_relevance",
]
