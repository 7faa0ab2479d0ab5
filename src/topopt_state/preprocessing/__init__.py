"""Region geometry and element classification."""

from .classifier import (
    DomainClassifier,
    RegionClassification,
    RegionInputs,
    aggregate_to_nodes,
    classify_elements,
)
from .geometry import TriangleSurface, load_surface, save_surface

__all__ = [
    "DomainClassifier",
    "RegionClassification",
    "RegionInputs",
    "aggregate_to_nodes",
    "classify_elements",
    "TriangleSurface",
    "load_surface",
    "save_surface",
]
