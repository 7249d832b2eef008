"""
Default portion estimator.

Portion sizing is owned by a downstream service; the pipeline only needs
something callable that maps fused items to grams. This heuristic keeps
the old behaviour: grams = normalized box area * PLATE_GRAMS.
"""

from typing import Callable, Dict, Sequence

from src.config import PLATE_GRAMS

from .types import FusedFoodItem

PortionEstimator = Callable[[Sequence[FusedFoodItem]], Dict[str, float]]

# Items without a box (GPT-only) get a flat serving
DEFAULT_PORTION_G = 100.0
MIN_PORTION_G = 5.0


def estimate_grams(item: FusedFoodItem, plate_grams: float = PLATE_GRAMS) -> float:
    if item.bounding_box is None:
        return DEFAULT_PORTION_G
    grams = item.bounding_box.area() * float(plate_grams)
    return round(max(MIN_PORTION_G, grams), 1)


def estimate_portions(items: Sequence[FusedFoodItem]) -> Dict[str, float]:
    return {item.canonical_name: estimate_grams(item) for item in items}
