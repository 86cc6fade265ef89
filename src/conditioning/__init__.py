"""
DEM conditioning along stream networks.
"""

from .params import ConditioningMethod, make_params, parse_method
from .conditioner import ConditionedDEM, condition_dem, plot_conditioning_comparison

__all__ = [
    "ConditioningMethod",
    "make_params",
    "parse_method",
    "ConditionedDEM",
    "condition_dem",
    "plot_conditioning_comparison",
]
