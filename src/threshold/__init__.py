"""
Channel-head threshold picking on chi-elevation and slope-area plots.
"""

from .slope_area import SlopeAreaBins, bin_slope_area, compute_bin_count, slope_area_bins
from .candidates import CandidateStream, PickResult, extract_candidate
from .pickers import CallbackPicker, InteractivePicker, Picker, QuantilePicker, ScriptedPicker
from .picker import ThresholdResult, find_threshold, read_threshold_table, write_threshold_outputs
from .rendering import plot_candidate, plot_threshold_summary, render_session

__all__ = [
    "SlopeAreaBins",
    "bin_slope_area",
    "compute_bin_count",
    "slope_area_bins",
    "CandidateStream",
    "PickResult",
    "extract_candidate",
    "Picker",
    "InteractivePicker",
    "ScriptedPicker",
    "CallbackPicker",
    "QuantilePicker",
    "ThresholdResult",
    "find_threshold",
    "read_threshold_table",
    "write_threshold_outputs",
    "plot_candidate",
    "plot_threshold_summary",
    "render_session",
]
