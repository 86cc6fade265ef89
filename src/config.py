"""Configuration module for channel-threshold project.

Centralizes project paths, processing defaults and output file names.
"""
from pathlib import Path

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Threshold picking defaults
DEFAULT_REF_CONCAVITY = 0.50
DEFAULT_PICK_METHOD = "slope_area"
PICK_METHODS = ("chi", "slope_area")
DEFAULT_BIN_SIZE = 500.0  # map units along the stream
CHI_REFERENCE_AREA = 1.0  # a0 for the chi transform

# Stream gradient defaults
GRADIENT_DROP = 20.0  # elevation drop used by the robust gradient
SMOOTH_SPAN = 3

# Hydrologic conditioning of candidate streams
MINCOST_METHOD = "interp"
MINCOST_FILL_FRACTION = 0.1

# Output file names
THRESHOLD_TABLE = "thresh_table.txt"
THRESHOLD_SHAPEFILE = "thresh_streams.shp"
THRESHOLD_NETWORK = "thresh_streams.npz"
THRESHOLD_SUMMARY = "thresh_summary.png"

# Default settings
DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s: %(message)s"
