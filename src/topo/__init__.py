"""
Terrain layer: rasters, D8 flow routing, stream networks and profile quantities.
"""

from .grid import GridRaster
from .flow_routing import FlowDirection, compute_flow_direction, priority_flood_fill_epsilon
from .stream_network import StreamNetwork
from .profiles import ChiProfile, chi_profile, chi_transform, stream_gradient, moving_average
from .data_loading import TopoBundle, make_streams, load_topo_bundle, save_topo_bundle

__all__ = [
    "GridRaster",
    "FlowDirection",
    "compute_flow_direction",
    "priority_flood_fill_epsilon",
    "StreamNetwork",
    "ChiProfile",
    "chi_profile",
    "chi_transform",
    "stream_gradient",
    "moving_average",
    "TopoBundle",
    "make_streams",
    "load_topo_bundle",
    "save_topo_bundle",
]
