"""
Single-stream candidates for channel-head threshold picking.

A candidate is the flow path from the highest point above one channel head
down to its outlet, with everything needed to plot it and to turn a picked
x coordinate into a threshold area and a distance to the divide.
"""

from dataclasses import dataclass
import logging

import numpy as np

from src.config import CHI_REFERENCE_AREA, MINCOST_FILL_FRACTION, MINCOST_METHOD
from src.conditioning.solvers import mincost_hydrocon
from src.threshold.slope_area import SlopeAreaBins, slope_area_bins
from src.topo.data_loading import TopoBundle
from src.topo.profiles import ChiProfile, chi_profile
from src.topo.stream_network import StreamNetwork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PickResult:
    """Threshold drainage area and distance to divide picked on one stream."""

    threshold_area: float
    distance_to_divide: float

    def __post_init__(self):
        for name in ("threshold_area", "distance_to_divide"):
            value = getattr(self, name)
            if not np.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be finite and >= 0, got {value}")


@dataclass
class CandidateStream:
    """One candidate stream, ready to plot and pick on."""

    position: int
    """1-based position among the processed streams."""

    total: int
    """Number of streams that will be processed."""

    channel_head: int
    """Grid index of the channel head the candidate was built from."""

    stream: StreamNetwork
    chi: ChiProfile
    bins: SlopeAreaBins
    pick_method: str

    divide_distance: np.ndarray
    """Downstream flow distance (from the divide) of each node."""

    @property
    def remaining(self) -> int:
        """Streams left after this one."""
        return self.total - self.position

    def resolve(self, x: float) -> PickResult:
        """
        Turn a picked x coordinate into a PickResult.

        In chi mode ``x`` is a chi value: the node with the nearest chi gives
        the area. In slope-area mode ``x`` is the area itself and the node
        with the nearest area gives the distance to divide.
        """
        x = float(x)
        if self.pick_method == "chi":
            node = int(np.nanargmin(np.abs(self.chi.chi - x)))
            area = self.chi.area[node]
        else:
            node = int(np.nanargmin(np.abs(self.chi.area - x)))
            area = x
        result = PickResult(float(area), float(self.divide_distance[node]))
        logger.debug(
            f"Stream {self.position}/{self.total}: picked x={x:.4g} -> node {node}, "
            f"area {result.threshold_area:.4g}, xd {result.distance_to_divide:.4g}"
        )
        return result

    def cells_above(self, threshold_area: float) -> np.ndarray:
        """Grid indices of this stream's nodes draining at least ``threshold_area``."""
        return self.chi.ixgrid[self.chi.area >= threshold_area]


def extract_candidate(
    topo: TopoBundle,
    channel_head: int,
    position: int,
    total: int,
    pick_method: str,
    ref_concavity: float,
    bin_size: float,
    divide_distance: np.ndarray,
) -> CandidateStream:
    """
    Build the candidate stream of one channel head.

    The highest cell draining into the channel head is the source; the
    stream is the source's flow path down to the outlet. Its elevations are
    hydrologically conditioned (min-cost carve/fill) before computing chi.

    Parameters
    ----------
    divide_distance : np.ndarray
        Downstream flow distance grid (``flow.flow_distance("downstream")``).
    """
    flow = topo.flow
    upstream = flow.dependence_map(channel_head).ravel()
    z = topo.dem.z.ravel()
    region = np.flatnonzero(upstream & np.isfinite(z))
    if region.size == 0:
        region = np.array([channel_head], dtype=np.int64)
    source = region[np.argmax(z[region])]

    path = flow.influence_map(source)
    stream = StreamNetwork.from_mask(flow, path)

    z_nodes = mincost_hydrocon(stream.getnal(topo.dem), stream, MINCOST_METHOD, MINCOST_FILL_FRACTION)
    chi = chi_profile(stream, z_nodes, topo.area, a0=CHI_REFERENCE_AREA, mn=ref_concavity)
    bins = slope_area_bins(stream, topo.dem, topo.area, chi.chi, bin_size=bin_size)

    logger.debug(
        f"Candidate {position}/{total}: head {channel_head}, source {source}, "
        f"{stream.size} nodes, {len(bins)} slope-area bins"
    )
    return CandidateStream(
        position=position,
        total=total,
        channel_head=int(channel_head),
        stream=stream,
        chi=chi,
        bins=bins,
        pick_method=pick_method,
        divide_distance=stream.getnal(divide_distance),
    )
