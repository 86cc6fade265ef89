"""
Slope-area binning of stream profiles.

Stream nodes are grouped into log-spaced drainage-area bins. For each bin the
median area and the mean gradient, distance and chi are reported, which gives
the binned points of a log slope / log area plot together with the colours
(chi) used to tie them back to the chi-elevation plot.

The number of bins is the larger of a fixed-width tiling of the stream's
distance range and one bin per ~10 nodes, so short streams still get
statistically meaningful bins.
"""

from dataclasses import dataclass, field
from typing import Optional, Union
import logging
import math

import numpy as np

from src.config import DEFAULT_BIN_SIZE, GRADIENT_DROP, SMOOTH_SPAN
from src.topo.grid import GridRaster
from src.topo.profiles import moving_average, stream_gradient
from src.topo.stream_network import StreamNetwork

logger = logging.getLogger(__name__)


def _empty() -> np.ndarray:
    return np.empty(0, dtype=np.float64)


@dataclass
class SlopeAreaBins:
    """Binned and per-node slope-area data, all finite and non-negative."""

    slope: np.ndarray = field(default_factory=_empty)
    """Mean gradient of each retained bin."""

    area: np.ndarray = field(default_factory=_empty)
    """Median drainage area of each retained bin."""

    chi: np.ndarray = field(default_factory=_empty)
    """Mean chi of each retained bin."""

    distance: np.ndarray = field(default_factory=_empty)
    """Mean flow distance of each retained bin."""

    node_area: np.ndarray = field(default_factory=_empty)
    node_gradient: np.ndarray = field(default_factory=_empty)
    node_chi: np.ndarray = field(default_factory=_empty)
    node_distance: np.ndarray = field(default_factory=_empty)

    num_bins: int = 0
    """Number of bins laid out before empty/degenerate bins were dropped."""

    def __len__(self) -> int:
        return int(self.slope.size)

    @property
    def is_empty(self) -> bool:
        return self.slope.size == 0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_bin_count(distance, bin_size: float, node_count: Optional[int] = None) -> int:
    """
    Number of drainage-area bins for a stream.

    ``max(ceil((max(d) - min(d)) / bin_size) + 1, round(node_count / 10))``

    Parameters
    ----------
    distance : array-like
        Flow distance of every node (NaN ignored).
    bin_size : float
        Bin width in distance units; must be positive.
    node_count : int, optional
        Number of nodes in the network (defaults to ``len(distance)``).

    Raises
    ------
    ValueError
        If ``bin_size`` is not a positive finite number.
    """
    if not np.isfinite(bin_size) or bin_size <= 0:
        raise ValueError(f"bin_size must be positive, got {bin_size}")

    distance = np.asarray(distance, dtype=np.float64).ravel()
    if node_count is None:
        node_count = distance.size

    finite = distance[np.isfinite(distance)]
    if finite.size:
        tiling = int(math.ceil((finite.max() - finite.min()) / bin_size)) + 1
    else:
        tiling = 1
    return max(tiling, _round_half_up(node_count / 10))


def bin_slope_area(
    area,
    gradient,
    distance,
    chi,
    bin_size: float = DEFAULT_BIN_SIZE,
    node_count: Optional[int] = None,
) -> SlopeAreaBins:
    """
    Bin per-node gradient, distance and chi by log drainage area.

    All four inputs are per-node arrays in the same node order. Nodes where
    any of them is not finite are dropped before binning. Bins are half-open
    on a log-spaced axis from ``min(area) - 0.1`` to ``max(area) + 1`` (the
    last bin is closed). Bins with no members, or with any negative
    aggregate, are discarded, as are nodes with any negative value.

    Parameters
    ----------
    area : array-like
        Drainage area per node in map units².
    gradient : array-like
        Stream gradient per node (tangent).
    distance : array-like
        Flow distance per node.
    chi : array-like
        Chi value per node.
    bin_size : float, default 500
        Distance tiling width used to size the bin count.
    node_count : int, optional
        Node count for the bin-count heuristic (defaults to the input length).

    Returns
    -------
    SlopeAreaBins
        Possibly empty; never raises for empty or all-NaN input.
    """
    a = np.asarray(area, dtype=np.float64).ravel()
    g = np.asarray(gradient, dtype=np.float64).ravel()
    d = np.asarray(distance, dtype=np.float64).ravel()
    c = np.asarray(chi, dtype=np.float64).ravel()
    if not (a.size == g.size == d.size == c.size):
        raise ValueError(
            f"Per-node arrays must have equal length (area={a.size}, gradient={g.size}, "
            f"distance={d.size}, chi={c.size})"
        )

    numbins = compute_bin_count(d, bin_size, node_count if node_count is not None else a.size)

    finite = np.isfinite(a) & np.isfinite(g) & np.isfinite(d) & np.isfinite(c)
    a, g, d, c = a[finite], g[finite], d[finite], c[finite]
    if a.size == 0:
        logger.debug("No finite slope-area samples; returning empty bins")
        return SlopeAreaBins(num_bins=numbins)

    lower = a.min() - 0.1
    if lower <= 0:
        lower = np.finfo(np.float64).tiny
    upper = a.max() + 1.0
    edges = np.logspace(np.log10(lower), np.log10(upper), numbins + 1)

    idx = np.searchsorted(edges, a, side="right") - 1
    idx[a == edges[-1]] = numbins - 1
    inside = (idx >= 0) & (idx < numbins)

    ba = np.full(numbins, np.nan)
    bs = np.full(numbins, np.nan)
    bd = np.full(numbins, np.nan)
    bc = np.full(numbins, np.nan)
    for k in np.unique(idx[inside]):
        members = inside & (idx == k)
        ba[k] = np.median(a[members])
        gk = g[members]
        gk = gk[~np.isnan(gk)]
        if gk.size:
            bs[k] = gk.mean()
        bd[k] = d[members].mean()
        bc[k] = c[members].mean()

    with np.errstate(invalid="ignore"):
        keep = (bs >= 0) & (ba >= 0) & (bc >= 0) & (bd >= 0)
        node_keep = (a >= 0) & (g >= 0) & (d >= 0) & (c >= 0)

    logger.debug(f"Slope-area binning: {numbins} bins, {int(keep.sum())} retained, "
                 f"{int(node_keep.sum())}/{a.size} nodes retained")

    return SlopeAreaBins(
        slope=bs[keep],
        area=ba[keep],
        chi=bc[keep],
        distance=bd[keep],
        node_area=a[node_keep],
        node_gradient=g[node_keep],
        node_chi=c[node_keep],
        node_distance=d[node_keep],
        num_bins=numbins,
    )


def slope_area_bins(
    stream: StreamNetwork,
    dem: Union[GridRaster, np.ndarray],
    drainage_area: Union[GridRaster, np.ndarray],
    chi,
    bin_size: float = DEFAULT_BIN_SIZE,
    drop: float = GRADIENT_DROP,
    span: int = SMOOTH_SPAN,
) -> SlopeAreaBins:
    """
    Slope-area bins of a stream network.

    Gradients come from the DEM elevations at the nodes (robust method over
    a ``drop`` elevation window, then a ``span``-sample moving average);
    areas are the flow accumulation in cells times cellsize².

    Parameters
    ----------
    stream : StreamNetwork
        Network with at least one node, co-registered with the grids.
    dem : GridRaster or np.ndarray
        Elevation grid.
    drainage_area : GridRaster or np.ndarray
        Flow accumulation grid in cells.
    chi : array-like
        Chi value of each network node.
    bin_size : float, default 500
        Distance tiling width (map units).
    """
    if stream.size == 0:
        raise ValueError("Stream network has no nodes")
    chi = np.asarray(chi, dtype=np.float64)
    if chi.shape != (stream.size,):
        raise ValueError(f"Expected {stream.size} chi values, got shape {chi.shape}")

    area = stream.getnal(drainage_area) * stream.cellsize ** 2
    z = stream.getnal(dem)
    gradient = stream_gradient(stream, z, method="robust", drop=drop)
    gradient = moving_average(gradient, span)

    return bin_slope_area(area, gradient, stream.distance, chi, bin_size=bin_size, node_count=stream.size)
