"""
Along-stream profile quantities: chi transform, stream gradient, smoothing.
"""

from dataclasses import dataclass
from typing import Literal, Union
import logging

import numpy as np
from numba import jit

from src.topo.grid import GridRaster
from src.topo.stream_network import StreamNetwork

logger = logging.getLogger(__name__)


@dataclass
class ChiProfile:
    """Per-node chi-plot data for one stream network."""

    chi: np.ndarray
    """Chi value of each node (0 at outlets)."""

    elev: np.ndarray
    """Elevation used for the chi-elevation plot."""

    area: np.ndarray
    """Upstream drainage area in map units²."""

    x: np.ndarray
    y: np.ndarray

    distance: np.ndarray
    """Flow distance to the network outlet."""

    ixgrid: np.ndarray
    """Grid index of each node."""

    mn: float
    """Reference concavity used for the transform."""

    def __len__(self) -> int:
        return int(self.chi.size)


def _as_node_values(stream: StreamNetwork, values: Union[GridRaster, np.ndarray]) -> np.ndarray:
    if isinstance(values, GridRaster) or np.ndim(values) == 2:
        return stream.getnal(values)
    values = np.asarray(values, dtype=np.float64)
    if values.shape != (stream.size,):
        raise ValueError(f"Expected {stream.size} node values, got shape {values.shape}")
    return values


def chi_transform(
    stream: StreamNetwork,
    drainage_area: Union[GridRaster, np.ndarray],
    a0: float = 1.0,
    mn: float = 0.5,
) -> np.ndarray:
    """
    Integrate (a0 / A)^mn upstream from each outlet (trapezoidal rule).

    Parameters
    ----------
    stream : StreamNetwork
    drainage_area : GridRaster or np.ndarray
        Flow accumulation in cells (grid) or per-node area in map units².
        Grids are converted to map units with the network's cellsize.
    a0 : float, default 1.0
        Reference drainage area.
    mn : float, default 0.5
        Reference concavity (m/n).
    """
    if isinstance(drainage_area, GridRaster) or np.ndim(drainage_area) == 2:
        area = stream.getnal(drainage_area) * stream.cellsize ** 2
    else:
        area = _as_node_values(stream, drainage_area)

    integrand = (a0 / area) ** mn
    chi = np.zeros(stream.size, dtype=np.float64)
    for k in range(stream.ix.size - 1, -1, -1):
        g = stream.ix[k]
        r = stream.ixc[k]
        chi[g] = chi[r] + 0.5 * (integrand[g] + integrand[r]) * stream.seglen[k]
    return chi


def chi_profile(
    stream: StreamNetwork,
    elevation: Union[GridRaster, np.ndarray],
    drainage_area: GridRaster,
    a0: float = 1.0,
    mn: float = 0.5,
) -> ChiProfile:
    """Chi, elevation, area and location of every node, ready for plotting."""
    elev = _as_node_values(stream, elevation)
    area = stream.getnal(drainage_area) * stream.cellsize ** 2
    chi = chi_transform(stream, area, a0=a0, mn=mn)
    return ChiProfile(
        chi=chi,
        elev=elev,
        area=area,
        x=stream.x.copy(),
        y=stream.y.copy(),
        distance=stream.distance.copy(),
        ixgrid=stream.ixgrid.copy(),
        mn=mn,
    )


@jit(nopython=True, cache=True)
def _robust_gradient_jit(receiver, z, seglen_out, drop):
    """
    Gradient over the downstream reach needed to lose ``drop`` elevation.

    Walks from each node towards its outlet until the elevation difference
    reaches ``drop`` or the outlet is met. Outlets get NaN.
    """
    n = z.shape[0]
    out = np.full(n, np.nan)
    for i in range(n):
        node = i
        length = 0.0
        dz = 0.0
        while receiver[node] >= 0:
            length += seglen_out[node]
            node = receiver[node]
            dz = z[i] - z[node]
            if dz >= drop:
                break
        if length > 0.0:
            out[i] = dz / length
    return out


def stream_gradient(
    stream: StreamNetwork,
    elevation: Union[GridRaster, np.ndarray],
    method: Literal["forward", "robust"] = "robust",
    drop: float = 20.0,
    unit: Literal["tangent", "degree", "percent"] = "tangent",
) -> np.ndarray:
    """
    Downstream gradient at each node.

    Parameters
    ----------
    method : {"forward", "robust"}
        ``forward`` uses the single edge below each node. ``robust`` uses
        the reach below each node over which the elevation drops by ``drop``
        (shorter near the outlet), which damps DEM noise on low-relief reaches.
    drop : float, default 20
        Elevation drop for the robust method.
    unit : {"tangent", "degree", "percent"}

    Returns
    -------
    np.ndarray
        Gradient per node; NaN at outlets.
    """
    z = _as_node_values(stream, elevation)
    receiver = stream.node_receiver
    seglen_out = np.zeros(stream.size, dtype=np.float64)
    seglen_out[stream.ix] = stream.seglen

    if method == "forward":
        grad = np.full(stream.size, np.nan)
        grad[stream.ix] = (z[stream.ix] - z[stream.ixc]) / stream.seglen
    elif method == "robust":
        if drop <= 0:
            raise ValueError(f"drop must be positive, got {drop}")
        grad = _robust_gradient_jit(receiver, z, seglen_out, float(drop))
    else:
        raise ValueError(f"Unknown gradient method: {method}")

    if unit == "degree":
        grad = np.degrees(np.arctan(grad))
    elif unit == "percent":
        grad = grad * 100.0
    elif unit != "tangent":
        raise ValueError(f"Unknown gradient unit: {unit}")
    return grad


def moving_average(values: np.ndarray, span: int = 3) -> np.ndarray:
    """
    Centered moving average that ignores NaN.

    The window shrinks symmetrically near the ends, so the first and last
    samples are returned unchanged. An all-NaN window yields NaN.
    """
    values = np.asarray(values, dtype=np.float64)
    if span < 1:
        raise ValueError(f"span must be >= 1, got {span}")
    if span % 2 == 0:
        span -= 1
    half = span // 2
    n = values.size
    out = np.full(n, np.nan)
    for i in range(n):
        w = min(half, i, n - 1 - i)
        window = values[i - w:i + w + 1]
        finite = window[~np.isnan(window)]
        if finite.size:
            out[i] = finite.mean()
    return out
