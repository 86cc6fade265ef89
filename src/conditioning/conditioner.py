"""
DEM conditioning along a stream network.

``condition_dem`` dispatches a validated parameter record to its solver and
packs the result as a raster: stream-based methods write the conditioned
elevations into an otherwise missing (NaN) grid at the stream cells, the
grid methods return a full grid. ``plot_conditioning_comparison`` shows the
effect on the longest channel.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
import logging

import matplotlib.pyplot as plt
import numpy as np

from src.conditioning.params import (
    ConditioningMethod,
    ConditioningParams,
    CrsLinParams,
    CrsParams,
    MinCostParams,
    MinGradParams,
    QuantCarveGridParams,
    QuantCarveParams,
    SmoothParams,
)
from src.conditioning import solvers
from src.topo.flow_routing import FlowDirection
from src.topo.grid import GridRaster
from src.topo.stream_network import StreamNetwork

logger = logging.getLogger(__name__)


@dataclass
class ConditionedDEM:
    """Conditioned elevations plus the mask of cells that hold a value."""

    grid: GridRaster
    """Conditioned elevations; NaN where undefined."""

    valid: np.ndarray
    """Boolean mask of defined cells."""

    method: ConditioningMethod

    @property
    def node_count(self) -> int:
        return int(self.valid.sum())


def _check_inputs(dem: GridRaster, flow: FlowDirection, stream: StreamNetwork):
    if flow.shape != dem.shape:
        raise ValueError(f"Flow directions {flow.shape} do not match DEM {dem.shape}")
    if stream.shape != dem.shape:
        raise ValueError(f"Stream network grid {stream.shape} does not match DEM {dem.shape}")


def condition_dem(
    dem: GridRaster,
    flow: FlowDirection,
    stream: StreamNetwork,
    params: ConditioningParams,
) -> ConditionedDEM:
    """
    Condition ``dem`` with the method described by ``params``.

    Parameters
    ----------
    dem : GridRaster
        Raw elevations.
    flow : FlowDirection
        Flow directions on the DEM grid (used by the grid methods).
    stream : StreamNetwork
        Network along which stream methods operate.
    params : ConditioningParams
        Validated record from ``make_params`` or constructed directly.

    Returns
    -------
    ConditionedDEM

    Raises
    ------
    RuntimeError
        If an optimization solver fails.
    """
    _check_inputs(dem, flow, stream)
    method = params.method
    logger.info(f"Conditioning DEM with '{method.value}' ({stream.size:,} stream nodes)")

    if method.is_grid_method:
        if isinstance(params, MinGradParams):
            z = solvers.impose_min_gradient(flow, dem.z, params.ming)
        elif isinstance(params, QuantCarveGridParams):
            z = solvers.quantile_carve_grid(flow, dem.z, params.tau)
        else:
            raise TypeError(f"No grid solver for {type(params).__name__}")
        z = np.where(np.isfinite(dem.z), z, np.nan)
        grid = dem.like(z)
        return ConditionedDEM(grid=grid, valid=np.isfinite(z), method=method)

    z0 = stream.getnal(dem)
    if isinstance(params, MinCostParams):
        zs = solvers.mincost_hydrocon(z0, stream, params.mc_method, params.fillp)
    elif isinstance(params, QuantCarveParams):
        zs = solvers.quantile_carve(z0, stream, params.tau, params.ming, params.split)
    elif isinstance(params, SmoothParams):
        zs = solvers.smooth_profile(
            z0,
            stream,
            method=params.sm_method,
            split=params.split,
            stiffness=params.stiffness,
            stiff_tribs=params.stiff_tribs,
            positive=params.positive,
        )
    elif isinstance(params, CrsParams):
        zs = solvers.crs_profile(
            z0,
            stream,
            stiffness=params.stiffness,
            tau=params.tau,
            ming=params.ming,
            stiff_tribs=params.stiff_tribs,
            knicks=params.knicks,
            split=params.split,
        )
    elif isinstance(params, CrsLinParams):
        zs = solvers.crslin_profile(
            z0,
            stream,
            stiffness=params.stiffness,
            stiff_tribs=params.stiff_tribs,
            ming=params.ming,
            knicks=params.knicks,
            imposemin=params.imposemin,
            attachtomin=params.attachtomin,
            attachheads=params.attachheads,
            discardflats=params.discardflats,
            maxcurvature=params.maxcurvature,
            precisecoords=params.precisecoords,
        )
    else:
        raise TypeError(f"Unsupported conditioning parameters: {type(params).__name__}")

    grid = dem.scatter(stream.ixgrid, zs)
    valid = np.isfinite(grid.z)
    logger.info(
        f"Conditioned {int(valid.sum()):,} cells; mean change "
        f"{np.nanmean(zs - z0) if zs.size else 0.0:.3f}"
    )
    return ConditionedDEM(grid=grid, valid=valid, method=method)


def plot_conditioning_comparison(
    dem: GridRaster,
    conditioned: Union[ConditionedDEM, GridRaster],
    stream: StreamNetwork,
    output_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Compare raw and conditioned elevations along the longest channel.

    Draws, on the trunk of the largest connected component: both long
    profiles, the elevation difference along the profile, and a map of the
    difference over the whole grid.
    """
    grid = conditioned.grid if isinstance(conditioned, ConditionedDEM) else conditioned
    trunk = stream.largest_component().trunk()

    z_raw = trunk.getnal(dem)
    z_cond = trunk.getnal(grid)
    dist = trunk.distance
    order = np.argsort(dist)

    fig, axes = plt.subplots(1, 3, figsize=(16, 5))
    ax = axes[0]
    ax.plot(dist[order], z_raw[order], color="0.5", label="DEM")
    ax.plot(dist[order], z_cond[order], color="tab:blue", label="Conditioned DEM")
    ax.set_xlabel("Distance from outlet (m)")
    ax.set_ylabel("Elevation (m)")
    ax.set_title("Long profile")
    ax.legend()

    ax = axes[1]
    ax.plot(dist[order], (z_cond - z_raw)[order], color="k")
    ax.axhline(0.0, color="0.7", linestyle="--", linewidth=0.8)
    ax.set_xlabel("Distance from outlet (m)")
    ax.set_ylabel("Elevation difference (m)")
    ax.set_title("Conditioned - raw")

    ax = axes[2]
    diff = grid.z - dem.z
    limit = np.nanmax(np.abs(diff)) if np.any(np.isfinite(diff)) else 1.0
    limit = limit if limit > 0 else 1.0
    im = ax.imshow(diff, cmap="RdBu_r", vmin=-limit, vmax=limit)
    fig.colorbar(im, ax=ax, label="Elevation difference (m)")
    ax.set_title("Difference map")
    ax.set_xticks([])
    ax.set_yticks([])

    fig.tight_layout()
    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=150)
        logger.info(f"Saved conditioning comparison to {output_path}")
    return fig
