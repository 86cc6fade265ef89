"""
Loading and saving the inputs of the threshold and conditioning tools.

A topo bundle is a compressed ``.npz`` file holding a DEM, its D8 flow
directions, the flow accumulation (cells) and a stream network. Variables
use the names ``DEM``, ``FD``, ``A`` and ``S``; bundles produced from a
conditioned DEM use ``DEMcc``, ``FDc``, ``Ac`` and ``Sc`` instead.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Union
import logging

import numpy as np
from rasterio import Affine

from src.topo.flow_routing import FlowDirection
from src.topo.grid import GridRaster
from src.topo.stream_network import StreamNetwork

logger = logging.getLogger(__name__)

BUNDLE_VARIABLES = {
    "raw": ("DEM", "FD", "A", "S"),
    "conditioned": ("DEMcc", "FDc", "Ac", "Sc"),
}


@dataclass
class TopoBundle:
    """DEM, flow directions, drainage area and stream network on one grid."""

    dem: GridRaster
    flow: FlowDirection
    area: GridRaster
    """Flow accumulation in cells."""

    stream: StreamNetwork

    def __post_init__(self):
        for name, shape in (
            ("flow", self.flow.shape),
            ("area", self.area.shape),
            ("stream", self.stream.shape),
        ):
            if shape != self.dem.shape:
                raise ValueError(f"{name} grid {shape} is not co-registered with DEM {self.dem.shape}")


def make_streams(dem: GridRaster, min_area: float) -> TopoBundle:
    """
    Route flow over a DEM and extract the stream network above ``min_area``.

    Parameters
    ----------
    dem : GridRaster
        Unconditioned DEM; it is stored as-is in the bundle.
    min_area : float
        Channel threshold drainage area in map units².
    """
    logger.info(f"Building stream network (min area {min_area:.4g})")
    flow = FlowDirection.from_dem(dem)
    acc = flow.flow_accumulation()
    stream = StreamNetwork.from_min_area(flow, min_area, accumulation=acc)
    return TopoBundle(dem=dem, flow=flow, area=dem.like(acc), stream=stream)


def save_topo_bundle(
    path: Union[str, Path], bundle: TopoBundle, variant: str = "raw"
) -> Path:
    """Write a bundle to ``path`` (.npz) under the variable names of ``variant``."""
    if variant not in BUNDLE_VARIABLES:
        raise ValueError(f"Unknown bundle variant '{variant}'; expected one of {list(BUNDLE_VARIABLES)}")
    dem_key, fd_key, a_key, s_key = BUNDLE_VARIABLES[variant]

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        path,
        **{
            dem_key: bundle.dem.z.astype(np.float64),
            fd_key: bundle.flow.codes,
            a_key: bundle.area.z.astype(np.float64),
            s_key: bundle.stream.ixgrid,
        },
        transform=np.asarray(tuple(bundle.dem.transform)[:6], dtype=np.float64),
        crs=np.asarray(bundle.dem.crs or ""),
    )
    logger.info(f"Saved topo bundle to {path}")
    return path


def load_topo_bundle(path: Union[str, Path]) -> TopoBundle:
    """
    Load a topo bundle.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    KeyError
        If neither the raw nor the conditioned variable set is complete.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Topo bundle not found: {path}")

    with np.load(path) as data:
        names = set(data.files)
        for variant, keys in BUNDLE_VARIABLES.items():
            if set(keys) <= names:
                break
        else:
            raise KeyError(
                f"{path.name} lacks the expected variables: need "
                f"{', '.join(BUNDLE_VARIABLES['raw'])} or {', '.join(BUNDLE_VARIABLES['conditioned'])}; "
                f"found {', '.join(sorted(names)) or 'nothing'}"
            )
        if "transform" not in names:
            raise KeyError(f"{path.name} lacks the 'transform' variable")

        dem_key, fd_key, a_key, s_key = keys
        transform = Affine(*data["transform"])
        crs = str(data["crs"]) if "crs" in names else ""
        crs = crs or None

        dem = GridRaster(data[dem_key].astype(np.float64), transform, crs)
        flow = FlowDirection(data[fd_key], transform, crs)
        area = GridRaster(data[a_key].astype(np.float64), transform, crs)
        mask = np.zeros(flow.shape, dtype=bool)
        mask.flat[data[s_key]] = True

    stream = StreamNetwork.from_mask(flow, mask)
    logger.info(f"Loaded {variant} topo bundle {path.name}: grid {dem.shape}, {stream.size:,} stream nodes")
    return TopoBundle(dem=dem, flow=flow, area=area, stream=stream)
