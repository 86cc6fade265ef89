"""
Channel-head threshold picking.

Walks the channel heads of a stream network from the farthest upstream
down, builds a single-stream candidate for each, asks a picker where the
channelized part of its profile begins, and rebuilds the stream network
from the picks:

- fixed-count mode uses the mean picked area as one network-wide threshold;
- "all" mode keeps, on every stream, the reach below its own pick.
"""

from dataclasses import dataclass, field
from numbers import Integral, Real
from pathlib import Path
from typing import Dict, List, Optional, Union
import logging
import warnings

import matplotlib.pyplot as plt
import numpy as np
from shapely.geometry import LineString
import geopandas as gpd

from src.config import (
    DEFAULT_BIN_SIZE,
    DEFAULT_PICK_METHOD,
    DEFAULT_REF_CONCAVITY,
    PICK_METHODS,
    THRESHOLD_NETWORK,
    THRESHOLD_SHAPEFILE,
    THRESHOLD_SUMMARY,
    THRESHOLD_TABLE,
)
from src.threshold.candidates import PickResult, extract_candidate
from src.threshold.pickers import InteractivePicker, Picker
from src.threshold.rendering import plot_threshold_summary
from src.topo.data_loading import TopoBundle
from src.topo.stream_network import StreamNetwork

logger = logging.getLogger(__name__)


@dataclass
class ThresholdResult:
    """Picks and the stream network rebuilt from them."""

    picks: List[PickResult]
    network: StreamNetwork
    mode: str
    """'fixed' or 'all'."""

    mean_threshold: Optional[float] = None
    mean_distance_to_divide: Optional[float] = None
    files: Dict[str, Path] = field(default_factory=dict)

    @property
    def thresholds(self) -> np.ndarray:
        return np.array([p.threshold_area for p in self.picks], dtype=np.float64)

    @property
    def distances_to_divide(self) -> np.ndarray:
        return np.array([p.distance_to_divide for p in self.picks], dtype=np.float64)


def _parse_num_streams(num_streams):
    if isinstance(num_streams, str):
        if num_streams.strip().lower() == "all":
            return "all"
        raise ValueError(f"num_streams must be a positive integer or 'all', got '{num_streams}'")
    if isinstance(num_streams, (bool, np.bool_)) or not isinstance(num_streams, Integral):
        raise ValueError(f"num_streams must be a positive integer or 'all', got {num_streams!r}")
    if num_streams <= 0:
        raise ValueError(f"num_streams must be positive, got {num_streams}")
    return int(num_streams)


def sorted_channel_heads(topo: TopoBundle) -> np.ndarray:
    """Channel heads ordered by upstream flow distance, farthest first (stable)."""
    heads = topo.stream.channel_heads()
    updist = topo.flow.flow_distance("upstream").ravel()[heads]
    return heads[np.argsort(-updist, kind="stable")]


def find_threshold(
    topo: TopoBundle,
    num_streams: Union[int, str],
    pick_method: str = DEFAULT_PICK_METHOD,
    ref_concavity: float = DEFAULT_REF_CONCAVITY,
    picker: Optional[Picker] = None,
    output_dir: Optional[Union[str, Path]] = None,
    bin_size: float = DEFAULT_BIN_SIZE,
) -> ThresholdResult:
    """
    Pick channel-head thresholds on individual streams and rebuild the network.

    Parameters
    ----------
    topo : TopoBundle
        DEM, flow directions, flow accumulation (cells) and stream network.
    num_streams : int or "all"
        Number of streams to pick on (fixed-count mode), or "all" to pick on
        every stream and keep per-stream thresholds.
    pick_method : {"chi", "slope_area"}
        Plot the pick is made on.
    ref_concavity : float, default 0.5
        Reference concavity for the chi transform.
    picker : Picker, optional
        Pick strategy; defaults to an interactive cursor pick.
    output_dir : str or Path, optional
        Directory for the table, shapefile, network and summary figure.
        Nothing is written when omitted.
    bin_size : float, default 500
        Slope-area binning distance.

    Raises
    ------
    ValueError
        Invalid ``num_streams``, ``pick_method`` or ``ref_concavity``, or a
        stream network without channel heads.
    """
    mode_count = _parse_num_streams(num_streams)
    if pick_method not in PICK_METHODS:
        raise ValueError(f"pick_method must be one of {list(PICK_METHODS)}, got '{pick_method}'")
    if isinstance(ref_concavity, (bool, np.bool_)) or not isinstance(ref_concavity, Real):
        raise ValueError(f"ref_concavity must be a real scalar, got {ref_concavity!r}")
    if picker is None:
        picker = InteractivePicker()

    heads = sorted_channel_heads(topo)
    if heads.size == 0:
        raise ValueError("Stream network has no channel heads")

    if mode_count == "all":
        mode = "all"
        count = heads.size
    else:
        mode = "fixed"
        count = mode_count
        if count > heads.size:
            message = (
                f"Requested {count} streams but the network has only {heads.size} channel heads; "
                f"using {heads.size}"
            )
            warnings.warn(message, UserWarning)
            logger.warning(message)
            count = heads.size

    logger.info(f"Picking thresholds on {count} stream(s) ({mode} mode, {pick_method} plots)")
    divide_distance = topo.flow.flow_distance("downstream")
    mask = np.zeros(topo.flow.size, dtype=bool)

    picks = []
    for position, head in enumerate(heads[:count], start=1):
        candidate = extract_candidate(
            topo,
            head,
            position=position,
            total=count,
            pick_method=pick_method,
            ref_concavity=ref_concavity,
            bin_size=bin_size,
            divide_distance=divide_distance,
        )
        result = picker.pick(candidate)
        picks.append(result)
        if mode == "all":
            mask[candidate.cells_above(result.threshold_area)] = True
        logger.info(
            f"Stream {position}/{count}: threshold area {result.threshold_area:.4g}, "
            f"distance to divide {result.distance_to_divide:.4g}"
        )

    if mode == "fixed":
        mean_threshold = float(np.mean([p.threshold_area for p in picks]))
        mean_xd = float(np.mean([p.distance_to_divide for p in picks]))
        logger.info(f"Mean threshold area {mean_threshold:.4g}, mean distance to divide {mean_xd:.4g}")
        network = StreamNetwork.from_min_area(topo.flow, mean_threshold, accumulation=topo.area.z)
        result = ThresholdResult(picks, network, mode, mean_threshold, mean_xd)
    else:
        network = StreamNetwork.from_mask(topo.flow, mask.reshape(topo.flow.shape))
        result = ThresholdResult(picks, network, mode)

    if output_dir is not None:
        result.files = write_threshold_outputs(result, output_dir)
    return result


# ==============================================================================
# Outputs
# ==============================================================================


def write_threshold_table(path: Union[str, Path], picks: List[PickResult]) -> Path:
    """Comma-delimited table of picked areas and distances to divide."""
    path = Path(path)
    table = np.array([[p.threshold_area, p.distance_to_divide] for p in picks], dtype=np.float64)
    np.savetxt(path, table.reshape(-1, 2), delimiter=",", header="picked_thresholds,picked_xd", comments="")
    return path


def write_stream_shapefile(path: Union[str, Path], network: StreamNetwork) -> Optional[Path]:
    """Channel segments of ``network`` as line features."""
    path = Path(path)
    lines = network.to_lines()
    if not lines:
        logger.warning(f"Stream network has no segments; skipping {path.name}")
        return None
    gdf = gpd.GeoDataFrame(
        {"segment": np.arange(1, len(lines) + 1), "length": [LineString(l).length for l in lines]},
        geometry=[LineString(l) for l in lines],
        crs=network.crs,
    )
    gdf.to_file(path)
    return path


def read_threshold_table(path: Union[str, Path]) -> List[PickResult]:
    """Read a table written by ``write_threshold_table``."""
    table = np.loadtxt(path, delimiter=",", skiprows=1, ndmin=2)
    return [PickResult(float(a), float(x)) for a, x in table]


def write_threshold_outputs(result: ThresholdResult, output_dir: Union[str, Path]) -> Dict[str, Path]:
    """Write table, shapefile, serialized network and summary figure."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    files = {"table": write_threshold_table(output_dir / THRESHOLD_TABLE, result.picks)}
    shapefile = write_stream_shapefile(output_dir / THRESHOLD_SHAPEFILE, result.network)
    if shapefile is not None:
        files["shapefile"] = shapefile
    files["network"] = result.network.save(output_dir / THRESHOLD_NETWORK)

    fig = plot_threshold_summary(result, output_dir / THRESHOLD_SUMMARY)
    plt.close(fig)
    files["summary"] = output_dir / THRESHOLD_SUMMARY

    logger.info(f"Threshold outputs written to {output_dir}")
    return files
