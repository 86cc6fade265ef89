"""
Command-line entry points.

    find-threshold WDIR DATAFILE NUM_STREAMS [--pick-method chi|slope_area] ...
    condition-dem DEM.tif STREAMS.npz METHOD [--option name=value ...]
    make-streams DEM.tif MIN_AREA OUTPUT.npz
"""

from pathlib import Path
import argparse
import json
import logging
import sys

import matplotlib.pyplot as plt

from src.config import (
    DEFAULT_BIN_SIZE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PICK_METHOD,
    DEFAULT_REF_CONCAVITY,
    LOG_FORMAT,
    PICK_METHODS,
)
from src.conditioning import ConditioningMethod, condition_dem, make_params, plot_conditioning_comparison
from src.threshold import InteractivePicker, QuantilePicker, find_threshold
from src.topo import FlowDirection, GridRaster, StreamNetwork, load_topo_bundle, make_streams, save_topo_bundle

logger = logging.getLogger(__name__)


def _setup_logging(level: str):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _add_log_level(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--log-level",
        default=DEFAULT_LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help=f"Logging level (default: {DEFAULT_LOG_LEVEL})",
    )


def parse_option(text: str):
    """Parse ``name=value``; values are JSON when possible, plain strings otherwise."""
    if "=" not in text:
        raise argparse.ArgumentTypeError(f"Option must look like name=value, got '{text}'")
    name, raw = text.split("=", 1)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return name.strip(), value


def _num_streams(text: str):
    if text.strip().lower() == "all":
        return "all"
    try:
        return int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"NUM_STREAMS must be an integer or 'all', got '{text}'") from None


# ==============================================================================
# find-threshold
# ==============================================================================


def find_threshold_cli(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="find-threshold",
        description="Pick channel-head threshold areas on chi-elevation or slope-area plots",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Pick on the 10 longest streams, slope-area plots
  find-threshold ./work topo.npz 10

  # Pick on every stream using chi plots
  find-threshold ./work topo.npz all --pick-method chi

  # Unattended run picking the median binned area of each stream
  find-threshold ./work topo.npz 20 --quantile 0.5
        """,
    )
    parser.add_argument("wdir", type=Path, help="Working directory (outputs are written here)")
    parser.add_argument("datafile", type=Path, help="Topo bundle (.npz), relative to WDIR unless absolute")
    parser.add_argument("num_streams", type=_num_streams, help="Number of streams to pick on, or 'all'")
    parser.add_argument(
        "--pick-method",
        default=DEFAULT_PICK_METHOD,
        choices=PICK_METHODS,
        help=f"Plot to pick on (default: {DEFAULT_PICK_METHOD})",
    )
    parser.add_argument(
        "--ref-concavity",
        type=float,
        default=DEFAULT_REF_CONCAVITY,
        help=f"Reference concavity for chi (default: {DEFAULT_REF_CONCAVITY})",
    )
    parser.add_argument(
        "--bin-size",
        type=float,
        default=DEFAULT_BIN_SIZE,
        help=f"Slope-area binning distance (default: {DEFAULT_BIN_SIZE})",
    )
    parser.add_argument(
        "--quantile",
        type=float,
        default=None,
        help="Pick automatically at this quantile of the binned values instead of clicking",
    )
    _add_log_level(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    datafile = args.datafile if args.datafile.is_absolute() else args.wdir / args.datafile
    topo = load_topo_bundle(datafile)
    picker = QuantilePicker(args.quantile) if args.quantile is not None else InteractivePicker()

    result = find_threshold(
        topo,
        args.num_streams,
        pick_method=args.pick_method,
        ref_concavity=args.ref_concavity,
        picker=picker,
        output_dir=args.wdir,
        bin_size=args.bin_size,
    )
    if result.mean_threshold is not None:
        logger.info(f"Mean threshold area: {result.mean_threshold:.4g}")
    for name, path in result.files.items():
        logger.info(f"  {name}: {path}")
    return 0


# ==============================================================================
# condition-dem
# ==============================================================================


def condition_dem_cli(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="condition-dem",
        description="Condition a DEM along a stream network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  condition-dem dem.tif streams.npz mincost --option mc_method=minmax
  condition-dem dem.tif streams.npz crslin --option stiffness=20 --option attachheads=true
  condition-dem dem.tif streams.npz quantc --option tau=0.3 --plot comparison.png
        """,
    )
    parser.add_argument("dem", type=Path, help="DEM GeoTIFF")
    parser.add_argument("streams", type=Path, help="Stream network (.npz) on the DEM grid")
    parser.add_argument("method", choices=[m.value for m in ConditioningMethod], help="Conditioning method")
    parser.add_argument(
        "--option",
        type=parse_option,
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Method option; may be repeated (values parsed as JSON)",
    )
    parser.add_argument("--output", type=Path, default=None, help="Output GeoTIFF (default: <dem>_<method>.tif)")
    parser.add_argument(
        "--plot",
        type=Path,
        default=None,
        help="Comparison figure path (default: <dem>_<method>_comparison.png next to the output)",
    )
    _add_log_level(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    params = make_params(args.method, **dict(args.option))
    dem = GridRaster.from_file(args.dem)
    stream = StreamNetwork.load(args.streams)
    flow = FlowDirection.from_dem(dem)

    conditioned = condition_dem(dem, flow, stream, params)
    output = args.output or args.dem.with_name(f"{args.dem.stem}_{args.method}.tif")
    conditioned.grid.write(output)

    plot_path = args.plot or output.with_name(f"{args.dem.stem}_{args.method}_comparison.png")
    fig = plot_conditioning_comparison(dem, conditioned, stream, plot_path)
    plt.close(fig)
    return 0


# ==============================================================================
# make-streams
# ==============================================================================


def make_streams_cli(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="make-streams",
        description="Route flow over a DEM and save a topo bundle for find-threshold",
    )
    parser.add_argument("dem", type=Path, help="DEM GeoTIFF")
    parser.add_argument("min_area", type=float, help="Channel threshold area in map units squared")
    parser.add_argument("output", type=Path, help="Output topo bundle (.npz)")
    parser.add_argument(
        "--variant",
        choices=["raw", "conditioned"],
        default="raw",
        help="Variable names to store (DEM/FD/A/S or DEMcc/FDc/Ac/Sc)",
    )
    parser.add_argument("--streams", type=Path, default=None, help="Also save the stream network (.npz) here")
    _add_log_level(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    dem = GridRaster.from_file(args.dem)
    bundle = make_streams(dem, args.min_area)
    save_topo_bundle(args.output, bundle, variant=args.variant)
    if args.streams is not None:
        bundle.stream.save(args.streams)
    return 0


if __name__ == "__main__":
    sys.exit(find_threshold_cli())
