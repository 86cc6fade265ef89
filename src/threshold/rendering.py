"""
Plots for threshold picking.

``render_session`` owns the figure of one pick: it is closed on every exit
path, including errors and interrupted waits for a click.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union
import logging

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.colors import Normalize

logger = logging.getLogger(__name__)


@contextmanager
def render_session(figsize: Tuple[float, float] = (8, 10)) -> Iterator[plt.Figure]:
    """Create a figure, yield it, and always close it."""
    fig = plt.figure(figsize=figsize)
    try:
        yield fig
    finally:
        plt.close(fig)


def plot_candidate(fig: plt.Figure, candidate) -> plt.Axes:
    """
    Draw the chi-elevation and slope-area plots of a candidate stream.

    The axes matching the candidate's pick method goes on top, with red
    spines and a title giving the number of streams left.

    Returns
    -------
    matplotlib.axes.Axes
        The axes to pick on.
    """
    chi = candidate.chi
    bins = candidate.bins
    cmax = float(np.nanmax(chi.chi)) if chi.chi.size and np.any(np.isfinite(chi.chi)) else 1.0
    norm = Normalize(vmin=0.0, vmax=cmax if cmax > 0 else 1.0)

    ax_top, ax_bottom = fig.subplots(2, 1)
    if candidate.pick_method == "chi":
        ax_chi, ax_sa = ax_top, ax_bottom
    else:
        ax_sa, ax_chi = ax_top, ax_bottom

    order = np.argsort(chi.chi)
    ax_chi.plot(chi.chi[order], chi.elev[order], color="k", linewidth=0.8)
    sc = ax_chi.scatter(chi.chi, chi.elev, c=chi.chi, cmap="viridis", norm=norm, s=12)
    ax_chi.set_xlabel(r"$\chi$")
    ax_chi.set_ylabel("Elevation (m)")

    if bins.node_area.size:
        ax_sa.scatter(bins.node_area, bins.node_gradient, marker="+", color="0.6", s=14)
    if not bins.is_empty:
        ax_sa.scatter(bins.area, bins.slope, c=bins.chi, cmap="viridis", norm=norm,
                      s=40, edgecolors="k", zorder=3)
    ax_sa.set_xscale("log")
    ax_sa.set_yscale("log")
    ax_sa.invert_xaxis()
    ax_sa.set_xlabel("Log Drainage Area")
    ax_sa.set_ylabel("Log Gradient")

    fig.colorbar(sc, ax=[ax_chi, ax_sa], label=r"$\chi$")

    pick_ax = ax_top
    for spine in pick_ax.spines.values():
        spine.set_color("red")
    pick_ax.tick_params(colors="red")
    pick_ax.set_title(f"{candidate.remaining} streams remaining", color="red")
    return pick_ax


def _area_edges(areas: np.ndarray) -> np.ndarray:
    positive = areas[areas > 0]
    if positive.size == 0:
        return np.linspace(0.0, 1.0, 10)
    lo, hi = positive.min(), positive.max()
    if lo == hi:
        lo, hi = lo / 2.0, hi * 2.0
    return np.logspace(np.log10(lo), np.log10(hi), 10)


def plot_threshold_summary(result, output_path: Optional[Union[str, Path]] = None) -> plt.Figure:
    """
    Histograms of picked threshold areas and distances to divide.

    In fixed-count mode the means are drawn as vertical lines and quoted in
    the titles.
    """
    areas = np.array([p.threshold_area for p in result.picks], dtype=np.float64)
    xds = np.array([p.distance_to_divide for p in result.picks], dtype=np.float64)

    fig, (ax_a, ax_x) = plt.subplots(2, 1, figsize=(6, 8))
    ax_a.hist(areas, bins=_area_edges(areas), color="0.6", edgecolor="k")
    if np.any(areas > 0):
        ax_a.set_xscale("log")
    ax_a.set_xlabel("Threshold Area Picks")
    ax_a.set_ylabel("Count")

    ax_x.hist(xds, bins=10, color="0.6", edgecolor="k")
    ax_x.set_xlabel("Distance to Divide at Picked Threshold")
    ax_x.set_ylabel("Count")

    if result.mean_threshold is not None:
        ax_a.axvline(result.mean_threshold, color="r", linestyle="--", linewidth=2)
        ax_a.set_title(f"Mean Threshold Area = {result.mean_threshold:.4g}")
        ax_x.axvline(result.mean_distance_to_divide, color="r", linestyle="--", linewidth=2)
        ax_x.set_title(f"Mean Distance to Divide = {result.mean_distance_to_divide:.4g}")

    fig.tight_layout()
    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=150)
        logger.info(f"Saved threshold summary to {output_path}")
    return fig
