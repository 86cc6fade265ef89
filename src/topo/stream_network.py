"""
Stream networks as ordered node sets on a flow-direction grid.

Nodes are stored in topological order (every node precedes the node it
drains into), so a single-thread stream reads from its source down to its
outlet. ``ix``/``ixc`` are node-local giver/receiver pairs in the same order,
which lets the edge kernels from ``flow_routing`` run on networks unchanged.
"""

from pathlib import Path
from typing import List, Optional, Tuple, Union
import logging

import numpy as np
from rasterio import Affine

from src.topo.flow_routing import (
    FlowDirection,
    distance_from_sources,
    distance_to_outlets,
    propagate_downstream,
)
from src.topo.grid import GridRaster

logger = logging.getLogger(__name__)


class StreamNetwork:
    """
    Tree-structured stream network.

    Attributes
    ----------
    ixgrid : np.ndarray (int64)
        Linear grid index of each node, in topological order.
    ix, ixc : np.ndarray (int64)
        Node-local giver and receiver indices of each edge.
    distance : np.ndarray (float64)
        Flow distance from each node to its network outlet.
    x, y : np.ndarray (float64)
        Map coordinates of node cell centers.
    """

    def __init__(
        self,
        ixgrid: np.ndarray,
        ix: np.ndarray,
        ixc: np.ndarray,
        shape: Tuple[int, int],
        transform: Affine,
        crs: Optional[str] = None,
    ):
        self.ixgrid = np.asarray(ixgrid, dtype=np.int64)
        self.ix = np.asarray(ix, dtype=np.int64)
        self.ixc = np.asarray(ixc, dtype=np.int64)
        self.shape = tuple(int(s) for s in shape)
        self.grid = GridRaster(np.zeros(self.shape, dtype=np.float64), transform, crs)

        if self.ix.shape != self.ixc.shape:
            raise ValueError("Giver and receiver arrays must have the same length")
        if np.any(self.ix >= self.ixc):
            raise ValueError("Stream network edges must be in topological order")

        self.x, self.y = self.grid.ind2coord(self.ixgrid)
        self.seglen = np.hypot(self.x[self.ix] - self.x[self.ixc], self.y[self.ix] - self.y[self.ixc])
        self.distance = distance_to_outlets(self.ix, self.ixc, self.seglen, self.size)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_mask(cls, flow: FlowDirection, mask: np.ndarray) -> "StreamNetwork":
        """Network of all cells in ``mask`` connected by the flow directions."""
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != flow.shape:
            raise ValueError(f"Mask shape {mask.shape} does not match flow grid {flow.shape}")

        flat = mask.ravel()
        ixgrid = flow.order[flat[flow.order]]

        node_of = np.full(flow.size, -1, dtype=np.int64)
        node_of[ixgrid] = np.arange(ixgrid.size)

        receiver = flow.receiver[ixgrid]
        has_edge = receiver >= 0
        has_edge[has_edge] = flat[receiver[has_edge]]

        ix = np.flatnonzero(has_edge)
        ixc = node_of[receiver[has_edge]]
        return cls(ixgrid, ix, ixc, flow.shape, flow.transform, flow.crs)

    @classmethod
    def from_min_area(
        cls, flow: FlowDirection, min_area: float, accumulation: Optional[np.ndarray] = None
    ) -> "StreamNetwork":
        """
        Network of cells whose upstream area reaches ``min_area`` (map units²).

        Parameters
        ----------
        flow : FlowDirection
        min_area : float
            Threshold drainage area in map units (cells * cellsize²).
        accumulation : np.ndarray, optional
            Precomputed flow accumulation in cells.
        """
        if accumulation is None:
            accumulation = flow.flow_accumulation()
        area = np.asarray(accumulation, dtype=np.float64) * flow.cellsize ** 2
        network = cls.from_mask(flow, area >= min_area)
        logger.info(f"Stream network for min area {min_area:.4g}: {network.size:,} nodes")
        return network

    # ------------------------------------------------------------------
    # Basic properties
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        return int(self.ixgrid.size)

    def __len__(self) -> int:
        return self.size

    @property
    def transform(self) -> Affine:
        return self.grid.transform

    @property
    def crs(self) -> Optional[str]:
        return self.grid.crs

    @property
    def cellsize(self) -> float:
        return self.grid.cellsize

    @property
    def node_receiver(self) -> np.ndarray:
        """Receiver node of each node, -1 at outlets."""
        rec = np.full(self.size, -1, dtype=np.int64)
        rec[self.ix] = self.ixc
        return rec

    @property
    def indegree(self) -> np.ndarray:
        return np.bincount(self.ixc, minlength=self.size)

    def node_index(self, grid_ix) -> np.ndarray:
        """Node index of grid cells, -1 for cells not on the network."""
        lookup = np.full(self.grid.size, -1, dtype=np.int64)
        lookup[self.ixgrid] = np.arange(self.size)
        return lookup[np.atleast_1d(np.asarray(grid_ix, dtype=np.int64))]

    # ------------------------------------------------------------------
    # Points of interest
    # ------------------------------------------------------------------

    def channel_heads(self) -> np.ndarray:
        """Grid indices of nodes without upstream neighbors."""
        return self.ixgrid[self.indegree == 0]

    def outlets(self) -> np.ndarray:
        """Grid indices of nodes without a downstream neighbor."""
        return self.ixgrid[self.node_receiver < 0]

    def confluences(self) -> np.ndarray:
        """Node indices where two or more channels join."""
        return np.flatnonzero(self.indegree >= 2)

    def snap(self, x, y) -> np.ndarray:
        """Node index nearest to each (x, y) map coordinate."""
        x = np.atleast_1d(np.asarray(x, dtype=np.float64))
        y = np.atleast_1d(np.asarray(y, dtype=np.float64))
        if self.size == 0:
            raise ValueError("Cannot snap to an empty stream network")
        d2 = (self.x[None, :] - x[:, None]) ** 2 + (self.y[None, :] - y[:, None]) ** 2
        return np.argmin(d2, axis=1)

    def getnal(self, values: Union[GridRaster, np.ndarray]) -> np.ndarray:
        """Node attribute list: grid values sampled at the network nodes."""
        z = values.z if isinstance(values, GridRaster) else np.asarray(values)
        if z.shape != self.shape:
            raise ValueError(f"Grid shape {z.shape} does not match network grid {self.shape}")
        return z.ravel()[self.ixgrid].astype(np.float64)

    def upstream_distance(self) -> np.ndarray:
        """Longest distance from a channel head down to each node."""
        return distance_from_sources(self.ix, self.ixc, self.seglen, self.size)

    # ------------------------------------------------------------------
    # Subsets
    # ------------------------------------------------------------------

    def subnetwork(self, keep: np.ndarray) -> "StreamNetwork":
        """Network restricted to the nodes where ``keep`` is True (order preserved)."""
        keep = np.asarray(keep, dtype=bool)
        if keep.shape != (self.size,):
            raise ValueError("Node mask must have one entry per node")
        new_index = np.cumsum(keep) - 1
        edge_kept = keep[self.ix] & keep[self.ixc]
        return StreamNetwork(
            self.ixgrid[keep],
            new_index[self.ix[edge_kept]],
            new_index[self.ixc[edge_kept]],
            self.shape,
            self.transform,
            self.crs,
        )

    def connected_components(self) -> np.ndarray:
        """Component label (1..k) of every node."""
        labels = np.zeros(self.size, dtype=np.int64)
        outlets = np.flatnonzero(self.node_receiver < 0)
        labels[outlets] = np.arange(1, outlets.size + 1)
        for k in range(self.ix.size - 1, -1, -1):
            labels[self.ix[k]] = labels[self.ixc[k]]
        return labels

    def largest_component(self, k: int = 1) -> "StreamNetwork":
        """The ``k`` largest connected components by node count."""
        labels = self.connected_components()
        if labels.size == 0:
            return self
        counts = np.bincount(labels)[1:]
        largest = np.argsort(-counts, kind="stable")[:k] + 1
        return self.subnetwork(np.isin(labels, largest))

    def trunk(self) -> "StreamNetwork":
        """Longest source-to-outlet flow path of each connected component."""
        if self.size == 0:
            return self
        receiver = self.node_receiver
        labels = self.connected_components()
        keep = np.zeros(self.size, dtype=bool)
        heads = np.flatnonzero(self.indegree == 0)
        for label in np.unique(labels):
            comp_heads = heads[labels[heads] == label]
            node = comp_heads[np.argmax(self.distance[comp_heads])]
            while node >= 0:
                keep[node] = True
                node = receiver[node]
        return self.subnetwork(keep)

    def downstream_of(self, nodes) -> np.ndarray:
        """Boolean node mask of ``nodes`` and everything downstream of them."""
        mark = np.zeros(self.size, dtype=np.bool_)
        mark[np.atleast_1d(np.asarray(nodes, dtype=np.int64))] = True
        return propagate_downstream(self.ix, self.ixc, mark)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_mask(self) -> np.ndarray:
        mask = np.zeros(self.shape, dtype=bool)
        mask.flat[self.ixgrid] = True
        return mask

    def to_lines(self) -> List[np.ndarray]:
        """
        Split the network into channel segments between heads, confluences
        and outlets.

        Returns
        -------
        list of np.ndarray
            One (N, 2) array of [x, y] coordinates per segment, ordered
            downstream. Segments with fewer than two vertices are skipped.
        """
        receiver = self.node_receiver
        indegree = self.indegree
        starts = np.flatnonzero((indegree == 0) | ((indegree >= 2) & (receiver >= 0)))

        lines = []
        for start in starts:
            path = [start]
            node = receiver[start]
            while node >= 0:
                path.append(node)
                if indegree[node] >= 2:
                    break
                node = receiver[node]
            if len(path) >= 2:
                path = np.asarray(path)
                lines.append(np.column_stack([self.x[path], self.y[path]]))
        return lines

    def save(self, path: Union[str, Path]) -> Path:
        """Serialize the network to a compressed .npz file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(
            path,
            ixgrid=self.ixgrid,
            ix=self.ix,
            ixc=self.ixc,
            shape=np.asarray(self.shape, dtype=np.int64),
            transform=np.asarray(tuple(self.transform)[:6], dtype=np.float64),
            crs=np.asarray(self.crs or ""),
        )
        logger.info(f"Saved stream network ({self.size:,} nodes) to {path}")
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "StreamNetwork":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Stream network file not found: {path}")
        with np.load(path) as data:
            crs = str(data["crs"]) or None
            return cls(
                data["ixgrid"],
                data["ix"],
                data["ixc"],
                tuple(data["shape"]),
                Affine(*data["transform"]),
                crs,
            )

    def __repr__(self) -> str:
        return (
            f"StreamNetwork(nodes={self.size}, edges={self.ix.size}, "
            f"channel_heads={int(np.sum(self.indegree == 0))}, shape={self.shape})"
        )
