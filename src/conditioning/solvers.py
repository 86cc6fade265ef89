"""
Longitudinal profile conditioning solvers.

Every solver takes a stream network (or flow directions for the grid
methods) plus the raw elevations and returns elevations that never increase
in the downstream direction. Node-level results follow the network's node
order.

The optimization-based methods build sparse operators on the node-local
edge list:

- the gradient operator ``D1`` has one row per edge,
  ``(z[giver] - z[receiver])``;
- the curvature operator ``D2`` has one row per pair of consecutive edges
  ``i -> j -> k`` with the non-uniform second-difference stencil, scaled by
  the squared mean node spacing so stiffness values are comparable across
  grid resolutions.

Quantile problems are linear programs solved with HiGHS; least-squares
problems are solved directly when unconstrained and with ``trust-constr``
otherwise.
"""

from typing import Callable, Optional
import logging

import numpy as np
from scipy import sparse
from scipy.optimize import LinearConstraint, linprog, minimize
from scipy.sparse.linalg import spsolve
from tqdm.auto import tqdm

from src.topo.flow_routing import FlowDirection, carve_edges, fill_edges
from src.topo.stream_network import StreamNetwork

logger = logging.getLogger(__name__)


# ==============================================================================
# Sparse operators
# ==============================================================================


def gradient_operator(n: int, ix: np.ndarray, ixc: np.ndarray) -> sparse.csr_matrix:
    """Edge-by-node matrix giving ``z[giver] - z[receiver]`` per edge."""
    m = ix.size
    rows = np.concatenate([np.arange(m), np.arange(m)])
    cols = np.concatenate([ix, ixc])
    vals = np.concatenate([np.ones(m), -np.ones(m)])
    return sparse.csr_matrix((vals, (rows, cols)), shape=(m, n))


def curvature_operator(
    n: int,
    ix: np.ndarray,
    ixc: np.ndarray,
    seglen: np.ndarray,
    relaxed: Optional[np.ndarray] = None,
) -> sparse.csr_matrix:
    """
    Second-derivative matrix along flow paths.

    One row per giver edge ``i -> j`` whose receiver ``j`` drains on to
    ``k``. Rows centered on a node flagged in ``relaxed`` are omitted, which
    lets the profile bend freely there.
    """
    out_edge = np.full(n, -1, dtype=np.int64)
    out_edge[ix] = np.arange(ix.size)

    e1 = np.arange(ix.size)
    center = ixc[e1]
    e2 = out_edge[center]
    valid = e2 >= 0
    if relaxed is not None:
        valid &= ~np.asarray(relaxed, dtype=bool)[center]
    e1, e2, center = e1[valid], e2[valid], center[valid]
    if e1.size == 0:
        return sparse.csr_matrix((0, n))

    a = seglen[e1]
    b = seglen[e2]
    scale = np.mean(seglen) ** 2
    rows = np.arange(e1.size)
    data = np.concatenate([
        scale * 2.0 / (a * (a + b)),
        scale * -2.0 / (a * b),
        scale * 2.0 / (b * (a + b)),
    ])
    cols = np.concatenate([ix[e1], center, ixc[e2]])
    return sparse.csr_matrix((data, (np.tile(rows, 3), cols)), shape=(e1.size, n))


# ==============================================================================
# Generic optimization problems
# ==============================================================================


def quantile_lp(
    z0: np.ndarray,
    tau: float,
    A_ub: Optional[sparse.spmatrix] = None,
    b_ub: Optional[np.ndarray] = None,
    curvature: Optional[sparse.spmatrix] = None,
    stiffness: float = 0.0,
) -> np.ndarray:
    """
    Quantile regression of ``z0`` subject to ``A_ub @ z <= b_ub``.

    Minimizes ``sum(tau * up + (1 - tau) * um) + stiffness * |curvature @ z|_1``
    where ``z + up - um = z0``.

    Raises
    ------
    RuntimeError
        If HiGHS does not reach an optimal solution.
    """
    n = z0.size
    use_curv = curvature is not None and curvature.shape[0] > 0 and stiffness > 0
    mc = curvature.shape[0] if use_curv else 0

    eye = sparse.identity(n, format="csr")
    c = np.concatenate([np.zeros(n), np.full(n, tau), np.full(n, 1.0 - tau), np.full(2 * mc, stiffness)])

    eq_blocks = [[eye, eye, -eye] + ([sparse.csr_matrix((n, mc))] * 2 if use_curv else [])]
    b_eq = [z0]
    if use_curv:
        zero = sparse.csr_matrix((mc, n))
        eq_blocks.append([curvature, zero, zero, -sparse.identity(mc), sparse.identity(mc)])
        b_eq.append(np.zeros(mc))
    A_eq = sparse.bmat(eq_blocks, format="csr")

    if A_ub is not None and A_ub.shape[0] > 0:
        pad = sparse.csr_matrix((A_ub.shape[0], 2 * n + 2 * mc))
        A_ub = sparse.hstack([A_ub, pad], format="csr")
    else:
        A_ub, b_ub = None, None

    bounds = [(None, None)] * n + [(0, None)] * (2 * n + 2 * mc)
    res = linprog(c, A_ub=A_ub, b_ub=b_ub, A_eq=A_eq, b_eq=np.concatenate(b_eq),
                  bounds=bounds, method="highs")
    if not res.success:
        raise RuntimeError(f"Quantile regression failed: {res.message}")
    return res.x[:n]


def constrained_least_squares(
    M: sparse.spmatrix,
    rhs: np.ndarray,
    x0: np.ndarray,
    A_ub: Optional[sparse.spmatrix] = None,
    lb: Optional[np.ndarray] = None,
    ub: Optional[np.ndarray] = None,
    A_eq: Optional[sparse.spmatrix] = None,
    b_eq: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Minimize ``|M @ x - rhs|^2`` subject to ``lb <= A_ub @ x <= ub`` and
    ``A_eq @ x = b_eq``.

    Without constraints the normal equations are solved directly.

    Raises
    ------
    RuntimeError
        If the constrained solver ends with violated constraints.
    """
    M = sparse.csr_matrix(M)
    n = M.shape[1]
    normal = (M.T @ M + 1e-10 * sparse.identity(n)).tocsc()

    constraints = []
    if A_ub is not None and A_ub.shape[0] > 0:
        m = A_ub.shape[0]
        lb = np.full(m, -np.inf) if lb is None else lb
        ub = np.full(m, np.inf) if ub is None else ub
        constraints.append(LinearConstraint(A_ub, lb, ub))
    if A_eq is not None and A_eq.shape[0] > 0:
        constraints.append(LinearConstraint(A_eq, b_eq, b_eq))

    if not constraints:
        return spsolve(normal, M.T @ rhs)

    hessian = 2.0 * normal

    def objective(x):
        r = M @ x - rhs
        return float(r @ r), 2.0 * (M.T @ r)

    res = minimize(
        objective,
        x0,
        jac=True,
        hess=lambda x: hessian,
        method="trust-constr",
        constraints=constraints,
        options={"maxiter": 5000},
    )
    scale = max(1.0, float(np.max(np.abs(rhs))) if rhs.size else 1.0)
    if res.constr_violation > 1e-4 * scale:
        raise RuntimeError(
            f"Constrained least squares failed: {res.message} "
            f"(constraint violation {res.constr_violation:.3g})"
        )
    if not res.success:
        logger.warning(f"Constrained least squares stopped early: {res.message}")
    return res.x


def solve_by_component(
    stream: StreamNetwork,
    z0: np.ndarray,
    solve: Callable[[StreamNetwork, np.ndarray, np.ndarray], np.ndarray],
    split: bool = True,
    desc: str = "Conditioning",
) -> np.ndarray:
    """
    Apply ``solve(substream, z0_sub, node_mask)`` to each connected component.

    With ``split=False`` the whole network is solved at once and
    ``node_mask`` selects every node.
    """
    if not split:
        return solve(stream, z0, np.ones(stream.size, dtype=bool))

    labels = stream.connected_components()
    out = np.empty(stream.size, dtype=np.float64)
    unique = np.unique(labels)
    for label in tqdm(unique, desc=desc, disable=unique.size < 2):
        sel = labels == label
        out[sel] = solve(stream.subnetwork(sel), z0[sel], sel)
    return out


def _knick_mask(stream: StreamNetwork, knicks: Optional[np.ndarray]) -> np.ndarray:
    mask = np.zeros(stream.size, dtype=bool)
    if knicks is not None and len(knicks) and stream.size:
        mask[stream.snap(knicks[:, 0], knicks[:, 1])] = True
    return mask


def _relaxed_nodes(stream: StreamNetwork, knick_mask: np.ndarray, stiff_tribs: bool) -> np.ndarray:
    relaxed = knick_mask.copy()
    if stiff_tribs:
        relaxed[stream.confluences()] = True
    return relaxed


# ==============================================================================
# Solvers
# ==============================================================================


def mincost_hydrocon(z0: np.ndarray, stream: StreamNetwork, method: str = "interp", fillp: float = 0.1) -> np.ndarray:
    """
    Minimum-cost hydrologic conditioning of node elevations.

    ``carve`` is the downstream running minimum and ``fill`` the upstream
    running maximum of ``z0``. ``interp`` blends them with weight ``fillp``
    on the filled profile. ``minmax`` keeps whichever of the two changes a
    node less and carves the result once more so it stays monotone.
    """
    z0 = np.asarray(z0, dtype=np.float64)
    carved = carve_edges(stream.ix, stream.ixc, z0, np.zeros(stream.ix.size))
    filled = fill_edges(stream.ix, stream.ixc, z0)
    if method == "interp":
        return fillp * filled + (1.0 - fillp) * carved
    if method == "minmax":
        pick = np.where(np.abs(filled - z0) < np.abs(carved - z0), filled, carved)
        return carve_edges(stream.ix, stream.ixc, pick, np.zeros(stream.ix.size))
    raise ValueError(f"Unknown mincost method: {method}")


def impose_min_gradient(flow: FlowDirection, dem: np.ndarray, ming: float = 0.0) -> np.ndarray:
    """Carve the whole grid so every flow path descends by at least ``ming``."""
    return flow.impose_min(dem, ming)


def quantile_carve(
    z0: np.ndarray,
    stream: StreamNetwork,
    tau: float = 0.5,
    ming: float = 0.0,
    split: bool = True,
) -> np.ndarray:
    """
    Quantile carving: the ``tau`` quantile fit to ``z0`` that descends by at
    least ``ming`` along every edge.
    """

    def solve(sub, z, sel):
        if sub.ix.size == 0:
            return z.copy()
        D1 = gradient_operator(sub.size, sub.ix, sub.ixc)
        return quantile_lp(z, tau, A_ub=-D1, b_ub=-ming * sub.seglen)

    return solve_by_component(stream, np.asarray(z0, dtype=np.float64), solve, split, desc="Quantile carving")


def quantile_carve_grid(flow: FlowDirection, dem: np.ndarray, tau: float = 0.5) -> np.ndarray:
    """Quantile carving over every flow path of the grid; nodata stays NaN."""
    z = np.asarray(dem, dtype=np.float64).ravel()
    valid = np.isfinite(z)
    nodes = np.flatnonzero(valid)
    node_of = np.full(z.size, -1, dtype=np.int64)
    node_of[nodes] = np.arange(nodes.size)

    keep = valid[flow.givers] & valid[flow.receivers]
    ix = node_of[flow.givers[keep]]
    ixc = node_of[flow.receivers[keep]]

    logger.info(f"Quantile carving {nodes.size:,} grid cells ({ix.size:,} flow edges)")
    D1 = gradient_operator(nodes.size, ix, ixc)
    fitted = quantile_lp(z[nodes], tau, A_ub=-D1, b_ub=np.zeros(ix.size))

    out = np.full(z.size, np.nan)
    out[nodes] = fitted
    return out.reshape(flow.shape)


def smooth_profile(
    z0: np.ndarray,
    stream: StreamNetwork,
    method: str = "regularization",
    split: bool = True,
    stiffness: float = 10.0,
    stiff_tribs: bool = True,
    positive: bool = True,
) -> np.ndarray:
    """
    Smooth node elevations along the network.

    ``regularization`` minimizes ``|z - z0|^2 + stiffness^2 |D2 z|^2``,
    optionally with non-increasing elevations downstream (``positive``).
    ``movmean`` averages each node with its receiver and its givers.
    """
    z0 = np.asarray(z0, dtype=np.float64)

    if method == "movmean":
        total = z0.copy()
        count = np.ones(stream.size)
        np.add.at(total, stream.ix, z0[stream.ixc])
        np.add.at(count, stream.ix, 1.0)
        np.add.at(total, stream.ixc, z0[stream.ix])
        np.add.at(count, stream.ixc, 1.0)
        return total / count
    if method != "regularization":
        raise ValueError(f"Unknown smoothing method: {method}")

    def solve(sub, z, sel):
        if sub.ix.size == 0:
            return z.copy()
        relaxed = _relaxed_nodes(sub, np.zeros(sub.size, dtype=bool), stiff_tribs)
        D2 = curvature_operator(sub.size, sub.ix, sub.ixc, sub.seglen, relaxed)
        M = sparse.vstack([sparse.identity(sub.size), stiffness * D2], format="csr")
        rhs = np.concatenate([z, np.zeros(D2.shape[0])])
        if positive:
            D1 = gradient_operator(sub.size, sub.ix, sub.ixc)
            x0 = mincost_hydrocon(z, sub, "interp", 0.5)
            z = constrained_least_squares(M, rhs, x0, A_ub=D1, lb=np.zeros(sub.ix.size))
            # remove residual solver-tolerance violations
            return carve_edges(sub.ix, sub.ixc, z, np.zeros(sub.ix.size))
        return constrained_least_squares(M, rhs, z)

    return solve_by_component(stream, z0, solve, split, desc="Smoothing")


def crs_profile(
    z0: np.ndarray,
    stream: StreamNetwork,
    stiffness: float = 10.0,
    tau: float = 0.5,
    ming: float = 0.0,
    stiff_tribs: bool = True,
    knicks: Optional[np.ndarray] = None,
    split: bool = True,
) -> np.ndarray:
    """Constrained regularized smoothing with a quantile data term."""
    z0 = np.asarray(z0, dtype=np.float64)
    knick_mask = _knick_mask(stream, knicks)

    def solve(sub, z, sel):
        if sub.ix.size == 0:
            return z.copy()
        relaxed = _relaxed_nodes(sub, knick_mask[sel], stiff_tribs)
        D1 = gradient_operator(sub.size, sub.ix, sub.ixc)
        D2 = curvature_operator(sub.size, sub.ix, sub.ixc, sub.seglen, relaxed)
        return quantile_lp(z, tau, A_ub=-D1, b_ub=-ming * sub.seglen, curvature=D2, stiffness=stiffness)

    return solve_by_component(stream, z0, solve, split, desc="CRS")


def crslin_profile(
    z0: np.ndarray,
    stream: StreamNetwork,
    stiffness: float = 10.0,
    stiff_tribs: bool = True,
    ming: float = 0.0,
    knicks: Optional[np.ndarray] = None,
    imposemin: bool = False,
    attachtomin: bool = False,
    attachheads: bool = False,
    discardflats: bool = False,
    maxcurvature: Optional[float] = None,
    precisecoords: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Constrained regularized smoothing with a least-squares data term.

    Solves the whole network at once. Elevations always descend by at least
    ``ming`` along every edge; the optional flags add further constraints.
    """
    z0 = np.asarray(z0, dtype=np.float64)
    n = stream.size
    if stream.ix.size == 0:
        return z0.copy()

    min_drop = ming * stream.seglen
    carved = carve_edges(stream.ix, stream.ixc, z0, min_drop)
    if imposemin:
        z0 = carved

    weights = np.ones(n)
    if discardflats:
        flat = np.zeros(n, dtype=bool)
        flat[stream.ix[z0[stream.ix] == z0[stream.ixc]]] = True
        weights[flat] = 0.0
        logger.debug(f"Discarding {int(flat.sum())} flat nodes from the data term")

    relaxed = _relaxed_nodes(stream, _knick_mask(stream, knicks), stiff_tribs)
    D1 = gradient_operator(n, stream.ix, stream.ixc)
    D2 = curvature_operator(n, stream.ix, stream.ixc, stream.seglen, relaxed)

    M = sparse.vstack([sparse.diags(weights), stiffness * D2], format="csr")
    rhs = np.concatenate([weights * z0, np.zeros(D2.shape[0])])

    ub_blocks = [D1]
    lower = [min_drop]
    upper = [np.full(stream.ix.size, np.inf)]
    if attachtomin:
        ub_blocks.append(sparse.identity(n, format="csr"))
        lower.append(np.full(n, -np.inf))
        upper.append(carved)
    if maxcurvature is not None and D2.shape[0]:
        ub_blocks.append(D2)
        lower.append(np.full(D2.shape[0], -float(maxcurvature)))
        upper.append(np.full(D2.shape[0], np.inf))

    eq_nodes = []
    eq_values = []
    if attachheads:
        heads = np.flatnonzero(stream.indegree == 0)
        eq_nodes.append(heads)
        eq_values.append(z0[heads])
    if precisecoords is not None and len(precisecoords):
        eq_nodes.append(stream.snap(precisecoords[:, 0], precisecoords[:, 1]))
        eq_values.append(precisecoords[:, 2])

    A_eq, b_eq = None, None
    if eq_nodes:
        nodes = np.concatenate(eq_nodes)
        nodes, first = np.unique(nodes, return_index=True)
        b_eq = np.concatenate(eq_values)[first]
        A_eq = sparse.csr_matrix((np.ones(nodes.size), (np.arange(nodes.size), nodes)), shape=(nodes.size, n))

    z = constrained_least_squares(
        M,
        rhs,
        carved,
        A_ub=sparse.vstack(ub_blocks, format="csr"),
        lb=np.concatenate(lower),
        ub=np.concatenate(upper),
        A_eq=A_eq,
        b_eq=b_eq,
    )
    return carve_edges(stream.ix, stream.ixc, z, min_drop)
