# network_ptdf.py

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from errors import ConfigurationError, DataContractViolation, NetworkError
from models import NetworkMatrices, Parameters

logger = logging.getLogger(__name__)


def compute_susceptance(params: Parameters) -> Dict[str, float]:
    """
    Fill params.bvector with x / (r^2 + x^2) for every AC line.

    Lines that already carry a susceptance are left alone, so repeated calls
    are no-ops.
    """
    computed = 0
    for l in params.sets.L:
        if l in params.bvector:
            continue
        r = float(params.require("resistance", l))
        x = float(params.require("reactance", l))
        denom = r * r + x * x
        if denom == 0.0:
            raise NetworkError(f"Line {l!r} has zero resistance and zero reactance.")
        params.bvector[l] = x / denom
        computed += 1

    if computed:
        logger.info("Computed susceptance for %d lines", computed)
    return params.bvector


def build_incidence(
    node_ids: Sequence[str],
    line_ids: Sequence[str],
    start: Dict[str, str],
    end: Dict[str, str],
    mapping: str = "line",
) -> np.ndarray:
    """
    Incidence matrix A (len(line_ids) x len(node_ids)).

    Row l has +1 at the line's origin node and -1 at its destination node.
    """
    node_idx = {n: i for i, n in enumerate(node_ids)}
    A = np.zeros((len(line_ids), len(node_ids)), dtype=float)
    for ell, l in enumerate(line_ids):
        for sign, endpoints, suffix in ((1.0, start, "start"), (-1.0, end, "end")):
            if l not in endpoints:
                raise DataContractViolation(f"{mapping}_{suffix}", l)
            n = endpoints[l]
            if n not in node_idx:
                raise DataContractViolation(
                    "sets.N", n, detail=f"endpoint of {mapping} {l!r}"
                )
            A[ell, node_idx[n]] = sign
    return A


def build_dc_incidence(params: Parameters) -> np.ndarray:
    return build_incidence(
        params.sets.N, params.sets.DC, params.dc_start, params.dc_end, mapping="dc"
    )


def connected_components(node_ids: Sequence[str], A: np.ndarray) -> List[List[str]]:
    """
    AC islands: groups of nodes connected through lines of incidence A.

    Only nodes touched by at least one line appear. Each island lists its
    nodes in node_ids order; islands are ordered by their first node.
    """
    N = len(node_ids)
    parent = list(range(N))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    touched = np.zeros(N, dtype=bool)
    for row in A:
        ends = np.flatnonzero(row)
        if len(ends) == 0:
            continue
        touched[ends] = True
        root = find(int(ends[0]))
        for j in ends[1:]:
            rj = find(int(j))
            if rj != root:
                parent[rj] = root

    groups: Dict[int, List[str]] = {}
    for i, n in enumerate(node_ids):
        if touched[i]:
            groups.setdefault(find(i), []).append(n)
    return sorted(groups.values(), key=lambda g: list(node_ids).index(g[0]))


def select_slack_nodes(islands: List[List[str]], slack: Sequence[str]) -> List[str]:
    """
    Pick one reference node per AC island.

    The first flagged node (in island order) wins. An island with several
    flagged nodes is accepted; a single warning is logged for the whole call.
    """
    if len(slack) == 0:
        raise ConfigurationError("no slack bus defined")

    flagged = set(slack)
    chosen = []
    ambiguous = []
    for island in islands:
        candidates = [n for n in island if n in flagged]
        if not candidates:
            raise ConfigurationError(
                f"no slack bus defined for the network island containing {island[0]!r}"
            )
        if len(candidates) > 1:
            ambiguous.append(candidates)
        chosen.append(candidates[0])

    if ambiguous:
        logger.warning(
            "Multiple slack buses in one network island, using the first of each: %s",
            "; ".join(
                f"{c[0]} (ignoring {', '.join(c[1:])})" for c in ambiguous
            ),
        )
    return chosen


def build_dc_ptdf(params: Parameters) -> NetworkMatrices:
    """
    Build DC load-flow matrices from line endpoints, reactance and resistance.

    Parameters
    ----------
    params : Parameters
        Must carry sets.N, sets.L, line_start/line_end, resistance/reactance
        and the slack flag list. DC lines (sets.DC with dc_start/dc_end) are
        optional.

    Returns
    -------
    NetworkMatrices
        ptdf[l, n] = flow on line l for a 1 MW injection at node n withdrawn
        at the slack node of n's island.

    Notes
    -----
    - Nodes without any AC line (isolated or only DC-connected) are taken
      out of the reduction together with the slack nodes; their PTDF columns
      are zero.
    - Raises NetworkError if the reduced bus susceptance matrix is singular.
    """
    # ---------- 1. Indexing ----------
    node_ids = list(params.sets.N)
    line_ids = list(params.sets.L)
    dcline_ids = list(params.sets.DC)
    N = len(node_ids)
    L = len(line_ids)

    # ---------- 2. Susceptance and incidence ----------
    compute_susceptance(params)
    bvec = np.array([params.bvector[l] for l in line_ids], dtype=float)

    A = build_incidence(node_ids, line_ids, params.line_start, params.line_end)
    A_dc = build_dc_incidence(params)

    # ---------- 3. h = diag(b) A, B = A^T h ----------
    h = bvec[:, None] * A
    B = A.T @ h

    # ---------- 4. Islands and reference nodes ----------
    islands = connected_components(node_ids, A)
    slack_nodes = select_slack_nodes(islands, params.slack)
    in_island = {n for island in islands for n in island}
    omitted = [n for n in node_ids if n not in in_island]
    if omitted:
        logger.info("Nodes without AC lines left out of the PTDF: %s", omitted)

    node_idx = {n: i for i, n in enumerate(node_ids)}
    reference = {node_idx[n] for n in slack_nodes + omitted}
    keep = [i for i in range(N) if i not in reference]

    # ---------- 5. Reduce, invert, re-embed ----------
    B_inv_full = np.zeros((N, N), dtype=float)
    if keep:
        B_red = B[np.ix_(keep, keep)]
        try:
            B_red_inv = np.linalg.inv(B_red)
        except np.linalg.LinAlgError as exc:
            raise NetworkError(
                f"Reduced bus susceptance matrix ({len(keep)}x{len(keep)}) is singular."
            ) from exc
        if not np.all(np.isfinite(B_red_inv)):
            raise NetworkError("Reduced bus susceptance matrix is numerically singular.")
        B_inv_full[np.ix_(keep, keep)] = B_red_inv

    # ---------- 6. PTDF ----------
    ptdf = h @ B_inv_full

    for arr in (A, A_dc, bvec, h, B, ptdf):
        arr.setflags(write=False)

    logger.info(
        "Built PTDF for %d nodes, %d AC lines, %d DC lines, %d island(s)",
        N,
        L,
        len(dcline_ids),
        len(islands),
    )

    return NetworkMatrices(
        node_ids=node_ids,
        line_ids=line_ids,
        dcline_ids=dcline_ids,
        incidence=A,
        dc_incidence=A_dc,
        bvector=bvec,
        h=h,
        b=B,
        ptdf=ptdf,
        slack_nodes=slack_nodes,
        omitted_nodes=omitted,
        islands=islands,
    )


def build_gsk(
    node_ids: Sequence[str],
    zone_ids: Sequence[str],
    node_to_zone: Dict[str, str],
    weights: Optional[Dict[str, float]] = None,
) -> np.ndarray:
    """
    Generation shift keys, shape (N, Z).

    Column z distributes a zonal injection over the zone's nodes in
    proportion to `weights` (e.g. installed capacity); nodes of a zone whose
    weights are all zero or missing share it equally. Every column sums to 1.
    """
    zone_idx = {z: j for j, z in enumerate(zone_ids)}
    gsk = np.zeros((len(node_ids), len(zone_ids)), dtype=float)
    for i, n in enumerate(node_ids):
        if n not in node_to_zone:
            raise DataContractViolation("node2zone", n)
        z = node_to_zone[n]
        if z not in zone_idx:
            raise DataContractViolation("sets.Z", z, detail=f"zone of node {n!r}")
        gsk[i, zone_idx[z]] = 0.0 if weights is None else float(weights.get(n, 0.0))

    for j, z in enumerate(zone_ids):
        members = [i for i, n in enumerate(node_ids) if node_to_zone[n] == z]
        if not members:
            raise ConfigurationError(f"Zone {z!r} has no nodes.")
        total = gsk[members, j].sum()
        if total > 0:
            gsk[members, j] /= total
        else:
            gsk[members, j] = 1.0 / len(members)
    return gsk


def zonal_ptdf(ptdf: np.ndarray, gsk: np.ndarray) -> np.ndarray:
    """Zone-to-line sensitivities, shape (L, Z)."""
    return ptdf @ gsk
