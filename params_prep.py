"""
One-time derivations on a loaded Parameters object.

`prepare_parameters` runs the chain below in order. Every step skips work
that has already been done, so calling it twice leaves the object unchanged.
After it returns, Parameters is treated as read-only.
"""

from __future__ import annotations

import logging
from typing import List

from errors import DataContractViolation
from models import FixedProfile, HourlyProfile, Parameters, Profile
from network_ptdf import build_dc_ptdf

logger = logging.getLogger(__name__)


def _append_missing(target: List, items) -> None:
    for x in items:
        if x not in target:
            target.append(x)


def create_subsets(params: Parameters) -> None:
    """
    PRS     plants whose type is a prosumer type
    PRS_STO prosumers with positive storage energy and power
    S       plants with positive storage capacity that are not prosumers
    """
    sets = params.sets
    prs, prs_sto, sto = [], [], []
    for p in sets.P:
        is_prs = params.require("plant_type", p) in params.prosumer_types
        if is_prs:
            prs.append(p)
            if params.storage.get(p, 0) > 0 and params.gmax_storage.get(p, 0) > 0:
                prs_sto.append(p)
        elif params.storage.get(p, 0) > 0:
            sto.append(p)

    _append_missing(sets.PRS, prs)
    _append_missing(sets.PRS_STO, prs_sto)
    _append_missing(sets.S, sto)


def create_mappers(params: Parameters) -> None:
    """Membership indexes, the DISP/NDISP partition and NTC neighbour lists."""
    sets = params.sets

    for p in sets.P:
        node = params.require("plant2node", p)
        params.plant2zone[p] = params.require("node2zone", node)

    disp, ndisp = [], []
    for p in sets.P:
        if p in sets.S:
            continue
        if params.plant_type[p] in params.dispatchable:
            disp.append(p)
        else:
            ndisp.append(p)
    _append_missing(sets.DISP, disp)
    _append_missing(sets.NDISP, ndisp)

    for n in sets.N:
        params.plants_in_node[n] = [p for p in sets.P if params.plant2node[p] == n]
        params.storages_in_node[n] = [s for s in sets.S if params.plant2node[s] == n]

    for z in sets.Z:
        params.nodes_in_zone[z] = [n for n in sets.N if params.node2zone.get(n) == z]
        params.plants_in_zone[z] = [p for p in sets.P if params.plant2zone[p] == z]
        params.storages_in_zone[z] = [s for s in sets.S if params.plant2zone[s] == z]

        imp = [zz for zz in sets.Z if (zz, z) in sets.NTC]
        if imp:
            params.importing_ntcs[z] = imp
        exp = [zz for zz in sets.Z if (z, zz) in sets.NTC]
        if exp:
            params.exporting_ntcs[z] = exp


def calc_mc(params: Parameters) -> None:
    """
    mc = fuel_price / eta + co2_price * co2content / eta

    Only for plants without an explicit mc profile. The CO2 price is the
    "co2" entry of fuel_price (zero if absent).
    """
    co2price = params.fuel_price.get("co2", FixedProfile(value=0.0))

    for p in params.sets.P:
        if p in params.mc:
            continue
        ptype = params.require("plant_type", p)
        fp = params.require("fuel_price", ptype)
        eta = params.require("eta", p)
        co2content = params.co2content.get(ptype, 0.0)

        mc = fp.scaled(1.0 / eta)
        if co2content > 0:
            mc = mc.combine(co2price.scaled(co2content / eta))
        params.mc[p] = mc


def map_avail_planttype(params: Parameters) -> None:
    """Availability fallback: (type, node) profile, then (type, zone), then 1."""
    missing_prs = [prs for prs in params.sets.PRS if prs not in params.avail]
    if missing_prs:
        logger.warning("Not all prosumers have an availability profile: %s", missing_prs)

    for p in params.sets.P:
        if p in params.avail:
            continue
        pt = params.plant_type[p]
        n = params.plant2node[p]
        z = params.plant2zone[p]
        if (pt, n) in params.avail_planttype_nodal:
            params.avail[p] = params.avail_planttype_nodal[(pt, n)]
        elif (pt, z) in params.avail_planttype_zonal:
            params.avail[p] = params.avail_planttype_zonal[(pt, z)]
        else:
            params.avail[p] = FixedProfile(value=1.0)


def calc_nodal_load_no_prs(params: Parameters) -> None:
    """Nodal load minus the demand of the prosumers located at the node."""
    for n, load in params.nodal_load.items():
        if n in params.nodal_load_no_prs:
            continue
        prs_here = [p for p in params.plants_in_node.get(n, []) if p in params.sets.PRS]
        demand: Profile = FixedProfile(value=0.0)
        for prs in prs_here:
            demand = demand.combine(params.require("prs_demand", prs))
        net = load.combine(demand.scaled(-1.0))

        if isinstance(net, HourlyProfile) and len(set(net.values)) == 1:
            net = FixedProfile(value=net.values[0])
        params.nodal_load_no_prs[n] = net


def attach_network(params: Parameters) -> None:
    if params.network is not None or not params.sets.N:
        return
    params.network = build_dc_ptdf(params)


def sanity_checks(params: Parameters) -> None:
    """
    Referential checks raise DataContractViolation; data-quality findings
    are logged as warnings.
    """
    nodes = set(params.sets.N)
    zones = set(params.sets.Z)

    for p in params.sets.P:
        node = params.require("plant2node", p)
        if node not in nodes:
            raise DataContractViolation("sets.N", node, detail=f"node of plant {p!r}")

    for n in params.sets.N:
        zone = params.require("node2zone", n)
        if zone not in zones:
            raise DataContractViolation("sets.Z", zone, detail=f"zone of node {n!r}")

    for p, prof in params.avail.items():
        values = [prof.value] if isinstance(prof, FixedProfile) else prof.values
        if any(v < 0 or v > 1 for v in values):
            raise DataContractViolation(
                "avail", p, detail="availability must lie in [0, 1]"
            )

    incomplete = [
        s
        for s in params.sets.S
        if s not in params.gmax_storage or s not in params.storage
    ]
    if incomplete:
        logger.warning(
            "Not all storage units have a capacity and a maximum power: %s", incomplete
        )


def prepare_parameters(params: Parameters) -> Parameters:
    """Run every one-time derivation in order and return the same object."""
    create_subsets(params)
    create_mappers(params)
    calc_mc(params)
    map_avail_planttype(params)
    if params.prs_demand:
        calc_nodal_load_no_prs(params)
    attach_network(params)
    sanity_checks(params)

    logger.info(
        "Prepared parameters: %d plants (%d DISP, %d NDISP, %d storages, %d prosumers), "
        "%d nodes, %d zones, %d AC lines, %d DC lines",
        len(params.sets.P),
        len(params.sets.DISP),
        len(params.sets.NDISP),
        len(params.sets.S),
        len(params.sets.PRS),
        len(params.sets.N),
        len(params.sets.Z),
        len(params.sets.L),
        len(params.sets.DC),
    )
    return params
