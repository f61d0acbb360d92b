"""
Gurobi redispatch model builder.

Takes the solved day-ahead dispatch of one sub-horizon as fixed data and
finds the cheapest deviation from it that respects every line limit of the
DC load flow. Production cost does not enter the objective; only
deviations are priced:

    min  redispatch_cost * (GEN_UP + GEN_DOWN)                       dispatchables
       + redispatch_curtailment_cost * (CU_REDISP - cu_da)            non-dispatchables
       + storage_adjust_cost * (STO_GEN_UP + STO_GEN_DOWN
                                + CHARGE_UP + CHARGE_DOWN)            storages

The day-ahead balance slacks (curtailment/lost load) enter the nodal balance
as fixed quantities. Zonal values are spread over the zone's nodes in
proportion to nodal load. There are no slacks of its own: if congestion
cannot be resolved the model is infeasible and solving raises SolverError.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import gurobipy as gp

from hooks import ModelHooks
from market_model import add_storage_balance, assemble, new_context
from model_setup import ModelSetup
from models import BuildContext, FormulatedModel, Parameters
from network_model import network_strategy
from results import DayAheadResult

logger = logging.getLogger(__name__)

STAGE = "Redispatch"


class RedispatchDispatchable:
    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        cost = ctx.setup.costs.redispatch_cost
        T = ctx.time_range
        m = ctx.model
        g = ctx.day_ahead.disp_generation

        keys = [(p, t) for p in params.sets.DISP for t in T]
        max_up = [max(params.available_capacity(p, t) - g[p, t], 0.0) for p, t in keys]
        GEN_UP = m.addVars(keys, lb=0.0, ub=max_up, name="GEN_UP")
        GEN_DOWN = m.addVars(keys, lb=0.0, ub=[g[k] for k in keys], name="GEN_DOWN")
        ctx.variables.update(GEN_UP=GEN_UP, GEN_DOWN=GEN_DOWN)

        gen_redisp = {}
        for (p, t), up in zip(keys, max_up):
            gen_redisp[p, t] = g[p, t] + GEN_UP[p, t] - GEN_DOWN[p, t]
            ctx.objective.addTerms(cost, GEN_UP[p, t])
            ctx.objective.addTerms(cost, GEN_DOWN[p, t])
            ctx.add_injection(p, t, gen_redisp[p, t])
            ctx.record(
                "REDISP",
                index=p,
                Time=t,
                GEN_REDISP=gen_redisp[p, t],
                GEN_UP=GEN_UP[p, t],
                GEN_DOWN=GEN_DOWN[p, t],
                gen=g[p, t],
                CU_REDISP=0.0,
                CHARGE_REDISP=0.0,
                CHARGE_UP=0.0,
                CHARGE_DOWN=0.0,
                max_up=up,
            )
        ctx.expressions["GEN_REDISP"] = gen_redisp


class RedispatchNonDispatchable:
    """Curtailment may only grow relative to the day-ahead result."""

    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        cost = ctx.setup.costs.redispatch_curtailment_cost
        T = ctx.time_range
        m = ctx.model
        cu = ctx.day_ahead.ndisp_cu

        plants = params.sets.NDISP
        if ctx.setup.with_prosumers:
            plants = [p for p in plants if p not in params.sets.PRS]

        keys = [(p, t) for p in plants for t in T]
        cap = [params.available_capacity(p, t) for p, t in keys]
        CU_REDISP = m.addVars(
            keys, lb=[cu[k] for k in keys], ub=[max(c, cu[k]) for k, c in zip(keys, cap)],
            name="CU_REDISP",
        )
        ctx.variables["CU_REDISP"] = CU_REDISP

        feedin = {}
        for (p, t), c in zip(keys, cap):
            feedin[p, t] = c - CU_REDISP[p, t]
            ctx.objective.addTerms(cost, CU_REDISP[p, t])
            ctx.objective.addConstant(-cost * cu[p, t])
            ctx.add_injection(p, t, feedin[p, t])
            ctx.record(
                "REDISP",
                index=p,
                Time=t,
                GEN_REDISP=feedin[p, t],
                GEN_UP=0.0,
                GEN_DOWN=0.0,
                gen=c - cu[p, t],
                CU_REDISP=CU_REDISP[p, t] - cu[p, t],
                CHARGE_REDISP=0.0,
                CHARGE_UP=0.0,
                CHARGE_DOWN=0.0,
                max_up=0.0,
            )
        ctx.expressions["FEEDIN_REDISP"] = feedin


class RedispatchStorage:
    """
    Storage adjustments around the day-ahead schedule. Levels are
    re-evaluated from the same carried boundary level as the day-ahead model.
    """

    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        cost = ctx.setup.costs.storage_adjust_cost
        T = ctx.time_range
        m = ctx.model
        g = ctx.day_ahead.sto_generation
        c = ctx.day_ahead.sto_charge

        keys = [(s, t) for s in params.sets.S for t in T]
        gmax = {s: float(params.require("gmax", s)) for s in params.sets.S}
        cmax = {s: float(params.require("gmax_storage", s)) for s in params.sets.S}

        STO_GEN_UP = m.addVars(
            keys, lb=0.0, ub=[max(gmax[s] - g[s, t], 0.0) for s, t in keys], name="STO_GEN_UP"
        )
        STO_GEN_DOWN = m.addVars(keys, lb=0.0, ub=[g[k] for k in keys], name="STO_GEN_DOWN")
        CHARGE_UP = m.addVars(
            keys, lb=0.0, ub=[max(cmax[s] - c[s, t], 0.0) for s, t in keys], name="CHARGE_UP"
        )
        CHARGE_DOWN = m.addVars(keys, lb=0.0, ub=[c[k] for k in keys], name="CHARGE_DOWN")
        STO_LVL_REDISP = m.addVars(
            keys,
            lb=0.0,
            ub=[float(params.require("storage", s)) for s, _ in keys],
            name="STO_LVL_REDISP",
        )
        ctx.variables.update(
            STO_GEN_UP=STO_GEN_UP,
            STO_GEN_DOWN=STO_GEN_DOWN,
            CHARGE_UP=CHARGE_UP,
            CHARGE_DOWN=CHARGE_DOWN,
            STO_LVL_REDISP=STO_LVL_REDISP,
        )

        gen_redisp = {k: g[k] + STO_GEN_UP[k] - STO_GEN_DOWN[k] for k in keys}
        charge_redisp = {k: c[k] + CHARGE_UP[k] - CHARGE_DOWN[k] for k in keys}
        add_storage_balance(
            ctx, "StorageBalanceRedispatch", STO_LVL_REDISP, gen_redisp, charge_redisp
        )

        for s, t in keys:
            for var in (STO_GEN_UP, STO_GEN_DOWN, CHARGE_UP, CHARGE_DOWN):
                ctx.objective.addTerms(cost, var[s, t])
            ctx.add_injection(s, t, gen_redisp[s, t] - charge_redisp[s, t])
            ctx.record(
                "REDISP",
                index=s,
                Time=t,
                GEN_REDISP=gen_redisp[s, t],
                GEN_UP=STO_GEN_UP[s, t],
                GEN_DOWN=STO_GEN_DOWN[s, t],
                gen=g[s, t],
                CU_REDISP=0.0,
                CHARGE_REDISP=charge_redisp[s, t],
                CHARGE_UP=CHARGE_UP[s, t],
                CHARGE_DOWN=CHARGE_DOWN[s, t],
                max_up=max(gmax[s] - g[s, t], 0.0),
            )
            ctx.record(
                "STO_LVL_REDISP",
                index=s,
                Time=t,
                STO_LVL_REDISP=STO_LVL_REDISP[s, t],
                storage=params.storage[s],
            )


class ProsumerNetInput:
    """Optimised prosumer net input (sell - buy) as a fixed nodal injection."""

    def contribute(self, ctx: BuildContext) -> None:
        netinput = ctx.day_ahead.prs_netinput
        for prs in ctx.params.sets.PRS:
            for t in ctx.time_range:
                ctx.add_injection(prs, t, gp.LinExpr(float(netinput.get((prs, t), 0.0))))


def distribute_to_nodes(
    params: Parameters, values: Dict, t: int, scope: str, load=None
) -> Dict[str, float]:
    """
    Per-node share of a day-ahead balance slack at timestep t.

    Nodal values pass through. Zonal values are split over the zone's nodes
    pro rata to nodal load, or evenly if the zone has no load at t.
    """
    load = load or params.load_at
    if scope == "Nodal":
        return {n: float(values.get((n, t), 0.0)) for n in params.sets.N}

    shares: Dict[str, float] = {}
    for z in params.sets.Z:
        total = float(values.get((z, t), 0.0))
        nodes = params.nodes_in_zone.get(z, [])
        if not nodes:
            continue
        zone_load = sum(load(n, t) for n in nodes)
        for n in nodes:
            if zone_load > 0:
                shares[n] = total * load(n, t) / zone_load
            else:
                shares[n] = total / len(nodes)
    return shares


class RedispatchBalance:
    """
    Prosumer demand is covered by the prosumer net input, so with optimised
    prosumers the balance uses the load without it.
    """

    name = "NodalRedispatchBalance"

    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        da = ctx.day_ahead
        T = ctx.time_range
        m = ctx.model
        load = params.load_no_prs_at if ctx.setup.with_prosumers else params.load_at

        cons = {}
        for t in T:
            cu = distribute_to_nodes(params, da.balance_cu, t, da.scope, load)
            ll = distribute_to_nodes(params, da.balance_ll, t, da.scope, load)
            for n in params.sets.N:
                supply = gp.LinExpr()
                for p in params.plants_in_node.get(n, []):
                    if (p, t) in ctx.plant_injection:
                        supply += ctx.plant_injection[(p, t)]
                if (n, t) in ctx.net_import:
                    supply += ctx.net_import[(n, t)]
                cu_n = cu.get(n, 0.0)
                ll_n = ll.get(n, 0.0)
                cons[n, t] = m.addConstr(
                    supply - cu_n == load(n, t) - ll_n,
                    name=f"{self.name}[{n},{t}]",
                )
                ctx.record(self.name, Node=n, Time=t, CU=cu_n, LL=ll_n, price=cons[n, t])
        ctx.constraints[self.name] = cons


def redispatch_components(setup: ModelSetup) -> list:
    components = [RedispatchDispatchable(), RedispatchNonDispatchable(), RedispatchStorage()]
    if setup.with_prosumers:
        components.append(ProsumerNetInput())
    components += [network_strategy(setup.redispatch_setup.load_flow), RedispatchBalance()]
    return components


def build_redispatch_model(
    params: Parameters,
    setup: ModelSetup,
    T: range,
    da_result: DayAheadResult,
    initial_storage: Optional[Dict[str, float]] = None,
    hooks: Optional[ModelHooks] = None,
) -> FormulatedModel:
    """
    Build the redispatch LP for sub-horizon T around a solved day-ahead result.

    Parameters
    ----------
    da_result : DayAheadResult
        From results.day_ahead_result; with optimised prosumers it must carry
        prs_netinput from the prosumer stage.
    initial_storage : dict, optional
        Same carried boundary levels the day-ahead model of T started from.
    """
    setup.validate_against(params)
    ctx = new_context(params, setup, T, STAGE, initial_storage, day_ahead=da_result)
    return assemble(ctx, redispatch_components(setup), hooks)
