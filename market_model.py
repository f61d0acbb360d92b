"""
Gurobi day-ahead market-clearing model builder.

`build_market_model` assembles one LP per sub-horizon T from a fixed list of
strategy components chosen once from the ModelSetup:

  DispatchableGeneration      GEN[p, t] <= avail * gmax, cost mc * GEN
  NonDispatchableGeneration   FEEDIN = avail * gmax - CU, cost curtailment_cost * CU
  StorageOperation            STO_GEN / CHARGE / STO_LVL with the storage balance
  NTCExchange | PhaseAngleNetwork | PTDFNetwork
  ZonalBalance | NodalBalance balance per zone/node with CU/LL slacks

The duals of the balance constraints are the day-ahead prices.

Storage balance:
  STO_LVL[s, t] = STO_LVL[s, t-1] + CHARGE[s, t] * eta_s - STO_GEN[s, t] / eta_s + inflow[s, t]
where the level before the first timestep of T is the carried boundary value
initial_storage[s].
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import gurobipy as gp
from gurobipy import GRB

from errors import ConfigurationError
from hooks import HookContext, ModelHooks
from model_setup import ModelSetup
from models import BuildContext, FormulatedModel, Parameters
from network_model import NTCExchange, network_strategy
from time_horizon import describe_range, prev_period

logger = logging.getLogger(__name__)

STAGE = "DayAhead"


def _plants_of_type(params: Parameters, plants: List[str], ptype: str) -> List[str]:
    return [p for p in plants if params.plant_type.get(p) == ptype]


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class DispatchableGeneration:
    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        T = ctx.time_range
        m = ctx.model
        DISP = params.sets.DISP

        keys = [(p, t) for p in DISP for t in T]
        ub = [params.available_capacity(p, t) for p, t in keys]
        GEN = m.addVars(keys, lb=0.0, ub=ub, name="GEN")
        ctx.variables["GEN"] = GEN

        for p, t in keys:
            mc = float(params.require("mc", p)[t])
            ctx.objective.addTerms(mc, GEN[p, t])
            ctx.add_injection(p, t, GEN[p, t])
            ctx.record(
                "GEN",
                index=p,
                Time=t,
                GEN=GEN[p, t],
                mc=mc,
                gmax=params.available_capacity(p, t),
                CU=0.0,
            )

        # Historical generation (equality) and minimum generation per plant type
        fueltypes = [ft for ft in params.dispatchable if ft not in params.storage_types]
        for ft in fueltypes:
            plants = _plants_of_type(params, DISP, ft)
            if ft in params.historical_generation:
                hist = params.historical_generation[ft]
                ctx.constraints[f"HistoricalGeneration_{ft}"] = m.addConstrs(
                    (
                        gp.quicksum(GEN[p, t] for p in plants) == float(hist[t])
                        for t in T
                    ),
                    name=f"HistoricalGeneration_{ft}",
                )
            if ft in params.min_generation:
                mingen = params.min_generation[ft]
                ctx.constraints[f"MinGeneration_{ft}"] = m.addConstrs(
                    (
                        gp.quicksum(GEN[p, t] for p in plants) >= float(mingen[t])
                        for t in T
                    ),
                    name=f"MinGeneration_{ft}",
                )


class NonDispatchableGeneration:
    """
    Feed-in of non-dispatchable plants follows availability; only
    curtailment CU is a decision. Historical and minimum generation targets
    are soft, with a penalised shortfall variable per plant type.
    """

    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        setup = ctx.setup
        T = ctx.time_range
        m = ctx.model
        NDISP = params.sets.NDISP

        keys = [(p, t) for p in NDISP for t in T]
        ub = [params.available_capacity(p, t) for p, t in keys]
        CU = m.addVars(keys, lb=0.0, ub=ub, name="CU")
        ctx.variables["CU"] = CU

        feedin = {}
        for (p, t), cap in zip(keys, ub):
            feedin[p, t] = cap - CU[p, t]
            ctx.objective.addTerms(setup.costs.curtailment_cost, CU[p, t])
            ctx.add_injection(p, t, feedin[p, t])
            ctx.record("GEN", index=p, Time=t, GEN=feedin[p, t], mc=0.0, gmax=cap, CU=CU[p, t])
        ctx.expressions["FEEDIN"] = feedin

        for ft in params.nondispatchable:
            plants = _plants_of_type(params, NDISP, ft)
            for target, family, sense in (
                (params.historical_generation, "HistoricalGeneration", GRB.EQUAL),
                (params.min_generation, "MinGeneration", GRB.GREATER_EQUAL),
            ):
                if ft not in target:
                    continue
                profile = target[ft]
                short = m.addVars(list(T), lb=0.0, name=f"{family}Shortfall_{ft}")
                ctx.variables[f"{family}Shortfall_{ft}"] = short
                for t in T:
                    ctx.objective.addTerms(setup.costs.shortfall_cost, short[t])
                ctx.constraints[f"{family}_{ft}"] = m.addConstrs(
                    (
                        _sense_constr(
                            gp.quicksum(feedin[p, t] for p in plants) + short[t],
                            sense,
                            float(profile[t]),
                        )
                        for t in T
                    ),
                    name=f"{family}_{ft}",
                )


def _sense_constr(lhs, sense, rhs):
    if sense == GRB.EQUAL:
        return lhs == rhs
    return lhs >= rhs


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def initial_level(ctx: BuildContext, s: str) -> float:
    """Carried boundary level, or the configured share of capacity."""
    if s in ctx.initial_storage:
        return float(ctx.initial_storage[s])
    return ctx.setup.initial_storage_fraction * float(ctx.params.require("storage", s))


def add_storage_balance(ctx: BuildContext, name: str, level, gen, charge) -> None:
    """
    level[s, t] == level[s, prev] + charge * eta - gen / eta + inflow

    prev is prev_period(T, t) for every t but the first, which starts from
    the carried boundary level instead of wrapping around.
    """
    params = ctx.params
    T = ctx.time_range
    cons = {}
    for s in params.sets.S:
        eta = float(params.require("eta", s))
        for t in T:
            if t == T[0]:
                before = initial_level(ctx, s)
            else:
                before = level[s, prev_period(T, t)]
            cons[s, t] = ctx.model.addConstr(
                level[s, t]
                == before + eta * charge[s, t] - (1.0 / eta) * gen[s, t] + params.inflow_at(s, t),
                name=f"{name}[{s},{t}]",
            )
    ctx.constraints[name] = cons


class StorageOperation:
    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        T = ctx.time_range
        m = ctx.model
        S = params.sets.S

        keys = [(s, t) for s in S for t in T]
        STO_GEN = m.addVars(
            keys, lb=0.0, ub=[float(params.require("gmax", s)) for s, _ in keys], name="STO_GEN"
        )
        CHARGE = m.addVars(
            keys,
            lb=0.0,
            ub=[float(params.require("gmax_storage", s)) for s, _ in keys],
            name="CHARGE",
        )
        STO_LVL = m.addVars(
            keys, lb=0.0, ub=[float(params.require("storage", s)) for s, _ in keys], name="STO_LVL"
        )
        ctx.variables.update(STO_GEN=STO_GEN, CHARGE=CHARGE, STO_LVL=STO_LVL)

        add_storage_balance(ctx, "StorageBalance", STO_LVL, STO_GEN, CHARGE)

        for s, t in keys:
            mc = float(params.require("mc", s)[t])
            ctx.objective.addTerms(mc, STO_GEN[s, t])
            ctx.add_injection(s, t, STO_GEN[s, t] - CHARGE[s, t])
            ctx.record(
                "GEN",
                index=s,
                Time=t,
                GEN=STO_GEN[s, t],
                mc=mc,
                gmax=params.gmax[s],
                CU=0.0,
            )
            ctx.record("CHARGE", index=s, Time=t, CHARGE=CHARGE[s, t], gmax=params.gmax_storage[s])
            ctx.record("STO_LVL", index=s, Time=t, STO_LVL=STO_LVL[s, t], storage=params.storage[s])

        for ft in params.storage_types:
            plants = _plants_of_type(params, S, ft)
            if ft in params.historical_generation:
                hist = params.historical_generation[ft]
                ctx.constraints[f"HistoricalGeneration_{ft}"] = m.addConstr(
                    gp.quicksum(STO_GEN[s, t] for s in plants for t in T)
                    == sum(float(hist[t]) for t in T),
                    name=f"HistoricalGeneration_{ft}",
                )
            if ft in params.min_generation:
                mingen = params.min_generation[ft]
                ctx.constraints[f"MinGeneration_{ft}"] = m.addConstrs(
                    (
                        gp.quicksum(STO_GEN[s, t] for s in plants) >= float(mingen[t])
                        for t in T
                    ),
                    name=f"MinGeneration_{ft}",
                )


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


def _add_balance(ctx: BuildContext, name: str, areas, plants_in, load, label: str) -> None:
    setup = ctx.setup
    T = ctx.time_range
    m = ctx.model

    keys = [(a, t) for a in areas for t in T]
    CU = m.addVars(keys, lb=0.0, name="BALANCE_CU")
    LL = m.addVars(keys, lb=0.0, name="BALANCE_LL")
    ctx.variables["BALANCE_CU"] = CU
    ctx.variables["BALANCE_LL"] = LL
    for k in keys:
        ctx.objective.addTerms(setup.costs.infeasibility_cost, CU[k])
        ctx.objective.addTerms(setup.costs.infeasibility_cost, LL[k])

    cons = {}
    for a, t in keys:
        supply = gp.LinExpr()
        for p in plants_in(a):
            if (p, t) in ctx.plant_injection:
                supply += ctx.plant_injection[(p, t)]
        if (a, t) in ctx.net_import:
            supply += ctx.net_import[(a, t)]
        cons[a, t] = m.addConstr(
            supply - CU[a, t] == load(a, t) - LL[a, t], name=f"{name}[{a},{t}]"
        )
        ctx.record(name, **{label: a}, Time=t, CU=CU[a, t], LL=LL[a, t], price=cons[a, t])
    ctx.constraints[name] = cons


class ZonalBalance:
    name = "ZonalMarketBalance"

    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        _add_balance(
            ctx,
            self.name,
            params.sets.Z,
            lambda z: params.plants_in_zone.get(z, []),
            params.zonal_load,
            "Zone",
        )


class NodalBalance:
    name = "NodalMarketBalance"

    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        _add_balance(
            ctx,
            self.name,
            params.sets.N,
            lambda n: params.plants_in_node.get(n, []),
            params.load_at,
            "Node",
        )


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def market_components(setup: ModelSetup) -> list:
    """Strategy components for the day-ahead model, in build order."""
    components = [DispatchableGeneration(), NonDispatchableGeneration(), StorageOperation()]
    if setup.is_zonal:
        components += [NTCExchange(), ZonalBalance()]
    else:
        components += [network_strategy(setup.market_type.load_flow), NodalBalance()]
    return components


def new_context(
    params: Parameters,
    setup: ModelSetup,
    T: range,
    stage: str,
    initial_storage: Optional[Dict[str, float]] = None,
    day_ahead=None,
) -> BuildContext:
    if len(T) == 0:
        raise ConfigurationError(f"Empty sub-horizon for stage {stage}")
    m = gp.Model(f"{setup.scenario}_{stage}_{describe_range(T)}")
    m.Params.OutputFlag = 0
    return BuildContext(
        model=m,
        stage=stage,
        time_range=T,
        params=params,
        setup=setup,
        initial_storage=dict(initial_storage or {}),
        day_ahead=day_ahead,
        objective=gp.LinExpr(),
    )


def hook_context(ctx: BuildContext) -> HookContext:
    return HookContext(
        stage=ctx.stage,
        time_range=ctx.time_range,
        params=ctx.params,
        setup=ctx.setup,
        model=ctx.model,
        variables=ctx.variables,
        constraints=ctx.constraints,
        records=ctx.records,
    )


def assemble(ctx: BuildContext, components: list, hooks: Optional[ModelHooks]) -> FormulatedModel:
    """Run hooks and components, set the objective and freeze the result."""
    hooks = hooks if hooks is not None else ctx.setup.hooks
    hctx = hook_context(ctx)
    hooks.run("before_build", hctx)
    hctx.write_back(ctx)

    for component in components:
        component.contribute(ctx)

    ctx.model.setObjective(ctx.objective, GRB.MINIMIZE)
    ctx.model.update()
    hctx = hook_context(ctx)
    hooks.run("after_build", hctx)
    hctx.write_back(ctx)

    logger.info(
        "Built %s model for %s: %d variables, %d constraints",
        ctx.stage,
        describe_range(ctx.time_range),
        ctx.model.NumVars,
        ctx.model.NumConstrs,
    )
    return ctx.finish()


def build_market_model(
    params: Parameters,
    setup: ModelSetup,
    T: range,
    initial_storage: Optional[Dict[str, float]] = None,
    hooks: Optional[ModelHooks] = None,
) -> FormulatedModel:
    """
    Build the day-ahead market-clearing LP for sub-horizon T.

    Parameters
    ----------
    params : Parameters
        Prepared parameters (see params_prep.prepare_parameters).
    setup : ModelSetup
        Selects zonal/nodal scope, prosumer handling and costs.
    T : range
        Sub-horizon timesteps.
    initial_storage : dict, optional
        Storage level before T[0] per storage; missing storages start at
        setup.initial_storage_fraction * capacity.
    hooks : ModelHooks, optional
        Defaults to setup.hooks.

    Returns
    -------
    FormulatedModel
        Ready to pass to solving.solve_model.
    """
    setup.validate_against(params)
    ctx = new_context(params, setup, T, STAGE, initial_storage)
    return assemble(ctx, market_components(setup), hooks)
