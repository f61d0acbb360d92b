"""
Gurobi prosumer self-optimisation.

Solved after the day-ahead market of a sub-horizon and before its redispatch.
Each prosumer covers its demand from own generation, its storage and grid
purchases, and sells surplus at `sell_price`:

    min  sum (retail_price + grid_fee) * PRS_BUY - sell_price * PRS_SELL
         + storage_cycle_cost * (PRS_STO_IN + PRS_STO_OUT)

    generation - PRS_CU == PRS_SELF + PRS_SELL + PRS_STO_IN        (GenerationBalance)
    PRS_SELF + PRS_STO_OUT + PRS_BUY == demand                     (EnergyBalance)
    PRS_STO_LVL[t] == retention * PRS_STO_LVL[prev_period(T, t)]
                      + efficiency * PRS_STO_IN - PRS_STO_OUT / efficiency   (StorageBalance)

The prosumer storage balance is cyclic within the sub-horizon. The net input
PRS_NETINPUT = PRS_SELL - PRS_BUY is what redispatch sees at the prosumer's node.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import gurobipy as gp
import numpy as np

from hooks import ModelHooks
from market_model import assemble, new_context
from model_setup import ModelSetup
from models import BuildContext, FormulatedModel, Parameters
from results import DayAheadResult
from time_horizon import prev_period

logger = logging.getLogger(__name__)

STAGE = "Prosumer"


def retail_prices(
    params: Parameters, setup: ModelSetup, T: range, da_result: DayAheadResult
) -> Dict[tuple, float]:
    """
    Retail price per (prosumer, t).

    "buy_price" is constant. "realtime" takes the day-ahead price of the
    prosumer's zone (zonal market) or node (nodal market); "flat" is that
    price averaged over the sub-horizon.
    """
    po = setup.prosumer_setup
    PRS = params.sets.PRS
    if po.retail_type == "buy_price":
        return {(prs, t): po.buy_price for prs in PRS for t in T}

    mapping = "plant2zone" if setup.is_zonal else "plant2node"
    price = {}
    for prs in PRS:
        a = params.require(mapping, prs)
        hourly = [float(da_result.price.get((a, t), 0.0)) for t in T]
        if po.retail_type == "flat":
            hourly = [float(np.mean(hourly))] * len(hourly)
        price.update({(prs, t): p for t, p in zip(T, hourly)})
    return price


class ProsumerDispatch:
    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        po = ctx.setup.prosumer_setup
        T = ctx.time_range
        m = ctx.model
        PRS = params.sets.PRS
        PRS_STO = params.sets.PRS_STO

        keys = [(prs, t) for prs in PRS for t in T]
        sto_keys = [(prs, t) for prs in PRS_STO for t in T]
        generation = {(prs, t): params.available_capacity(prs, t) for prs, t in keys}
        demand = {(prs, t): float(params.require("prs_demand", prs)[t]) for prs, t in keys}

        PRS_BUY = m.addVars(keys, lb=0.0, ub=[demand[k] for k in keys], name="PRS_BUY")
        PRS_SELL = m.addVars(keys, lb=0.0, ub=[generation[k] for k in keys], name="PRS_SELL")
        PRS_SELF = m.addVars(keys, lb=0.0, name="PRS_SELF")
        PRS_CU = m.addVars(keys, lb=0.0, name="PRS_CU")
        PRS_STO_IN = m.addVars(
            sto_keys,
            lb=0.0,
            ub=[float(params.require("gmax_storage", prs)) for prs, _ in sto_keys],
            name="PRS_STO_IN",
        )
        PRS_STO_OUT = m.addVars(
            sto_keys,
            lb=0.0,
            ub=[float(params.require("gmax_storage", prs)) for prs, _ in sto_keys],
            name="PRS_STO_OUT",
        )
        PRS_STO_LVL = m.addVars(
            sto_keys,
            lb=0.0,
            ub=[float(params.require("storage", prs)) for prs, _ in sto_keys],
            name="PRS_STO_LVL",
        )
        ctx.variables.update(
            PRS_BUY=PRS_BUY,
            PRS_SELL=PRS_SELL,
            PRS_SELF=PRS_SELF,
            PRS_CU=PRS_CU,
            PRS_STO_IN=PRS_STO_IN,
            PRS_STO_OUT=PRS_STO_OUT,
            PRS_STO_LVL=PRS_STO_LVL,
        )

        def sto(var, prs, t):
            return var[prs, t] if prs in PRS_STO else 0.0

        total_gen = {k: generation[k] - PRS_CU[k] for k in keys}
        netinput = {k: PRS_SELL[k] - PRS_BUY[k] for k in keys}
        ctx.expressions["PRS_TOTAL_GEN"] = total_gen
        ctx.expressions["PRS_NETINPUT"] = netinput

        ctx.constraints["GenerationBalance"] = m.addConstrs(
            (
                total_gen[prs, t] == PRS_SELF[prs, t] + PRS_SELL[prs, t] + sto(PRS_STO_IN, prs, t)
                for prs, t in keys
            ),
            name="GenerationBalance",
        )
        ctx.constraints["EnergyBalance"] = m.addConstrs(
            (
                PRS_SELF[prs, t] + sto(PRS_STO_OUT, prs, t) + PRS_BUY[prs, t] == demand[prs, t]
                for prs, t in keys
            ),
            name="EnergyBalance",
        )
        eff = po.storage_efficiency
        ctx.constraints["StorageBalance"] = m.addConstrs(
            (
                PRS_STO_LVL[prs, t]
                == po.storage_retention * PRS_STO_LVL[prs, prev_period(T, t)]
                + eff * PRS_STO_IN[prs, t]
                - PRS_STO_OUT[prs, t] / eff
                for prs, t in sto_keys
            ),
            name="StorageBalance",
        )

        price = retail_prices(params, ctx.setup, T, ctx.day_ahead)
        for k in keys:
            ctx.objective.addTerms(price[k] + po.grid_fee, PRS_BUY[k])
            ctx.objective.addTerms(-po.sell_price, PRS_SELL[k])
        for k in sto_keys:
            ctx.objective.addTerms(po.storage_cycle_cost, PRS_STO_IN[k])
            ctx.objective.addTerms(po.storage_cycle_cost, PRS_STO_OUT[k])

        for prs, t in keys:
            ctx.record(
                "PRS",
                index=prs,
                Time=t,
                PRS_TOTAL_GEN=total_gen[prs, t],
                PRS_SELF=PRS_SELF[prs, t],
                PRS_CU=PRS_CU[prs, t],
                PRS_NETINPUT=netinput[prs, t],
                PRS_STO_LVL=sto(PRS_STO_LVL, prs, t),
                PRS_STO_OUT=sto(PRS_STO_OUT, prs, t),
                PRS_STO_IN=sto(PRS_STO_IN, prs, t),
                PRS_BUY=PRS_BUY[prs, t],
                PRS_SELL=PRS_SELL[prs, t],
                retail_price=price[prs, t],
            )


def build_prosumer_model(
    params: Parameters,
    setup: ModelSetup,
    T: range,
    da_result: DayAheadResult,
    hooks: Optional[ModelHooks] = None,
) -> FormulatedModel:
    """Build the prosumer LP for sub-horizon T against the day-ahead prices in da_result."""
    setup.validate_against(params)
    ctx = new_context(params, setup, T, STAGE, day_ahead=da_result)
    return assemble(ctx, [ProsumerDispatch()], hooks)
