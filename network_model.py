"""
Network contributions shared by the day-ahead and redispatch builders.

Every strategy adds its variables/constraints to the BuildContext and fills
ctx.net_import[(area, t)], the net import of a zone or node that the balance
strategy adds to the supply side.

Sign convention (nodal): INJECTION[n, t] is the net export of node n,
    INJECTION[n, t] = sum_l A[l, n] * LINEFLOW[l, t] + sum_dc A_dc[dc, n] * DCLINEFLOW[dc, t]
so ctx.net_import[(n, t)] = -INJECTION[n, t].
"""

from __future__ import annotations

import logging

import gurobipy as gp
from gurobipy import GRB

from models import BuildContext

logger = logging.getLogger(__name__)


def _dc_flows(ctx: BuildContext):
    """F_POS/F_NEG variables and the DCLINEFLOW expressions."""
    params = ctx.params
    T = ctx.time_range
    m = ctx.model
    DC = params.sets.DC

    keys = [(dc, t) for dc in DC for t in T]
    ub = [float(params.require("dcline_capacity", dc)) for dc, _ in keys]
    F_POS = m.addVars(keys, lb=0.0, ub=ub, name="F_POS")
    F_NEG = m.addVars(keys, lb=0.0, ub=ub, name="F_NEG")
    flow = {k: F_POS[k] - F_NEG[k] for k in keys}

    ctx.variables["F_POS"] = F_POS
    ctx.variables["F_NEG"] = F_NEG
    ctx.expressions["DCLINEFLOW"] = flow

    for dc, t in keys:
        ctx.record(
            ctx.table_name("DCLINEFLOW"),
            index=dc,
            Time=t,
            DCLINEFLOW=flow[dc, t],
            line_capacity=params.dcline_capacity[dc],
        )
    return flow


def _dc_export(ctx: BuildContext, flow, n: str, t: int) -> gp.LinExpr:
    net = ctx.params.network
    j = net.node_index[n]
    expr = gp.LinExpr()
    for d, dc in enumerate(net.dcline_ids):
        a = net.dc_incidence[d, j]
        if a != 0.0:
            expr += float(a) * flow[dc, t]
    return expr


def _line_limits(ctx: BuildContext, lineflow) -> None:
    params = ctx.params
    keys = list(lineflow.keys())
    cap = {l: float(params.require("acline_capacity", l)) for l in params.sets.L}

    ctx.constraints["LineLimitPos"] = ctx.model.addConstrs(
        (lineflow[l, t] <= cap[l] for l, t in keys), name="LineLimitPos"
    )
    ctx.constraints["LineLimitNeg"] = ctx.model.addConstrs(
        (lineflow[l, t] >= -cap[l] for l, t in keys), name="LineLimitNeg"
    )

    for l, t in keys:
        ctx.record(
            ctx.table_name("LINEFLOW"),
            index=l,
            Time=t,
            LINEFLOW=lineflow[l, t],
            line_capacity=cap[l],
        )


class PhaseAngleNetwork:
    """
    DC load flow in voltage angles:
        LINEFLOW[l, t] = b_l * sum_n A[l, n] * THETA[n, t]
    with THETA pinned to 0 at every slack node and every node without AC lines.
    """

    name = "PhaseAngle"

    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        net = params.network
        T = ctx.time_range
        m = ctx.model
        N = net.node_ids

        THETA = m.addVars(
            [(n, t) for n in N for t in T], lb=-GRB.INFINITY, ub=GRB.INFINITY, name="THETA"
        )
        for n in net.reference_nodes:
            for t in T:
                THETA[n, t].lb = 0.0
                THETA[n, t].ub = 0.0
        ctx.variables["THETA"] = THETA

        lineflow = {}
        for ell, l in enumerate(net.line_ids):
            row = net.h[ell]
            for t in T:
                expr = gp.LinExpr()
                for j, n in enumerate(N):
                    if row[j] != 0.0:
                        expr.addTerms(float(row[j]), THETA[n, t])
                lineflow[l, t] = expr
        ctx.expressions["LINEFLOW"] = lineflow

        dcflow = _dc_flows(ctx)

        injection = {}
        for j, n in enumerate(N):
            for t in T:
                expr = gp.LinExpr()
                for ell, l in enumerate(net.line_ids):
                    a = net.incidence[ell, j]
                    if a != 0.0:
                        expr += float(a) * lineflow[l, t]
                expr += _dc_export(ctx, dcflow, n, t)
                injection[n, t] = expr
                ctx.net_import[(n, t)] = -expr
        ctx.expressions["INJECTION"] = injection

        _line_limits(ctx, lineflow)

        for n in N:
            for t in T:
                ctx.record(
                    ctx.table_name("INJECTION"),
                    index=n,
                    Time=t,
                    INJECTION=injection[n, t],
                    THETA=THETA[n, t],
                )


class PTDFNetwork:
    """
    DC load flow via PTDF:
        LINEFLOW[l, t] = sum_n ptdf[l, n] * AC[n, t]
    where AC[n, t] = INJECTION[n, t] - DC export of n. AC injections of each
    island sum to zero; nodes without AC lines have no AC injection.
    """

    name = "PTDF"

    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        net = params.network
        T = ctx.time_range
        m = ctx.model
        N = net.node_ids

        INJ = m.addVars(
            [(n, t) for n in N for t in T], lb=-GRB.INFINITY, ub=GRB.INFINITY, name="INJ"
        )
        ctx.variables["INJ"] = INJ

        dcflow = _dc_flows(ctx)
        ac = {}
        for n in N:
            for t in T:
                ac[n, t] = INJ[n, t] - _dc_export(ctx, dcflow, n, t)
                ctx.net_import[(n, t)] = -1.0 * INJ[n, t]

        ctx.constraints["InjectionBalance"] = m.addConstrs(
            (
                gp.quicksum(ac[n, t] for n in net.islands[k]) == 0
                for k in range(len(net.islands))
                for t in T
            ),
            name="InjectionBalance",
        )
        ctx.constraints["IsolatedInjection"] = m.addConstrs(
            (ac[n, t] == 0 for n in net.omitted_nodes for t in T),
            name="IsolatedInjection",
        )

        lineflow = {}
        for ell, l in enumerate(net.line_ids):
            row = net.ptdf[ell]
            for t in T:
                expr = gp.LinExpr()
                for j, n in enumerate(N):
                    if row[j] != 0.0:
                        expr += float(row[j]) * ac[n, t]
                lineflow[l, t] = expr
        ctx.expressions["LINEFLOW"] = lineflow
        ctx.expressions["INJECTION"] = {k: 1.0 * v for k, v in INJ.items()}

        _line_limits(ctx, lineflow)

        for n in N:
            for t in T:
                ctx.record(
                    ctx.table_name("INJECTION"),
                    index=n,
                    Time=t,
                    INJECTION=INJ[n, t],
                    THETA=None,
                )


class NTCExchange:
    """
    Zonal exchange with net transfer capacities:
        0 <= EX[z, zz, t] <= ntc(z, zz)
        EXCHANGE[z, t] = sum imports - sum exports + fixed_exchange[z][t]
    EXCHANGE is the net import of zone z.
    """

    name = "NTC"

    def contribute(self, ctx: BuildContext) -> None:
        params = ctx.params
        T = ctx.time_range
        m = ctx.model

        keys = [(z, zz, t) for z, zz in params.sets.NTC for t in T]
        ub = [float(params.require("ntc", (z, zz))) for z, zz, _ in keys]
        EX = m.addVars(keys, lb=0.0, ub=ub, name="EX")
        ctx.variables["EX"] = EX

        exchange = {}
        for z in params.sets.Z:
            for t in T:
                expr = gp.LinExpr()
                for zz in params.importing_ntcs.get(z, []):
                    expr.addTerms(1.0, EX[zz, z, t])
                for zz in params.exporting_ntcs.get(z, []):
                    expr.addTerms(-1.0, EX[z, zz, t])
                if z in params.fixed_exchange:
                    expr.addConstant(float(params.fixed_exchange[z][t]))
                exchange[z, t] = expr
                ctx.net_import[(z, t)] = expr
        ctx.expressions["EXCHANGE"] = exchange

        for z, zz, t in keys:
            ctx.record("NTC", From=z, To=zz, Time=t, NTC=EX[z, zz, t])
        for z in params.sets.Z:
            for t in T:
                ctx.record("EXCHANGE", index=z, Time=t, EXCHANGE=exchange[z, t])


def network_strategy(load_flow: str):
    """PhaseAngleNetwork or PTDFNetwork for a load-flow name."""
    if load_flow == "PhaseAngle":
        return PhaseAngleNetwork()
    if load_flow == "PTDF":
        return PTDFNetwork()
    raise ValueError(f"Unknown load flow formulation {load_flow!r}")
