"""
Solve a FormulatedModel with Gurobi.

Non-optimal outcomes raise SolverError. For infeasible models an IIS is
computed and its members are grouped by family (the constraint/variable
name up to the first "["), so the error names e.g. "LineLimitPos" rather
than thousands of individual rows.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import gurobipy as gp
from gurobipy import GRB
from pydantic import BaseModel

from errors import SolverError
from models import FormulatedModel
from time_horizon import describe_range

logger = logging.getLogger(__name__)

STATUS_NAMES = {
    getattr(GRB.Status, name): name for name in dir(GRB.Status) if name.isupper()
}


class SolveResult(BaseModel):
    status: str
    objective: float
    runtime: float = 0.0


def status_name(code: int) -> str:
    return STATUS_NAMES.get(code, str(code))


def _family(name: str) -> str:
    return name.split("[", 1)[0]


def iis_families(model: gp.Model) -> List[str]:
    """
    Compute an IIS and return the implicated families, most frequent first.

    Variable bounds in the IIS are reported as "<var family> (bound)".
    """
    model.computeIIS()

    counts: Dict[str, int] = {}
    for c in model.getConstrs():
        if c.IISConstr:
            fam = _family(c.ConstrName)
            counts[fam] = counts.get(fam, 0) + 1
    for v in model.getVars():
        if v.IISLB or v.IISUB:
            fam = f"{_family(v.VarName)} (bound)"
            counts[fam] = counts.get(fam, 0) + 1

    for fam, count in sorted(counts.items(), key=lambda x: -x[1]):
        logger.info("  IIS %s: %d members", fam, count)
    return [fam for fam, _ in sorted(counts.items(), key=lambda x: -x[1])]


def solve_model(
    fm: FormulatedModel, attributes: Optional[Dict[str, Any]] = None
) -> SolveResult:
    """
    Optimise fm.model.

    `attributes` are handed to Model.setParam unchanged (e.g. TimeLimit,
    Threads, Method). Raises SolverError unless the status is OPTIMAL.
    """
    m = fm.model
    for key, value in (attributes or {}).items():
        m.setParam(key, value)

    label = describe_range(fm.time_range)
    logger.info("Solving %s model for %s", fm.stage, label)
    m.optimize()

    if m.Status == GRB.OPTIMAL:
        logger.info(
            "%s %s solved: objective %.4f in %.2fs", fm.stage, label, m.ObjVal, m.Runtime
        )
        return SolveResult(status="OPTIMAL", objective=m.ObjVal, runtime=m.Runtime)

    status = status_name(m.Status)
    families: List[str] = []
    if m.Status in (GRB.INFEASIBLE, GRB.INF_OR_UNBD):
        logger.warning("%s model for %s is %s; computing IIS", fm.stage, label, status)
        try:
            families = iis_families(m)
        except gp.GurobiError as exc:
            logger.warning("IIS computation failed: %s", exc)
    if not families:
        families = [status]

    raise SolverError(
        "optimisation did not reach an optimal solution",
        time_range=fm.time_range,
        stage=fm.stage,
        status=status,
        families=families,
    )
