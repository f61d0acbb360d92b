"""
Result tables.

Builders record rows whose cells may be gurobipy objects; after an optimal
solve `extract_tables` evaluates them into pandas DataFrames:

    Var     -> .X
    LinExpr -> .getValue()
    Constr  -> .Pi   (dual; only kept when duals are requested)

Tables are long-format with an `index` (or Zone/Node/From/To) column and a
`Time` column. Day-ahead tables: GEN, CHARGE, STO_LVL, EXCHANGE, NTC,
INJECTION, LINEFLOW, DCLINEFLOW, ZonalMarketBalance / NodalMarketBalance.
Redispatch: REDISP, STO_LVL_REDISP, NodalRedispatchBalance and the network
tables with an _REDISP suffix. Prosumer stage: PRS.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Tuple

import gurobipy as gp
import pandas as pd
from pydantic import BaseModel, Field

from models import FormulatedModel
from time_horizon import describe_range

logger = logging.getLogger(__name__)

Key = Tuple[str, int]


def _value(cell):
    if isinstance(cell, gp.Var):
        return cell.X
    if isinstance(cell, gp.LinExpr):
        return cell.getValue()
    if isinstance(cell, gp.Constr):
        return cell.Pi
    return cell


def extract_tables(fm: FormulatedModel, write_duals: bool = True) -> Dict[str, pd.DataFrame]:
    """Evaluate the recorded rows of a solved model into DataFrames."""
    tables = {}
    for name, rows in fm.records.items():
        df = pd.DataFrame([{k: _value(v) for k, v in row.items()} for row in rows])
        if not write_duals and "price" in df.columns:
            df = df.drop(columns=["price"])
        tables[name] = df
    return tables


def _values(tupledict) -> Dict:
    # clipped to the variable bounds, later stages and sub-horizons take them as fixed data
    return {k: min(max(v.X, v.LB), v.UB) for k, v in tupledict.items()}


class DayAheadResult(BaseModel):
    """
    Solved day-ahead quantities that later stages of the same sub-horizon
    take as fixed parameters.

    balance_cu / balance_ll / price are keyed by (area, t), where area is a
    zone for zonal markets and a node for nodal markets.
    """

    scope: str
    disp_generation: Dict[Key, float] = Field(default_factory=dict)
    ndisp_cu: Dict[Key, float] = Field(default_factory=dict)
    sto_generation: Dict[Key, float] = Field(default_factory=dict)
    sto_charge: Dict[Key, float] = Field(default_factory=dict)
    balance_cu: Dict[Key, float] = Field(default_factory=dict)
    balance_ll: Dict[Key, float] = Field(default_factory=dict)
    price: Dict[Key, float] = Field(default_factory=dict)
    prs_netinput: Dict[Key, float] = Field(default_factory=dict)


def day_ahead_result(fm: FormulatedModel, scope: str) -> DayAheadResult:
    """Collect primal values (and balance duals as prices) of a solved day-ahead model."""
    v = fm.variables
    balance = "ZonalMarketBalance" if scope == "Zonal" else "NodalMarketBalance"
    return DayAheadResult(
        scope=scope,
        disp_generation=_values(v.get("GEN", {})),
        ndisp_cu=_values(v.get("CU", {})),
        sto_generation=_values(v.get("STO_GEN", {})),
        sto_charge=_values(v.get("CHARGE", {})),
        balance_cu=_values(v.get("BALANCE_CU", {})),
        balance_ll=_values(v.get("BALANCE_LL", {})),
        price={k: c.Pi for k, c in fm.constraints.get(balance, {}).items()},
    )


def prosumer_netinput(fm: FormulatedModel) -> Dict[Key, float]:
    return {k: e.getValue() for k, e in fm.expressions.get("PRS_NETINPUT", {}).items()}


def final_storage_levels(fm: FormulatedModel, family: str = "STO_LVL") -> Dict[str, float]:
    """Storage level at the last timestep of the sub-horizon, per storage."""
    last = fm.time_range[-1]
    levels = _values(fm.variables.get(family, {}))
    return {s: level for (s, t), level in levels.items() if t == last}


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def subrun_dir(scen_dir: Path, T: range) -> Path:
    return Path(scen_dir) / f"subrun_{describe_range(T)}"


def write_results(tables: Dict[str, pd.DataFrame], scen_dir: Path, T: range) -> Path:
    """Write every table to scen_dir/subrun_t{first}-t{last}/{name}.csv."""
    out = subrun_dir(scen_dir, T)
    out.mkdir(parents=True, exist_ok=True)
    for name, df in tables.items():
        path = out / f"{name}.csv"
        df.to_csv(path, index=False)
        logger.debug("Wrote %s (%d rows)", path, len(df))
    logger.info("Saved %d result tables to %s", len(tables), out)
    return out


def _first_timestep(path: Path) -> int:
    label = path.name[len("subrun_t"):]
    return int(label.split("-", 1)[0])


def read_results(scen_dir: Path) -> Dict[str, pd.DataFrame]:
    """Concatenate the tables of all sub-horizon folders, in time order."""
    scen_dir = Path(scen_dir)
    folders = sorted(
        (p for p in scen_dir.iterdir() if p.is_dir() and p.name.startswith("subrun_t")),
        key=_first_timestep,
    )

    parts: Dict[str, list] = {}
    for folder in folders:
        for csv in sorted(folder.glob("*.csv")):
            parts.setdefault(csv.stem, []).append(pd.read_csv(csv))

    return {
        name: pd.concat(frames, ignore_index=True) for name, frames in parts.items()
    }
