"""
Data model for zonal/nodal market clearing and redispatch.

Defines the canonical pydantic containers:

- `FixedProfile` / `HourlyProfile`: time-dependent parameters. Indexing
  uses the 1-based timestep of the time horizon (t = 1 is the first hour).
- `Sets`: identifier collections (plants, nodes, lines, zones, ...).
- `NetworkMatrices`: immutable result of the one-time network
  precomputation (incidence, susceptance, PTDF). Built by
  `network_ptdf.build_dc_ptdf` and shared by reference across sub-horizons.
- `Parameters`: everything a model builder needs. Filled by an external
  loader, completed once by `params_prep.prepare_parameters` and treated as
  read-only afterwards.

Design choices:
- Maps are keyed by external string ids (plant "coal_1", node "n3", ...),
  not integer positions; numpy arrays appear only in NetworkMatrices.
- A missing key at build time is an upstream validation gap and surfaces as
  `DataContractViolation` via `Parameters.require`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from pydantic import BaseModel, Field

from errors import DataContractViolation


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class FixedProfile(BaseModel):
    """Constant value for every timestep. len() is 1."""

    value: float

    def __getitem__(self, t: int) -> float:
        return self.value

    def __len__(self) -> int:
        return 1

    def scaled(self, factor: float) -> "FixedProfile":
        return FixedProfile(value=self.value * factor)

    def shifted(self, offset: int) -> "FixedProfile":
        return self

    def combine(self, other: "Profile") -> "Profile":
        """Element-wise sum; stays Fixed only if both operands are Fixed."""
        if isinstance(other, FixedProfile):
            return FixedProfile(value=self.value + other.value)
        return other.combine(self)


class HourlyProfile(BaseModel):
    """One value per timestep; values[0] belongs to t = 1."""

    values: List[float]

    def __getitem__(self, t: int) -> float:
        if t < 1 or t > len(self.values):
            raise IndexError(
                f"HourlyProfile has {len(self.values)} values, timestep {t} requested"
            )
        return self.values[t - 1]

    def __len__(self) -> int:
        return len(self.values)

    def scaled(self, factor: float) -> "HourlyProfile":
        return HourlyProfile(values=[v * factor for v in self.values])

    def shifted(self, offset: int) -> "HourlyProfile":
        """Profile whose timestep t carries this profile's value at t + offset."""
        if offset < 0 or offset >= len(self.values):
            raise IndexError(f"cannot shift {len(self.values)} values by {offset}")
        return HourlyProfile(values=self.values[offset:])

    def combine(self, other: "Profile") -> "HourlyProfile":
        if isinstance(other, FixedProfile):
            return HourlyProfile(values=[v + other.value for v in self.values])
        n = max(len(self), len(other))
        return HourlyProfile(
            values=[self[t] + other[t] for t in range(1, n + 1)]
        )


Profile = Union[FixedProfile, HourlyProfile]


def as_profile(x: Union[Profile, float, int, Sequence[float]]) -> Profile:
    """Lift a scalar or a sequence into a Profile; Profiles pass through."""
    if isinstance(x, (FixedProfile, HourlyProfile)):
        return x
    if isinstance(x, (int, float, np.floating, np.integer)):
        return FixedProfile(value=float(x))
    return HourlyProfile(values=[float(v) for v in x])


# ---------------------------------------------------------------------------
# Sets
# ---------------------------------------------------------------------------


class Sets(BaseModel):
    """
    Index sets.

    P       all plants
    S       storages (subset of P)
    DISP    dispatchable plants (storages excluded)
    NDISP   non-dispatchable plants
    Z, N    zones, nodes
    L, DC   AC lines, DC lines
    NTC     ordered (zone, zone) exchange pairs
    PRS     prosumers (subset of P), PRS_STO prosumers with storage
    """

    P: List[str] = Field(default_factory=list)
    S: List[str] = Field(default_factory=list)
    DISP: List[str] = Field(default_factory=list)
    NDISP: List[str] = Field(default_factory=list)
    Z: List[str] = Field(default_factory=list)
    N: List[str] = Field(default_factory=list)
    L: List[str] = Field(default_factory=list)
    DC: List[str] = Field(default_factory=list)
    NTC: List[Tuple[str, str]] = Field(default_factory=list)
    PRS: List[str] = Field(default_factory=list)
    PRS_STO: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Network matrices
# ---------------------------------------------------------------------------


class NetworkMatrices(BaseModel):
    """
    Immutable network-derived matrices.

    Conventions
    -----------
    - incidence[l, n] = +1 at the line's origin, -1 at its destination.
    - h = diag(bvector) @ incidence           shape (L, N)
    - b = incidence.T @ h                     shape (N, N), symmetric
    - ptdf = h @ b_inv_full                   shape (L, N)
      with zero columns for slack and omitted nodes.
    - A positive line flow runs from origin to destination.
    """

    node_ids: List[str]
    line_ids: List[str]
    dcline_ids: List[str] = Field(default_factory=list)

    incidence: np.ndarray
    dc_incidence: np.ndarray
    bvector: np.ndarray
    h: np.ndarray
    b: np.ndarray
    ptdf: np.ndarray

    slack_nodes: List[str] = Field(
        ..., description="Reference node actually used for each AC island."
    )
    omitted_nodes: List[str] = Field(
        default_factory=list,
        description="Nodes without any AC line (isolated or DC-only).",
    )
    islands: List[List[str]] = Field(
        default_factory=list, description="AC-connected node groups with lines."
    )

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    @property
    def node_index(self) -> Dict[str, int]:
        return {n: i for i, n in enumerate(self.node_ids)}

    @property
    def line_index(self) -> Dict[str, int]:
        return {l: i for i, l in enumerate(self.line_ids)}

    @property
    def reference_nodes(self) -> List[str]:
        """Nodes whose phase angle is pinned to zero."""
        return list(self.slack_nodes) + list(self.omitted_nodes)

    def ptdf_entry(self, line: str, node: str) -> float:
        return float(self.ptdf[self.line_index[line], self.node_index[node]])


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


class Parameters(BaseModel):
    """
    Central parameter object.

    Plant-level maps are keyed by plant id, node maps by node id, etc.
    Fields marked "derived" are filled by `params_prep.prepare_parameters`.
    """

    sets: Sets = Field(default_factory=Sets)

    # ---------- Plants ----------
    gmax: Dict[str, float] = Field(default_factory=dict)
    eta: Dict[str, float] = Field(default_factory=dict)
    gmax_storage: Dict[str, float] = Field(
        default_factory=dict, description="Charging power of storages (MW)."
    )
    storage: Dict[str, float] = Field(
        default_factory=dict, description="Storage energy capacity (MWh)."
    )
    mc: Dict[str, Profile] = Field(default_factory=dict)
    avail: Dict[str, Profile] = Field(default_factory=dict)
    avail_planttype_nodal: Dict[Tuple[str, str], Profile] = Field(default_factory=dict)
    avail_planttype_zonal: Dict[Tuple[str, str], Profile] = Field(default_factory=dict)
    plant_type: Dict[str, str] = Field(default_factory=dict)
    plant2node: Dict[str, str] = Field(default_factory=dict)

    # ---------- Plant types ----------
    dispatchable: List[str] = Field(default_factory=list)
    nondispatchable: List[str] = Field(default_factory=list)
    storage_types: List[str] = Field(default_factory=list)
    prosumer_types: List[str] = Field(default_factory=list)
    fuel_price: Dict[str, Profile] = Field(default_factory=dict)
    co2content: Dict[str, float] = Field(default_factory=dict)
    historical_generation: Dict[str, Profile] = Field(default_factory=dict)
    min_generation: Dict[str, Profile] = Field(default_factory=dict)

    # ---------- Nodes ----------
    slack: List[str] = Field(default_factory=list)
    node2zone: Dict[str, str] = Field(default_factory=dict)

    # ---------- AC lines ----------
    acline_capacity: Dict[str, float] = Field(default_factory=dict)
    resistance: Dict[str, float] = Field(default_factory=dict)
    reactance: Dict[str, float] = Field(default_factory=dict)
    bvector: Dict[str, float] = Field(
        default_factory=dict, description="Derived (memoised) line susceptance."
    )
    line_start: Dict[str, str] = Field(default_factory=dict)
    line_end: Dict[str, str] = Field(default_factory=dict)

    # ---------- DC lines ----------
    dcline_capacity: Dict[str, float] = Field(default_factory=dict)
    dc_start: Dict[str, str] = Field(default_factory=dict)
    dc_end: Dict[str, str] = Field(default_factory=dict)

    # ---------- Demand / exchange ----------
    nodal_load: Dict[str, Profile] = Field(default_factory=dict)
    inflow: Dict[str, Profile] = Field(default_factory=dict)
    fixed_exchange: Dict[str, Profile] = Field(
        default_factory=dict, description="Exogenous net import per zone (MW)."
    )
    ntc: Dict[Tuple[str, str], float] = Field(default_factory=dict)

    # ---------- Prosumers ----------
    prs_demand: Dict[str, Profile] = Field(default_factory=dict)
    nodal_load_no_prs: Dict[str, Profile] = Field(default_factory=dict)

    # ---------- Derived membership indexes ----------
    nodes_in_zone: Dict[str, List[str]] = Field(default_factory=dict)
    plants_in_zone: Dict[str, List[str]] = Field(default_factory=dict)
    storages_in_zone: Dict[str, List[str]] = Field(default_factory=dict)
    plants_in_node: Dict[str, List[str]] = Field(default_factory=dict)
    storages_in_node: Dict[str, List[str]] = Field(default_factory=dict)
    plant2zone: Dict[str, str] = Field(default_factory=dict)
    importing_ntcs: Dict[str, List[str]] = Field(default_factory=dict)
    exporting_ntcs: Dict[str, List[str]] = Field(default_factory=dict)

    # ---------- Derived network matrices ----------
    network: Optional[NetworkMatrices] = None

    class Config:
        arbitrary_types_allowed = True

    # ---------- Lookups ----------
    def require(self, mapping: str, key):
        """
        Return getattr(self, mapping)[key].

        Raises DataContractViolation naming the mapping and entity when the
        key is absent.
        """
        try:
            return getattr(self, mapping)[key]
        except KeyError:
            raise DataContractViolation(mapping, key) from None

    def available_capacity(self, p: str, t: int) -> float:
        """avail(p, t) * gmax(p)."""
        return self.require("avail", p)[t] * self.require("gmax", p)

    def load_at(self, n: str, t: int) -> float:
        """Nodal load; nodes without a load profile carry zero."""
        prof = self.nodal_load.get(n)
        return 0.0 if prof is None else float(prof[t])

    def load_no_prs_at(self, n: str, t: int) -> float:
        """Nodal load without prosumer demand; falls back to the full load."""
        prof = self.nodal_load_no_prs.get(n)
        return self.load_at(n, t) if prof is None else float(prof[t])

    def zonal_load(self, z: str, t: int) -> float:
        return sum(self.load_at(n, t) for n in self.require("nodes_in_zone", z))

    def inflow_at(self, s: str, t: int) -> float:
        prof = self.inflow.get(s)
        return 0.0 if prof is None else float(prof[t])


# ---------------------------------------------------------------------------
# Formulated models
# ---------------------------------------------------------------------------


class FormulatedModel(BaseModel):
    """
    A built (not yet solved) optimisation model for one stage of one
    sub-horizon.

    variables / constraints / expressions are keyed by family name
    ("GEN", "ZonalMarketBalance", "LINEFLOW", ...). `records` holds the rows
    of the named result tables; cells may be gurobipy Var, LinExpr or Constr
    objects and are evaluated by `results.extract_tables` after the solve.
    """

    model: Any
    stage: str
    time_range: range
    variables: Dict[str, Any] = Field(default_factory=dict)
    constraints: Dict[str, Any] = Field(default_factory=dict)
    expressions: Dict[str, Any] = Field(default_factory=dict)
    records: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)

    class Config:
        arbitrary_types_allowed = True


class BuildContext(FormulatedModel):
    """
    Mutable state shared by the strategy components while a model is built.

    plant_injection[(p, t)]  net output of plant p into its node (LinExpr)
    net_import[(a, t)]       net import of area a (zone or node) from the network
    objective                LinExpr the components add cost terms to
    """

    params: Parameters
    setup: Any
    initial_storage: Dict[str, float] = Field(default_factory=dict)
    day_ahead: Any = None
    plant_injection: Dict[Tuple[str, int], Any] = Field(default_factory=dict)
    net_import: Dict[Tuple[str, int], Any] = Field(default_factory=dict)
    objective: Any = None

    def table_name(self, base: str) -> str:
        """Network tables of later stages get a stage suffix (LINEFLOW_REDISP)."""
        return base if self.stage == "DayAhead" else f"{base}_REDISP"

    def record(self, table: str, **row) -> None:
        self.records.setdefault(table, []).append(row)

    def add_injection(self, p: str, t: int, expr) -> None:
        current = self.plant_injection.get((p, t))
        self.plant_injection[(p, t)] = expr if current is None else current + expr

    def finish(self) -> FormulatedModel:
        return FormulatedModel(
            model=self.model,
            stage=self.stage,
            time_range=self.time_range,
            variables=self.variables,
            constraints=self.constraints,
            expressions=self.expressions,
            records=self.records,
        )
