"""
Run configuration.

A ModelSetup picks one strategy per axis:
- market scope:  ZonalMarket (NTC exchange) or NodalMarket (PhaseAngle/PTDF)
- redispatch:    NoRedispatch or DCLFRedispatch
- prosumers:     NoProsumer or ProsumerOptimization
plus the cost constants, extension hooks and solver attributes that are
passed to gurobipy unmodified.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Union

from pydantic import BaseModel, Field

from errors import ConfigurationError
from hooks import ModelHooks
from models import Parameters
from time_horizon import TimeHorizon


# ---------------------------------------------------------------------------
# Market scope
# ---------------------------------------------------------------------------


class ZonalMarket(BaseModel):
    exchange: Literal["NTC"] = "NTC"

    @property
    def name(self) -> str:
        return "Zonal"


class NodalMarket(BaseModel):
    load_flow: Literal["PhaseAngle", "PTDF"] = "PhaseAngle"

    @property
    def name(self) -> str:
        return "Nodal"


# ---------------------------------------------------------------------------
# Redispatch
# ---------------------------------------------------------------------------


class NoRedispatch(BaseModel):
    enabled: Literal[False] = False


class DCLFRedispatch(BaseModel):
    enabled: Literal[True] = True
    load_flow: Literal["PhaseAngle", "PTDF"] = "PhaseAngle"


# ---------------------------------------------------------------------------
# Prosumers
# ---------------------------------------------------------------------------


class NoProsumer(BaseModel):
    enabled: Literal[False] = False


class ProsumerOptimization(BaseModel):
    """
    Prosumers optimise self-consumption, storage use and grid exchange
    against a retail price.

    retail_type
        "buy_price": constant `buy_price`
        "flat":      mean day-ahead price of the prosumer's zone/node
        "realtime":  hourly day-ahead price of the prosumer's zone/node
    The grid fee is added on top of the retail price for every MWh bought.
    """

    enabled: Literal[True] = True
    sell_price: float
    buy_price: float = 0.0
    retail_type: Literal["buy_price", "flat", "realtime"] = "buy_price"
    grid_fee: float = 250.0
    storage_cycle_cost: float = 10.0
    storage_efficiency: float = 0.9
    storage_retention: float = 0.999


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------


class CostSettings(BaseModel):
    curtailment_cost: float = Field(
        50.0, description="Day-ahead curtailment of non-dispatchable feed-in (per MWh)."
    )
    infeasibility_cost: float = Field(
        1000.0, description="Balance curtailment and lost load (per MWh)."
    )
    shortfall_cost: float = Field(
        1000.0,
        description="Shortfall against historical/minimum generation of non-dispatchables.",
    )
    redispatch_cost: float = Field(150.0, description="Ramp up or down (per MWh).")
    redispatch_curtailment_cost: float = Field(
        1000.0, description="Additional curtailment in redispatch (per MWh)."
    )
    storage_adjust_cost: float = Field(
        150.0, description="Change of storage charge or discharge in redispatch."
    )


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


class ModelSetup(BaseModel):
    scenario: str
    time_horizon: TimeHorizon = Field(default_factory=TimeHorizon)
    market_type: Union[ZonalMarket, NodalMarket] = Field(default_factory=ZonalMarket)
    prosumer_setup: Union[NoProsumer, ProsumerOptimization] = Field(
        default_factory=NoProsumer
    )
    redispatch_setup: Union[NoRedispatch, DCLFRedispatch] = Field(
        default_factory=NoRedispatch
    )
    costs: CostSettings = Field(default_factory=CostSettings)
    hooks: ModelHooks = Field(default_factory=ModelHooks)
    solver_attributes: Dict[str, Any] = Field(default_factory=dict)
    initial_storage_fraction: float = Field(
        0.0, description="Initial storage level as a share of capacity."
    )
    write_duals: bool = True

    class Config:
        arbitrary_types_allowed = True

    @property
    def is_zonal(self) -> bool:
        return isinstance(self.market_type, ZonalMarket)

    @property
    def with_redispatch(self) -> bool:
        return isinstance(self.redispatch_setup, DCLFRedispatch)

    @property
    def with_prosumers(self) -> bool:
        return isinstance(self.prosumer_setup, ProsumerOptimization)

    def validate_against(self, params: Parameters) -> None:
        """Raise ConfigurationError if this setup cannot run on `params`."""
        self.time_horizon.validate_bounds()

        if not 0.0 <= self.initial_storage_fraction <= 1.0:
            raise ConfigurationError(
                f"initial_storage_fraction must lie in [0, 1], got "
                f"{self.initial_storage_fraction}"
            )

        sets = params.sets
        if self.is_zonal and not sets.Z:
            raise ConfigurationError("Zonal market requested but no zones are defined.")
        if not self.is_zonal and not sets.N:
            raise ConfigurationError("Nodal market requested but no nodes are defined.")
        if self.with_redispatch and not sets.N:
            raise ConfigurationError("Redispatch requested but no nodes are defined.")
        if (not self.is_zonal or self.with_redispatch) and params.network is None:
            raise ConfigurationError(
                "Nodal market or redispatch requires network matrices; "
                "run params_prep.prepare_parameters first."
            )
        if self.with_prosumers and not sets.PRS:
            raise ConfigurationError(
                "Prosumer optimisation requested but no prosumers are defined."
            )

        zones = set(sets.Z)
        for z, zz in sets.NTC:
            if z not in zones or zz not in zones:
                raise ConfigurationError(f"NTC pair ({z!r}, {zz!r}) references an unknown zone.")
