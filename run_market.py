"""
run_market.py

End-to-end driver:
prepared Parameters + ModelSetup -> per sub-horizon
  day-ahead clearing -> (prosumer optimisation) -> (redispatch)
-> result tables as CSV under result_dir/scenario_name/subrun_t{a}-t{b}/.

Sub-horizons run strictly in order; the storage level at the end of one
becomes the initial level of the next. A failing sub-horizon aborts the run.
Sub-horizons that were already persisted stay on disk.

Usage
-----
    python run_market.py params.pkl --scenario base --stop 48 --market nodal --redispatch
"""

from __future__ import annotations

import argparse
import logging
import shutil
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, Field

from errors import ConfigurationError, ModelError, SolverError
from hooks import HookContext
from market_model import STAGE as DAY_AHEAD, build_market_model
from model_setup import (
    DCLFRedispatch,
    ModelSetup,
    NodalMarket,
    NoProsumer,
    NoRedispatch,
    ProsumerOptimization,
    ZonalMarket,
)
from models import FormulatedModel, Parameters
from params_prep import prepare_parameters
from prosumer_model import STAGE as PROSUMER, build_prosumer_model
from redispatch_model import STAGE as REDISPATCH, build_redispatch_model
from results import (
    day_ahead_result,
    extract_tables,
    final_storage_levels,
    prosumer_netinput,
    write_results,
)
from solving import SolveResult, solve_model
from time_horizon import TimeHorizon, describe_range, split_horizon
from utils import load_parameters, save_model, save_parameters

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Sub-horizon state machine
# ---------------------------------------------------------------------------


class SubRunState(str, Enum):
    CREATED = "CREATED"
    BUILT = "BUILT"
    SOLVED = "SOLVED"
    RESULTS_EXTRACTED = "RESULTS_EXTRACTED"
    PERSISTED = "PERSISTED"
    FAILED = "FAILED"


# SOLVED -> BUILT: the next stage of the same sub-horizon is built.
# An infeasible or unbounded solve passes through SOLVED on its way to FAILED.
TRANSITIONS = {
    SubRunState.CREATED: {SubRunState.BUILT, SubRunState.FAILED},
    SubRunState.BUILT: {SubRunState.SOLVED, SubRunState.FAILED},
    SubRunState.SOLVED: {SubRunState.BUILT, SubRunState.RESULTS_EXTRACTED, SubRunState.FAILED},
    SubRunState.RESULTS_EXTRACTED: {SubRunState.PERSISTED, SubRunState.FAILED},
    SubRunState.PERSISTED: set(),
    SubRunState.FAILED: set(),
}


class SubRun(BaseModel):
    """One sub-horizon: its stage models, solve results and result tables."""

    index: int
    time_range: range
    initial_storage: Dict[str, float] = Field(default_factory=dict)
    state: SubRunState = SubRunState.CREATED
    history: List[SubRunState] = Field(default_factory=lambda: [SubRunState.CREATED])
    models: Dict[str, FormulatedModel] = Field(default_factory=dict)
    solves: Dict[str, SolveResult] = Field(default_factory=dict)
    tables: Dict[str, pd.DataFrame] = Field(default_factory=dict)
    final_storage: Dict[str, float] = Field(default_factory=dict)
    output_dir: Optional[Path] = None

    class Config:
        arbitrary_types_allowed = True

    @property
    def label(self) -> str:
        return describe_range(self.time_range)

    def transition(self, new: SubRunState) -> None:
        if new not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Sub-horizon {self.label}: illegal transition {self.state.value} -> {new.value}"
            )
        logger.debug("Sub-horizon %s: %s -> %s", self.label, self.state.value, new.value)
        self.state = new
        self.history.append(new)

    def build(self, stage: str, builder: Callable[[], FormulatedModel]) -> FormulatedModel:
        try:
            fm = builder()
        except Exception:
            self.transition(SubRunState.FAILED)
            raise
        self.models[stage] = fm
        self.transition(SubRunState.BUILT)
        return fm

    def solve(self, stage: str, setup: ModelSetup, params: Parameters) -> SolveResult:
        fm = self.models[stage]
        hctx = _hook_context(fm, setup, params)
        setup.hooks.run("before_solve", hctx)
        hctx.write_back(fm)
        try:
            result = solve_model(fm, setup.solver_attributes)
        except SolverError:
            self.transition(SubRunState.SOLVED)
            self.transition(SubRunState.FAILED)
            raise
        except Exception:
            self.transition(SubRunState.FAILED)
            raise
        self.solves[stage] = result
        self.transition(SubRunState.SOLVED)
        hctx = _hook_context(fm, setup, params, result.objective)
        setup.hooks.run("after_solve", hctx)
        hctx.write_back(fm)
        return result

    def extract(self, write_duals: bool = True) -> Dict[str, pd.DataFrame]:
        tables: Dict[str, pd.DataFrame] = {}
        for fm in self.models.values():
            tables.update(extract_tables(fm, write_duals))
        self.tables = tables

        family = "STO_LVL_REDISP" if REDISPATCH in self.models else "STO_LVL"
        last_stage = REDISPATCH if REDISPATCH in self.models else DAY_AHEAD
        self.final_storage = final_storage_levels(self.models[last_stage], family)
        self.transition(SubRunState.RESULTS_EXTRACTED)
        return tables

    def persist(self, scen_dir: Path) -> Path:
        self.output_dir = write_results(self.tables, scen_dir, self.time_range)
        self.transition(SubRunState.PERSISTED)
        return self.output_dir


def _hook_context(
    fm: FormulatedModel, setup: ModelSetup, params: Parameters, objective: Optional[float] = None
) -> HookContext:
    return HookContext(
        stage=fm.stage,
        time_range=fm.time_range,
        params=params,
        setup=setup,
        model=fm.model,
        variables=fm.variables,
        constraints=fm.constraints,
        records=fm.records,
        objective=objective,
    )


# ---------------------------------------------------------------------------
# Model run
# ---------------------------------------------------------------------------


class RunSummary(BaseModel):
    scenario: str
    result_dir: Path
    subruns: List[str] = Field(default_factory=list)
    objectives: Dict[str, Dict[str, float]] = Field(
        default_factory=dict, description="sub-horizon label -> stage -> objective"
    )
    final_storage: Dict[str, float] = Field(default_factory=dict)

    def objective_frame(self) -> pd.DataFrame:
        """Objectives as a DataFrame (rows: sub-horizons, columns: stages)."""
        return pd.DataFrame.from_dict(self.objectives, orient="index")


class ModelRun:
    """
    Runs one scenario over the whole time horizon.

    The scenario directory result_dir/scenario_name is created on
    construction; an existing one is only replaced with overwrite=True.
    The prepared parameters are pickled into it.
    """

    def __init__(
        self,
        params: Parameters,
        setup: ModelSetup,
        result_dir,
        scenario_name: Optional[str] = None,
        overwrite: bool = False,
        write_models: bool = False,
    ):
        self.params = prepare_parameters(params)
        self.setup = setup
        self.setup.validate_against(self.params)
        self.scenario_name = scenario_name or setup.scenario
        self.scen_dir = Path(result_dir) / self.scenario_name
        self.write_models = write_models
        self.subruns: List[SubRun] = []

        if self.scen_dir.exists():
            if not overwrite:
                raise ConfigurationError(
                    f"Result directory {self.scen_dir} already exists; pass overwrite=True "
                    "to replace it."
                )
            logger.warning("Overwriting existing result directory %s", self.scen_dir)
            shutil.rmtree(self.scen_dir)
        self.scen_dir.mkdir(parents=True)
        save_parameters(self.params, self.scen_dir / "parameters")

    def run(self) -> RunSummary:
        th = self.setup.time_horizon
        horizons = split_horizon(th)
        logger.info(
            "Scenario %s: %d sub-horizons (t%d-t%d, split %d, offset %d)",
            self.scenario_name,
            len(horizons),
            th.start,
            th.stop,
            th.split,
            th.offset,
        )

        storage: Dict[str, float] = {}
        for k, T in enumerate(horizons):
            sub = SubRun(index=k, time_range=T, initial_storage=dict(storage))
            self.subruns.append(sub)
            try:
                self.run_subrun(sub)
            except ModelError:
                logger.error(
                    "Scenario %s aborted in sub-horizon %s (%d of %d)",
                    self.scenario_name,
                    sub.label,
                    k + 1,
                    len(horizons),
                )
                raise
            storage = sub.final_storage

        summary = RunSummary(
            scenario=self.scenario_name,
            result_dir=self.scen_dir,
            subruns=[s.label for s in self.subruns],
            objectives={
                s.label: {stage: r.objective for stage, r in s.solves.items()}
                for s in self.subruns
            },
            final_storage=storage,
        )
        logger.info("Scenario %s finished; results in %s", self.scenario_name, self.scen_dir)
        return summary

    def run_subrun(self, sub: SubRun) -> SubRun:
        params, setup, T = self.params, self.setup, sub.time_range
        hooks = setup.hooks
        logger.info("Sub-horizon %s: start", sub.label)

        fm = sub.build(
            DAY_AHEAD, lambda: build_market_model(params, setup, T, sub.initial_storage, hooks)
        )
        self._maybe_write_model(sub, fm)
        sub.solve(DAY_AHEAD, setup, params)
        da = day_ahead_result(fm, setup.market_type.name)

        if setup.with_prosumers:
            fm = sub.build(PROSUMER, lambda: build_prosumer_model(params, setup, T, da, hooks))
            self._maybe_write_model(sub, fm)
            sub.solve(PROSUMER, setup, params)
            da.prs_netinput = prosumer_netinput(fm)

        if setup.with_redispatch:
            fm = sub.build(
                REDISPATCH,
                lambda: build_redispatch_model(params, setup, T, da, sub.initial_storage, hooks),
            )
            self._maybe_write_model(sub, fm)
            sub.solve(REDISPATCH, setup, params)

        sub.extract(setup.write_duals)
        sub.persist(self.scen_dir)
        logger.info("Sub-horizon %s: done (%s)", sub.label, ", ".join(sub.solves))
        return sub

    def _maybe_write_model(self, sub: SubRun, fm: FormulatedModel) -> None:
        if self.write_models:
            save_model(fm.model, self.scen_dir / "models" / f"{fm.stage}_{sub.label}")


# ---------------------------------------------------------------------------
# Script entry point
# ---------------------------------------------------------------------------


def setup_from_args(args) -> ModelSetup:
    if args.market == "zonal":
        market = ZonalMarket()
    else:
        market = NodalMarket(load_flow=args.load_flow)

    redispatch = DCLFRedispatch(load_flow=args.load_flow) if args.redispatch else NoRedispatch()

    if args.sell_price is None:
        prosumer = NoProsumer()
    else:
        prosumer = ProsumerOptimization(
            sell_price=args.sell_price, buy_price=args.buy_price, retail_type=args.retail_type
        )

    attributes = {}
    if args.time_limit is not None:
        attributes["TimeLimit"] = args.time_limit
    if args.threads is not None:
        attributes["Threads"] = args.threads

    return ModelSetup(
        scenario=args.scenario,
        time_horizon=TimeHorizon(
            start=args.start, stop=args.stop, split=args.split, offset=args.offset
        ),
        market_type=market,
        prosumer_setup=prosumer,
        redispatch_setup=redispatch,
        solver_attributes=attributes,
        initial_storage_fraction=args.initial_storage_fraction,
        write_duals=not args.no_duals,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Zonal/nodal market clearing with optional redispatch"
    )
    parser.add_argument("params", type=str, help="Pickled, prepared Parameters")
    parser.add_argument("--scenario", type=str, default="base")
    parser.add_argument("--result-dir", type=str, default="results")
    parser.add_argument("--start", type=int, default=1)
    parser.add_argument("--stop", type=int, default=24)
    parser.add_argument("--split", type=int, default=24, help="Sub-horizon length")
    parser.add_argument("--offset", type=int, default=0, help="Leading sub-horizon length")
    parser.add_argument("--market", choices=["zonal", "nodal"], default="zonal")
    parser.add_argument("--load-flow", choices=["PhaseAngle", "PTDF"], default="PhaseAngle")
    parser.add_argument("--redispatch", action="store_true", default=False)
    parser.add_argument("--sell-price", type=float, default=None,
                        help="Enables prosumer optimisation")
    parser.add_argument("--buy-price", type=float, default=0.0)
    parser.add_argument("--retail-type", choices=["buy_price", "flat", "realtime"],
                        default="buy_price")
    parser.add_argument("--initial-storage-fraction", type=float, default=0.0)
    parser.add_argument("--time-limit", type=float, default=None)
    parser.add_argument("--threads", type=int, default=None)
    parser.add_argument("--no-duals", action="store_true", default=False)
    parser.add_argument("--write-models", action="store_true", default=False)
    parser.add_argument("--overwrite", action="store_true", default=False)
    return parser


def main(argv=None) -> RunSummary:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
    )
    args = build_parser().parse_args(argv)
    params = load_parameters(args.params)
    setup = setup_from_args(args)

    run = ModelRun(
        params,
        setup,
        args.result_dir,
        overwrite=args.overwrite,
        write_models=args.write_models,
    )
    summary = run.run()
    print(summary.objective_frame().to_string())
    return summary


if __name__ == "__main__":
    main()
