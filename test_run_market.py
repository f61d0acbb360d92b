"""
End-to-end runs through ModelRun: decomposition, persistence, state machine
and failure handling.
"""

import gurobipy as gp
import numpy as np
import pytest

from conftest import make_storage_node, make_triangle
from errors import ConfigurationError, SolverError
from hooks import ModelHooks
from model_setup import DCLFRedispatch, ModelSetup, ProsumerOptimization
from models import FixedProfile, HourlyProfile
from results import read_results
from run_market import ModelRun, SubRun, SubRunState, build_parser, main, setup_from_args
from time_horizon import TimeHorizon
from utils import load_parameters, save_parameters


def _run(tmp_path, params, name, **setup_kwargs):
    setup = ModelSetup(scenario=name, **setup_kwargs)
    return ModelRun(params, setup, tmp_path).run()


def test_decomposition_matches_single_horizon(tmp_path):
    whole = _run(
        tmp_path, make_storage_node(), "whole", time_horizon=TimeHorizon(stop=48, split=48)
    )
    split = _run(
        tmp_path, make_storage_node(), "split", time_horizon=TimeHorizon(stop=48, split=24)
    )

    assert whole.subruns == ["t1-t48"]
    assert split.subruns == ["t1-t24", "t25-t48"]

    total = lambda s: sum(v["DayAhead"] for v in s.objectives.values())
    assert np.isclose(total(whole), total(split))

    # battery throughput is not unique, thermal totals are
    gen_whole = read_results(tmp_path / "whole")["GEN"].groupby("index")["GEN"].sum()
    gen_split = read_results(tmp_path / "split")["GEN"].groupby("index")["GEN"].sum()
    for plant in ("coal", "gas"):
        assert np.isclose(gen_whole[plant], gen_split[plant])


def test_storage_level_is_carried(tmp_path):
    params = make_storage_node(days=1)
    params.nodal_load["n1"] = FixedProfile(value=0.0)
    run = ModelRun(
        params,
        ModelSetup(
            scenario="carry",
            time_horizon=TimeHorizon(stop=4, split=2),
            initial_storage_fraction=1.0,
        ),
        tmp_path,
    )
    run.run()
    first, second = run.subruns
    assert first.initial_storage == {}
    assert second.initial_storage == pytest.approx(first.final_storage)
    assert np.isclose(first.final_storage["bat"], 40.0)


def test_run_with_prosumers_and_redispatch(tmp_path):
    setup = ModelSetup(
        scenario="full",
        time_horizon=TimeHorizon(stop=2, split=1),
        prosumer_setup=ProsumerOptimization(sell_price=5.0),
        redispatch_setup=DCLFRedispatch(),
    )
    run = ModelRun(make_triangle(with_prosumer=True), setup, tmp_path)
    summary = run.run()

    assert summary.subruns == ["t1-t1", "t2-t2"]
    assert set(summary.objectives["t1-t1"]) == {"DayAhead", "Prosumer", "Redispatch"}
    assert all(s.state is SubRunState.PERSISTED for s in run.subruns)

    tables = read_results(tmp_path / "full")
    assert {"GEN", "PRS", "REDISP", "NodalRedispatchBalance", "LINEFLOW_REDISP"} <= set(tables)
    assert len(tables["PRS"]) == 2
    assert summary.objective_frame().shape == (2, 3)


def test_parameters_are_pickled(tmp_path):
    ModelRun(make_triangle(), ModelSetup(scenario="p"), tmp_path)
    params = load_parameters(tmp_path / "p" / "parameters")
    assert params.network is not None
    assert params.sets.N == ["n1", "n2", "n3"]


def test_existing_directory_needs_overwrite(tmp_path):
    setup = ModelSetup(scenario="dup", time_horizon=TimeHorizon(stop=1, split=1))
    ModelRun(make_triangle(), setup, tmp_path).run()

    with pytest.raises(ConfigurationError):
        ModelRun(make_triangle(), setup, tmp_path)

    ModelRun(make_triangle(), setup, tmp_path, overwrite=True)
    assert not (tmp_path / "dup" / "subrun_t1-t1").exists()


def test_failed_subhorizon_keeps_earlier_results(tmp_path):
    params = make_triangle(l13_capacity=50.0, peak_gmax=0.0)
    # first hour is uncongested
    params.nodal_load["n3"] = HourlyProfile(values=[45.0, 90.0])
    setup = ModelSetup(
        scenario="fail",
        time_horizon=TimeHorizon(stop=2, split=1),
        redispatch_setup=DCLFRedispatch(),
    )
    run = ModelRun(params, setup, tmp_path)

    with pytest.raises(SolverError) as exc:
        run.run()

    assert exc.value.time_range == range(2, 3)
    assert [s.state for s in run.subruns] == [SubRunState.PERSISTED, SubRunState.FAILED]
    # the infeasible redispatch is solved before the sub-horizon fails
    assert run.subruns[1].history[-3:] == [
        SubRunState.BUILT,
        SubRunState.SOLVED,
        SubRunState.FAILED,
    ]
    assert (tmp_path / "fail" / "subrun_t1-t1" / "REDISP.csv").exists()
    assert not (tmp_path / "fail" / "subrun_t2-t2").exists()


def test_illegal_transition():
    sub = SubRun(index=0, time_range=range(1, 2))
    with pytest.raises(RuntimeError):
        sub.transition(SubRunState.SOLVED)
    sub.transition(SubRunState.BUILT)
    sub.transition(SubRunState.FAILED)
    with pytest.raises(RuntimeError):
        sub.transition(SubRunState.BUILT)


def test_cli(tmp_path):
    path = save_parameters(make_triangle(), tmp_path / "triangle")
    summary = main(
        [
            str(path),
            "--scenario", "cli",
            "--result-dir", str(tmp_path / "out"),
            "--stop", "2",
            "--split", "1",
            "--market", "nodal",
            "--load-flow", "PTDF",
            "--redispatch",
            "--threads", "1",
            "--write-models",
        ]
    )
    assert summary.subruns == ["t1-t1", "t2-t2"]
    assert (tmp_path / "out" / "cli" / "models" / "DayAhead_t1-t1.lp").exists()


def test_setup_from_args():
    args = build_parser().parse_args(
        ["p.pkl", "--sell-price", "3", "--retail-type", "flat", "--time-limit", "60"]
    )
    setup = setup_from_args(args)
    assert setup.with_prosumers
    assert setup.prosumer_setup.retail_type == "flat"
    assert setup.solver_attributes == {"TimeLimit": 60.0}
    assert setup.is_zonal


def test_solver_exception_marks_subrun_failed(tmp_path):
    setup = ModelSetup(
        scenario="bad_attr",
        time_horizon=TimeHorizon(stop=1, split=1),
        solver_attributes={"NoSuchParameter": 1},
    )
    run = ModelRun(make_triangle(), setup, tmp_path)

    with pytest.raises(gp.GurobiError):
        run.run()
    assert run.subruns[0].history == [
        SubRunState.CREATED,
        SubRunState.BUILT,
        SubRunState.FAILED,
    ]


def test_solve_hooks_run_for_each_stage(tmp_path):
    calls = []

    def record_objective(ctx):
        calls.append(("after", ctx.stage, ctx.objective))
        ctx.record(f"OBJ_{ctx.stage.upper()}", Time=ctx.time_range[0], objective=ctx.objective)

    hooks = ModelHooks()
    hooks.register("before_solve", lambda ctx: calls.append(("before", ctx.stage, ctx.objective)))
    hooks.register("after_solve", record_objective)
    setup = ModelSetup(
        scenario="hooks",
        time_horizon=TimeHorizon(stop=1, split=1),
        redispatch_setup=DCLFRedispatch(),
        hooks=hooks,
    )
    summary = ModelRun(make_triangle(), setup, tmp_path).run()

    assert [c[:2] for c in calls] == [
        ("before", "DayAhead"),
        ("after", "DayAhead"),
        ("before", "Redispatch"),
        ("after", "Redispatch"),
    ]
    assert calls[0][2] is None
    assert calls[1][2] == pytest.approx(summary.objectives["t1-t1"]["DayAhead"])
    assert calls[3][2] == pytest.approx(summary.objectives["t1-t1"]["Redispatch"])

    tables = read_results(tmp_path / "hooks")
    assert tables["OBJ_DAYAHEAD"]["objective"].tolist() == pytest.approx(
        [summary.objectives["t1-t1"]["DayAhead"]]
    )
    assert "OBJ_REDISPATCH" in tables
