import numpy as np
import pytest

from hooks import ModelHooks
from market_model import build_market_model
from model_setup import ModelSetup
from results import extract_tables
from solving import solve_model


def test_register_unknown_phase():
    hooks = ModelHooks()
    with pytest.raises(ValueError):
        hooks.register("after_everything", lambda ctx: None)


def test_hooks_run_in_order(single_node):
    calls = []
    hooks = ModelHooks()
    hooks.register("before_build", lambda ctx: calls.append(("first", ctx.stage)))
    hooks.register("before_build", lambda ctx: calls.append(("second", ctx.stage)))
    setup = ModelSetup(scenario="test", hooks=hooks)

    build_market_model(single_node, setup, range(1, 2))
    assert calls == [("first", "DayAhead"), ("second", "DayAhead")]


def test_after_build_hook_adds_constraint(single_node):
    def cap_coal(ctx):
        for t in ctx.time_range:
            ctx.model.addConstr(ctx.variables["GEN"]["coal", t] <= 50.0, name=f"Cap[coal,{t}]")

    hooks = ModelHooks()
    hook = hooks.register("after_build", cap_coal)
    assert hook.name == "cap_coal"

    setup = ModelSetup(scenario="test", hooks=hooks)
    fm = build_market_model(single_node, setup, range(1, 2))
    solve_model(fm)
    assert np.isclose(fm.variables["BALANCE_LL"]["Z1", 1].X, 10.0)


def test_explicit_hooks_override_setup(single_node):
    calls = []
    setup_hooks = ModelHooks()
    setup_hooks.register("before_build", lambda ctx: calls.append("setup"))
    explicit = ModelHooks()
    explicit.register("before_build", lambda ctx: calls.append("explicit"), name="explicit")

    setup = ModelSetup(scenario="test", hooks=setup_hooks)
    build_market_model(single_node, setup, range(1, 2), hooks=explicit)
    assert calls == ["explicit"]


def test_groups_added_by_hook_reach_the_results(single_node):
    def add_reserve(ctx):
        T = ctx.time_range
        reserve = ctx.model.addVars(["coal"], T, lb=10.0, name="RESERVE")
        ctx.variables["RESERVE"] = reserve
        ctx.constraints["ReserveHeadroom"] = {
            ("coal", t): ctx.model.addConstr(
                ctx.variables["GEN"]["coal", t] + reserve["coal", t] <= 100.0,
                name=f"ReserveHeadroom[coal,{t}]",
            )
            for t in T
        }
        for t in T:
            ctx.record("RESERVE", index="coal", Time=t, RESERVE=reserve["coal", t])

    hooks = ModelHooks()
    hooks.register("after_build", add_reserve)
    setup = ModelSetup(scenario="test", hooks=hooks)

    fm = build_market_model(single_node, setup, range(1, 3))
    assert "RESERVE" in fm.variables
    assert set(fm.constraints["ReserveHeadroom"]) == {("coal", 1), ("coal", 2)}
    assert "GEN" in fm.variables

    solve_model(fm)
    reserve = extract_tables(fm)["RESERVE"]
    assert reserve["Time"].tolist() == [1, 2]
    assert (reserve["RESERVE"] >= 10.0 - 1e-6).all()
    assert (reserve["RESERVE"] <= 40.0 + 1e-6).all()
