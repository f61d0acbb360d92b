"""
Shared pytest fixtures: small systems that solve in milliseconds.

single_node   one zone, one node, one coal plant (gmax 100, mc 20), load 60
triangle      three nodes in one zone, lines n1-n2, n2-n3, n1-n3 (x = 0.1),
              cheap plant at n1 (mc 10), peaker at n3 (mc 50), load 90 at n3
two_zone      zones Z1/Z2 with one node each, NTC 50 both ways
"""

from __future__ import annotations

import pytest

from model_setup import ModelSetup
from models import FixedProfile, HourlyProfile, Parameters, Sets
from params_prep import prepare_parameters
from time_horizon import TimeHorizon


def _params(**kwargs) -> Parameters:
    defaults = dict(
        dispatchable=["coal", "gas"],
        nondispatchable=["wind", "prosumer"],
        storage_types=["battery"],
        prosumer_types=["prosumer"],
    )
    defaults.update(kwargs)
    return Parameters(**defaults)


def make_single_node(load: float = 60.0) -> Parameters:
    params = _params(
        sets=Sets(P=["coal"], N=["n1"], Z=["Z1"]),
        gmax={"coal": 100.0},
        eta={"coal": 1.0},
        mc={"coal": FixedProfile(value=20.0)},
        plant_type={"coal": "coal"},
        plant2node={"coal": "n1"},
        node2zone={"n1": "Z1"},
        slack=["n1"],
        nodal_load={"n1": FixedProfile(value=load)},
    )
    return prepare_parameters(params)


def make_triangle(l13_capacity=50.0, peak_gmax=200.0, with_prosumer=False) -> Parameters:
    plants = ["cheap", "peak"]
    extra = {}
    load_n2 = 0.0
    if with_prosumer:
        plants.append("prs")
        load_n2 = 4.0
        extra = dict(prs_demand={"prs": FixedProfile(value=4.0)})

    params = _params(
        sets=Sets(
            P=plants,
            N=["n1", "n2", "n3"],
            Z=["Z1"],
            L=["l12", "l23", "l13"],
        ),
        gmax={"cheap": 200.0, "peak": peak_gmax, "prs": 10.0},
        eta={"cheap": 1.0, "peak": 1.0, "prs": 1.0},
        mc={
            "cheap": FixedProfile(value=10.0),
            "peak": FixedProfile(value=50.0),
            "prs": FixedProfile(value=0.0),
        },
        plant_type={"cheap": "coal", "peak": "gas", "prs": "prosumer"},
        plant2node={"cheap": "n1", "peak": "n3", "prs": "n2"},
        node2zone={"n1": "Z1", "n2": "Z1", "n3": "Z1"},
        slack=["n1"],
        line_start={"l12": "n1", "l23": "n2", "l13": "n1"},
        line_end={"l12": "n2", "l23": "n3", "l13": "n3"},
        reactance={"l12": 0.1, "l23": 0.1, "l13": 0.1},
        resistance={"l12": 0.0, "l23": 0.0, "l13": 0.0},
        acline_capacity={"l12": 1000.0, "l23": 1000.0, "l13": l13_capacity},
        nodal_load={
            "n1": FixedProfile(value=0.0),
            "n2": FixedProfile(value=load_n2),
            "n3": FixedProfile(value=90.0),
        },
        **extra,
    )
    return prepare_parameters(params)


def make_two_zone() -> Parameters:
    params = _params(
        sets=Sets(
            P=["cheap", "exp"],
            N=["n1", "n2"],
            Z=["Z1", "Z2"],
            NTC=[("Z1", "Z2"), ("Z2", "Z1")],
        ),
        gmax={"cheap": 100.0, "exp": 100.0},
        eta={"cheap": 1.0, "exp": 1.0},
        mc={"cheap": FixedProfile(value=10.0), "exp": FixedProfile(value=40.0)},
        plant_type={"cheap": "coal", "exp": "gas"},
        plant2node={"cheap": "n1", "exp": "n2"},
        node2zone={"n1": "Z1", "n2": "Z2"},
        slack=["n1"],
        ntc={("Z1", "Z2"): 50.0, ("Z2", "Z1"): 50.0},
        nodal_load={"n1": FixedProfile(value=0.0), "n2": FixedProfile(value=80.0)},
    )
    return prepare_parameters(params)


def make_storage_node(days=2) -> Parameters:
    """
    Single node with a 40 MWh / 20 MW battery. Load is 50 MW in the first and
    150 MW in the second half of every day; cheap coal covers 100 MW.
    """
    load = ([50.0] * 12 + [150.0] * 12) * days
    params = _params(
        sets=Sets(P=["coal", "gas", "bat"], N=["n1"], Z=["Z1"]),
        gmax={"coal": 100.0, "gas": 200.0, "bat": 20.0},
        gmax_storage={"bat": 20.0},
        storage={"bat": 40.0},
        eta={"coal": 1.0, "gas": 1.0, "bat": 1.0},
        mc={
            "coal": FixedProfile(value=10.0),
            "gas": FixedProfile(value=50.0),
            "bat": FixedProfile(value=0.0),
        },
        plant_type={"coal": "coal", "gas": "gas", "bat": "battery"},
        plant2node={"coal": "n1", "gas": "n1", "bat": "n1"},
        node2zone={"n1": "Z1"},
        slack=["n1"],
        nodal_load={"n1": HourlyProfile(values=load)},
    )
    return prepare_parameters(params)


@pytest.fixture
def single_node() -> Parameters:
    return make_single_node()


@pytest.fixture
def triangle() -> Parameters:
    return make_triangle()


@pytest.fixture
def two_zone() -> Parameters:
    return make_two_zone()


@pytest.fixture
def storage_node() -> Parameters:
    return make_storage_node()


@pytest.fixture
def zonal_setup() -> ModelSetup:
    return ModelSetup(scenario="test", time_horizon=TimeHorizon(start=1, stop=1, split=1))
