import pytest

from errors import ConfigurationError
from model_setup import (
    DCLFRedispatch,
    ModelSetup,
    NodalMarket,
    ProsumerOptimization,
    ZonalMarket,
)
from models import Parameters, Sets
from time_horizon import TimeHorizon


def test_defaults():
    setup = ModelSetup(scenario="base")
    assert setup.is_zonal
    assert not setup.with_redispatch
    assert not setup.with_prosumers
    assert setup.market_type.name == "Zonal"
    assert setup.costs.curtailment_cost == 50.0
    assert setup.costs.redispatch_cost == 150.0
    assert NodalMarket().name == "Nodal"


def test_valid_setup(two_zone):
    ModelSetup(scenario="base", market_type=ZonalMarket()).validate_against(two_zone)


def test_nodal_without_network():
    params = Parameters(sets=Sets(N=["n1"], Z=["Z1"]))
    setup = ModelSetup(scenario="base", market_type=NodalMarket())
    with pytest.raises(ConfigurationError, match="network"):
        setup.validate_against(params)


def test_redispatch_without_nodes():
    params = Parameters(sets=Sets(Z=["Z1"]))
    setup = ModelSetup(scenario="base", redispatch_setup=DCLFRedispatch())
    with pytest.raises(ConfigurationError, match="no nodes"):
        setup.validate_against(params)


def test_prosumers_without_prosumer_plants(single_node):
    setup = ModelSetup(scenario="base", prosumer_setup=ProsumerOptimization(sell_price=1.0))
    with pytest.raises(ConfigurationError, match="prosumer"):
        setup.validate_against(single_node)


def test_unknown_ntc_zone(two_zone):
    two_zone.sets.NTC.append(("Z1", "Z9"))
    with pytest.raises(ConfigurationError, match="Z9"):
        ModelSetup(scenario="base").validate_against(two_zone)


def test_bad_storage_fraction(single_node):
    with pytest.raises(ConfigurationError):
        ModelSetup(scenario="base", initial_storage_fraction=1.5).validate_against(single_node)


def test_bad_time_horizon(single_node):
    setup = ModelSetup(scenario="base", time_horizon=TimeHorizon(split=0))
    with pytest.raises(ConfigurationError):
        setup.validate_against(single_node)
