"""
Tests for the DC load-flow precomputation on small hand-checkable networks.
"""

import logging

import numpy as np
import pytest

from conftest import make_triangle
from errors import ConfigurationError, DataContractViolation, NetworkError
from models import Parameters, Sets
from network_ptdf import (
    build_dc_ptdf,
    build_gsk,
    build_incidence,
    compute_susceptance,
    connected_components,
    select_slack_nodes,
    zonal_ptdf,
)


def _raw_triangle(**overrides) -> Parameters:
    kwargs = dict(
        sets=Sets(N=["n1", "n2", "n3"], L=["l12", "l23", "l13"]),
        slack=["n1"],
        line_start={"l12": "n1", "l23": "n2", "l13": "n1"},
        line_end={"l12": "n2", "l23": "n3", "l13": "n3"},
        reactance={"l12": 0.1, "l23": 0.1, "l13": 0.1},
        resistance={"l12": 0.0, "l23": 0.0, "l13": 0.0},
    )
    kwargs.update(overrides)
    return Parameters(**kwargs)


def test_susceptance_is_memoised():
    params = _raw_triangle()
    b = compute_susceptance(params)
    assert np.isclose(b["l12"], 10.0)

    params.bvector["l12"] = 3.0
    compute_susceptance(params)
    assert params.bvector["l12"] == 3.0


def test_zero_impedance_line_raises():
    params = _raw_triangle(reactance={"l12": 0.0, "l23": 0.1, "l13": 0.1})
    with pytest.raises(NetworkError):
        compute_susceptance(params)


def test_incidence_signs():
    A = build_incidence(["a", "b"], ["l"], {"l": "a"}, {"l": "b"})
    assert A.tolist() == [[1.0, -1.0]]


def test_incidence_unknown_endpoint():
    with pytest.raises(DataContractViolation) as exc:
        build_incidence(["a"], ["l"], {"l": "a"}, {"l": "zz"})
    assert exc.value.entity == "zz"


def test_triangle_matrices():
    net = build_dc_ptdf(_raw_triangle())

    # bus susceptance: symmetric, zero row sums
    assert np.allclose(net.b, net.b.T)
    assert np.allclose(net.b.sum(axis=1), 0.0)

    # slack column is zero
    assert np.allclose(net.ptdf[:, net.node_index["n1"]], 0.0)
    assert net.slack_nodes == ["n1"]
    assert net.omitted_nodes == []

    # 90 MW from n1 to n3: two thirds over the direct line
    injection = np.array([90.0, 0.0, -90.0])
    flows = net.ptdf @ injection
    assert np.allclose(flows, [30.0, 30.0, 60.0])


def test_matrices_are_read_only():
    net = build_dc_ptdf(_raw_triangle())
    with pytest.raises(ValueError):
        net.ptdf[0, 0] = 1.0


def test_no_slack_raises():
    with pytest.raises(ConfigurationError, match="no slack bus defined"):
        build_dc_ptdf(_raw_triangle(slack=[]))


def test_nodes_without_lines_still_need_a_slack():
    params = Parameters(sets=Sets(N=["n1", "n2"]))
    with pytest.raises(ConfigurationError, match="no slack bus defined"):
        build_dc_ptdf(params)


def test_singular_reduced_susceptance_raises():
    # zero reactance gives a line without susceptance
    params = Parameters(
        sets=Sets(N=["n1", "n2"], L=["l12"]),
        slack=["n1"],
        line_start={"l12": "n1"},
        line_end={"l12": "n2"},
        reactance={"l12": 0.0},
        resistance={"l12": 0.1},
    )
    with pytest.raises(NetworkError, match="singular"):
        build_dc_ptdf(params)


def test_island_without_slack_raises():
    params = _raw_triangle(
        sets=Sets(N=["n1", "n2", "n3", "n4"], L=["l12", "l34"]),
        line_start={"l12": "n1", "l34": "n3"},
        line_end={"l12": "n2", "l34": "n4"},
        reactance={"l12": 0.1, "l34": 0.1},
        resistance={"l12": 0.0, "l34": 0.0},
    )
    with pytest.raises(ConfigurationError, match="n3"):
        build_dc_ptdf(params)


def test_two_slacks_warn_once(caplog):
    with caplog.at_level(logging.WARNING, logger="network_ptdf"):
        net = build_dc_ptdf(_raw_triangle(slack=["n2", "n1"]))
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    # first in node order, not in flag order
    assert net.slack_nodes == ["n1"]


def test_isolated_node_is_omitted():
    params = _raw_triangle(sets=Sets(N=["n1", "n2", "n3", "n4"], L=["l12", "l23", "l13"]))
    net = build_dc_ptdf(params)
    assert net.omitted_nodes == ["n4"]
    assert np.allclose(net.ptdf[:, net.node_index["n4"]], 0.0)
    assert set(net.reference_nodes) == {"n1", "n4"}


def test_connected_components_two_islands():
    A = np.array([[1.0, -1.0, 0.0, 0.0], [0.0, 0.0, 1.0, -1.0]])
    assert connected_components(["a", "b", "c", "d"], A) == [["a", "b"], ["c", "d"]]


def test_select_slack_per_island():
    assert select_slack_nodes([["a", "b"], ["c"]], ["b", "c"]) == ["b", "c"]


def test_prepared_params_carry_network():
    params = make_triangle()
    assert params.network is not None
    assert np.isclose(params.network.ptdf_entry("l13", "n3"), -2.0 / 3.0)


def test_gsk_columns_sum_to_one():
    gsk = build_gsk(
        ["n1", "n2", "n3"],
        ["Z1", "Z2"],
        {"n1": "Z1", "n2": "Z1", "n3": "Z2"},
        weights={"n1": 3.0, "n2": 1.0},
    )
    assert np.allclose(gsk.sum(axis=0), 1.0)
    assert np.isclose(gsk[0, 0], 0.75)
    # zone without weights is split evenly
    assert np.isclose(gsk[2, 1], 1.0)


def test_gsk_empty_zone():
    with pytest.raises(ConfigurationError):
        build_gsk(["n1"], ["Z1", "Z2"], {"n1": "Z1"})


def test_zonal_ptdf_shape():
    net = build_dc_ptdf(_raw_triangle())
    gsk = build_gsk(net.node_ids, ["Z1", "Z2"], {"n1": "Z1", "n2": "Z1", "n3": "Z2"})
    zptdf = zonal_ptdf(net.ptdf, gsk)
    assert zptdf.shape == (3, 2)
    assert np.allclose(zptdf[:, 1], net.ptdf[:, net.node_index["n3"]])
