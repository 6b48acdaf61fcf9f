"""Tests for mapping solution vectors back onto nodes and elements."""
from __future__ import annotations

import numpy as np
import pytest

from femkit.core.errors import InvalidTopology
from femkit.fea.distributor import distribute
from femkit.fea.dofs import FieldSpec, build_dof_map
from femkit.fea.mesh import Mesh


@pytest.fixture
def dof_map():
    # node ids deliberately unsorted and non-contiguous
    mesh = Mesh.from_arrays(
        np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0]]),
        [[30, 10, 20]],
        "tri3",
        node_ids=[30, 10, 20],
    )
    spec = FieldSpec.from_dict({"u": 2, "T": 1}, element_fields={"p": 1})
    return build_dof_map(mesh, spec)


def test_layout(dof_map):
    # node-major blocks [ux, uy, T] in ascending id order, element DOFs last
    solution = np.arange(dof_map.n_dof, dtype=float)
    nodal = distribute(solution, dof_map)
    np.testing.assert_array_equal(nodal.field("u"), [[0, 1], [3, 4], [6, 7]])
    np.testing.assert_array_equal(nodal.field("T"), [[2], [5], [8]])
    np.testing.assert_array_equal(nodal.field("p"), [[9]])


def test_value_by_node_id(dof_map):
    solution = np.arange(dof_map.n_dof, dtype=float)
    nodal = distribute(solution, dof_map)
    assert nodal.value(10, "u", 1) == 1.0
    assert nodal.value(30, "T") == 8.0
    at = nodal.at(20)
    assert set(at) == {"u", "T"}
    np.testing.assert_array_equal(at["u"], [3.0, 4.0])


def test_element_value(dof_map):
    nodal = distribute(np.arange(dof_map.n_dof, dtype=float), dof_map)
    assert nodal.element_value(0, "p") == 9.0
    with pytest.raises(KeyError):
        nodal.element_value(0, "u")


def test_value_rejects_element_field(dof_map):
    nodal = distribute(np.arange(dof_map.n_dof, dtype=float), dof_map)
    with pytest.raises(KeyError, match="element field"):
        nodal.value(10, "p")


def test_arrays_are_read_only_copies(dof_map):
    solution = np.zeros(dof_map.n_dof)
    nodal = distribute(solution, dof_map)
    solution[0] = 5.0
    assert nodal.value(10, "u") == 0.0
    with pytest.raises(ValueError):
        nodal.field("u")[0, 0] = 1.0


def test_wrong_length(dof_map):
    with pytest.raises(ValueError, match="10 DOFs"):
        distribute(np.zeros(dof_map.n_dof - 1), dof_map)


def test_unknown_field(dof_map):
    nodal = distribute(np.zeros(dof_map.n_dof), dof_map)
    with pytest.raises(KeyError, match="velocity"):
        nodal.field("velocity")


def test_unknown_node(dof_map):
    nodal = distribute(np.zeros(dof_map.n_dof), dof_map)
    with pytest.raises(InvalidTopology, match="Node 11"):
        nodal.value(11, "u")


def test_to_dict(dof_map):
    nodal = distribute(np.arange(dof_map.n_dof, dtype=float), dof_map)
    out = nodal.to_dict()
    assert list(out["nodes"]) == [10, 20, 30]
    assert out["nodes"][30] == {"u": [6.0, 7.0], "T": [8.0]}
    assert out["elements"] == {0: {"p": [9.0]}}


def test_to_dict_without_element_fields():
    mesh = Mesh.from_arrays(np.array([0.0, 1.0]), [[0, 1]], "bar2")
    dof_map = build_dof_map(mesh, FieldSpec.from_dict({"u": 1}))
    out = distribute(np.array([0.0, 0.5]), dof_map).to_dict()
    assert out == {"nodes": {0: {"u": [0.0]}, 1: {"u": [0.5]}}}
