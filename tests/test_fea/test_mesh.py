"""Tests for the flat-connectivity mesh container."""
from __future__ import annotations

import numpy as np
import pytest

from femkit.core.errors import InvalidTopology
from femkit.fea.mesh import Mesh


@pytest.fixture
def mixed_mesh() -> Mesh:
    """A quad and a triangle sharing an edge, with non-contiguous node ids."""
    coords = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0], [2.0, 0.5]])
    return Mesh.from_elements(
        coords,
        [("quad4", [10, 20, 30, 40]), ("tri3", [20, 50, 30])],
        node_ids=[10, 20, 30, 40, 50],
    )


class TestMeshConstruction:
    def test_from_arrays(self):
        mesh = Mesh.from_arrays(np.array([0.0, 1.0, 2.0]), [[0, 1], [1, 2]], "bar2")
        assert mesh.n_nodes == 3
        assert mesh.n_elements == 2
        assert mesh.dim == 1
        np.testing.assert_array_equal(mesh.offsets, [0, 2, 4])
        np.testing.assert_array_equal(mesh.element_nodes(1), [1, 2])
        assert mesh.element_types == ("bar2", "bar2")

    def test_from_elements_mixed(self, mixed_mesh: Mesh):
        np.testing.assert_array_equal(mixed_mesh.offsets, [0, 4, 7])
        assert mixed_mesh.element_size(0) == 4
        assert mixed_mesh.element_size(1) == 3
        assert mixed_mesh.tags == ["quad4", "tri3"]

    def test_arrays_are_read_only(self, mixed_mesh: Mesh):
        with pytest.raises(ValueError):
            mixed_mesh.coordinates[0, 0] = 5.0
        with pytest.raises(ValueError):
            mixed_mesh.connectivity[0] = 99

    def test_input_arrays_are_copied(self):
        coords = np.array([[0.0], [1.0]])
        mesh = Mesh.from_arrays(coords, [[0, 1]], "bar2")
        coords[1, 0] = 7.0
        assert mesh.coordinates[1, 0] == 1.0

    def test_duplicate_node_ids(self):
        with pytest.raises(InvalidTopology, match="Duplicate node id 3") as exc:
            Mesh.from_arrays(np.zeros((2, 1)), [[3, 3]], "bar2", node_ids=[3, 3])
        assert exc.value.node == 3

    def test_element_without_nodes(self):
        with pytest.raises(InvalidTopology, match="Element 1 has no nodes") as exc:
            Mesh.from_elements(np.zeros((2, 1)), [("bar2", [0, 1]), ("bar2", [])])
        assert exc.value.element == 1

    def test_coordinate_count_mismatch(self):
        with pytest.raises(InvalidTopology, match="coordinates shape"):
            Mesh.from_arrays(np.zeros((2, 1)), [[0, 1]], "bar2", node_ids=[0, 1, 2])

    def test_element_params_length_checked(self):
        with pytest.raises(InvalidTopology, match="element_params"):
            Mesh.from_arrays(np.zeros((2, 1)), [[0, 1]], "bar2",
                             element_params=[{"k": 1.0}, {"k": 2.0}])


class TestMeshLookups:
    def test_node_rows_with_non_contiguous_ids(self, mixed_mesh: Mesh):
        np.testing.assert_array_equal(mixed_mesh.node_rows([50, 10, 30]), [4, 0, 2])

    def test_element_coords(self, mixed_mesh: Mesh):
        np.testing.assert_allclose(
            mixed_mesh.element_coords(1), [[1.0, 0.0], [2.0, 0.5], [1.0, 1.0]]
        )

    def test_sorted_node_ids(self):
        mesh = Mesh.from_arrays(np.zeros((3, 1)), [[7, 2]], "bar2", node_ids=[7, 2, 5])
        np.testing.assert_array_equal(mesh.sorted_node_ids, [2, 5, 7])

    def test_missing_node_reported_with_element(self):
        mesh = Mesh.from_elements(np.zeros((2, 1)), [("bar2", [0, 1]), ("bar2", [1, 9])])
        with pytest.raises(InvalidTopology, match="Element 1 references node 9") as exc:
            mesh.validate()
        assert exc.value.element == 1
        assert exc.value.node == 9
        with pytest.raises(InvalidTopology):
            mesh.element_coords(1)

    def test_validate_passes_for_valid_mesh(self, mixed_mesh: Mesh):
        mixed_mesh.validate()

    def test_params_for(self):
        mesh = Mesh.from_arrays(np.zeros((3, 1)), [[0, 1], [1, 2]], "bar2",
                                element_params=[{"k": 2.0}, None])
        assert mesh.params_for(0)["k"] == 2.0
        assert dict(mesh.params_for(1)) == {}
        with pytest.raises(TypeError):
            mesh.params_for(0)["k"] = 3.0

    def test_subset(self, mixed_mesh: Mesh):
        sub = mixed_mesh.subset([1])
        assert sub.n_elements == 1
        assert sub.n_nodes == mixed_mesh.n_nodes
        assert sub.element_types == ("tri3",)
        np.testing.assert_array_equal(sub.element_nodes(0), [20, 50, 30])

    def test_repr(self, mixed_mesh: Mesh):
        assert "n_elements=2" in repr(mixed_mesh)
