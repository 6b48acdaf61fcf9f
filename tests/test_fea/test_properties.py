"""Cross-module properties of the assembly and solve pipeline."""
from __future__ import annotations

import numpy as np
import pytest

from femkit.core.config import SolveConfig
from femkit.fea.assembler import NodalLoad, assemble
from femkit.fea.constraints import ConstraintSet, FixedConstraint, apply_constraints
from femkit.fea.dofs import FieldSpec, build_dof_map, build_element_dofs
from femkit.fea.elements import LinearBarKernel, Quad4PlaneStressKernel
from femkit.fea.kernels import KernelRegistry
from femkit.fea.mesh import Mesh
from femkit.fea.solver_direct import DirectSolver
from femkit.fea.sparsity import build_sparsity_pattern
from femkit.fea.structured import structured_line_mesh, structured_quad_mesh
from femkit.fea.workflow import LinearStaticAnalysis

E = 1000.0
NU = 0.3


def _jittered_plate(nx: int, ny: int, seed: int = 0) -> Mesh:
    base = structured_quad_mesh(nx, ny, lx=float(nx), ly=float(ny))
    coords = np.array(base.coordinates)
    rng = np.random.default_rng(seed)
    coords += rng.uniform(-0.15, 0.15, size=coords.shape)
    return Mesh.from_arrays(coords, base.connectivity.reshape(-1, 4), "quad4")


@pytest.fixture(scope="module")
def plate():
    mesh = _jittered_plate(5, 4)
    registry = KernelRegistry({"quad4": Quad4PlaneStressKernel(E=E, nu=NU)})
    dof_map = build_dof_map(mesh, FieldSpec.from_dict({"u": 2}))
    pattern = build_sparsity_pattern(build_element_dofs(mesh, dof_map, registry), dof_map.n_dof)
    return mesh, registry, dof_map, pattern


def test_numbering_is_deterministic():
    coords = np.array([[0.0], [1.0], [2.0]])
    a = Mesh.from_arrays(coords, [[5, 9], [9, 2]], "bar2", node_ids=[5, 9, 2])
    b = Mesh.from_arrays(coords[[2, 0, 1]], [[5, 9], [9, 2]], "bar2", node_ids=[2, 5, 9])
    spec = FieldSpec.from_dict({"u": 2, "T": 1})
    first, second = build_dof_map(a, spec), build_dof_map(b, spec)
    assert first == second
    assert first == build_dof_map(a, spec)
    assert [first.dof(n, "T") for n in (2, 5, 9)] == [2, 5, 8]


def test_pattern_covers_every_element_block(plate):
    mesh, registry, dof_map, pattern = plate
    for dofs in build_element_dofs(mesh, dof_map, registry):
        rows = np.repeat(dofs, dofs.shape[0])
        cols = np.tile(dofs, dofs.shape[0])
        assert all(pattern.contains(int(r), int(c)) for r, c in zip(rows, cols))


def test_assembly_is_additive_over_element_subsets(plate):
    mesh, registry, dof_map, pattern = plate
    whole = assemble(mesh, dof_map, pattern, registry)
    half = mesh.n_elements // 2
    first = assemble(mesh.subset(range(half)), dof_map, pattern, registry)
    rest = assemble(mesh.subset(range(half, mesh.n_elements)), dof_map, pattern, registry)
    scale = np.abs(whole.matrix.data).max()
    np.testing.assert_allclose(first.matrix.data + rest.matrix.data, whole.matrix.data,
                               rtol=0, atol=1e-12 * scale)


def test_assembled_matrix_is_symmetric(plate):
    mesh, registry, dof_map, pattern = plate
    K = assemble(mesh, dof_map, pattern, registry).matrix
    scale = np.abs(K.data).max()
    assert np.abs((K - K.T).toarray()).max() <= 1e-12 * scale


@pytest.mark.parametrize("chunk_size", [1, 3, 64])
def test_worker_count_does_not_change_result(plate, chunk_size):
    mesh, registry, dof_map, pattern = plate
    results = [
        assemble(mesh, dof_map, pattern, registry,
                 SolveConfig(n_workers=n, chunk_size=chunk_size)).matrix.data
        for n in (1, 2, 5)
    ]
    for data in results[1:]:
        assert np.array_equal(data, results[0])


def test_element_order_only_changes_rounding(plate):
    mesh, registry, dof_map, pattern = plate
    reference = assemble(mesh, dof_map, pattern, registry).matrix.data
    order = np.random.default_rng(3).permutation(mesh.n_elements)
    shuffled = assemble(mesh.subset(order), dof_map, pattern, registry).matrix.data
    np.testing.assert_allclose(shuffled, reference, rtol=0,
                               atol=1e-12 * np.abs(reference).max())


def test_penalty_error_shrinks_with_magnitude():
    mesh = structured_line_mesh(4)
    registry = KernelRegistry({"bar2": LinearBarKernel(k=3.0)})
    dof_map = build_dof_map(mesh, FieldSpec.from_dict({"u": 1}))
    pattern = build_sparsity_pattern(build_element_dofs(mesh, dof_map, registry), dof_map.n_dof)
    system = assemble(mesh, dof_map, pattern, registry)
    system.load[-1] = 1.0
    fixed = [FixedConstraint(0, 0.2)]

    solver = DirectSolver()
    exact = solver.solve(apply_constraints(system, fixed)).solution
    errors = [
        np.abs(solver.solve(apply_constraints(system, fixed, "penalty", p)).solution - exact).max()
        for p in (1e4, 1e6, 1e8)
    ]
    assert errors[0] > errors[1] > errors[2]
    assert errors[2] < 1e-6


def test_elimination_satisfies_constraints_exactly(plate):
    mesh, registry, dof_map, pattern = plate
    system = assemble(mesh, dof_map, pattern, registry)
    left = [int(n) for n in mesh.node_ids if mesh.coordinates[n, 0] < 0.5]
    constraints = ConstraintSet()
    for n in left:
        constraints.fix_node(dof_map, n, "u", value=0.01)
    tip = int(mesh.node_ids[-1])
    constraints.tie(dof_map.dof(tip, "u", 1), dof_map.dof(tip - 1, "u", 1), factor=1.0)
    system.load[dof_map.dof(tip, "u", 1)] = -5.0

    u = DirectSolver().solve(apply_constraints(system, constraints)).solution
    assert all(u[dof_map.dof(n, "u", c)] == 0.01 for n in left for c in (0, 1))
    assert u[dof_map.dof(tip, "u", 1)] == u[dof_map.dof(tip - 1, "u", 1)]


def test_quad_patch_reproduces_uniform_stress():
    base = structured_quad_mesh(2, 2, lx=2.0, ly=1.0)
    coords = np.array(base.coordinates)
    coords[4] = (1.1, 0.6)  # distort the interior node
    mesh = Mesh.from_arrays(coords, base.connectivity.reshape(-1, 4), "quad4")
    registry = KernelRegistry({"quad4": Quad4PlaneStressKernel(E=E, nu=NU)})
    analysis = LinearStaticAnalysis(mesh, FieldSpec.from_dict({"u": 2}), registry)

    constraints = ConstraintSet()
    for n in (0, 3, 6):
        constraints.fix_node(analysis.dof_map, n, "u", components=[0])
    constraints.fix_node(analysis.dof_map, 0, "u", components=[1])
    sigma = 10.0
    loads = [NodalLoad(n, "u", 0, f) for n, f in ((2, 2.5), (5, 5.0), (8, 2.5))]

    result = analysis.run(constraints, loads)
    u = result.nodal.field("u")
    np.testing.assert_allclose(u[:, 0], sigma / E * coords[:, 0], atol=1e-10)
    np.testing.assert_allclose(u[:, 1], -NU * sigma / E * coords[:, 1], atol=1e-10)
