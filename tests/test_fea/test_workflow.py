"""End-to-end tests for the linear static analysis workflow."""
from __future__ import annotations

import json
import os

import numpy as np
import pytest

from femkit.core.config import SolveConfig
from femkit.core.errors import SingularSystem
from femkit.core.logger import RunLogger
from femkit.fea.assembler import NodalLoad
from femkit.fea.constraints import ConstraintSet
from femkit.fea.dofs import FieldSpec
from femkit.fea.elements import LinearBarKernel, Tri3ConductionKernel
from femkit.fea.kernels import KernelRegistry
from femkit.fea.mesh import Mesh
from femkit.fea.structured import structured_line_mesh, structured_quad_mesh
from femkit.fea.workflow import LinearStaticAnalysis

P = 10.0
K_BAR = 5.0  # end-to-end stiffness of the two-element bar


def _bar_analysis(config=None, **kwargs) -> LinearStaticAnalysis:
    mesh = structured_line_mesh(2)
    registry = KernelRegistry({"bar2": LinearBarKernel(k=2.0 * K_BAR)})
    return LinearStaticAnalysis(mesh, FieldSpec.from_dict({"u": 1}), registry,
                                config=config, **kwargs)


def _bar_run(analysis: LinearStaticAnalysis, **kwargs):
    constraints = ConstraintSet().fix(analysis.dof_map.dof(0, "u"))
    return analysis.run(constraints, [NodalLoad(2, "u", 0, P)], **kwargs)


def _read_records(log_dir) -> list[dict]:
    with open(os.path.join(log_dir, "runs.jsonl"), encoding="utf-8") as f:
        return [json.loads(line) for line in f]


# ---------------------------------------------------------------------------
# Bar
# ---------------------------------------------------------------------------

class TestBarAnalysis:
    def test_displacements(self):
        result = _bar_run(_bar_analysis())
        np.testing.assert_allclose(result.solution, [0.0, P / (2 * K_BAR), P / K_BAR])
        assert result.nodal.value(2, "u") == pytest.approx(P / K_BAR)
        assert result.nodal.value(1, "u") == pytest.approx(P / (2 * K_BAR))

    def test_reaction_balances_load(self):
        result = _bar_run(_bar_analysis())
        assert result.reactions[0] == pytest.approx(-P)
        np.testing.assert_allclose(result.reactions[1:], 0.0, atol=1e-10)

    @pytest.mark.parametrize("method", ["cg", "gmres", "bicgstab"])
    def test_iterative_backend(self, method):
        config = SolveConfig(solver_backend="iterative", iterative_method=method,
                             iterative_tolerance=1e-12)
        result = _bar_run(_bar_analysis(config))
        np.testing.assert_allclose(result.solution, [0.0, 1.0, 2.0], rtol=1e-8, atol=1e-10)
        assert result.solve_info.solver == "iterative"
        assert result.solve_info.iterations >= 1

    def test_penalty_strategy(self):
        config = SolveConfig(constraint_strategy="penalty")
        result = _bar_run(_bar_analysis(config))
        np.testing.assert_allclose(result.solution, [0.0, 1.0, 2.0], rtol=1e-6, atol=1e-6)

    def test_parameter_override(self):
        analysis = _bar_analysis()
        base = _bar_run(analysis)
        stiffer = _bar_run(analysis, parameters={"bar2": {"k": 4.0 * K_BAR}})
        np.testing.assert_allclose(stiffer.solution, 0.5 * base.solution)

    def test_pattern_reused_between_runs(self):
        analysis = _bar_analysis()
        pattern = analysis.pattern
        _bar_run(analysis)
        _bar_run(analysis)
        assert analysis.pattern is pattern

    def test_summary(self):
        result = _bar_run(_bar_analysis())
        summary = result.summary()
        assert summary["n_dof"] == 3
        assert summary["solver"] == "direct"
        assert summary["max_abs_solution"] == pytest.approx(P / K_BAR)
        assert len(result.run_id) == 12
        assert {"assembly", "loads", "constraints", "solve", "distribute"} <= set(result.timings)

    def test_progress_reported(self):
        calls = []
        _bar_run(_bar_analysis(progress=lambda pct, msg: calls.append((pct, msg))))
        assert [pct for pct, _ in calls] == [25.0, 50.0, 65.0, 90.0, 100.0]
        assert calls[-1][1] == "Done"

    def test_unconstrained_bar_is_singular(self, tmp_path):
        run_logger = RunLogger(log_dir=str(tmp_path))
        analysis = _bar_analysis(run_logger=run_logger)
        with pytest.raises(SingularSystem):
            analysis.run(ConstraintSet(), [NodalLoad(2, "u", 0, P)])
        failed = [r for r in _read_records(tmp_path) if r["event_type"] == "stage.failed"]
        assert len(failed) == 1
        assert failed[0]["stage"] == "solve"
        assert failed[0]["error_type"] == "SingularSystem"


class TestRunLogging:
    def test_stage_and_solve_records(self, tmp_path):
        analysis = _bar_analysis(run_logger=RunLogger(log_dir=str(tmp_path)))
        result = _bar_run(analysis)
        records = _read_records(tmp_path)
        stages = [r["stage"] for r in records if r["event_type"] == "stage.completed"]
        assert stages == ["dofs", "sparsity", "assembly", "loads", "constraints",
                          "solve", "distribute"]
        assembly = next(r for r in records if r.get("stage") == "assembly")
        assert assembly["data"]["nnz"] == 7
        assert assembly["data"]["n_elements"] == 2
        solves = [r for r in records if r["event_type"] == "solve.completed"]
        assert len(solves) == 1
        assert solves[0]["run_id"] == result.run_id
        assert solves[0]["n_dof"] == 3


# ---------------------------------------------------------------------------
# Heat conduction
# ---------------------------------------------------------------------------

def _triangulated_square(n: int) -> Mesh:
    quads = structured_quad_mesh(n, n)
    cells = quads.connectivity.reshape(-1, 4)
    tris = np.concatenate([cells[:, [0, 1, 2]], cells[:, [0, 2, 3]]])
    return Mesh.from_arrays(quads.coordinates, tris, "tri3", node_ids=quads.node_ids)


class TestConduction:
    def test_linear_temperature_profile(self):
        mesh = _triangulated_square(4)
        registry = KernelRegistry({"tri3": Tri3ConductionKernel(conductivity=2.5)})
        analysis = LinearStaticAnalysis(mesh, FieldSpec.from_dict({"T": 1}), registry)
        x = mesh.coordinates[:, 0]
        constraints = ConstraintSet()
        for nid in np.flatnonzero(np.isclose(x, 0.0)):
            constraints.fix_node(analysis.dof_map, int(nid), "T", value=0.0)
        for nid in np.flatnonzero(np.isclose(x, 1.0)):
            constraints.fix_node(analysis.dof_map, int(nid), "T", value=1.0)

        result = analysis.run(constraints)
        np.testing.assert_allclose(result.nodal.field("T")[:, 0], x, atol=1e-12)

    def test_uniform_source_total_reaction(self):
        mesh = _triangulated_square(3)
        registry = KernelRegistry({"tri3": Tri3ConductionKernel(conductivity=1.0, source=4.0)})
        config = SolveConfig(n_workers=2, chunk_size=5)
        analysis = LinearStaticAnalysis(mesh, FieldSpec.from_dict({"T": 1}), registry, config)
        x, y = mesh.coordinates[:, 0], mesh.coordinates[:, 1]
        boundary = np.isclose(x, 0.0) | np.isclose(x, 1.0) | np.isclose(y, 0.0) | np.isclose(y, 1.0)
        constraints = ConstraintSet()
        for nid in np.flatnonzero(boundary):
            constraints.fix_node(analysis.dof_map, int(nid), "T")

        result = analysis.run(constraints)
        # the boundary absorbs the whole heat input
        assert result.reactions.sum() == pytest.approx(-4.0)
        assert np.all(result.nodal.field("T")[~boundary] > 0.0)
