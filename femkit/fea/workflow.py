"""Linear static analysis workflow.

Orchestrates the pipeline:

1. **DOF numbering** -- :func:`~femkit.fea.dofs.build_dof_map`.
2. **Sparsity** -- element DOF table and global pattern.
3. **Assembly** -- kernel evaluation and scatter-add.
4. **Loads** -- point loads added to the assembled load vector.
5. **Constraints** -- fixed and multi-point constraints.
6. **Solve** -- backend chosen by :class:`~femkit.core.config.SolveConfig`.
7. **Distribution** -- solution split back onto nodes and elements.

Steps 1-2 depend only on the mesh and field spec; they run once and are
reused by every later :meth:`LinearStaticAnalysis.run`.
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional

import numpy as np
from numpy.typing import NDArray

from femkit.core.config import SolveConfig
from femkit.core.errors import FEAError
from femkit.core.logger import RunLogger
from femkit.fea.assembler import (
    Assembler,
    AssemblyPlan,
    GlobalSystem,
    NodalLoad,
    ParameterOverrides,
    apply_nodal_loads,
)
from femkit.fea.constraints import ConstraintSet, apply_constraints
from femkit.fea.distributor import NodalSolution, distribute
from femkit.fea.dofs import DofMap, FieldSpec, build_dof_map, build_element_dofs
from femkit.fea.kernels import KernelRegistry
from femkit.fea.mesh import Mesh
from femkit.fea.solver_interface import SolveInfo
from femkit.fea.solver_registry import create_solver
from femkit.fea.sparsity import SparsityPattern, build_sparsity_pattern

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class AnalysisResult:
    """Outcome of one :meth:`LinearStaticAnalysis.run`.

    Parameters
    ----------
    run_id : str
        Identifier used in the run log.
    solution : NDArray[np.float64]
        Full DOF vector.
    nodal : NodalSolution
        ``solution`` split by field.
    reactions : NDArray[np.float64]
        ``K u - f`` on the unconstrained system.
    solve_info : SolveInfo
        Backend diagnostics.
    timings : dict
        Stage name -> elapsed seconds.
    """

    run_id: str
    solution: NDArray[np.float64]
    nodal: NodalSolution
    reactions: NDArray[np.float64]
    solve_info: SolveInfo
    assembly_stats: dict = field(default_factory=dict)
    constraint_stats: dict = field(default_factory=dict)
    timings: dict = field(default_factory=dict)

    def summary(self) -> dict:
        return {
            "run_id": self.run_id,
            "n_dof": int(self.solution.shape[0]),
            "solver": self.solve_info.solver,
            "method": self.solve_info.method,
            "iterations": self.solve_info.iterations,
            "residual_norm": self.solve_info.residual_norm,
            "max_abs_solution": float(np.max(np.abs(self.solution))) if self.solution.size else 0.0,
            "total_time_s": sum(self.timings.values()),
        }


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

class LinearStaticAnalysis:
    """Solve ``K u = f`` for one mesh, field spec and kernel registry.

    Parameters
    ----------
    mesh : Mesh
    field_spec : FieldSpec
    registry : KernelRegistry
    config : SolveConfig, optional
    run_logger : RunLogger, optional
        Receives a JSONL record per stage.
    progress : callable, optional
        ``progress(percent, message)`` called as stages finish.
    """

    def __init__(
        self,
        mesh: Mesh,
        field_spec: FieldSpec,
        registry: KernelRegistry,
        config: Optional[SolveConfig] = None,
        run_logger: Optional[RunLogger] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self._mesh = mesh
        self._field_spec = field_spec
        self._registry = registry
        self._config = config or SolveConfig()
        self._run_logger = run_logger
        self._progress = progress
        self._dof_map: Optional[DofMap] = None
        self._pattern: Optional[SparsityPattern] = None
        self._assembler: Optional[Assembler] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> SolveConfig:
        return self._config

    @property
    def dof_map(self) -> DofMap:
        self.prepare()
        return self._dof_map

    @property
    def pattern(self) -> SparsityPattern:
        self.prepare()
        return self._pattern

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def prepare(self, run_id: Optional[str] = None) -> None:
        """Number DOFs and build the sparsity pattern (once)."""
        if self._assembler is not None:
            return
        run_id = run_id or "prepare"
        timings: dict = {}
        with self._stage(run_id, "dofs", timings):
            dof_map = build_dof_map(self._mesh, self._field_spec)
        with self._stage(run_id, "sparsity", timings) as record:
            element_dofs = build_element_dofs(self._mesh, dof_map, self._registry)
            pattern = build_sparsity_pattern(
                element_dofs, dof_map.n_dof, n_workers=self._config.n_workers
            )
            plan = AssemblyPlan.build(self._mesh, dof_map, pattern, self._registry,
                                      element_dofs=element_dofs)
            record.update(n_dof=dof_map.n_dof, nnz=pattern.nnz)
        self._dof_map = dof_map
        self._pattern = pattern
        self._assembler = Assembler(self._mesh, dof_map, pattern, self._registry,
                                    self._config, plan=plan)

    def assemble(self, parameters: Optional[ParameterOverrides] = None) -> GlobalSystem:
        self.prepare()
        return self._assembler.assemble(parameters)

    def run(
        self,
        constraints: ConstraintSet,
        nodal_loads: Iterable[NodalLoad] = (),
        parameters: Optional[ParameterOverrides] = None,
    ) -> AnalysisResult:
        """Assemble, constrain, solve and distribute.

        Raises
        ------
        StructuralError
            Invalid mesh, fields, kernels or constraints.
        NumericalError
            :class:`SingularSystem` or :class:`DidNotConverge` from the solver.
        """
        t_start = time.perf_counter()
        run_id = uuid.uuid4().hex[:12]
        timings: dict = {}
        cfg = self._config
        logger.info(
            "Starting linear static run %s: %d nodes, %d elements, backend=%s, "
            "constraints=%s",
            run_id, self._mesh.n_nodes, self._mesh.n_elements,
            cfg.solver_backend.value, cfg.constraint_strategy.value,
        )

        if self._assembler is None:
            self.prepare(run_id)
        self._report(25.0, "Sparsity pattern ready")

        with self._stage(run_id, "assembly", timings) as record:
            system = self._assembler.assemble(parameters)
            record.update(system.stats)
        self._report(50.0, "Global system assembled")

        nodal_loads = list(nodal_loads)
        if nodal_loads:
            with self._stage(run_id, "loads", timings):
                system.load = apply_nodal_loads(system.load, self._dof_map, nodal_loads)

        with self._stage(run_id, "constraints", timings) as record:
            constrained = apply_constraints(
                system, constraints, cfg.constraint_strategy, cfg.penalty_magnitude
            )
            record.update(constrained.stats)
        self._report(65.0, "Constraints applied")

        solver = create_solver(cfg)
        with self._stage(run_id, "solve", timings):
            solved = solver.solve(constrained)
        self._report(90.0, "Linear system solved")
        if self._run_logger is not None:
            info = solved.info
            self._run_logger.log_solve(run_id, info.solver, info.n_dof, info.iterations,
                                       info.residual_norm, info.elapsed_s)

        with self._stage(run_id, "distribute", timings):
            nodal = distribute(solved.solution, self._dof_map)
            reactions = constrained.reactions(solved.solution)
        self._report(100.0, "Done")

        result = AnalysisResult(
            run_id=run_id,
            solution=solved.solution,
            nodal=nodal,
            reactions=reactions,
            solve_info=solved.info,
            assembly_stats=system.stats,
            constraint_stats=constrained.stats,
            timings=timings,
        )
        logger.info("Run %s complete in %.3fs", run_id, time.perf_counter() - t_start)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _stage(self, run_id: str, stage: str, timings: dict) -> Iterator[dict]:
        """Time a stage; the yielded dict becomes the stage record's ``data``."""
        record: dict = {}
        t0 = time.perf_counter()
        try:
            yield record
        except FEAError as exc:
            logger.error("Run %s: stage %s failed: %s", run_id, stage, exc)
            if self._run_logger is not None:
                self._run_logger.log_failure(run_id, stage, exc)
            raise
        elapsed = time.perf_counter() - t0
        timings[stage] = elapsed
        logger.debug("Run %s: stage %s took %.3fs", run_id, stage, elapsed)
        if self._run_logger is not None:
            self._run_logger.log_stage(run_id, stage, elapsed, record)

    def _report(self, percent: float, message: str) -> None:
        if self._progress is not None:
            self._progress(percent, message)
