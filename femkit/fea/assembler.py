"""Global sparse system assembly.

Evaluates every element kernel and scatter-adds the local stiffness and load
into a preallocated CSR data array whose structure is the finalized
:class:`~femkit.fea.sparsity.SparsityPattern`.

Algorithm
---------
1. Build an :class:`AssemblyPlan` once: the element-to-DOF table, the CSR
   slot of every local ``(i, j)`` entry, and the coordinate rows of every
   element node.  The plan is reused across assembly passes.
2. Evaluate kernels on a ``ThreadPoolExecutor`` and accumulate with one of
   two strategies:

   ``reduction``
       Elements are cut into chunks of ``chunk_size``.  Each chunk sums its
       entries into a chunk-local partial (``np.bincount``), and partials are
       merged into the global arrays in chunk order.  Chunk boundaries do not
       depend on the worker count, so the result is bit-identical for any
       ``n_workers``.
   ``coloring``
       Elements are greedily coloured so that no two elements of one colour
       share a DOF.  Each colour class is processed in parallel and writes
       straight into the global arrays; colours run one after another.

3. Wrap the data array in a ``scipy.sparse.csr_matrix`` with the pattern's
   ``indptr``/``indices``.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from femkit.core.config import AssemblyStrategy, SolveConfig
from femkit.core.errors import (
    DimensionMismatch,
    FEAError,
    KernelFailure,
    PatternMismatch,
)
from femkit.fea.dofs import DofMap, ElementDofs, build_element_dofs
from femkit.fea.kernels import KernelRegistry
from femkit.fea.mesh import Mesh
from femkit.fea.sparsity import SparsityPattern

logger = logging.getLogger(__name__)

ParameterOverrides = Mapping[str, Mapping[str, Any]]


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------

@dataclass
class GlobalSystem:
    """Assembled global matrix and load vector.

    ``matrix`` has exactly the structure of ``pattern`` (explicit zeros are
    kept so the structure stays stable across passes).
    """

    matrix: sp.csr_matrix
    load: NDArray[np.float64]
    pattern: SparsityPattern
    stats: dict = field(default_factory=dict)

    @property
    def n_dof(self) -> int:
        return int(self.load.shape[0])

    def copy(self) -> "GlobalSystem":
        return GlobalSystem(
            matrix=self.matrix.copy(),
            load=self.load.copy(),
            pattern=self.pattern,
            stats=dict(self.stats),
        )


@dataclass(frozen=True)
class NodalLoad:
    """A point load on one nodal field component."""

    node: int
    field: str
    component: int
    value: float


def apply_nodal_loads(load: NDArray[np.float64], dof_map: DofMap,
                      loads: Iterable[NodalLoad]) -> NDArray[np.float64]:
    """Return ``load`` plus the given point loads (``load`` is left untouched)."""
    out = np.array(load, dtype=np.float64, copy=True)
    for nl in loads:
        out[dof_map.dof(nl.node, nl.field, nl.component)] += nl.value
    return out


# ---------------------------------------------------------------------------
# Assembly plan
# ---------------------------------------------------------------------------

class AssemblyPlan:
    """Per-element DOFs and CSR slots, computed once per mesh/pattern pair."""

    def __init__(self, mesh: Mesh, element_dofs: ElementDofs,
                 slots: NDArray[np.int64], slot_offsets: NDArray[np.int64],
                 node_rows: NDArray[np.int64]) -> None:
        self.mesh = mesh
        self.element_dofs = element_dofs
        self.slots = slots
        self.slot_offsets = slot_offsets
        self.node_rows = node_rows
        self._colors: Optional[list[NDArray[np.int64]]] = None

    @classmethod
    def build(cls, mesh: Mesh, dof_map: DofMap, pattern: SparsityPattern,
              registry: KernelRegistry,
              element_dofs: Optional[ElementDofs] = None) -> "AssemblyPlan":
        """Resolve every element's DOFs and CSR slots.

        Raises
        ------
        UnknownElementType, DimensionMismatch
            From :func:`~femkit.fea.dofs.build_element_dofs`.
        PatternMismatch
            An element DOF pair is not in ``pattern``.
        """
        t0 = time.perf_counter()
        if pattern.n_dof != dof_map.n_dof:
            raise DimensionMismatch(
                f"Sparsity pattern is {pattern.n_dof} x {pattern.n_dof} but the "
                f"DOF map numbers {dof_map.n_dof} DOFs",
                expected=(dof_map.n_dof,),
                got=(pattern.n_dof,),
            )
        if element_dofs is None:
            element_dofs = build_element_dofs(mesh, dof_map, registry)

        sizes = element_dofs.sizes
        slot_offsets = np.zeros(element_dofs.n_elements + 1, dtype=np.int64)
        np.cumsum(sizes * sizes, out=slot_offsets[1:])
        slots = np.empty(int(slot_offsets[-1]), dtype=np.int64)

        for s in np.unique(sizes):
            s = int(s)
            members = np.flatnonzero(sizes == s)
            if s == 0:
                continue
            idx = element_dofs.offsets[members][:, None] + np.arange(s, dtype=np.int64)
            D = element_dofs.dofs[idx]  # (m, s)
            R = np.repeat(D, s, axis=1)  # row-major (i, j) -> D[i]
            C = np.tile(D, (1, s))       # row-major (i, j) -> D[j]
            try:
                block = pattern.locate(R, C)
            except PatternMismatch as exc:
                hit = np.any((R == exc.row) & (C == exc.col), axis=1)
                element = int(members[np.flatnonzero(hit)[0]])
                raise PatternMismatch(exc.row, exc.col, element=element) from None
            target = slot_offsets[members][:, None] + np.arange(s * s, dtype=np.int64)
            slots[target] = block

        node_rows = mesh.node_rows(mesh.connectivity)
        for arr in (slots, slot_offsets, node_rows):
            arr.setflags(write=False)
        logger.debug(
            "Built assembly plan: %d elements, %d scatter slots in %.3fs",
            element_dofs.n_elements, slots.shape[0], time.perf_counter() - t0,
        )
        return cls(mesh, element_dofs, slots, slot_offsets, node_rows)

    @property
    def n_elements(self) -> int:
        return self.element_dofs.n_elements

    def element_slots(self, element: int) -> NDArray[np.int64]:
        return self.slots[self.slot_offsets[element]:self.slot_offsets[element + 1]]

    def element_coords(self, element: int) -> NDArray[np.float64]:
        rows = self.node_rows[self.mesh.offsets[element]:self.mesh.offsets[element + 1]]
        return self.mesh.coordinates[rows]

    def coloring(self) -> list[NDArray[np.int64]]:
        """Greedy partition of the elements into DOF-disjoint colour classes.

        Elements are visited in index order and given the lowest colour none
        of whose members shares a DOF with them.  Cached after the first call.
        """
        if self._colors is not None:
            return self._colors
        n_dof = int(self.element_dofs.dofs.max()) + 1 if self.element_dofs.dofs.size else 0
        used: list[NDArray[np.bool_]] = []
        members: list[list[int]] = []
        for e in range(self.n_elements):
            d = self.element_dofs.for_element(e)
            for c, mask in enumerate(used):
                if not mask[d].any():
                    mask[d] = True
                    members[c].append(e)
                    break
            else:
                mask = np.zeros(n_dof, dtype=bool)
                mask[d] = True
                used.append(mask)
                members.append([e])
        self._colors = [np.asarray(m, dtype=np.int64) for m in members]
        logger.debug("Coloured %d elements into %d classes",
                     self.n_elements, len(self._colors))
        return self._colors


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class Assembler:
    """Assemble the global system for a fixed mesh, DOF map and pattern.

    Parameters
    ----------
    mesh : Mesh
        Read-only mesh.
    dof_map : DofMap
        Read-only DOF numbering.
    pattern : SparsityPattern
        Finalized pattern; must contain every element DOF pair.
    registry : KernelRegistry
        Element-type tag -> kernel.
    config : SolveConfig, optional
        Supplies ``n_workers``, ``assembly_strategy`` and ``chunk_size``.
    """

    def __init__(
        self,
        mesh: Mesh,
        dof_map: DofMap,
        pattern: SparsityPattern,
        registry: KernelRegistry,
        config: Optional[SolveConfig] = None,
        plan: Optional[AssemblyPlan] = None,
    ) -> None:
        self._mesh = mesh
        self._dof_map = dof_map
        self._pattern = pattern
        self._registry = registry
        self._config = config or SolveConfig()
        self._plan = plan

    @property
    def plan(self) -> AssemblyPlan:
        if self._plan is None:
            self._plan = AssemblyPlan.build(
                self._mesh, self._dof_map, self._pattern, self._registry
            )
        return self._plan

    @property
    def config(self) -> SolveConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def assemble(self, parameters: Optional[ParameterOverrides] = None) -> GlobalSystem:
        """Evaluate all kernels and accumulate the global system.

        Parameters
        ----------
        parameters : mapping, optional
            ``{tag: {name: value}}`` overrides applied on top of the kernel
            defaults and the mesh's per-element parameters.

        Raises
        ------
        DimensionMismatch
            A kernel returned matrices of the wrong size.
        KernelFailure
            A kernel rejected an element.
        """
        t0 = time.perf_counter()
        plan = self.plan
        cfg = self._config
        n_workers = max(1, int(cfg.n_workers))
        data = np.zeros(self._pattern.nnz, dtype=np.float64)
        load = np.zeros(self._dof_map.n_dof, dtype=np.float64)
        evaluate = self._element_evaluator(plan, parameters or {})

        if cfg.assembly_strategy == AssemblyStrategy.COLORING:
            n_groups = self._run_coloring(plan, evaluate, data, load, n_workers, cfg.chunk_size)
        else:
            n_groups = self._run_reduction(plan, evaluate, data, load, n_workers, cfg.chunk_size)

        matrix = self._pattern.to_csr(data)
        elapsed = time.perf_counter() - t0
        stats = {
            "n_dof": self._dof_map.n_dof,
            "n_elements": plan.n_elements,
            "nnz": self._pattern.nnz,
            "strategy": cfg.assembly_strategy.value,
            "n_workers": n_workers,
            "n_groups": n_groups,
            "elapsed_s": elapsed,
        }
        logger.info(
            "Assembled global system: %d DOFs, %d elements, nnz=%d, "
            "strategy=%s (%d groups), workers=%d, time=%.3fs",
            stats["n_dof"], stats["n_elements"], stats["nnz"],
            stats["strategy"], n_groups, n_workers, elapsed,
        )
        return GlobalSystem(matrix=matrix, load=load, pattern=self._pattern, stats=stats)

    # ------------------------------------------------------------------
    # Element evaluation
    # ------------------------------------------------------------------

    def _element_evaluator(self, plan: AssemblyPlan,
                           overrides: ParameterOverrides) -> Callable:
        mesh = self._mesh
        registry = self._registry

        def evaluate(e: int):
            tag = mesh.element_types[e]
            kernel = registry.get(tag)
            merged = dict(mesh.params_for(e))
            merged.update(overrides.get(tag, {}))
            params = kernel.resolve_params(merged)
            try:
                contrib = kernel.evaluate(plan.element_coords(e), params)
            except FEAError:
                raise
            except ValueError as exc:
                raise KernelFailure(
                    f"Kernel for {tag!r} rejected element {e}: {exc}",
                    element=e, tag=tag,
                ) from exc

            dofs = plan.element_dofs.for_element(e)
            s = dofs.shape[0]
            Ke = np.asarray(contrib.stiffness, dtype=np.float64)
            fe = np.asarray(contrib.load, dtype=np.float64)
            if Ke.shape != (s, s) or fe.shape != (s,):
                raise DimensionMismatch(
                    f"Kernel for {tag!r} returned stiffness {Ke.shape} and load "
                    f"{fe.shape} for element {e}, which has {s} DOFs",
                    element=e,
                    expected=(s, s),
                    got=Ke.shape,
                )
            return plan.element_slots(e), Ke.ravel(), dofs, fe

        return evaluate

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    @staticmethod
    def _chunk_partial(evaluate: Callable, elements: Sequence[int]):
        results = [evaluate(int(e)) for e in elements]
        if not results:
            empty_i = np.zeros(0, dtype=np.int64)
            empty_f = np.zeros(0, dtype=np.float64)
            return empty_i, empty_f, empty_i, empty_f
        slots = np.concatenate([r[0] for r in results])
        vals = np.concatenate([r[1] for r in results])
        dofs = np.concatenate([r[2] for r in results])
        fvals = np.concatenate([r[3] for r in results])
        u_slots, inv = np.unique(slots, return_inverse=True)
        u_dofs, finv = np.unique(dofs, return_inverse=True)
        return (
            u_slots, np.bincount(inv.ravel(), weights=vals, minlength=u_slots.shape[0]),
            u_dofs, np.bincount(finv.ravel(), weights=fvals, minlength=u_dofs.shape[0]),
        )

    def _run_reduction(self, plan, evaluate, data, load, n_workers, chunk_size) -> int:
        n = plan.n_elements
        chunks = [np.arange(s, min(s + chunk_size, n)) for s in range(0, n, chunk_size)]

        def merge(partial) -> None:
            u_slots, k_vals, u_dofs, f_vals = partial
            data[u_slots] += k_vals
            load[u_dofs] += f_vals

        if n_workers == 1 or len(chunks) <= 1:
            for chunk in chunks:
                merge(self._chunk_partial(evaluate, chunk))
            return len(chunks)

        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = [pool.submit(self._chunk_partial, evaluate, c) for c in chunks]
            try:
                # Merge strictly in chunk order
                for fut in futures:
                    merge(fut.result())
            except BaseException:
                _cancel(futures)
                raise
        return len(chunks)

    @staticmethod
    def _scatter_direct(evaluate: Callable, elements: Sequence[int],
                        data: NDArray[np.float64], load: NDArray[np.float64]) -> None:
        for e in elements:
            slots, k_vals, dofs, f_vals = evaluate(int(e))
            np.add.at(data, slots, k_vals)
            np.add.at(load, dofs, f_vals)

    def _run_coloring(self, plan, evaluate, data, load, n_workers, chunk_size) -> int:
        colors = plan.coloring()
        if n_workers == 1:
            for members in colors:
                self._scatter_direct(evaluate, members, data, load)
            return len(colors)

        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            for members in colors:
                pieces = [members[s:s + chunk_size]
                          for s in range(0, members.shape[0], chunk_size)]
                futures = [pool.submit(self._scatter_direct, evaluate, p, data, load)
                           for p in pieces]
                try:
                    # Barrier between colour classes
                    for fut in futures:
                        fut.result()
                except BaseException:
                    _cancel(futures)
                    raise
        return len(colors)

    def __repr__(self) -> str:
        return (
            f"Assembler(n_elements={self._mesh.n_elements}, "
            f"n_dof={self._dof_map.n_dof}, nnz={self._pattern.nnz}, "
            f"strategy={self._config.assembly_strategy.value!r})"
        )


def _cancel(futures: Sequence[Future]) -> None:
    for fut in futures:
        fut.cancel()


def assemble(
    mesh: Mesh,
    dof_map: DofMap,
    pattern: SparsityPattern,
    registry: KernelRegistry,
    config: Optional[SolveConfig] = None,
    parameters: Optional[ParameterOverrides] = None,
) -> GlobalSystem:
    """One-shot assembly; see :class:`Assembler` for repeated passes."""
    return Assembler(mesh, dof_map, pattern, registry, config).assemble(parameters)
