"""Essential and multi-point constraints.

Two kinds of constraint are supported:

- :class:`FixedConstraint` -- ``u[dof] = value``.
- :class:`LinearConstraint` -- ``sum(c_i * u[d_i]) = value`` with one
  designated *target* DOF that is eliminated.

Multi-point elimination
-----------------------
Every target is rewritten in terms of non-target (master) DOFs, following the
dependency order of the constraints (a target may depend on another target).
This gives ``u = T @ u_r + g`` with ``u_r`` the master DOFs, and the reduced
system::

    K_r = T^T K T
    f_r = T^T (f - K g)

Fixed constraints
-----------------
``elimination``
    ``f -= K[:, D] @ v_D``; rows and columns ``D`` are zeroed; ``K[d, d] = 1``
    and ``f[d] = v_d``.  The solved value is exactly ``v_d``.
``penalty``
    ``p = penalty_magnitude * max|diag(K)|`` is added to ``K[d, d]`` and
    ``p * v_d`` to ``f[d]``.  The solved value approaches ``v_d`` as the
    penalty grows; it is never exact.

The input :class:`~femkit.fea.assembler.GlobalSystem` is never modified.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Sequence, Union

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from femkit.core.config import ConstraintStrategy
from femkit.core.errors import ConstraintConflict
from femkit.fea.assembler import GlobalSystem
from femkit.fea.dofs import DofMap

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constraint records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FixedConstraint:
    """Prescribe ``u[dof] = value``."""

    dof: int
    value: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "dof", int(self.dof))
        object.__setattr__(self, "value", float(self.value))


@dataclass(frozen=True)
class LinearConstraint:
    """``sum(coeff * u[dof] for dof, coeff in terms) == value``.

    Parameters
    ----------
    terms : sequence of (dof, coefficient)
        Repeated DOFs are combined.
    value : float
        Right-hand side.
    target : int, optional
        The DOF eliminated by this constraint; defaults to the first term.
    """

    terms: tuple
    value: float = 0.0
    target: Optional[int] = None

    def __post_init__(self) -> None:
        combined: dict[int, float] = {}
        for dof, coeff in self.terms:
            combined[int(dof)] = combined.get(int(dof), 0.0) + float(coeff)
        if not combined:
            raise ConstraintConflict("Linear constraint has no terms")
        target = next(iter(combined)) if self.target is None else int(self.target)
        if target not in combined:
            raise ConstraintConflict(
                f"Target DOF {target} does not appear in the constraint terms",
                dof=target,
            )
        if combined[target] == 0.0:
            raise ConstraintConflict(
                f"Target DOF {target} has a zero coefficient and cannot be eliminated",
                dof=target,
            )
        object.__setattr__(self, "terms", tuple(combined.items()))
        object.__setattr__(self, "value", float(self.value))
        object.__setattr__(self, "target", target)

    @classmethod
    def tie(cls, slave: int, master: int, factor: float = 1.0,
            offset: float = 0.0) -> "LinearConstraint":
        """``u[slave] = factor * u[master] + offset``."""
        return cls(terms=((slave, 1.0), (master, -factor)), value=offset, target=slave)

    @property
    def dofs(self) -> list[int]:
        return [d for d, _ in self.terms]

    def solved_form(self) -> tuple[dict[int, float], float]:
        """``u[target] = sum(a_j * u[j]) + b`` as ``({j: a_j}, b)``."""
        c_t = dict(self.terms)[self.target]
        coeffs = {d: -c / c_t for d, c in self.terms if d != self.target}
        return coeffs, self.value / c_t


Constraint = Union[FixedConstraint, LinearConstraint]


@dataclass(frozen=True)
class ResolvedConstraints:
    """Validated constraints: merged fixed values and dependency-ordered MPCs."""

    fixed_dofs: NDArray[np.int64]
    fixed_values: NDArray[np.float64]
    linear: tuple = ()

    @property
    def targets(self) -> list[int]:
        return [c.target for c in self.linear]


class ConstraintSet:
    """Ordered collection of constraints for one analysis."""

    def __init__(self, constraints: Iterable[Constraint] = ()) -> None:
        self._items: list[Constraint] = []
        for c in constraints:
            self.add(c)

    def add(self, constraint: Constraint) -> "ConstraintSet":
        if not isinstance(constraint, (FixedConstraint, LinearConstraint)):
            raise TypeError(f"Not a constraint: {constraint!r}")
        self._items.append(constraint)
        return self

    def fix(self, dof: int, value: float = 0.0) -> "ConstraintSet":
        return self.add(FixedConstraint(dof, value))

    def fix_node(self, dof_map: DofMap, node: int, field_name: str,
                 components: Optional[Sequence[int]] = None,
                 value: float = 0.0) -> "ConstraintSet":
        """Fix components of a nodal field (all components by default)."""
        if components is None:
            components = range(dof_map.field(field_name).components)
        for comp in components:
            self.fix(dof_map.dof(node, field_name, comp), value)
        return self

    def add_linear(self, terms, value: float = 0.0,
                   target: Optional[int] = None) -> "ConstraintSet":
        return self.add(LinearConstraint(tuple(terms), value, target))

    def tie(self, slave: int, master: int, factor: float = 1.0,
            offset: float = 0.0) -> "ConstraintSet":
        return self.add(LinearConstraint.tie(slave, master, factor, offset))

    @property
    def fixed(self) -> list[FixedConstraint]:
        return [c for c in self._items if isinstance(c, FixedConstraint)]

    @property
    def linear(self) -> list[LinearConstraint]:
        return [c for c in self._items if isinstance(c, LinearConstraint)]

    def __iter__(self) -> Iterator[Constraint]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def validate(self, n_dof: int) -> ResolvedConstraints:
        """Check ranges, conflicts and cycles; order MPCs by dependency.

        Raises
        ------
        ConstraintConflict
            Out-of-range DOF, a DOF fixed to two different values, a DOF that
            is the target of two different constraints, a fixed MPC target,
            or a cyclic chain of MPCs.
        """
        def check_range(dof: int) -> None:
            if dof < 0 or dof >= n_dof:
                raise ConstraintConflict(
                    f"Constraint references DOF {dof}, outside [0, {n_dof})", dof=dof
                )

        fixed: dict[int, float] = {}
        for c in self.fixed:
            check_range(c.dof)
            if c.dof in fixed and fixed[c.dof] != c.value:
                raise ConstraintConflict(
                    f"DOF {c.dof} is fixed to both {fixed[c.dof]!r} and {c.value!r}",
                    dof=c.dof,
                )
            fixed[c.dof] = c.value

        by_target: dict[int, LinearConstraint] = {}
        for c in self.linear:
            for d in c.dofs:
                check_range(d)
            if c.target in by_target:
                if by_target[c.target] == c:
                    continue
                raise ConstraintConflict(
                    f"DOF {c.target} is the target of two different multi-point "
                    "constraints",
                    dof=c.target,
                )
            if c.target in fixed:
                raise ConstraintConflict(
                    f"DOF {c.target} is both fixed and the target of a multi-point "
                    "constraint",
                    dof=c.target,
                )
            by_target[c.target] = c

        ordered = _dependency_order(by_target)
        dofs = np.fromiter(fixed.keys(), dtype=np.int64, count=len(fixed))
        values = np.fromiter(fixed.values(), dtype=np.float64, count=len(fixed))
        order = np.argsort(dofs, kind="stable")
        return ResolvedConstraints(
            fixed_dofs=dofs[order], fixed_values=values[order], linear=tuple(ordered)
        )


def _dependency_order(by_target: dict[int, LinearConstraint]) -> list[LinearConstraint]:
    """Kahn ordering: a constraint comes after every target it refers to."""
    indegree = {t: 0 for t in by_target}
    dependents: dict[int, list[int]] = {t: [] for t in by_target}
    for t, c in by_target.items():
        for d in c.dofs:
            if d != t and d in by_target:
                indegree[t] += 1
                dependents[d].append(t)

    queue = deque(t for t in by_target if indegree[t] == 0)
    ordered: list[LinearConstraint] = []
    while queue:
        t = queue.popleft()
        ordered.append(by_target[t])
        for nxt in dependents[t]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    if len(ordered) < len(by_target):
        stuck = next(t for t in by_target if indegree[t] > 0)
        raise ConstraintConflict(
            f"Multi-point constraints form a cycle through DOF {stuck}", dof=stuck
        )
    return ordered


# ---------------------------------------------------------------------------
# Constrained system
# ---------------------------------------------------------------------------

@dataclass
class ConstrainedSystem:
    """The system handed to the solver plus what is needed to undo the reduction.

    ``matrix``/``load`` live in the reduced space of size ``n_reduced``.  With
    no multi-point constraints the reduced space is the full DOF space and
    ``transform`` is ``None``.
    """

    matrix: sp.csr_matrix
    load: NDArray[np.float64]
    original: GlobalSystem
    strategy: ConstraintStrategy
    fixed_dofs: NDArray[np.int64]
    fixed_values: NDArray[np.float64]
    transform: Optional[sp.csr_matrix] = None
    offset: Optional[NDArray[np.float64]] = None
    penalty: Optional[float] = None
    stats: dict = field(default_factory=dict)

    @property
    def n_dof(self) -> int:
        return self.original.n_dof

    @property
    def n_reduced(self) -> int:
        return int(self.load.shape[0])

    def expand(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        """Full ``n_dof`` solution from a reduced solution vector."""
        x = np.asarray(x, dtype=np.float64)
        if x.shape != (self.n_reduced,):
            raise ValueError(f"Expected a vector of length {self.n_reduced}, got {x.shape}")
        u = x.copy() if self.transform is None else self.transform @ x + self.offset
        if self.strategy is ConstraintStrategy.ELIMINATION and self.fixed_dofs.size:
            # prescribed values are exact, not solver output
            u[self.fixed_dofs] = self.fixed_values
        return u

    def reactions(self, u: NDArray[np.float64]) -> NDArray[np.float64]:
        """``K u - f`` on the unconstrained system."""
        return self.original.matrix @ u - self.original.load


def apply_constraints(
    system: GlobalSystem,
    constraints: Union[ConstraintSet, Iterable[Constraint]],
    strategy: Union[str, ConstraintStrategy] = ConstraintStrategy.ELIMINATION,
    penalty_magnitude: float = 1.0e8,
) -> ConstrainedSystem:
    """Apply fixed and multi-point constraints to an assembled system.

    Parameters
    ----------
    system : GlobalSystem
        Assembled matrix and load; left unmodified.
    constraints : ConstraintSet or iterable of constraints
    strategy : str or ConstraintStrategy
        How fixed constraints are enforced.  Multi-point constraints are
        always eliminated.
    penalty_magnitude : float
        Penalty stiffness relative to ``max|diag(K)|``.

    Raises
    ------
    ConstraintConflict
        See :meth:`ConstraintSet.validate`.
    """
    t0 = time.perf_counter()
    strategy = ConstraintStrategy(strategy)
    if not isinstance(constraints, ConstraintSet):
        constraints = ConstraintSet(constraints)
    n_dof = system.n_dof
    resolved = constraints.validate(n_dof)

    K = system.matrix.tocsr()
    f = np.asarray(system.load, dtype=np.float64)
    T = g = None
    reduced_index = np.arange(n_dof, dtype=np.int64)

    if resolved.linear:
        T, g, reduced_index = _master_slave_transform(resolved.linear, n_dof)
        Tt = T.T.tocsr()
        K = (Tt @ K @ T).tocsr()
        f = Tt @ (f - system.matrix @ g)
    else:
        K = K.copy()
        f = f.copy()

    D = reduced_index[resolved.fixed_dofs]
    v = resolved.fixed_values
    n_r = K.shape[0]
    penalty = None

    if D.size and strategy == ConstraintStrategy.ELIMINATION:
        v_full = np.zeros(n_r, dtype=np.float64)
        v_full[D] = v
        f = f - K @ v_full
        keep = np.ones(n_r, dtype=np.float64)
        keep[D] = 0.0
        mask = sp.diags(keep, format="csr")
        K = (mask @ K @ mask + sp.diags(1.0 - keep, format="csr")).tocsr()
        f[D] = v
    elif D.size:
        diag_max = float(np.max(np.abs(K.diagonal()))) if n_r else 0.0
        penalty = penalty_magnitude * (diag_max if diag_max > 0.0 else 1.0)
        bump = np.zeros(n_r, dtype=np.float64)
        bump[D] = penalty
        K = (K + sp.diags(bump, format="csr")).tocsr()
        f = f.copy()
        f[D] += penalty * v

    K.sort_indices()
    elapsed = time.perf_counter() - t0
    stats = {
        "n_fixed": int(D.size),
        "n_linear": len(resolved.linear),
        "n_reduced": n_r,
        "strategy": strategy.value,
        "penalty": penalty,
        "elapsed_s": elapsed,
    }
    logger.info(
        "Applied constraints: %d fixed (%s), %d multi-point, %d -> %d DOFs, time=%.3fs",
        D.size, strategy.value, len(resolved.linear), n_dof, n_r, elapsed,
    )
    return ConstrainedSystem(
        matrix=K,
        load=np.asarray(f, dtype=np.float64),
        original=system,
        strategy=strategy,
        fixed_dofs=resolved.fixed_dofs,
        fixed_values=resolved.fixed_values,
        transform=T,
        offset=g,
        penalty=penalty,
        stats=stats,
    )


def _master_slave_transform(
    linear: Sequence[LinearConstraint], n_dof: int
) -> tuple[sp.csr_matrix, NDArray[np.float64], NDArray[np.int64]]:
    """Build ``T`` and ``g`` with ``u = T @ u_r + g``.

    ``linear`` must already be in dependency order.  Returns ``T``, ``g`` and
    the full-to-reduced index map (``-1`` for eliminated targets).
    """
    targets = np.array([c.target for c in linear], dtype=np.int64)
    is_target = np.zeros(n_dof, dtype=bool)
    is_target[targets] = True
    reduced_index = np.full(n_dof, -1, dtype=np.int64)
    masters = np.flatnonzero(~is_target)
    reduced_index[masters] = np.arange(masters.shape[0], dtype=np.int64)

    # Each target expressed over masters only
    expressions: dict[int, tuple[dict[int, float], float]] = {}
    for c in linear:
        coeffs, b = c.solved_form()
        resolved: dict[int, float] = {}
        for d, a in coeffs.items():
            if is_target[d]:
                sub, sub_b = expressions[d]
                for m, am in sub.items():
                    resolved[m] = resolved.get(m, 0.0) + a * am
                b += a * sub_b
            else:
                resolved[d] = resolved.get(d, 0.0) + a
        expressions[c.target] = (resolved, b)

    rows = [masters]
    cols = [reduced_index[masters]]
    vals = [np.ones(masters.shape[0], dtype=np.float64)]
    g = np.zeros(n_dof, dtype=np.float64)
    for t, (coeffs, b) in expressions.items():
        if coeffs:
            m = np.fromiter(coeffs.keys(), dtype=np.int64, count=len(coeffs))
            rows.append(np.full(m.shape[0], t, dtype=np.int64))
            cols.append(reduced_index[m])
            vals.append(np.fromiter(coeffs.values(), dtype=np.float64, count=len(coeffs)))
        g[t] = b

    T = sp.coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n_dof, masters.shape[0]),
    ).tocsr()
    logger.debug("Master-slave transform: %d targets, %d masters", targets.size,
                 masters.shape[0])
    return T, g, reduced_index
