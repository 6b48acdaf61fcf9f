"""Krylov solvers from ``scipy.sparse.linalg`` with an iteration and time budget.

Methods
-------
``cg``        symmetric positive definite systems
``gmres``     general systems (restarted, inner iterations are counted)
``bicgstab``  general systems

An unconverged iterate is never returned.  Any stop short of the tolerance
raises :class:`~femkit.core.errors.DidNotConverge` with the reason.
"""
from __future__ import annotations

import logging
import math
import time
from typing import Optional

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from numpy.typing import NDArray

from femkit.core.errors import DidNotConverge
from femkit.fea.solver_interface import LinearSolver, SolveInfo, relative_residual

logger = logging.getLogger(__name__)

_METHODS = {
    "cg": spla.cg,
    "gmres": spla.gmres,
    "bicgstab": spla.bicgstab,
}

_GMRES_RESTART = 30


class _BudgetExhausted(Exception):
    """Raised from the Krylov callback to stop at the wall-clock budget."""


class IterativeSolver(LinearSolver):
    """Preconditioned Krylov solve.

    Parameters
    ----------
    method : str
        ``"cg"``, ``"gmres"`` or ``"bicgstab"``.
    tolerance : float
        Relative residual tolerance.
    max_iterations : int
        Iteration cap (inner iterations for GMRES).
    time_budget_s : float or None
        Wall-clock budget.
    preconditioner : str
        ``"jacobi"`` or ``"none"``.
    """

    name = "iterative"

    def __init__(
        self,
        method: str = "cg",
        tolerance: float = 1e-10,
        max_iterations: int = 10000,
        time_budget_s: Optional[float] = None,
        preconditioner: str = "jacobi",
    ) -> None:
        if method not in _METHODS:
            raise ValueError(f"Unknown Krylov method {method!r}; choose from {list(_METHODS)}")
        if preconditioner not in ("jacobi", "none"):
            raise ValueError(f"Unknown preconditioner {preconditioner!r}")
        self.method = method
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.time_budget_s = time_budget_s
        self.preconditioner = preconditioner

    def _jacobi(self, A: sp.csr_matrix) -> spla.LinearOperator:
        d = A.diagonal()
        zero = d == 0.0
        if np.any(zero):
            logger.warning(
                "Jacobi preconditioner: %d zero diagonal entries left unscaled",
                int(zero.sum()),
            )
            d = np.where(zero, 1.0, d)
        inv = 1.0 / d
        n = A.shape[0]
        return spla.LinearOperator((n, n), matvec=lambda v: inv * np.ravel(v), dtype=np.float64)

    def solve_matrix(self, A, b) -> tuple[NDArray[np.float64], SolveInfo]:
        t0 = time.perf_counter()
        A = sp.csr_matrix(A)
        b = np.asarray(b, dtype=np.float64)
        n = b.shape[0]
        if n == 0 or not np.any(b):
            info = SolveInfo(solver=self.name, method=self.method, n_dof=n)
            return np.zeros(n), info

        M = self._jacobi(A) if self.preconditioner == "jacobi" else None
        state = {"iterations": 0, "x": np.zeros(n), "residual": None}
        deadline = None if self.time_budget_s is None else t0 + self.time_budget_s

        def tick() -> None:
            state["iterations"] += 1
            if deadline is not None and time.perf_counter() > deadline:
                raise _BudgetExhausted()

        kwargs = {"rtol": self.tolerance, "atol": 0.0, "M": M}
        if self.method == "gmres":
            def gmres_callback(pr_norm):
                # GMRES exposes the relative preconditioned residual, not x
                state["residual"] = float(pr_norm)
                tick()

            restart = min(_GMRES_RESTART, n)
            kwargs.update(
                restart=restart,
                maxiter=max(1, math.ceil(self.max_iterations / restart)),
                callback=gmres_callback,
                callback_type="pr_norm",
            )
        else:
            def callback(xk):
                state["x"] = np.array(xk, copy=True)
                tick()

            kwargs.update(maxiter=self.max_iterations, callback=callback)

        try:
            x, status = _METHODS[self.method](A, b, **kwargs)
        except _BudgetExhausted:
            residual = state["residual"]
            if residual is None:
                residual = relative_residual(A, state["x"], b)
            logger.warning(
                "%s stopped at the %.3fs time budget after %d iterations (residual %.3e)",
                self.method, self.time_budget_s, state["iterations"], residual,
            )
            raise DidNotConverge(residual, state["iterations"],
                                 reason="time budget exhausted") from None

        residual = relative_residual(A, x, b)
        iterations = state["iterations"]
        if status != 0 or not np.all(np.isfinite(x)):
            reason = ("iteration limit reached" if status > 0
                      else "breakdown or illegal input")
            logger.warning(
                "%s did not converge: status=%d, %d iterations, residual %.3e",
                self.method, status, iterations, residual,
            )
            raise DidNotConverge(residual, iterations, reason=reason)

        elapsed = time.perf_counter() - t0
        logger.info(
            "Iterative solve (%s, M=%s): %d DOFs, %d iterations, residual=%.3e, time=%.3fs",
            self.method, self.preconditioner, n, iterations, residual, elapsed,
        )
        info = SolveInfo(
            solver=self.name,
            method=self.method,
            n_dof=n,
            iterations=iterations,
            residual_norm=residual,
            converged=True,
            elapsed_s=elapsed,
            extra={"preconditioner": self.preconditioner, "tolerance": self.tolerance},
        )
        return x, info

    def describe(self) -> dict:
        meta = super().describe()
        meta.update(method=self.method, tolerance=self.tolerance,
                    max_iterations=self.max_iterations,
                    preconditioner=self.preconditioner)
        return meta
