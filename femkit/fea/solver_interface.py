"""Abstract linear solver interface."""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

if TYPE_CHECKING:
    from femkit.fea.constraints import ConstrainedSystem


@dataclass
class SolveInfo:
    """Diagnostics of one linear solve."""

    solver: str
    method: str
    n_dof: int
    iterations: int = 0
    residual_norm: float = 0.0  # relative, ||b - Ax|| / ||b||
    converged: bool = True
    elapsed_s: float = 0.0
    extra: dict = field(default_factory=dict)


@dataclass
class SolveResult:
    """Full solution vector plus the reduced vector the backend produced."""

    solution: NDArray[np.float64]
    reduced_solution: NDArray[np.float64]
    info: SolveInfo


def relative_residual(A: sp.spmatrix, x: NDArray[np.float64],
                      b: NDArray[np.float64]) -> float:
    """``||b - A x|| / ||b||`` (absolute norm when ``b`` is zero)."""
    r = float(np.linalg.norm(b - A @ x))
    nb = float(np.linalg.norm(b))
    return r / nb if nb > 0.0 else r


class LinearSolver(ABC):
    """Base for linear solver backends.

    Subclasses implement :meth:`solve_matrix`; :meth:`solve` adds the
    constraint expansion.  Solves are blocking and keep no state between
    calls.
    """

    name: str = "abstract"

    @abstractmethod
    def solve_matrix(self, A: sp.spmatrix,
                     b: NDArray[np.float64]) -> tuple[NDArray[np.float64], SolveInfo]:
        """Solve ``A x = b`` and return ``x`` with diagnostics.

        Raises
        ------
        SingularSystem, DidNotConverge
            The backend could not produce a trustworthy solution.
        """
        ...

    def solve(self, system: "ConstrainedSystem") -> SolveResult:
        t0 = time.perf_counter()
        x, info = self.solve_matrix(system.matrix, system.load)
        u = system.expand(x)
        info.elapsed_s = time.perf_counter() - t0
        return SolveResult(solution=u, reduced_solution=x, info=info)

    def describe(self) -> dict:
        return {"name": self.name, "class": type(self).__qualname__}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
