"""Solver registry -- build linear solver backends by name.

Usage::

    from femkit.fea.solver_registry import create_solver, get_solver

    solver = create_solver(config)          # backend chosen by config
    solver = get_solver("iterative", config)
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from femkit.core.config import SolveConfig
from femkit.fea.solver_direct import DirectSolver
from femkit.fea.solver_interface import LinearSolver
from femkit.fea.solver_iterative import IterativeSolver

logger = logging.getLogger(__name__)

SolverFactory = Callable[[SolveConfig], LinearSolver]

# ---------------------------------------------------------------------------
# Internal registry
# ---------------------------------------------------------------------------

_solvers: dict[str, SolverFactory] = {}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def register_solver(name: str, factory: SolverFactory) -> None:
    """Register a factory ``config -> LinearSolver`` under ``name``.

    An existing registration is replaced with a warning.
    """
    if name in _solvers:
        logger.warning("Replacing already-registered solver %r", name)
    _solvers[name] = factory
    logger.debug("Registered solver %r", name)


def get_solver(name: str, config: Optional[SolveConfig] = None) -> LinearSolver:
    """Instantiate the solver registered as ``name``.

    Raises :class:`KeyError` if no solver with that name exists.
    """
    try:
        factory = _solvers[name]
    except KeyError:
        available = ", ".join(sorted(_solvers)) or "(none)"
        raise KeyError(
            f"No solver registered with name {name!r}.  Available solvers: {available}"
        ) from None
    return factory(config or SolveConfig())


def create_solver(config: SolveConfig) -> LinearSolver:
    """The backend selected by ``config.solver_backend``."""
    return get_solver(config.solver_backend.value, config)


def list_solvers() -> list[dict]:
    """Metadata for every registered solver, built with the default config."""
    return [get_solver(name).describe() | {"registered_as": name} for name in _solvers]


def is_registered(name: str) -> bool:
    return name in _solvers


def unregister_solver(name: str) -> bool:
    """Remove a solver from the registry.  Returns True if it existed."""
    if name in _solvers:
        del _solvers[name]
        return True
    return False


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

def _direct(config: SolveConfig) -> LinearSolver:
    return DirectSolver()


def _iterative(config: SolveConfig) -> LinearSolver:
    return IterativeSolver(
        method=config.iterative_method,
        tolerance=config.iterative_tolerance,
        max_iterations=config.max_iterations,
        time_budget_s=config.time_budget_s,
        preconditioner=config.preconditioner,
    )


def init_solvers() -> None:
    """Register the bundled backends (``direct`` and ``iterative``) if missing."""
    if not is_registered("direct"):
        register_solver("direct", _direct)
    if not is_registered("iterative"):
        register_solver("iterative", _iterative)


init_solvers()
