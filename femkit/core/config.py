"""Analysis configuration: solve-time settings plus a YAML-backed loader."""
from __future__ import annotations

import copy
import enum
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import yaml

from femkit.core.logger import RunLogger


class ConstraintStrategy(str, enum.Enum):
    ELIMINATION = "elimination"
    PENALTY = "penalty"


class SolverBackendKind(str, enum.Enum):
    DIRECT = "direct"
    ITERATIVE = "iterative"


class AssemblyStrategy(str, enum.Enum):
    REDUCTION = "reduction"
    COLORING = "coloring"


_ITERATIVE_METHODS = ("cg", "gmres", "bicgstab")
_PRECONDITIONERS = ("none", "jacobi")


@dataclass
class SolveConfig:
    """Settings consumed when assembling, constraining and solving.

    Parameters
    ----------
    constraint_strategy : str or ConstraintStrategy
        ``"elimination"`` (exact) or ``"penalty"`` (approximate).
    penalty_magnitude : float
        Penalty stiffness relative to the largest diagonal entry of K.
    solver_backend : str or SolverBackendKind
        ``"direct"`` (sparse LU) or ``"iterative"`` (Krylov).
    iterative_method : str
        ``"cg"``, ``"gmres"`` or ``"bicgstab"``.
    iterative_tolerance : float
        Relative residual tolerance ``||b - Ax|| / ||b||``.
    max_iterations : int
        Iteration cap for iterative backends.
    time_budget_s : float or None
        Wall-clock budget for iterative backends; ``None`` for no limit.
    preconditioner : str
        ``"none"`` or ``"jacobi"``.
    n_workers : int
        Size of the assembly thread pool.
    assembly_strategy : str or AssemblyStrategy
        ``"reduction"`` (chunked partial sums) or ``"coloring"``.
    chunk_size : int
        Elements per reduction chunk.  Fixes the summation order.
    """

    constraint_strategy: ConstraintStrategy = ConstraintStrategy.ELIMINATION
    penalty_magnitude: float = 1.0e8
    solver_backend: SolverBackendKind = SolverBackendKind.DIRECT
    iterative_method: str = "cg"
    iterative_tolerance: float = 1.0e-10
    max_iterations: int = 10000
    time_budget_s: Optional[float] = None
    preconditioner: str = "jacobi"
    n_workers: int = 1
    assembly_strategy: AssemblyStrategy = AssemblyStrategy.REDUCTION
    chunk_size: int = 512

    def __post_init__(self) -> None:
        self.constraint_strategy = _coerce(ConstraintStrategy, self.constraint_strategy,
                                           "constraint_strategy")
        self.solver_backend = _coerce(SolverBackendKind, self.solver_backend,
                                      "solver_backend")
        self.assembly_strategy = _coerce(AssemblyStrategy, self.assembly_strategy,
                                         "assembly_strategy")
        if self.iterative_method not in _ITERATIVE_METHODS:
            raise ValueError(
                f"iterative_method must be one of {_ITERATIVE_METHODS}, "
                f"got {self.iterative_method!r}"
            )
        if self.preconditioner not in _PRECONDITIONERS:
            raise ValueError(
                f"preconditioner must be one of {_PRECONDITIONERS}, "
                f"got {self.preconditioner!r}"
            )
        if self.penalty_magnitude <= 0:
            raise ValueError("penalty_magnitude must be positive")
        if self.iterative_tolerance <= 0:
            raise ValueError("iterative_tolerance must be positive")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.time_budget_s is not None and self.time_budget_s <= 0:
            raise ValueError("time_budget_s must be positive or None")
        if self.n_workers < 1:
            raise ValueError("n_workers must be at least 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")


def _coerce(enum_cls, value, name):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise ValueError(f"{name} must be one of {allowed}, got {value!r}") from None


# ---------------------------------------------------------------------------
# YAML-backed settings
# ---------------------------------------------------------------------------

DEFAULT_CONFIG = {
    "assembly": {"n_workers": 1, "strategy": "reduction", "chunk_size": 512},
    "constraints": {"strategy": "elimination", "penalty_magnitude": 1.0e8},
    "solver": {
        "backend": "direct",
        "method": "cg",
        "tolerance": 1.0e-10,
        "max_iterations": 10000,
        "time_budget_s": None,
        "preconditioner": "jacobi",
    },
    "logging": {"dir": None, "level": "INFO"},
}


def _merge(target: dict, overrides: Mapping) -> None:
    """Recursively fold ``overrides`` into ``target``; sections merge, leaves replace."""
    for key, value in overrides.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge(current, value)
        else:
            target[key] = copy.deepcopy(value)


class AnalysisSettings:
    """Analysis settings: ``DEFAULT_CONFIG`` overlaid with an optional YAML file.

    Keys are addressed with dots, e.g. ``settings.get("solver.tolerance")``.
    A missing file leaves the defaults in place.
    """

    def __init__(self, config_path: Optional[str] = None):
        self._data: dict = copy.deepcopy(DEFAULT_CONFIG)
        if config_path and os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
            if loaded is not None and not isinstance(loaded, Mapping):
                raise ValueError(
                    f"{config_path}: expected a mapping of sections, "
                    f"got {type(loaded).__name__}"
                )
            _merge(self._data, loaded or {})

    @classmethod
    def from_dict(cls, overrides: Mapping) -> "AnalysisSettings":
        settings = cls()
        _merge(settings._data, overrides)
        return settings

    def get(self, dotted_key: str, default: Any = None) -> Any:
        section: Any = self._data
        for part in dotted_key.split("."):
            if not isinstance(section, dict) or part not in section:
                return default
            section = section[part]
        return section

    def set(self, dotted_key: str, value: Any) -> None:
        *parents, leaf = dotted_key.split(".")
        section = self._data
        for part in parents:
            if not isinstance(section.get(part), dict):
                section[part] = {}
            section = section[part]
        section[leaf] = value

    @property
    def data(self) -> dict:
        return self._data

    def to_solve_config(self) -> SolveConfig:
        """Build a validated :class:`SolveConfig` from the merged settings."""
        budget = self.get("solver.time_budget_s")
        return SolveConfig(
            constraint_strategy=self.get("constraints.strategy"),
            penalty_magnitude=float(self.get("constraints.penalty_magnitude")),
            solver_backend=self.get("solver.backend"),
            iterative_method=self.get("solver.method"),
            iterative_tolerance=float(self.get("solver.tolerance")),
            max_iterations=int(self.get("solver.max_iterations")),
            time_budget_s=None if budget is None else float(budget),
            preconditioner=self.get("solver.preconditioner"),
            n_workers=int(self.get("assembly.n_workers")),
            assembly_strategy=self.get("assembly.strategy"),
            chunk_size=int(self.get("assembly.chunk_size")),
        )

    def run_logger(self) -> Optional[RunLogger]:
        """A :class:`RunLogger` writing to ``logging.dir``, or ``None`` when unset."""
        log_dir = self.get("logging.dir")
        if not log_dir:
            return None
        return RunLogger(log_dir=str(log_dir), level=str(self.get("logging.level", "INFO")))
