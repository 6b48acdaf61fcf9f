"""Error taxonomy for the FEA pipeline.

Two families:

- :class:`StructuralError` -- the mesh, fields, kernels or constraints do not
  describe a valid global system.  These abort the analysis run.
- :class:`NumericalError` -- the system is well formed but the solver could
  not produce a trustworthy solution.  These carry diagnostics so the caller
  can retry with a different solver configuration.
"""
from __future__ import annotations

from typing import Optional


class FEAError(Exception):
    """Base class for every error raised by femkit."""


class StructuralError(FEAError, ValueError):
    """The analysis inputs do not describe a valid global system."""


class NumericalError(FEAError, RuntimeError):
    """The linear solve failed on a well-formed system."""


# ---------------------------------------------------------------------------
# Topology & DOF manager
# ---------------------------------------------------------------------------

class InvalidTopology(StructuralError):
    """An element references a node that does not exist, or the mesh is malformed."""

    def __init__(self, message: str, element: Optional[int] = None,
                 node: Optional[int] = None):
        super().__init__(message)
        self.element = element
        self.node = node


class EmptyField(StructuralError):
    """A declared field has no components."""

    def __init__(self, field_name: str, components: int):
        super().__init__(
            f"Field {field_name!r} declares {components} components; "
            "every field needs at least one."
        )
        self.field_name = field_name
        self.components = components


class InvalidFieldSpec(StructuralError):
    """The field spec is malformed (duplicate names, unknown location)."""


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class UnknownElementType(StructuralError):
    """No kernel is registered for an element-type tag."""

    def __init__(self, tag: str, element: Optional[int] = None,
                 available: Optional[list[str]] = None):
        where = f" (element {element})" if element is not None else ""
        known = ", ".join(sorted(available)) if available else "(none)"
        super().__init__(
            f"No kernel registered for element type {tag!r}{where}. "
            f"Registered types: {known}"
        )
        self.tag = tag
        self.element = element


class DimensionMismatch(StructuralError):
    """A kernel's local size disagrees with the element's DOF list."""

    def __init__(self, message: str, element: Optional[int] = None,
                 expected: Optional[tuple] = None, got: Optional[tuple] = None):
        super().__init__(message)
        self.element = element
        self.expected = expected
        self.got = got


class KernelFailure(StructuralError):
    """A kernel rejected an element (degenerate geometry, missing parameters)."""

    def __init__(self, message: str, element: Optional[int] = None,
                 tag: Optional[str] = None):
        super().__init__(message)
        self.element = element
        self.tag = tag


class PatternMismatch(StructuralError):
    """An entry falls outside the finalized sparsity pattern."""

    def __init__(self, row: int, col: int, element: Optional[int] = None):
        where = f" from element {element}" if element is not None else ""
        super().__init__(
            f"Entry ({row}, {col}){where} is not in the sparsity pattern. "
            "Was the pattern built for a different mesh or DOF map?"
        )
        self.row = row
        self.col = col
        self.element = element


# ---------------------------------------------------------------------------
# Constraint handler
# ---------------------------------------------------------------------------

class ConstraintConflict(StructuralError):
    """Constraints are inconsistent, dependent, or cyclic."""

    def __init__(self, message: str, dof: Optional[int] = None):
        super().__init__(message)
        self.dof = dof


# ---------------------------------------------------------------------------
# Solver adapter
# ---------------------------------------------------------------------------

class SingularSystem(NumericalError):
    """A direct factorization hit a zero pivot."""

    def __init__(self, message: str, n_dof: Optional[int] = None):
        super().__init__(message)
        self.n_dof = n_dof


class DidNotConverge(NumericalError):
    """An iterative solver stopped before reaching the requested tolerance."""

    def __init__(self, last_residual_norm: float, iterations: int,
                 reason: str = "iteration limit reached"):
        super().__init__(
            f"Iterative solve did not converge ({reason}): "
            f"residual norm {last_residual_norm:.3e} after {iterations} iterations"
        )
        self.last_residual_norm = float(last_residual_norm)
        self.iterations = int(iterations)
        self.reason = reason
