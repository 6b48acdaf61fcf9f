"""Element kernel contract and the tag-keyed kernel registry.

A kernel turns one element's node coordinates (plus per-element parameters)
into a local stiffness matrix and a local load vector.  The assembler only
talks to kernels through :class:`ElementKernel`; it never inspects concrete
kernel types.

Kernels must be pure: the output depends only on ``coords`` and the merged
parameters.  Default parameters are fixed at construction, so one kernel
instance can be evaluated from many threads at once.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional

import numpy as np
from numpy.typing import NDArray

from femkit.core.errors import UnknownElementType

logger = logging.getLogger(__name__)

FieldLayout = tuple  # tuple[tuple[str, int], ...]


@dataclass(frozen=True)
class ElementContribution:
    """Local element matrices returned by a kernel."""

    stiffness: NDArray[np.float64]  # (local_dof, local_dof)
    load: NDArray[np.float64]       # (local_dof,)


class ElementKernel(ABC):
    """Base for element kernels.

    Subclasses must implement:
      - ``n_nodes``       (property)
      - ``node_fields``   (property) ordered ``(field_name, components)`` pairs
      - ``evaluate``

    and may override ``element_fields`` and ``n_integration_points``.
    """

    def __init__(self, **defaults: Any) -> None:
        self._defaults = MappingProxyType(dict(defaults))

    @property
    @abstractmethod
    def n_nodes(self) -> int:
        """Number of nodes per element."""
        ...

    @property
    @abstractmethod
    def node_fields(self) -> FieldLayout:
        """Fields carried at each element node, as ``(name, components)`` pairs."""
        ...

    @property
    def element_fields(self) -> FieldLayout:
        """Fields carried by the element itself (none by default)."""
        return ()

    @property
    def n_integration_points(self) -> int:
        """Quadrature points per element (diagnostic only)."""
        return 1

    @property
    def local_dof(self) -> int:
        per_node = sum(c for _, c in self.node_fields)
        return self.n_nodes * per_node + sum(c for _, c in self.element_fields)

    @property
    def defaults(self) -> Mapping[str, Any]:
        return self._defaults

    def resolve_params(self, overrides: Optional[Mapping[str, Any]] = None) -> dict:
        """Defaults merged with per-element overrides."""
        merged = dict(self._defaults)
        if overrides:
            merged.update(overrides)
        return merged

    @staticmethod
    def require(params: Mapping[str, Any], *names: str) -> list:
        missing = [n for n in names if n not in params]
        if missing:
            raise ValueError(f"Missing element parameters: {missing}")
        return [params[n] for n in names]

    @abstractmethod
    def evaluate(self, coords: NDArray[np.float64],
                 params: Mapping[str, Any]) -> ElementContribution:
        """Compute the local stiffness and load for one element.

        Parameters
        ----------
        coords : NDArray[np.float64]
            (n_nodes, dim) node coordinates in connectivity order.
        params : Mapping[str, Any]
            Parameters already merged with the kernel defaults.
        """
        ...

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(n_nodes={self.n_nodes}, "
            f"local_dof={self.local_dof}, defaults={dict(self._defaults)})"
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_REQUIRED_ATTRS = ("n_nodes", "node_fields", "element_fields",
                   "local_dof", "n_integration_points", "evaluate", "resolve_params")


class KernelRegistry:
    """Element-type tag -> kernel instance.

    Populated by the application before assembly; the pipeline only looks
    kernels up.
    """

    def __init__(self, kernels: Optional[Mapping[str, ElementKernel]] = None) -> None:
        self._kernels: dict[str, ElementKernel] = {}
        for tag, kernel in (kernels or {}).items():
            self.register(tag, kernel)

    def register(self, tag: str, kernel: ElementKernel) -> None:
        """Register ``kernel`` for ``tag``.

        Any object exposing the :class:`ElementKernel` members is accepted.
        An existing registration is replaced with a warning.
        """
        missing = [a for a in _REQUIRED_ATTRS if not hasattr(kernel, a)]
        if missing:
            raise TypeError(
                f"{type(kernel).__name__} is not an element kernel; missing {missing}"
            )
        if tag in self._kernels:
            logger.warning(
                "Replacing already-registered kernel %r (%s -> %s)",
                tag,
                type(self._kernels[tag]).__name__,
                type(kernel).__name__,
            )
        self._kernels[tag] = kernel
        logger.debug("Registered kernel %r  local_dof=%d", tag, kernel.local_dof)

    def get(self, tag: str) -> ElementKernel:
        """Kernel for ``tag``; raises :class:`UnknownElementType` if absent."""
        try:
            return self._kernels[tag]
        except KeyError:
            raise UnknownElementType(tag, available=list(self._kernels)) from None

    def unregister(self, tag: str) -> bool:
        if tag in self._kernels:
            del self._kernels[tag]
            return True
        return False

    def tags(self) -> list[str]:
        return list(self._kernels)

    def describe(self) -> list[dict]:
        """Metadata for every registered kernel."""
        return [
            {
                "tag": tag,
                "class": type(kernel).__qualname__,
                "n_nodes": kernel.n_nodes,
                "local_dof": kernel.local_dof,
                "node_fields": [list(p) for p in kernel.node_fields],
                "element_fields": [list(p) for p in kernel.element_fields],
                "n_integration_points": kernel.n_integration_points,
            }
            for tag, kernel in self._kernels.items()
        ]

    def __contains__(self, tag: object) -> bool:
        return tag in self._kernels

    def __len__(self) -> int:
        return len(self._kernels)
