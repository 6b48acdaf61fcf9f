"""Map a solved DOF vector back onto mesh entities."""
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from femkit.fea.dofs import DofMap

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodalSolution:
    """Per-field solution arrays.

    Node fields have shape ``(n_nodes, components)`` with rows in ascending
    node-id order; element fields have shape ``(n_elements, components)``.
    """

    dof_map: DofMap
    fields: dict

    def field(self, name: str) -> NDArray[np.float64]:
        try:
            return self.fields[name]
        except KeyError:
            raise KeyError(f"Unknown field {name!r}; fields are {list(self.fields)}") from None

    def value(self, node_id: int, field_name: str, component: int = 0) -> float:
        if self.dof_map.field(field_name).location != "node":
            raise KeyError(f"Field {field_name!r} is an element field; use element_value")
        row = int(self.dof_map.node_positions([node_id])[0])
        return float(self.field(field_name)[row, component])

    def at(self, node_id: int) -> dict[str, NDArray[np.float64]]:
        """All node fields at one node."""
        row = int(self.dof_map.node_positions([node_id])[0])
        return {
            f.name: self.fields[f.name][row]
            for f in self.dof_map.field_spec.node_fields()
        }

    def element_value(self, element: int, field_name: str, component: int = 0) -> float:
        if self.dof_map.field(field_name).location != "element":
            raise KeyError(f"Field {field_name!r} is a node field")
        return float(self.field(field_name)[element, component])

    def to_dict(self) -> dict:
        """``{"nodes": {id: {field: [...]}}, "elements": {index: {field: [...]}}}``."""
        node_fields = self.dof_map.field_spec.node_fields()
        elem_fields = self.dof_map.field_spec.element_fields()
        nodes = {
            int(nid): {f.name: self.fields[f.name][row].tolist() for f in node_fields}
            for row, nid in enumerate(self.dof_map.node_ids)
        }
        out = {"nodes": nodes}
        if elem_fields:
            out["elements"] = {
                e: {f.name: self.fields[f.name][e].tolist() for f in elem_fields}
                for e in range(self.dof_map.n_elements)
            }
        return out


def distribute(solution: NDArray[np.float64], dof_map: DofMap) -> NodalSolution:
    """Split a solution vector into per-field arrays.

    Raises
    ------
    ValueError
        If the vector length differs from ``dof_map.n_dof``.
    """
    solution = np.asarray(solution, dtype=np.float64)
    if solution.shape != (dof_map.n_dof,):
        raise ValueError(
            f"Solution has shape {solution.shape}; the DOF map numbers {dof_map.n_dof} DOFs"
        )
    fields = {}
    for f in dof_map.field_spec.fields:
        arr = solution[dof_map.field_dofs(f.name)]  # fancy indexing copies
        arr.setflags(write=False)
        fields[f.name] = arr
    logger.debug("Distributed %d DOFs over %d fields", solution.shape[0], len(fields))
    return NodalSolution(dof_map=dof_map, fields=fields)
