"""Immutable mesh container with flat (arena + offsets) connectivity.

Nodes carry an integer id and a coordinate vector.  Element connectivity is
stored back to back in a single ``connectivity`` array with an ``offsets``
array of length ``n_elements + 1``, so element ``e`` references
``connectivity[offsets[e]:offsets[e + 1]]``.  Mixed element types need no
padding and traversal never follows object references.

Node ids do not have to be contiguous or sorted; they are resolved to array
rows through a sorted lookup table.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from femkit.core.errors import InvalidTopology


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class Mesh:
    """Nodes, element connectivity and element-type tags.

    Parameters
    ----------
    node_ids : NDArray[np.int64]
        (N,) unique node identifiers.
    coordinates : NDArray[np.float64]
        (N, dim) node coordinates, row ``i`` belongs to ``node_ids[i]``.
    connectivity : NDArray[np.int64]
        Flat node-id list of all elements.
    offsets : NDArray[np.int64]
        (E + 1,) start of each element in ``connectivity``.
    element_types : tuple[str, ...]
        Element-type tag per element (kernel registry key).
    element_params : tuple or None
        Optional per-element parameter mapping (material data).
    """

    node_ids: NDArray[np.int64]
    coordinates: NDArray[np.float64]
    connectivity: NDArray[np.int64]
    offsets: NDArray[np.int64]
    element_types: tuple
    element_params: Optional[tuple] = None
    _sorted_ids: NDArray[np.int64] = field(init=False, repr=False)
    _sorted_rows: NDArray[np.int64] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        node_ids = np.asarray(self.node_ids, dtype=np.int64).ravel()
        coords = np.asarray(self.coordinates, dtype=np.float64)
        if coords.ndim == 1:
            coords = coords.reshape(-1, 1)
        if coords.ndim != 2 or coords.shape[0] != node_ids.shape[0]:
            raise InvalidTopology(
                f"coordinates shape {coords.shape} does not match "
                f"{node_ids.shape[0]} node ids"
            )
        connectivity = np.asarray(self.connectivity, dtype=np.int64).ravel()
        offsets = np.asarray(self.offsets, dtype=np.int64).ravel()
        element_types = tuple(str(t) for t in self.element_types)

        if offsets.shape[0] != len(element_types) + 1:
            raise InvalidTopology(
                f"offsets has length {offsets.shape[0]}, expected "
                f"{len(element_types) + 1} for {len(element_types)} elements"
            )
        if offsets[0] != 0 or offsets[-1] != connectivity.shape[0]:
            raise InvalidTopology("offsets must start at 0 and end at len(connectivity)")
        sizes = np.diff(offsets)
        if np.any(sizes <= 0):
            bad = int(np.flatnonzero(sizes <= 0)[0])
            raise InvalidTopology(f"Element {bad} has no nodes", element=bad)

        order = np.argsort(node_ids, kind="stable")
        sorted_ids = node_ids[order]
        if sorted_ids.size > 1:
            dup = np.flatnonzero(sorted_ids[1:] == sorted_ids[:-1])
            if dup.size:
                nid = int(sorted_ids[dup[0]])
                raise InvalidTopology(f"Duplicate node id {nid}", node=nid)

        params = self.element_params
        if params is not None:
            params = tuple(
                MappingProxyType(dict(p)) if p is not None else None for p in params
            )
            if len(params) != len(element_types):
                raise InvalidTopology(
                    f"element_params has {len(params)} entries for "
                    f"{len(element_types)} elements"
                )

        object.__setattr__(self, "node_ids", _readonly(node_ids))
        object.__setattr__(self, "coordinates", _readonly(coords))
        object.__setattr__(self, "connectivity", _readonly(connectivity))
        object.__setattr__(self, "offsets", _readonly(offsets))
        object.__setattr__(self, "element_types", element_types)
        object.__setattr__(self, "element_params", params)
        object.__setattr__(self, "_sorted_ids", _readonly(sorted_ids))
        object.__setattr__(self, "_sorted_rows", _readonly(order.astype(np.int64)))

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_arrays(
        cls,
        coordinates: Any,
        elements: Any,
        element_type: str | Sequence[str],
        node_ids: Optional[Iterable[int]] = None,
        element_params: Optional[Sequence[Optional[Mapping[str, Any]]]] = None,
    ) -> "Mesh":
        """Build a mesh from a dense (E, nodes_per_element) connectivity array.

        ``element_type`` may be a single tag for all elements or one per
        element.  ``node_ids`` defaults to ``0 .. N-1``.
        """
        coords = np.asarray(coordinates, dtype=np.float64)
        n_nodes = coords.shape[0]
        elems = np.asarray(elements, dtype=np.int64)
        if elems.ndim == 1:
            elems = elems.reshape(1, -1)
        n_elements, per_elem = elems.shape if elems.size else (0, 0)
        if isinstance(element_type, str):
            tags = (element_type,) * n_elements
        else:
            tags = tuple(element_type)
        ids = np.arange(n_nodes, dtype=np.int64) if node_ids is None else np.asarray(
            list(node_ids), dtype=np.int64
        )
        return cls(
            node_ids=ids,
            coordinates=coords,
            connectivity=elems.ravel(),
            offsets=np.arange(n_elements + 1, dtype=np.int64) * per_elem,
            element_types=tags,
            element_params=None if element_params is None else tuple(element_params),
        )

    @classmethod
    def from_elements(
        cls,
        coordinates: Any,
        elements: Sequence[tuple[str, Sequence[int]]],
        node_ids: Optional[Iterable[int]] = None,
        element_params: Optional[Sequence[Optional[Mapping[str, Any]]]] = None,
    ) -> "Mesh":
        """Build a mesh from ``(tag, node_ids)`` pairs of any length."""
        coords = np.asarray(coordinates, dtype=np.float64)
        sizes = [len(nodes) for _, nodes in elements]
        offsets = np.zeros(len(elements) + 1, dtype=np.int64)
        offsets[1:] = np.cumsum(sizes, dtype=np.int64)
        connectivity = np.fromiter(
            (n for _, nodes in elements for n in nodes), dtype=np.int64,
            count=int(offsets[-1]),
        )
        ids = np.arange(coords.shape[0], dtype=np.int64) if node_ids is None else (
            np.asarray(list(node_ids), dtype=np.int64)
        )
        return cls(
            node_ids=ids,
            coordinates=coords,
            connectivity=connectivity,
            offsets=offsets,
            element_types=tuple(tag for tag, _ in elements),
            element_params=None if element_params is None else tuple(element_params),
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def n_nodes(self) -> int:
        return int(self.node_ids.shape[0])

    @property
    def n_elements(self) -> int:
        return len(self.element_types)

    @property
    def dim(self) -> int:
        return int(self.coordinates.shape[1])

    @property
    def sorted_node_ids(self) -> NDArray[np.int64]:
        """Node ids in ascending order (the DOF numbering order)."""
        return self._sorted_ids

    @property
    def tags(self) -> list[str]:
        """Distinct element-type tags in order of first appearance."""
        return list(dict.fromkeys(self.element_types))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def element_nodes(self, element: int) -> NDArray[np.int64]:
        """Node ids of one element, in connectivity order."""
        return self.connectivity[self.offsets[element]:self.offsets[element + 1]]

    def element_size(self, element: int) -> int:
        return int(self.offsets[element + 1] - self.offsets[element])

    def node_rows(self, ids: Any, element: Optional[int] = None) -> NDArray[np.int64]:
        """Resolve node ids to coordinate rows.

        Raises
        ------
        InvalidTopology
            If any id is not a node of this mesh.
        """
        ids = np.asarray(ids, dtype=np.int64)
        if self._sorted_ids.size == 0:
            pos_clipped = np.zeros(ids.shape, dtype=np.int64)
            found = np.zeros(ids.shape, dtype=bool)
        else:
            pos_clipped = np.minimum(np.searchsorted(self._sorted_ids, ids),
                                     self._sorted_ids.shape[0] - 1)
            found = self._sorted_ids[pos_clipped] == ids
        if not np.all(found):
            missing = int(ids[~found].ravel()[0])
            where = f"Element {element} references" if element is not None else "Reference to"
            raise InvalidTopology(
                f"{where} node {missing}, which does not exist in the mesh",
                element=element,
                node=missing,
            )
        return self._sorted_rows[pos_clipped]

    def element_coords(self, element: int) -> NDArray[np.float64]:
        """(n_nodes, dim) coordinates of one element's nodes."""
        rows = self.node_rows(self.element_nodes(element), element=element)
        return self.coordinates[rows]

    def params_for(self, element: int) -> Mapping[str, Any]:
        if self.element_params is None or self.element_params[element] is None:
            return MappingProxyType({})
        return self.element_params[element]

    def validate(self) -> None:
        """Check that every element references existing nodes."""
        if self.connectivity.size == 0:
            return
        if self._sorted_ids.size == 0:
            bad = np.arange(self.connectivity.shape[0])
        else:
            pos = np.minimum(np.searchsorted(self._sorted_ids, self.connectivity),
                             self._sorted_ids.shape[0] - 1)
            bad = np.flatnonzero(self._sorted_ids[pos] != self.connectivity)
        if bad.size:
            flat = int(bad[0])
            element = int(np.searchsorted(self.offsets, flat, side="right") - 1)
            node = int(self.connectivity[flat])
            raise InvalidTopology(
                f"Element {element} references node {node}, "
                "which does not exist in the mesh",
                element=element,
                node=node,
            )

    def subset(self, elements: Iterable[int]) -> "Mesh":
        """A mesh with the same nodes and only the selected elements."""
        idx = [int(e) for e in elements]
        pieces = [self.element_nodes(e) for e in idx]
        sizes = [p.shape[0] for p in pieces]
        offsets = np.zeros(len(idx) + 1, dtype=np.int64)
        offsets[1:] = np.cumsum(sizes, dtype=np.int64)
        connectivity = np.concatenate(pieces) if pieces else np.zeros(0, dtype=np.int64)
        params = None
        if self.element_params is not None:
            params = tuple(self.element_params[e] for e in idx)
        return Mesh(
            node_ids=self.node_ids,
            coordinates=self.coordinates,
            connectivity=connectivity,
            offsets=offsets,
            element_types=tuple(self.element_types[e] for e in idx),
            element_params=params,
        )

    def __repr__(self) -> str:
        return (
            f"Mesh(n_nodes={self.n_nodes}, n_elements={self.n_elements}, "
            f"dim={self.dim}, types={self.tags})"
        )
