"""Implicit (function-defined) topologies and structured mesh builders.

A structured grid does not need its connectivity stored up front: cell ``i``
can be computed from ``i`` alone.  :class:`ImplicitTopology` wraps such a
rule together with a finite cell count, supports random access and
iteration, and materializes into a :class:`~femkit.fea.mesh.Mesh` when the
assembler needs flat arrays.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterator, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from femkit.core.errors import InvalidTopology
from femkit.fea.mesh import Mesh

logger = logging.getLogger(__name__)

CellFunction = Callable[[int], Optional[Sequence[int]]]


class ImplicitTopology:
    """A finite set of cells generated on demand by ``cell_fn``.

    Parameters
    ----------
    n_cells : int
        Number of cells (cardinality of the topology basis).
    cell_fn : callable
        ``cell_fn(i) -> node ids`` for ``0 <= i < n_cells``.
    tag : str
        Element-type tag given to every cell when materialized.
    """

    def __init__(self, n_cells: int, cell_fn: CellFunction, tag: str) -> None:
        if n_cells < 0:
            raise ValueError("n_cells must be non-negative")
        self._n_cells = int(n_cells)
        self._cell_fn = cell_fn
        self._tag = tag

    @property
    def tag(self) -> str:
        return self._tag

    def __len__(self) -> int:
        return self._n_cells

    def cell(self, index: int) -> Optional[NDArray[np.int64]]:
        """Node ids of cell ``index``, or ``None`` outside the topology."""
        if index < 0 or index >= self._n_cells:
            return None
        nodes = self._cell_fn(index)
        if nodes is None:
            return None
        return np.asarray(nodes, dtype=np.int64)

    def __iter__(self) -> Iterator[NDArray[np.int64]]:
        for i in range(self._n_cells):
            nodes = self.cell(i)
            if nodes is None:
                raise InvalidTopology(
                    f"Implicit topology returned no cell for index {i} "
                    f"(declared {self._n_cells} cells)",
                    element=i,
                )
            yield nodes

    def to_mesh(self, coordinates, node_ids=None) -> Mesh:
        """Materialize the topology into flat arrays."""
        elements = [(self._tag, nodes) for nodes in self]
        mesh = Mesh.from_elements(coordinates, elements, node_ids=node_ids)
        logger.debug(
            "Materialized implicit topology %r: %d cells, %d nodes",
            self._tag, mesh.n_elements, mesh.n_nodes,
        )
        return mesh


# ---------------------------------------------------------------------------
# Structured grids
# ---------------------------------------------------------------------------

def line_topology(n_elements: int, tag: str = "bar2") -> ImplicitTopology:
    """Two-node cells ``(i, i + 1)`` along a line."""
    return ImplicitTopology(n_elements, lambda i: (i, i + 1), tag)


def quad_topology(nx: int, ny: int, tag: str = "quad4") -> ImplicitTopology:
    """Counter-clockwise four-node cells on an ``nx`` by ``ny`` grid.

    Node ``(i, j)`` has id ``j * (nx + 1) + i``.
    """
    stride = nx + 1

    def cell(k: int) -> tuple[int, int, int, int]:
        j, i = divmod(k, nx)
        n0 = j * stride + i
        return (n0, n0 + 1, n0 + 1 + stride, n0 + stride)

    return ImplicitTopology(nx * ny, cell, tag)


def structured_line_mesh(
    n_elements: int,
    length: float = 1.0,
    tag: str = "bar2",
    origin: float = 0.0,
) -> Mesh:
    """Uniform 1D mesh of ``n_elements`` two-node elements on ``[origin, origin + length]``."""
    if n_elements < 1:
        raise ValueError("n_elements must be at least 1")
    x = origin + np.linspace(0.0, length, n_elements + 1)
    return line_topology(n_elements, tag).to_mesh(x.reshape(-1, 1))


def structured_quad_mesh(
    nx: int,
    ny: int,
    lx: float = 1.0,
    ly: float = 1.0,
    tag: str = "quad4",
) -> Mesh:
    """Uniform ``nx`` by ``ny`` quadrilateral mesh of the rectangle ``[0, lx] x [0, ly]``."""
    if nx < 1 or ny < 1:
        raise ValueError("nx and ny must be at least 1")
    xs = np.linspace(0.0, lx, nx + 1)
    ys = np.linspace(0.0, ly, ny + 1)
    X, Y = np.meshgrid(xs, ys)
    coords = np.column_stack([X.ravel(), Y.ravel()])
    return quad_topology(nx, ny, tag).to_mesh(coords)
