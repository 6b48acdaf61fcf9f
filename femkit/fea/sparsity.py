"""Global nonzero pattern from element-to-DOF connectivity.

Algorithm
---------
1. Split the elements into fixed-size chunks.
2. For every element in a chunk, form the Cartesian product of its DOF list
   with itself and encode each pair as the integer key ``row * n_dof + col``.
   Elements of equal DOF count are handled together as one (m, s, s) block.
3. ``np.unique`` per chunk, then ``np.unique`` over the concatenated chunk
   results.  Set union is order-independent, so chunks may run on any number
   of threads.
4. Decode the sorted keys into CSR ``indptr`` / ``indices``.  Because the key
   order is row-major, column indices come out sorted within every row and
   the key array itself stays sorted, which makes :meth:`SparsityPattern.locate`
   a binary search.

The pattern is a general directed pattern; symmetry is never assumed.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from femkit.core.errors import InvalidTopology, PatternMismatch
from femkit.fea.dofs import ElementDofs

logger = logging.getLogger(__name__)

_DEFAULT_CHUNK = 2048


@dataclass(frozen=True, eq=False)
class SparsityPattern:
    """Immutable CSR structure of the global matrix.

    Parameters
    ----------
    n_dof : int
        Number of rows and columns.
    indptr : NDArray[np.int64]
        (n_dof + 1,) row pointers.
    indices : NDArray[np.int64]
        (nnz,) column indices, sorted within each row.
    keys : NDArray[np.int64]
        (nnz,) encoded ``row * n_dof + col``, globally sorted.
    """

    n_dof: int
    indptr: NDArray[np.int64]
    indices: NDArray[np.int64]
    keys: NDArray[np.int64]

    @property
    def nnz(self) -> int:
        return int(self.indices.shape[0])

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n_dof, self.n_dof)

    def row(self, i: int) -> NDArray[np.int64]:
        """Column indices of row ``i``."""
        return self.indices[self.indptr[i]:self.indptr[i + 1]]

    def contains(self, i: int, j: int) -> bool:
        if not (0 <= i < self.n_dof and 0 <= j < self.n_dof):
            return False
        key = i * self.n_dof + j
        pos = int(np.searchsorted(self.keys, key))
        return pos < self.nnz and int(self.keys[pos]) == key

    def locate(self, rows, cols, element: Optional[int] = None) -> NDArray[np.int64]:
        """Positions of ``(rows, cols)`` pairs in the CSR data array.

        Raises
        ------
        PatternMismatch
            If any pair is outside the pattern.
        """
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        in_range = (rows >= 0) & (rows < self.n_dof) & (cols >= 0) & (cols < self.n_dof)
        keys = rows * self.n_dof + cols
        if self.nnz == 0:
            found = np.zeros(keys.shape, dtype=bool)
            pos = np.zeros(keys.shape, dtype=np.int64)
        else:
            pos = np.minimum(np.searchsorted(self.keys, keys), self.nnz - 1)
            found = in_range & (self.keys[pos] == keys)
        if not np.all(found):
            k = np.flatnonzero(~found.ravel())[0]
            raise PatternMismatch(int(rows.ravel()[k]), int(cols.ravel()[k]), element=element)
        return pos

    def empty_rows(self) -> NDArray[np.int64]:
        """Rows with no entries (DOFs no element touches)."""
        return np.flatnonzero(np.diff(self.indptr) == 0)

    def to_csr(self, data: Optional[NDArray[np.float64]] = None) -> sp.csr_matrix:
        """A CSR matrix with exactly this structure (zeros unless ``data`` is given)."""
        if data is None:
            data = np.zeros(self.nnz, dtype=np.float64)
        elif data.shape != (self.nnz,):
            raise ValueError(f"data has shape {data.shape}, pattern has nnz={self.nnz}")
        mat = sp.csr_matrix(
            (data, self.indices.copy(), self.indptr.copy()), shape=self.shape
        )
        mat.has_sorted_indices = True
        return mat

    def __repr__(self) -> str:
        return f"SparsityPattern(n_dof={self.n_dof}, nnz={self.nnz})"


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def _chunk_keys(element_dofs: ElementDofs, start: int, stop: int,
                n_dof: int) -> NDArray[np.int64]:
    offsets = element_dofs.offsets
    sizes = np.diff(offsets[start:stop + 1])
    parts = []
    for s in np.unique(sizes):
        members = start + np.flatnonzero(sizes == s)
        idx = offsets[members][:, None] + np.arange(s, dtype=np.int64)[None, :]
        D = element_dofs.dofs[idx]  # (m, s)
        parts.append((D[:, :, None] * n_dof + D[:, None, :]).ravel())
    if not parts:
        return np.zeros(0, dtype=np.int64)
    return np.unique(np.concatenate(parts))


def build_sparsity_pattern(
    element_dofs: ElementDofs,
    n_dof: int,
    n_workers: int = 1,
    chunk_size: int = _DEFAULT_CHUNK,
) -> SparsityPattern:
    """Union of every element's DOF-pair block.

    Parameters
    ----------
    element_dofs : ElementDofs
        Ordered global DOFs of each element.
    n_dof : int
        Size of the global system.
    n_workers : int
        Threads used to process element chunks.
    chunk_size : int
        Elements per chunk.

    Raises
    ------
    InvalidTopology
        An element references a DOF outside ``[0, n_dof)``.
    """
    t0 = time.perf_counter()
    dofs = element_dofs.dofs
    if dofs.size and (dofs.min() < 0 or dofs.max() >= n_dof):
        flat = int(np.flatnonzero((dofs < 0) | (dofs >= n_dof))[0])
        element = int(np.searchsorted(element_dofs.offsets, flat, side="right") - 1)
        raise InvalidTopology(
            f"Element {element} references DOF {int(dofs[flat])}, "
            f"outside [0, {n_dof})",
            element=element,
        )

    n_elements = element_dofs.n_elements
    bounds = [(s, min(s + chunk_size, n_elements))
              for s in range(0, n_elements, chunk_size)]

    if n_workers > 1 and len(bounds) > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            parts = list(pool.map(
                lambda b: _chunk_keys(element_dofs, b[0], b[1], n_dof), bounds
            ))
    else:
        parts = [_chunk_keys(element_dofs, a, b, n_dof) for a, b in bounds]

    keys = (np.unique(np.concatenate(parts)) if parts
            else np.zeros(0, dtype=np.int64))
    rows = keys // n_dof if n_dof else keys
    cols = keys % n_dof if n_dof else keys

    indptr = np.zeros(n_dof + 1, dtype=np.int64)
    np.cumsum(np.bincount(rows, minlength=n_dof), out=indptr[1:])

    for arr in (indptr, cols, keys):
        arr.setflags(write=False)
    pattern = SparsityPattern(n_dof=int(n_dof), indptr=indptr, indices=cols, keys=keys)

    orphans = pattern.empty_rows()
    if orphans.size:
        logger.warning(
            "%d DOFs are not touched by any element (first: %s); "
            "they must be constrained or the system is singular",
            orphans.size, orphans[:5].tolist(),
        )
    logger.info(
        "Sparsity pattern: %d DOFs, nnz=%d (%.2f%% dense), %d chunks, time=%.3fs",
        n_dof, pattern.nnz, 100.0 * pattern.nnz / max(n_dof * n_dof, 1),
        len(bounds), time.perf_counter() - t0,
    )
    return pattern
