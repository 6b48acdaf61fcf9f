"""Degree-of-freedom numbering.

Numbering policy
----------------
1. Node fields: nodes are visited in ascending node-id order; within a node,
   fields in declaration order, then components in order.  With ``s`` node
   components per node, node at sorted position ``p`` owns DOFs
   ``p*s .. p*s + s - 1``.
2. Element fields: numbered after all nodal DOFs, by ascending element
   index, then field order, then component order.

The numbering is a pure function of (sorted node ids, element count, field
spec), so two builds from the same inputs are bit-identical.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, Mapping, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from femkit.core.errors import (
    DimensionMismatch,
    EmptyField,
    InvalidFieldSpec,
    InvalidTopology,
    UnknownElementType,
)
from femkit.fea.mesh import Mesh

if TYPE_CHECKING:
    from femkit.fea.kernels import KernelRegistry

logger = logging.getLogger(__name__)

_LOCATIONS = ("node", "element")


# ---------------------------------------------------------------------------
# Field spec
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Field:
    """A named field with ``components`` scalar unknowns per node (or element)."""

    name: str
    components: int
    location: str = "node"


@dataclass(frozen=True)
class FieldSpec:
    """Ordered fields of an analysis, e.g. displacement (2) + temperature (1)."""

    fields: tuple = ()

    def __init__(self, fields: Sequence[Field] = ()) -> None:
        object.__setattr__(self, "fields", tuple(fields))

    @classmethod
    def from_dict(cls, node_fields: Mapping[str, int],
                  element_fields: Optional[Mapping[str, int]] = None) -> "FieldSpec":
        fields = [Field(name, int(n), "node") for name, n in node_fields.items()]
        for name, n in (element_fields or {}).items():
            fields.append(Field(name, int(n), "element"))
        return cls(fields)

    def node_fields(self) -> list[Field]:
        return [f for f in self.fields if f.location == "node"]

    def element_fields(self) -> list[Field]:
        return [f for f in self.fields if f.location == "element"]

    def validate(self) -> None:
        seen = set()
        for f in self.fields:
            if f.location not in _LOCATIONS:
                raise InvalidFieldSpec(
                    f"Field {f.name!r} has location {f.location!r}; "
                    f"expected one of {_LOCATIONS}"
                )
            if f.name in seen:
                raise InvalidFieldSpec(f"Field {f.name!r} is declared twice")
            seen.add(f.name)
            if f.components < 1:
                raise EmptyField(f.name, f.components)
        if not self.fields:
            raise InvalidFieldSpec("Field spec declares no fields")


# ---------------------------------------------------------------------------
# DOF map
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class DofMap:
    """Read-only mapping (node or element, field, component) -> global DOF.

    Build with :func:`build_dof_map`; never construct by hand.
    """

    node_ids: NDArray[np.int64]
    n_elements: int
    field_spec: FieldSpec
    node_stride: int
    element_stride: int
    _offsets: dict = field(repr=False)

    @property
    def n_nodes(self) -> int:
        return int(self.node_ids.shape[0])

    @property
    def n_node_dofs(self) -> int:
        return self.n_nodes * self.node_stride

    @property
    def n_dof(self) -> int:
        return self.n_node_dofs + self.n_elements * self.element_stride

    def field(self, name: str) -> Field:
        try:
            return self._offsets[name][0]
        except KeyError:
            raise KeyError(
                f"Unknown field {name!r}; fields are "
                f"{[f.name for f in self.field_spec.fields]}"
            ) from None

    def field_offset(self, name: str) -> int:
        """Offset of ``name`` inside a node's (or element's) DOF block."""
        self.field(name)
        return self._offsets[name][1]

    def node_positions(self, node_ids) -> NDArray[np.int64]:
        """Sorted positions of node ids (the numbering order)."""
        ids = np.asarray(node_ids, dtype=np.int64)
        if self.n_nodes == 0:
            if ids.size:
                raise InvalidTopology(f"Node {int(ids.ravel()[0])} is not in the DOF map",
                                      node=int(ids.ravel()[0]))
            return np.zeros(ids.shape, dtype=np.int64)
        pos = np.minimum(np.searchsorted(self.node_ids, ids), self.n_nodes - 1)
        found = self.node_ids[pos] == ids
        if not np.all(found):
            missing = int(ids[~found].ravel()[0])
            raise InvalidTopology(f"Node {missing} is not in the DOF map", node=missing)
        return pos

    def dof(self, node_id: int, field_name: str, component: int = 0) -> int:
        """Global DOF of one nodal field component."""
        f = self.field(field_name)
        if f.location != "node":
            raise KeyError(f"Field {field_name!r} is an element field")
        self._check_component(f, component)
        pos = int(self.node_positions([node_id])[0])
        return pos * self.node_stride + self._offsets[field_name][1] + component

    def element_dof(self, element: int, field_name: str, component: int = 0) -> int:
        """Global DOF of one element field component."""
        f = self.field(field_name)
        if f.location != "element":
            raise KeyError(f"Field {field_name!r} is a node field")
        self._check_component(f, component)
        if element < 0 or element >= self.n_elements:
            raise IndexError(f"Element {element} out of range [0, {self.n_elements})")
        return (self.n_node_dofs + element * self.element_stride
                + self._offsets[field_name][1] + component)

    def node_dofs(self, node_id: int) -> NDArray[np.int64]:
        """All DOFs of a node, in field/component order."""
        pos = int(self.node_positions([node_id])[0])
        base = pos * self.node_stride
        return np.arange(base, base + self.node_stride, dtype=np.int64)

    def element_field_dofs(self, element: int, field_name: str) -> NDArray[np.int64]:
        """All component DOFs of one element field on ``element``."""
        first = self.element_dof(element, field_name, 0)
        return np.arange(first, first + self.field(field_name).components, dtype=np.int64)

    def field_dofs(self, field_name: str) -> NDArray[np.int64]:
        """(n_entities, components) array of DOFs for one field."""
        f = self.field(field_name)
        off = self._offsets[field_name][1]
        comps = np.arange(f.components, dtype=np.int64)
        if f.location == "node":
            base = np.arange(self.n_nodes, dtype=np.int64) * self.node_stride + off
        else:
            base = (self.n_node_dofs
                    + np.arange(self.n_elements, dtype=np.int64) * self.element_stride + off)
        return base[:, None] + comps[None, :]

    def describe(self, dof: int) -> tuple[str, int, str, int]:
        """Inverse lookup: ``("node", node_id, field, comp)`` or ``("element", e, field, comp)``."""
        if dof < 0 or dof >= self.n_dof:
            raise IndexError(f"DOF {dof} out of range [0, {self.n_dof})")
        if dof < self.n_node_dofs:
            pos, local = divmod(dof, self.node_stride)
            owner, kind, fields = int(self.node_ids[pos]), "node", self.field_spec.node_fields()
        else:
            owner, local = divmod(dof - self.n_node_dofs, self.element_stride)
            kind, fields = "element", self.field_spec.element_fields()
        for f in fields:
            off = self._offsets[f.name][1]
            if off <= local < off + f.components:
                return kind, int(owner), f.name, int(local - off)
        raise IndexError(f"DOF {dof} is not owned by any field")  # pragma: no cover

    @staticmethod
    def _check_component(f: Field, component: int) -> None:
        if component < 0 or component >= f.components:
            raise IndexError(
                f"Component {component} out of range for field {f.name!r} "
                f"({f.components} components)"
            )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DofMap):
            return NotImplemented
        return (
            np.array_equal(self.node_ids, other.node_ids)
            and self.n_elements == other.n_elements
            and self.field_spec == other.field_spec
        )

    __hash__ = None  # type: ignore[assignment]


def build_dof_map(mesh: Mesh, field_spec: FieldSpec) -> DofMap:
    """Number the DOFs of ``field_spec`` over ``mesh``.

    Raises
    ------
    EmptyField
        A declared field has zero components.
    InvalidFieldSpec
        Duplicate field names or an unknown location.
    InvalidTopology
        An element references a node that does not exist.
    """
    t0 = time.perf_counter()
    field_spec.validate()
    mesh.validate()

    offsets: dict = {}
    node_stride = 0
    for f in field_spec.node_fields():
        offsets[f.name] = (f, node_stride)
        node_stride += f.components
    element_stride = 0
    for f in field_spec.element_fields():
        offsets[f.name] = (f, element_stride)
        element_stride += f.components

    dof_map = DofMap(
        node_ids=mesh.sorted_node_ids,
        n_elements=mesh.n_elements,
        field_spec=field_spec,
        node_stride=node_stride,
        element_stride=element_stride,
        _offsets=offsets,
    )
    logger.info(
        "Numbered %d DOFs (%d nodes x %d + %d elements x %d) in %.3fs",
        dof_map.n_dof, mesh.n_nodes, node_stride, mesh.n_elements, element_stride,
        time.perf_counter() - t0,
    )
    return dof_map


# ---------------------------------------------------------------------------
# Element-to-DOF connectivity
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class ElementDofs:
    """Flat element-to-DOF table: element ``e`` owns ``dofs[offsets[e]:offsets[e+1]]``."""

    dofs: NDArray[np.int64]
    offsets: NDArray[np.int64]

    @property
    def n_elements(self) -> int:
        return int(self.offsets.shape[0] - 1)

    @property
    def sizes(self) -> NDArray[np.int64]:
        return np.diff(self.offsets)

    def for_element(self, element: int) -> NDArray[np.int64]:
        return self.dofs[self.offsets[element]:self.offsets[element + 1]]

    def __iter__(self) -> Iterator[NDArray[np.int64]]:
        for e in range(self.n_elements):
            yield self.for_element(e)

    def __len__(self) -> int:
        return self.n_elements

    @classmethod
    def from_lists(cls, lists: Sequence[Sequence[int]]) -> "ElementDofs":
        """Build from plain per-element DOF lists (tests, external callers)."""
        sizes = [len(d) for d in lists]
        offsets = np.zeros(len(lists) + 1, dtype=np.int64)
        offsets[1:] = np.cumsum(sizes, dtype=np.int64)
        dofs = np.fromiter((d for lst in lists for d in lst), dtype=np.int64,
                           count=int(offsets[-1]))
        dofs.setflags(write=False)
        offsets.setflags(write=False)
        return cls(dofs=dofs, offsets=offsets)


def _check_kernel_fields(dof_map: DofMap, kernel, tag: str, element: int) -> None:
    for location, pairs in (("node", kernel.node_fields), ("element", kernel.element_fields)):
        for name, comps in pairs:
            try:
                f = dof_map.field(name)
            except KeyError:
                raise DimensionMismatch(
                    f"Kernel for {tag!r} (element {element}) needs {location} field "
                    f"{name!r}, which is not in the field spec",
                    element=element,
                ) from None
            if f.location != location or f.components != comps:
                raise DimensionMismatch(
                    f"Kernel for {tag!r} (element {element}) needs {location} field "
                    f"{name!r} with {comps} components; field spec declares a "
                    f"{f.location} field with {f.components}",
                    element=element,
                    expected=(location, comps),
                    got=(f.location, f.components),
                )


def build_element_dofs(mesh: Mesh, dof_map: DofMap,
                       registry: "KernelRegistry") -> ElementDofs:
    """Derive each element's ordered global DOF list from its kernel's field layout.

    Local order: for each element node (connectivity order), each kernel node
    field, each component; then the kernel's element fields.

    Raises
    ------
    UnknownElementType
        No kernel is registered for an element's tag.
    DimensionMismatch
        Node count or field layout disagrees with the kernel.
    """
    t0 = time.perf_counter()
    n_elements = mesh.n_elements
    types = np.asarray(mesh.element_types, dtype=object)
    sizes = np.zeros(n_elements, dtype=np.int64)

    groups = {}
    for tag in mesh.tags:
        members = np.flatnonzero(types == tag)
        first = int(members[0])
        if tag not in registry:
            raise UnknownElementType(tag, element=first, available=registry.tags())
        kernel = registry.get(tag)
        _check_kernel_fields(dof_map, kernel, tag, first)
        elem_sizes = np.diff(mesh.offsets)[members]
        wrong = np.flatnonzero(elem_sizes != kernel.n_nodes)
        if wrong.size:
            e = int(members[wrong[0]])
            got = mesh.element_size(e)
            raise DimensionMismatch(
                f"Element {e} of type {tag!r} has {got} nodes; "
                f"its kernel expects {kernel.n_nodes}",
                element=e,
                expected=(kernel.n_nodes,),
                got=(got,),
            )
        sizes[members] = kernel.local_dof
        groups[tag] = (members, kernel)

    offsets = np.zeros(n_elements + 1, dtype=np.int64)
    offsets[1:] = np.cumsum(sizes, dtype=np.int64)
    dofs = np.empty(int(offsets[-1]), dtype=np.int64)

    for tag, (members, kernel) in groups.items():
        starts = mesh.offsets[members]
        node_idx = starts[:, None] + np.arange(kernel.n_nodes, dtype=np.int64)[None, :]
        ids = mesh.connectivity[node_idx]
        pos = dof_map.node_positions(ids)  # (n_members, n_nodes)

        columns = []
        for name, comps in kernel.node_fields:
            off = dof_map.field_offset(name)
            columns.append(off + np.arange(comps, dtype=np.int64))
        local_node = (np.concatenate(columns) if columns
                      else np.zeros(0, dtype=np.int64))
        node_part = (pos[:, :, None] * dof_map.node_stride
                     + local_node[None, None, :]).reshape(len(members), -1)

        elem_cols = []
        for name, comps in kernel.element_fields:
            off = dof_map.field_offset(name)
            elem_cols.append(off + np.arange(comps, dtype=np.int64))
        if elem_cols:
            local_elem = np.concatenate(elem_cols)
            elem_part = (dof_map.n_node_dofs
                         + members[:, None] * dof_map.element_stride
                         + local_elem[None, :])
            block = np.hstack([node_part, elem_part])
        else:
            block = node_part

        target = offsets[members][:, None] + np.arange(kernel.local_dof, dtype=np.int64)[None, :]
        dofs[target] = block

    dofs.setflags(write=False)
    offsets.setflags(write=False)
    logger.debug(
        "Built element DOF table: %d elements, %d entries in %.3fs",
        n_elements, dofs.shape[0], time.perf_counter() - t0,
    )
    return ElementDofs(dofs=dofs, offsets=offsets)
