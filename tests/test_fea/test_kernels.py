from __future__ import annotations

import logging

import numpy as np
import pytest

from femkit.core.errors import UnknownElementType
from femkit.fea.elements import LinearBarKernel, Quad4PlaneStressKernel, Tri3ConductionKernel
from femkit.fea.kernels import ElementContribution, ElementKernel, KernelRegistry


class MixedKernel(ElementKernel):
    """Three nodes with displacement and temperature plus one element pressure."""

    @property
    def n_nodes(self):
        return 3

    @property
    def node_fields(self):
        return (("u", 2), ("T", 1))

    @property
    def element_fields(self):
        return (("p", 1),)

    def evaluate(self, coords, params):
        n = self.local_dof
        return ElementContribution(np.eye(n), np.zeros(n))


@pytest.fixture
def registry() -> KernelRegistry:
    return KernelRegistry({
        "bar2": LinearBarKernel(E=1.0, A=1.0),
        "quad4": Quad4PlaneStressKernel(E=1.0, nu=0.3),
    })


class TestElementKernel:
    def test_local_dof(self):
        assert MixedKernel().local_dof == 3 * 3 + 1
        assert LinearBarKernel().local_dof == 2
        assert Quad4PlaneStressKernel().local_dof == 8
        assert Tri3ConductionKernel().local_dof == 3

    def test_abstract_kernel_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            ElementKernel()

    def test_defaults_are_read_only(self):
        kernel = LinearBarKernel(E=210e9, A=1e-4)
        with pytest.raises(TypeError):
            kernel.defaults["E"] = 1.0

    def test_resolve_params_overrides_defaults(self):
        kernel = LinearBarKernel(E=2.0, A=3.0)
        params = kernel.resolve_params({"A": 5.0})
        assert params == {"E": 2.0, "A": 5.0}
        assert kernel.defaults["A"] == 3.0

    def test_require(self):
        assert ElementKernel.require({"a": 1, "b": 2}, "b", "a") == [2, 1]
        with pytest.raises(ValueError, match="Missing element parameters"):
            ElementKernel.require({"a": 1}, "a", "c")

    def test_integration_points(self):
        assert LinearBarKernel().n_integration_points == 1
        assert Quad4PlaneStressKernel().n_integration_points == 4

    def test_repr(self):
        assert "local_dof=8" in repr(Quad4PlaneStressKernel(E=1.0, nu=0.3))


class TestKernelRegistry:
    def test_get(self, registry: KernelRegistry):
        assert isinstance(registry.get("bar2"), LinearBarKernel)
        assert "quad4" in registry
        assert "hex8" not in registry
        assert len(registry) == 2

    def test_get_unknown(self, registry: KernelRegistry):
        with pytest.raises(UnknownElementType, match="bar2, quad4"):
            registry.get("hex8")

    def test_tags_keep_registration_order(self, registry: KernelRegistry):
        assert registry.tags() == ["bar2", "quad4"]

    def test_replace_warns(self, registry: KernelRegistry, caplog):
        with caplog.at_level(logging.WARNING, logger="femkit.fea.kernels"):
            registry.register("bar2", LinearBarKernel(k=5.0))
        assert "Replacing already-registered kernel 'bar2'" in caplog.text
        assert registry.get("bar2").defaults["k"] == 5.0

    def test_register_rejects_non_kernel(self, registry: KernelRegistry):
        with pytest.raises(TypeError, match="not an element kernel"):
            registry.register("junk", object())

    def test_unregister(self, registry: KernelRegistry):
        assert registry.unregister("bar2") is True
        assert registry.unregister("bar2") is False
        assert registry.tags() == ["quad4"]

    def test_describe(self, registry: KernelRegistry):
        registry.register("mixed", MixedKernel())
        meta = {m["tag"]: m for m in registry.describe()}
        assert meta["quad4"]["local_dof"] == 8
        assert meta["quad4"]["n_integration_points"] == 4
        assert meta["mixed"]["node_fields"] == [["u", 2], ["T", 1]]
        assert meta["mixed"]["element_fields"] == [["p", 1]]
        assert meta["bar2"]["class"] == "LinearBarKernel"
