"""Reference element kernels.

These are minimal formulations used by the test-suite and examples:

- :class:`LinearBarKernel` -- 2-node axial bar, 1 DOF per node.
- :class:`Quad4PlaneStressKernel` -- 4-node bilinear quadrilateral,
  plane-stress linear elasticity, 2 DOFs per node, 2x2 Gauss quadrature.
- :class:`Tri3ConductionKernel` -- 3-node linear triangle, steady heat
  conduction, 1 DOF per node.

Physics-specific kernels for real analyses are supplied by the application
and registered in a :class:`~femkit.fea.kernels.KernelRegistry`.
"""
from __future__ import annotations

from typing import Any, Mapping

import numpy as np
from numpy.typing import NDArray

from femkit.fea.kernels import ElementContribution, ElementKernel


class LinearBarKernel(ElementKernel):
    """Two-node axial bar with linear shape functions.

    Parameters (defaults or per element)
    ------------------------------------
    E, A : float
        Young's modulus and cross-section area; stiffness ``k = E*A/L``.
    k : float, optional
        Axial stiffness; overrides ``E*A/L`` when given.
    q : float, optional
        Uniform distributed axial load per unit length (default 0).
    field : str
        Name of the displacement field (default ``"u"``).

    Local matrices::

        K_e = k * [[ 1, -1],
                   [-1,  1]]
        f_e = q * L / 2 * [1, 1]
    """

    def __init__(self, field: str = "u", **defaults: Any) -> None:
        super().__init__(**defaults)
        self._field = field

    @property
    def n_nodes(self) -> int:
        return 2

    @property
    def node_fields(self):
        return ((self._field, 1),)

    def evaluate(self, coords: NDArray[np.float64],
                 params: Mapping[str, Any]) -> ElementContribution:
        coords = np.asarray(coords, dtype=np.float64).reshape(2, -1)
        L = float(np.linalg.norm(coords[1] - coords[0]))
        if L <= 0.0:
            raise ValueError(f"Bar element has non-positive length ({L:.6e})")

        if "k" in params:
            k = float(params["k"])
        else:
            E, A = self.require(params, "E", "A")
            k = float(E) * float(A) / L

        Ke = k * np.array([[1.0, -1.0], [-1.0, 1.0]], dtype=np.float64)
        q = float(params.get("q", 0.0))
        fe = np.full(2, 0.5 * q * L, dtype=np.float64)
        return ElementContribution(stiffness=Ke, load=fe)


class Quad4PlaneStressKernel(ElementKernel):
    """Four-node bilinear quadrilateral for plane-stress elasticity.

    Node numbering is counter-clockwise, natural coordinates::

        Node 0: (-1, -1)    Node 1: (1, -1)
        Node 2: ( 1,  1)    Node 3: (-1, 1)

    Parameters (defaults or per element)
    ------------------------------------
    E, nu : float
        Young's modulus and Poisson's ratio.
    thickness : float
        Out-of-plane thickness (default 1).
    body_force : sequence of 2 floats
        Body force per unit volume (default ``(0, 0)``).
    """

    NODE_NATURAL_COORDS: NDArray[np.float64] = np.array([
        [-1.0, -1.0],
        [1.0, -1.0],
        [1.0, 1.0],
        [-1.0, 1.0],
    ], dtype=np.float64)

    # 2x2 Gauss-Legendre: xi, eta, weight
    _G: float = 1.0 / np.sqrt(3.0)
    GAUSS_POINTS: NDArray[np.float64] = np.array([
        [-_G, -_G, 1.0],
        [_G, -_G, 1.0],
        [_G, _G, 1.0],
        [-_G, _G, 1.0],
    ], dtype=np.float64)

    def __init__(self, field: str = "u", **defaults: Any) -> None:
        super().__init__(**defaults)
        self._field = field

    @property
    def n_nodes(self) -> int:
        return 4

    @property
    def node_fields(self):
        return ((self._field, 2),)

    @property
    def n_integration_points(self) -> int:
        return self.GAUSS_POINTS.shape[0]

    @staticmethod
    def shape_functions(xi: float, eta: float) -> NDArray[np.float64]:
        """The 4 bilinear shape functions at ``(xi, eta)``."""
        return 0.25 * np.array([
            (1.0 - xi) * (1.0 - eta),
            (1.0 + xi) * (1.0 - eta),
            (1.0 + xi) * (1.0 + eta),
            (1.0 - xi) * (1.0 + eta),
        ], dtype=np.float64)

    @staticmethod
    def shape_derivatives(xi: float, eta: float) -> NDArray[np.float64]:
        """(2, 4) derivatives; row 0 = dN/d(xi), row 1 = dN/d(eta)."""
        return 0.25 * np.array([
            [-(1.0 - eta), (1.0 - eta), (1.0 + eta), -(1.0 + eta)],
            [-(1.0 - xi), -(1.0 + xi), (1.0 + xi), (1.0 - xi)],
        ], dtype=np.float64)

    @staticmethod
    def plane_stress_matrix(E: float, nu: float) -> NDArray[np.float64]:
        """(3, 3) constitutive matrix, Voigt order ``[eps_xx, eps_yy, gamma_xy]``."""
        c = E / (1.0 - nu * nu)
        return c * np.array([
            [1.0, nu, 0.0],
            [nu, 1.0, 0.0],
            [0.0, 0.0, 0.5 * (1.0 - nu)],
        ], dtype=np.float64)

    def strain_displacement(
        self, coords: NDArray[np.float64], xi: float, eta: float
    ) -> tuple[NDArray[np.float64], float]:
        """B matrix (3, 8) and Jacobian determinant at ``(xi, eta)``."""
        dN_nat = self.shape_derivatives(xi, eta)  # (2, 4)
        J = dN_nat @ coords  # (2, 2)
        det_J = float(np.linalg.det(J))
        if det_J <= 0.0:
            raise ValueError(
                f"Non-positive Jacobian determinant ({det_J:.6e}); "
                "check node ordering (counter-clockwise) and element shape."
            )
        dN = np.linalg.solve(J, dN_nat)  # (2, 4) physical derivatives

        B = np.zeros((3, 8), dtype=np.float64)
        B[0, 0::2] = dN[0]
        B[1, 1::2] = dN[1]
        B[2, 0::2] = dN[1]
        B[2, 1::2] = dN[0]
        return B, det_J

    def evaluate(self, coords: NDArray[np.float64],
                 params: Mapping[str, Any]) -> ElementContribution:
        coords = np.asarray(coords, dtype=np.float64)[:, :2]
        E, nu = self.require(params, "E", "nu")
        t = float(params.get("thickness", 1.0))
        b = np.asarray(params.get("body_force", (0.0, 0.0)), dtype=np.float64)
        D = self.plane_stress_matrix(float(E), float(nu))

        Ke = np.zeros((8, 8), dtype=np.float64)
        fe = np.zeros(8, dtype=np.float64)
        for xi_g, eta_g, w_g in self.GAUSS_POINTS:
            B, det_J = self.strain_displacement(coords, xi_g, eta_g)
            Ke += (B.T @ (D @ B)) * det_J * w_g * t
            N = self.shape_functions(xi_g, eta_g)
            fe[0::2] += N * b[0] * det_J * w_g * t
            fe[1::2] += N * b[1] * det_J * w_g * t
        return ElementContribution(stiffness=Ke, load=fe)


class Tri3ConductionKernel(ElementKernel):
    """Three-node linear triangle for steady heat conduction.

    Parameters (defaults or per element)
    ------------------------------------
    conductivity : float
        Isotropic thermal conductivity.
    thickness : float
        Out-of-plane thickness (default 1).
    source : float
        Uniform volumetric heat source (default 0).
    """

    def __init__(self, field: str = "T", **defaults: Any) -> None:
        super().__init__(**defaults)
        self._field = field

    @property
    def n_nodes(self) -> int:
        return 3

    @property
    def node_fields(self):
        return ((self._field, 1),)

    def evaluate(self, coords: NDArray[np.float64],
                 params: Mapping[str, Any]) -> ElementContribution:
        coords = np.asarray(coords, dtype=np.float64)[:, :2]
        (kappa,) = self.require(params, "conductivity")
        t = float(params.get("thickness", 1.0))
        Q = float(params.get("source", 0.0))

        x, y = coords[:, 0], coords[:, 1]
        two_area = (x[1] - x[0]) * (y[2] - y[0]) - (x[2] - x[0]) * (y[1] - y[0])
        if two_area <= 0.0:
            raise ValueError(
                f"Non-positive triangle area ({0.5 * two_area:.6e}); "
                "nodes must be counter-clockwise."
            )
        area = 0.5 * two_area
        # Constant gradients of the linear shape functions
        grad = np.array([
            [y[1] - y[2], y[2] - y[0], y[0] - y[1]],
            [x[2] - x[1], x[0] - x[2], x[1] - x[0]],
        ], dtype=np.float64) / two_area

        Ke = float(kappa) * t * area * (grad.T @ grad)
        fe = np.full(3, Q * t * area / 3.0, dtype=np.float64)
        return ElementContribution(stiffness=Ke, load=fe)
