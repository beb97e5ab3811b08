"""pyhpfem.fem.functions
Fields evaluable on mesh elements: discrete solutions and closed-form exact solutions.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Mapping, NamedTuple, Optional, Tuple

import numpy as np
import sympy as sp

from pyhpfem.core.mesh import Mesh
from pyhpfem.core.orders import get_h_order, get_v_order
from pyhpfem.core.space import Space
from pyhpfem.core.topology import Element
from pyhpfem.fem import transform
from pyhpfem.fem.reference import get_reference

__all__ = ["FieldValues", "MeshFunction", "Solution", "ExactSolution", "LocalFunction"]


@dataclass
class FieldValues:
    """Values and first physical derivatives of a scalar field at a set of points."""
    val: np.ndarray
    dx: np.ndarray
    dy: np.ndarray

    def __sub__(self, other: "FieldValues") -> "FieldValues":
        return FieldValues(self.val - other.val, self.dx - other.dx, self.dy - other.dy)


class MeshFunction:
    """A scalar field attached to a mesh."""

    is_exact = False

    def __init__(self, mesh: Mesh):
        self.mesh = mesh

    def get_mesh(self) -> Mesh:
        return self.mesh

    def get_fn_order(self) -> int:
        raise NotImplementedError

    def values(self, elem: Element, x, y) -> FieldValues:
        """Evaluate at physical points lying inside ``elem`` (an element of ``self.mesh``)."""
        raise NotImplementedError

    def eval_points(self, x, y) -> FieldValues:
        """Evaluate at arbitrary physical points, locating the elements first."""
        x = np.atleast_1d(np.asarray(x, dtype=float))
        y = np.atleast_1d(np.asarray(y, dtype=float))
        out = FieldValues(np.empty_like(x), np.empty_like(x), np.empty_like(x))
        groups: Dict[int, list] = {}
        for k, (px, py) in enumerate(zip(x, y)):
            elem = self.mesh.find_element(px, py)
            if elem is None:
                raise ValueError(f"Point ({px}, {py}) lies outside the mesh.")
            groups.setdefault(elem.id, []).append(k)
        for eid, idx in groups.items():
            idx = np.asarray(idx)
            fv = self.values(self.mesh.get_element(eid), x[idx], y[idx])
            out.val[idx], out.dx[idx], out.dy[idx] = fv.val, fv.dx, fv.dy
        return out


class LocalFunction(NamedTuple):
    """A mesh function bound to the element of its mesh that covers the current region."""
    fn: MeshFunction
    element: Element

    def values(self, x, y) -> FieldValues:
        return self.fn.values(self.element, x, y)


class Solution(MeshFunction):
    """
    Discrete field on a :class:`~pyhpfem.core.space.Space`.

    Each active element carries Lagrange coefficients on the equispaced
    ``(h+1) x (v+1)`` node lattice of its order (eta outer, xi inner).
    """

    def __init__(self, space: Space, coeffs: Mapping[int, np.ndarray]):
        super().__init__(space.get_mesh())
        self.space = space
        self.coeffs: Dict[int, np.ndarray] = {}
        self._orders: Dict[int, Tuple[int, int]] = {}
        for e in self.mesh.active_elements():
            order = space.get_element_order(e.id)
            h, v = get_h_order(order), get_v_order(order)
            c = np.asarray(coeffs[e.id], dtype=float).ravel()
            if c.size != (h + 1) * (v + 1):
                raise ValueError(f"Element {e.id}: expected {(h + 1) * (v + 1)} "
                                 f"coefficients for order ({h},{v}), got {c.size}.")
            self.coeffs[e.id] = c
            self._orders[e.id] = (h, v)

    @classmethod
    def interpolate(cls, space: Space, func) -> "Solution":
        """Nodal interpolation of ``func`` (a MeshFunction or a callable ``f(x, y)``)."""
        coeffs = {}
        for e in space.get_mesh().active_elements():
            order = space.get_element_order(e.id)
            ref = get_reference(get_h_order(order), get_v_order(order))
            xs, ys = transform.x_mapping(e, ref.nodes[:, 0], ref.nodes[:, 1])
            if isinstance(func, MeshFunction):
                vals = func.eval_points(xs, ys).val
            else:
                vals = np.broadcast_to(np.asarray(func(xs, ys), dtype=float), xs.shape)
            coeffs[e.id] = np.array(vals, dtype=float)
        return cls(space, coeffs)

    def get_fn_order(self) -> int:
        return max(max(hv) for hv in self._orders.values())

    def values(self, elem: Element, x, y) -> FieldValues:
        try:
            c = self.coeffs[elem.id]
        except KeyError:
            raise KeyError(f"Solution has no coefficients for element {elem.id}; "
                           f"was the mesh refined after the solution was built?") from None
        ref = get_reference(*self._orders[elem.id])
        xi, eta = transform.inverse_mapping(elem, x, y)
        N = ref.shape(xi, eta)
        dN_dxi, dN_deta = ref.grad(xi, eta)
        jinv = transform.inv_jac_T(elem)
        return FieldValues(c @ N, (c @ dN_dxi) * jinv[0, 0], (c @ dN_deta) * jinv[1, 1])


class ExactSolution(MeshFunction):
    """
    Closed-form field given as a SymPy expression in ``x, y``.

    ``order`` is the nominal polynomial order used to pick integration rules;
    exact fields have no natural order, so the rule is capped without warning.
    A callable ``expr`` needs ``derivatives`` returning ``(df/dx, df/dy)``.
    """

    is_exact = True
    _x, _y = sp.symbols("x y")

    def __init__(self, mesh: Mesh, expr, order: int = 7,
                 derivatives: Optional[Callable] = None):
        super().__init__(mesh)
        self.order = int(order)
        if callable(expr) and not isinstance(expr, sp.Basic):
            if derivatives is None:
                raise ValueError("A callable exact solution needs its derivatives.")
            self.sympy_expr = None
            self._func = expr
            self._derivs = derivatives
        else:
            self.sympy_expr = sp.sympify(expr)
            coords = (self._x, self._y)
            self._func = sp.lambdify(coords, self.sympy_expr, "numpy")
            fx = sp.lambdify(coords, sp.diff(self.sympy_expr, self._x), "numpy")
            fy = sp.lambdify(coords, sp.diff(self.sympy_expr, self._y), "numpy")
            self._derivs = lambda x, y: (fx(x, y), fy(x, y))

    def get_fn_order(self) -> int:
        return self.order

    def eval_points(self, x, y) -> FieldValues:
        x = np.atleast_1d(np.asarray(x, dtype=float))
        y = np.atleast_1d(np.asarray(y, dtype=float))
        dx, dy = self._derivs(x, y)
        return FieldValues(np.broadcast_to(np.asarray(self._func(x, y), dtype=float), x.shape).copy(),
                           np.broadcast_to(np.asarray(dx, dtype=float), x.shape).copy(),
                           np.broadcast_to(np.asarray(dy, dtype=float), x.shape).copy())

    def values(self, elem: Element, x, y) -> FieldValues:
        return self.eval_points(x, y)

    def __call__(self, x, y):
        return self.eval_points(x, y).val
