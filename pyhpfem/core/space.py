"""pyhpfem.core.space
Per-component polynomial-order assignment and DOF enumeration.
"""
from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from pyhpfem.core.mesh import Mesh
from pyhpfem.core.orders import get_h_order, get_v_order, make_quad_order, normalize_order
from pyhpfem.utils.constants import MAX_P

__all__ = ["Space", "H1Space", "L2Space", "assign_dofs",
           "construct_refined_space", "construct_refined_spaces"]


def _q(x: float, ndp: int = 12) -> float:
    """Quantize a coordinate for geometric dictionary keys."""
    return float(round(x, ndp))


class Space:
    """
    Polynomial orders per element of one mesh.

    Orders are stored as encoded quad orders (see :mod:`pyhpfem.core.orders`).
    Elements without a stored order inherit the order of their closest
    ancestor, so freshly split elements are always resolvable.
    """

    space_type = "h1"
    min_order = 1

    def __init__(self, mesh: Mesh, order: int = 1):
        if not isinstance(mesh, Mesh):
            raise TypeError("'mesh' must be a pyhpfem Mesh instance.")
        self.mesh = mesh
        self._orders: Dict[int, int] = {}
        self.first_dof = 0
        self.next_dof = 0
        self.set_uniform_order(order)

    def get_mesh(self) -> Mesh:
        return self.mesh

    # --- orders ---------------------------------------------------------------

    def _check_order(self, order: int, encoded: bool = False) -> int:
        # with min_order 0 an encoded (h, 0) is indistinguishable from a plain h
        if not encoded or self.min_order > 0:
            order = normalize_order(order)
        h, v = get_h_order(order), get_v_order(order)
        if not (self.min_order <= h <= MAX_P and self.min_order <= v <= MAX_P):
            raise ValueError(f"Order ({h},{v}) outside [{self.min_order}, {MAX_P}] "
                             f"for a {self.space_type} space.")
        return order

    def get_element_order(self, elem_id: int) -> int:
        eid: Optional[int] = elem_id
        while eid is not None:
            order = self._orders.get(eid)
            if order is not None:
                return order
            eid = self.mesh.get_element(eid).parent
        raise KeyError(f"No order assigned to element {elem_id} or any of its ancestors.")

    def set_element_order_internal(self, elem_id: int, order: int) -> None:
        """
        Set an encoded order without renumbering DOFs (the caller renumbers once
        at the end).  Plain orders are only accepted where they are unambiguous,
        i.e. on spaces whose minimum order is 1.
        """
        self._orders[elem_id] = self._check_order(order, encoded=True)

    def set_element_order(self, elem_id: int, order: int) -> None:
        self._orders[elem_id] = self._check_order(order)
        self.assign_dofs(self.first_dof)

    def set_uniform_order(self, order: int) -> None:
        order = self._check_order(order)
        self._orders = {e.id: order for e in self.mesh.active_elements()}
        self.assign_dofs(self.first_dof)

    def adjust_element_order(self, order_change: int, min_order: int = 1) -> None:
        """Raise or lower every active element's h and v orders by ``order_change``."""
        lo = max(min_order, self.min_order)
        for e in self.mesh.active_elements():
            order = self.get_element_order(e.id)
            h = min(max(get_h_order(order) + order_change, lo), MAX_P)
            v = min(max(get_v_order(order) + order_change, lo), MAX_P)
            self._orders[e.id] = make_quad_order(h, v)
        self.assign_dofs(self.first_dof)

    def distribute_orders(self, mesh: Mesh, parents: Mapping[int, int]) -> None:
        """Copy the order of ``parents[id]`` onto every element created from it."""
        if mesh is not self.mesh:
            raise ValueError("Orders can only be distributed over the space's own mesh.")
        for eid, parent in parents.items():
            if eid != parent:
                self._orders[eid] = self.get_element_order(parent)

    def element_orders(self) -> Dict[int, int]:
        """Orders of all active elements."""
        return {e.id: self.get_element_order(e.id) for e in self.mesh.active_elements()}

    # --- DOFs -----------------------------------------------------------------

    def get_num_dofs(self) -> int:
        return self.next_dof - self.first_dof

    def assign_dofs(self, first_dof: int = 0) -> int:
        """Number the DOFs starting at ``first_dof``; returns the next free index."""
        self.first_dof = first_dof
        self.next_dof = first_dof + self._count_dofs()
        return self.next_dof

    def _count_dofs(self) -> int:
        raise NotImplementedError

    def dup(self, mesh: Mesh, order_increase: int = 0) -> "Space":
        """Space of the same type on ``mesh`` (same IDs) with orders shifted by ``order_increase``."""
        new = self.__class__(mesh, make_quad_order(self.min_order, self.min_order))
        new._orders = dict(self._orders)
        new._orders = {e.id: new.get_element_order(e.id) for e in mesh.active_elements()}
        new.adjust_element_order(order_increase, self.min_order)
        return new

    def __repr__(self):
        return f"<{self.__class__.__name__} ndof={self.get_num_dofs()} on {self.mesh!r}>"


class H1Space(Space):
    """Continuous space: shared vertices and edges are counted once."""

    space_type = "h1"
    min_order = 1

    def _count_dofs(self) -> int:
        vertices = set()
        edges: Dict[Tuple[float, float, float, float], int] = {}
        bubbles = 0
        for e in self.mesh.active_elements():
            order = self.get_element_order(e.id)
            h, v = get_h_order(order), get_v_order(order)
            corners = [(_q(x), _q(y)) for x, y in e.get_corner_points()]
            vertices.update(corners)
            # bottom/top edges carry the horizontal order, left/right the vertical
            for (a, b), p in zip(((0, 1), (3, 2), (0, 3), (1, 2)), (h, h, v, v)):
                key = corners[a] + corners[b]
                edges[key] = min(edges.get(key, p), p)
            bubbles += (h - 1) * (v - 1)
        return len(vertices) + sum(p - 1 for p in edges.values()) + bubbles


class L2Space(Space):
    """Discontinuous space: every element owns all of its DOFs."""

    space_type = "l2"
    min_order = 0

    def _count_dofs(self) -> int:
        total = 0
        for e in self.mesh.active_elements():
            order = self.get_element_order(e.id)
            total += (get_h_order(order) + 1) * (get_v_order(order) + 1)
        return total


def assign_dofs(spaces: Sequence[Space] | Space) -> int:
    """Number the DOFs of several spaces consecutively; returns the total count."""
    if isinstance(spaces, Space):
        spaces = [spaces]
    next_dof = 0
    for space in spaces:
        next_dof = space.assign_dofs(next_dof)
    return next_dof


def construct_refined_space(space: Space, order_increase: int = 1) -> Space:
    """Reference space: uniformly refined copy of the mesh, orders raised by ``order_increase``."""
    ref_mesh = space.get_mesh().copy()
    ref_mesh.refine_all_elements()
    return space.dup(ref_mesh, order_increase)


def construct_refined_spaces(spaces: Iterable[Space], order_increase: int = 1) -> list:
    """Reference spaces for a system; components sharing a mesh keep sharing its copy."""
    copies: Dict[int, Mesh] = {}
    out = []
    for space in spaces:
        mesh = space.get_mesh()
        if id(mesh) not in copies:
            ref_mesh = mesh.copy()
            ref_mesh.refine_all_elements()
            copies[id(mesh)] = ref_mesh
        out.append(space.dup(copies[id(mesh)], order_increase))
    return out
