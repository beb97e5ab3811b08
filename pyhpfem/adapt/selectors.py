"""pyhpfem.adapt.selectors
Refinement selectors: decide whether and how a single element is refined.
"""
import logging
import math
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
from numpy.polynomial import legendre as L
from scipy.linalg import lstsq

from pyhpfem.adapt.element_to_refine import ElementToRefine, RefinementType, son_slots
from pyhpfem.adapt.error_forms import ProjNormType
from pyhpfem.core.orders import get_h_order, get_v_order, make_quad_order, order_str
from pyhpfem.integration.quadrature import limit_order_nowarn, rect_quadrature
from pyhpfem.utils.constants import MAX_ELEMENT_SONS, MAX_P

logger = logging.getLogger(__name__)

__all__ = ["Selector", "HOnlySelector", "POnlySelector", "CandList", "Cand", "ProjBasedSelector"]


class Selector(ABC):
    """
    Refinement policy of one component.

    ``select_refinement`` fills ``refinement`` (split and son orders) and
    returns whether the element should change at all.
    ``generate_shared_mesh_orders`` supplies son orders when a component
    sharing the mesh forces a split this selector did not choose.
    """

    def __init__(self, max_order: int = MAX_P):
        if not 1 <= max_order <= MAX_P:
            raise ValueError(f"max_order must lie in [1, {MAX_P}], got {max_order}.")
        self.max_order = max_order

    @abstractmethod
    def select_refinement(self, element, quad_order: int, rsln,
                          refinement: ElementToRefine) -> bool:
        ...

    def generate_shared_mesh_orders(self, element, orig_quad_order: int, refinement,
                                    suggested_quad_orders: Optional[List[int]] = None) -> List[int]:
        orders = [0] * MAX_ELEMENT_SONS
        for slot in son_slots(refinement):
            if suggested_quad_orders is not None:
                orders[slot] = self._clamp(suggested_quad_orders[slot])
            else:
                orders[slot] = orig_quad_order
        return orders

    def _clamp(self, quad_order: int) -> int:
        return make_quad_order(min(get_h_order(quad_order), self.max_order),
                               min(get_v_order(quad_order), self.max_order))


class HOnlySelector(Selector):
    """Split every candidate isotropically, sons keep the element's order."""

    def select_refinement(self, element, quad_order, rsln, refinement):
        refinement.split = RefinementType.H
        refinement.p = [quad_order] * MAX_ELEMENT_SONS
        refinement.q = [quad_order] * MAX_ELEMENT_SONS
        return True


class POnlySelector(Selector):
    """Raise the order of every candidate; elements at ``max_order`` are left alone."""

    def __init__(self, max_order: int = MAX_P, order_h_inc: int = 1, order_v_inc: int = 1):
        super().__init__(max_order)
        if order_h_inc < 0 or order_v_inc < 0 or order_h_inc + order_v_inc == 0:
            raise ValueError("Order increments must be non-negative and not both zero.")
        self.order_h_inc = order_h_inc
        self.order_v_inc = order_v_inc

    def select_refinement(self, element, quad_order, rsln, refinement):
        h, v = get_h_order(quad_order), get_v_order(quad_order)
        new_h = min(h + self.order_h_inc, self.max_order)
        new_v = min(v + self.order_v_inc, self.max_order)
        if (new_h, new_v) == (h, v):
            return False
        refinement.split = RefinementType.P
        refinement.p = [make_quad_order(new_h, new_v), 0, 0, 0]
        refinement.q = [quad_order] * MAX_ELEMENT_SONS
        return True


# ---------------------------------------------------------------------------
# Projection-based selection
# ---------------------------------------------------------------------------
class CandList(Enum):
    P_ISO = "p_iso"             # order increase, same in both directions
    P_ANISO = "p_aniso"         # order increase, directions independent
    H_ISO = "h_iso"             # isotropic split, orders kept
    H_ANISO = "h_aniso"         # isotropic or anisotropic split, orders kept
    HP_ISO = "hp_iso"
    HP_ANISO_H = "hp_aniso_h"   # anisotropic splits, isotropic orders
    HP_ANISO_P = "hp_aniso_p"   # isotropic splits, anisotropic orders
    HP_ANISO = "hp_aniso"


_P_ISO_LISTS = {CandList.P_ISO, CandList.P_ANISO, CandList.HP_ISO,
                CandList.HP_ANISO_H, CandList.HP_ANISO_P, CandList.HP_ANISO}
_P_ANISO_LISTS = {CandList.P_ANISO, CandList.HP_ANISO_P, CandList.HP_ANISO}
_H_LISTS = {CandList.H_ISO, CandList.H_ANISO, CandList.HP_ISO,
            CandList.HP_ANISO_H, CandList.HP_ANISO_P, CandList.HP_ANISO}
_ANISO_SPLIT_LISTS = {CandList.H_ANISO, CandList.HP_ANISO_H, CandList.HP_ANISO}
_HP_LISTS = {CandList.HP_ISO, CandList.HP_ANISO_H, CandList.HP_ANISO_P, CandList.HP_ANISO}


class Cand:
    """A refinement candidate: split type and the orders of its sons by slot."""

    __slots__ = ("split", "p", "error", "dofs", "score")

    def __init__(self, split: RefinementType, p: List[int]):
        self.split = split
        self.p = p
        self.error = math.inf
        self.dofs = 0
        self.score = 0.0

    def key(self) -> Tuple:
        return (int(self.split), tuple(self.p[s] for s in son_slots(self.split)))

    def __repr__(self):
        return f"Cand({self.split.name}, {self.p}, err={self.error:.3e}, dofs={self.dofs})"


def _legendre_1d(x: np.ndarray, n: int):
    """Legendre polynomials ``P_0..P_n`` and their derivatives at ``x``, each (npts, n+1)."""
    V = L.legvander(x, n)
    dV = np.zeros_like(V)
    for i in range(1, n + 1):
        c = np.zeros(i + 1)
        c[i] = 1.0
        dV[:, i] = L.legval(x, L.legder(c))
    return V, dV


class _Samples:
    """Reference field sampled at Gauss points of one rectangle."""

    def __init__(self, rect, order: int, rsln):
        self.rect = rect
        x0, y0, dx, dy = rect
        self.xs, self.ys, self.wt = rect_quadrature(rect, order)
        self.xi = 2.0 * (self.xs - x0) / dx - 1.0
        self.eta = 2.0 * (self.ys - y0) / dy - 1.0
        self.fv = rsln.eval_points(self.xs, self.ys)


class ProjBasedSelector(Selector):
    """
    hp selector comparing candidates by the projection error of the reference
    solution onto their polynomial spaces.

    Every candidate is scored as ``(log10 err0 - log10 err) / (dofs - dofs0) ** conv_exp``
    against the unchanged element (``err0``, ``dofs0``); the best positive score wins.
    """

    def __init__(self, cand_list: CandList = CandList.HP_ANISO, conv_exp: float = 1.0,
                 max_order: int = MAX_P, norm: ProjNormType = ProjNormType.H1):
        super().__init__(max_order)
        self.cand_list = CandList(cand_list)
        if conv_exp <= 0:
            raise ValueError(f"conv_exp must be positive, got {conv_exp}.")
        self.conv_exp = conv_exp
        self.norm = ProjNormType(norm)
        self.error_floor = 1e-300
        self.roundoff = 1e-12

    # --- candidates -----------------------------------------------------------

    def _order(self, h: int, v: int) -> Optional[int]:
        if not (1 <= h <= self.max_order and 1 <= v <= self.max_order):
            return None
        return make_quad_order(h, v)

    def create_candidates(self, quad_order: int) -> List[Cand]:
        h0, v0 = get_h_order(quad_order), get_v_order(quad_order)
        cands: List[Cand] = []
        seen = set()

        def add(split, slots, order):
            if order is None:
                return
            p = [0] * MAX_ELEMENT_SONS
            for s in slots:
                p[s] = order
            cand = Cand(split, p)
            if cand.key() not in seen:
                seen.add(cand.key())
                cands.append(cand)

        if self.cand_list in _P_ISO_LISTS:
            for k in (1, 2):
                add(RefinementType.P, [0], self._order(h0 + k, v0 + k))
        if self.cand_list in _P_ANISO_LISTS:
            for dh in range(3):
                for dv in range(3):
                    if dh != dv:
                        add(RefinementType.P, [0], self._order(h0 + dh, v0 + dv))

        if self.cand_list in _H_LISTS:
            if self.cand_list not in _HP_LISTS:
                son_orders = [(h0, v0)]
            elif self.cand_list in _P_ANISO_LISTS:
                son_orders = [(h0 + dh, v0 + dv) for dh in (-1, 0) for dv in (-1, 0)]
            else:
                son_orders = [(h0 + d, v0 + d) for d in (-1, 0)]
            for h, v in son_orders:
                order = self._order(max(h, 1), max(v, 1))
                add(RefinementType.H, [0, 1, 2, 3], order)
                if self.cand_list in _ANISO_SPLIT_LISTS:
                    add(RefinementType.ANISO_H, [0, 1], order)
                    add(RefinementType.ANISO_V, [2, 3], order)
        return cands

    # --- projections ----------------------------------------------------------

    def _son_rect(self, element, split, slot):
        x0, y0, dx, dy = element.rect
        hx, hy = 0.5 * dx, 0.5 * dy
        if split == RefinementType.H:
            return [(x0, y0, hx, hy), (x0 + hx, y0, hx, hy),
                    (x0 + hx, y0 + hy, hx, hy), (x0, y0 + hy, hx, hy)][slot]
        if split == RefinementType.ANISO_H:
            return (x0, y0 + slot * hy, dx, hy)
        if split == RefinementType.ANISO_V:
            return (x0 + (slot - 2) * hx, y0, hx, dy)
        return element.rect

    def projection_error(self, samples: _Samples, quad_order: int) -> float:
        """Squared error of the best approximation of the samples in ``Q_{h,v}``."""
        h, v = get_h_order(quad_order), get_v_order(quad_order)
        _, _, dx, dy = samples.rect
        Vx, dVx = _legendre_1d(samples.xi, h)
        Vy, dVy = _legendre_1d(samples.eta, v)
        # eta outer, xi inner
        phi = (Vy[:, :, None] * Vx[:, None, :]).reshape(len(samples.wt), -1)
        phi_x = (Vy[:, :, None] * dVx[:, None, :]).reshape(len(samples.wt), -1) * (2.0 / dx)
        phi_y = (dVy[:, :, None] * Vx[:, None, :]).reshape(len(samples.wt), -1) * (2.0 / dy)

        sw = np.sqrt(samples.wt)[:, None]
        fv = samples.fv
        if self.norm is ProjNormType.L2:
            A = sw * phi
            b = sw[:, 0] * fv.val
        else:
            A = np.vstack([sw * phi, sw * phi_x, sw * phi_y])
            b = np.concatenate([sw[:, 0] * fv.val, sw[:, 0] * fv.dx, sw[:, 0] * fv.dy])
        coef = lstsq(A, b)[0]

        e_val = fv.val - phi @ coef
        e_dx = fv.dx - phi_x @ coef
        e_dy = fv.dy - phi_y @ coef
        if self.norm is ProjNormType.L2:
            integrand = e_val ** 2
        elif self.norm is ProjNormType.H1_SEMI:
            integrand = e_dx ** 2 + e_dy ** 2
        else:
            integrand = e_val ** 2 + e_dx ** 2 + e_dy ** 2
        return float(np.dot(samples.wt, integrand))

    def evaluate_candidates(self, element, quad_order: int, rsln, cands: List[Cand]):
        """Fill ``error`` and ``dofs`` of every candidate; returns ``(err0, dofs0)``."""
        top = max([get_h_order(quad_order), get_v_order(quad_order), rsln.get_fn_order()]
                  + [max(get_h_order(c.p[s]), get_v_order(c.p[s]))
                     for c in cands for s in son_slots(c.split)])
        order = limit_order_nowarn(2 * top + 2)
        cache: Dict[Tuple, _Samples] = {}

        def samples(rect):
            if rect not in cache:
                cache[rect] = _Samples(rect, order, rsln)
            return cache[rect]

        err0 = self.projection_error(samples(element.rect), quad_order)
        dofs0 = (get_h_order(quad_order) + 1) * (get_v_order(quad_order) + 1)
        for cand in cands:
            cand.error = 0.0
            cand.dofs = 0
            for slot in son_slots(cand.split):
                son_order = cand.p[slot]
                rect = self._son_rect(element, cand.split, slot)
                cand.error += self.projection_error(samples(rect), son_order)
                cand.dofs += (get_h_order(son_order) + 1) * (get_v_order(son_order) + 1)
        return err0, dofs0

    def _score(self, cand: Cand, err0: float, dofs0: int) -> float:
        # errors at round-off level relative to err0 are treated as exact
        floor = max(self.error_floor, err0 * self.roundoff)
        drop = math.log10(max(err0, self.error_floor)) - math.log10(max(cand.error, floor))
        if cand.dofs > dofs0:
            return drop / (cand.dofs - dofs0) ** self.conv_exp
        return math.inf if drop > 0 else 0.0

    def select_refinement(self, element, quad_order, rsln, refinement):
        cands = self.create_candidates(quad_order)
        if not cands:
            return False
        err0, dofs0 = self.evaluate_candidates(element, quad_order, rsln, cands)
        if err0 <= self.error_floor:
            return False

        best: Optional[Cand] = None
        best_h: Optional[Cand] = None
        for cand in cands:
            cand.score = self._score(cand, err0, dofs0)
            if cand.score > 0 and (best is None or cand.score > best.score):
                best = cand
            if cand.split == RefinementType.H and (best_h is None or cand.score > best_h.score):
                best_h = cand

        refinement.q = list(best_h.p) if best_h is not None else None
        if best is None:
            logger.debug("Element %d: no candidate improves on order %s.", element.id, order_str(quad_order))
            return False
        refinement.split = best.split
        refinement.p = list(best.p)
        return True
