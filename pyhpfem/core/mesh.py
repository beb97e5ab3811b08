"""pyhpfem.core.mesh
Hierarchical quadrilateral mesh with stable element IDs.
"""
from __future__ import annotations

import copy
import logging
import math
from typing import Dict, Iterator, List, Optional

from pyhpfem.core.topology import Element, RefinementType
from pyhpfem.utils.constants import GEOMETRY_TOL

logger = logging.getLogger(__name__)


class Mesh:
    """
    Arena of rectangular elements organised as a refinement forest.

    Element IDs are indices into the arena.  They grow monotonically as
    elements are born and an ID is never handed out twice, so arrays indexed
    by element ID stay valid while the elements they describe exist.  An
    inactive element keeps its son IDs until it is unrefined; unrefinement
    retires the sons (``used = False``) instead of deleting them.
    """

    def __init__(self):
        self.elements: List[Element] = []
        self.num_base = 0
        self.seq = 0            # bumped on every topology change
        self._TOL = GEOMETRY_TOL

    # --- construction -------------------------------------------------------

    def add_base_element(self, x0: float, y0: float, dx: float, dy: float,
                         marker: int = 0, curved: bool = False) -> Element:
        """Add a level-0 element.  Base elements must be added before any refinement."""
        if self.num_base != len(self.elements):
            raise ValueError("Base elements must be added before the mesh is refined.")
        if dx <= 0 or dy <= 0:
            raise ValueError(f"Degenerate element size ({dx}, {dy}).")
        elem = Element(id=len(self.elements), x0=float(x0), y0=float(y0),
                       dx=float(dx), dy=float(dy), marker=marker, curved=curved)
        self.elements.append(elem)
        self.num_base += 1
        self.seq += 1
        return elem

    def copy(self) -> "Mesh":
        """Independent copy with identical IDs, geometry and refinement tree."""
        return copy.deepcopy(self)

    # --- queries ------------------------------------------------------------

    def get_element(self, elem_id: int) -> Element:
        return self.elements[elem_id]

    def get_max_element_id(self) -> int:
        """Number of IDs handed out so far (length of ID-indexed arrays)."""
        return len(self.elements)

    def get_num_elements(self) -> int:
        return sum(1 for e in self.elements if e.used)

    def get_num_active_elements(self) -> int:
        return sum(1 for e in self.elements if e.used and e.active)

    def get_num_base_elements(self) -> int:
        return self.num_base

    def base_elements(self) -> Iterator[Element]:
        return iter(self.elements[:self.num_base])

    def active_elements(self) -> Iterator[Element]:
        return (e for e in self.elements if e.used and e.active)

    def inactive_elements(self) -> Iterator[Element]:
        return (e for e in self.elements if e.used and not e.active)

    def sons(self, elem: Element) -> List[Element]:
        return [self.elements[s] for s in elem.son_ids()]

    def find_element(self, x: float, y: float) -> Optional[Element]:
        """Active element containing the point ``(x, y)`` (first match on shared edges)."""
        for base in self.base_elements():
            if base.contains_point(x, y, self._TOL):
                elem = base
                while not elem.active:
                    nxt = next((s for s in self.sons(elem)
                                if s.contains_point(x, y, self._TOL)), None)
                    if nxt is None:
                        break
                    elem = nxt
                if elem.active:
                    return elem
        return None

    # --- refinement ---------------------------------------------------------

    def refine_element_id(self, elem_id: int,
                          refinement: int = RefinementType.H) -> List[Element]:
        """
        Split an active element.  ``H`` creates 4 sons in slots 0..3
        (bottom-left, bottom-right, top-right, top-left), ``ANISO_H`` creates
        bottom/top sons in slots 0, 1 and ``ANISO_V`` left/right sons in
        slots 2, 3.
        """
        parent = self.get_element(elem_id)
        if not parent.used:
            raise ValueError(f"Element {elem_id} has been retired.")
        if not parent.active:
            raise ValueError(f"Element {elem_id} is not active and cannot be refined.")
        refinement = RefinementType(refinement)

        x0, y0, dx, dy = parent.rect
        hx, hy = 0.5 * dx, 0.5 * dy
        if refinement == RefinementType.H:
            slots = {
                0: (x0, y0, hx, hy),
                1: (x0 + hx, y0, hx, hy),
                2: (x0 + hx, y0 + hy, hx, hy),
                3: (x0, y0 + hy, hx, hy),
            }
        elif refinement == RefinementType.ANISO_H:
            slots = {
                0: (x0, y0, dx, hy),
                1: (x0, y0 + hy, dx, hy),
            }
        elif refinement == RefinementType.ANISO_V:
            slots = {
                2: (x0, y0, hx, dy),
                3: (x0 + hx, y0, hx, dy),
            }
        else:
            raise ValueError(f"Refinement {refinement!r} does not split an element.")

        children = []
        for slot, (cx, cy, cdx, cdy) in slots.items():
            child = Element(id=len(self.elements), x0=cx, y0=cy, dx=cdx, dy=cdy,
                            level=parent.level + 1, parent=parent.id,
                            marker=parent.marker, curved=parent.curved)
            self.elements.append(child)
            parent.sons[slot] = child.id
            children.append(child)

        parent.active = False
        self.seq += 1
        return children

    def refine_all_elements(self, refinement: int = RefinementType.H) -> None:
        for elem_id in [e.id for e in self.active_elements()]:
            self.refine_element_id(elem_id, refinement)

    def unrefine_element_id(self, elem_id: int) -> None:
        """Merge the subtree below an inactive element back into it."""
        elem = self.get_element(elem_id)
        if elem.active:
            return
        stack = list(elem.son_ids())
        while stack:
            son = self.elements[stack.pop()]
            stack.extend(son.son_ids())
            son.used = False
            son.active = False
        elem.sons = [None] * 4
        elem.active = True
        self.seq += 1

    # --- adjacency ----------------------------------------------------------

    def _share_edge(self, a: Element, b: Element) -> bool:
        tol = self._TOL
        # vertical contact
        if (math.isclose(a.x0 + a.dx, b.x0, abs_tol=tol)
                or math.isclose(b.x0 + b.dx, a.x0, abs_tol=tol)):
            return max(a.y0, b.y0) < min(a.y0 + a.dy, b.y0 + b.dy) - tol
        # horizontal contact
        if (math.isclose(a.y0 + a.dy, b.y0, abs_tol=tol)
                or math.isclose(b.y0 + b.dy, a.y0, abs_tol=tol)):
            return max(a.x0, b.x0) < min(a.x0 + a.dx, b.x0 + b.dx) - tol
        return False

    def neighbors(self, elem: Element) -> List[Element]:
        """All active elements sharing a boundary segment of positive length with ``elem``."""
        return [other for other in self.active_elements()
                if other.id != elem.id and self._share_edge(elem, other)]

    def neighbor_map(self) -> Dict[int, List[int]]:
        """Adjacency of all active elements, keyed by element ID."""
        active = list(self.active_elements())
        nbrs: Dict[int, List[int]] = {e.id: [] for e in active}
        for i, a in enumerate(active):
            for b in active[i + 1:]:
                if self._share_edge(a, b):
                    nbrs[a.id].append(b.id)
                    nbrs[b.id].append(a.id)
        return nbrs

    # --- regularization -----------------------------------------------------

    def regularize(self, n: int) -> Dict[int, int]:
        """
        Make the mesh ``n``-irregular: no two adjacent active elements differ
        in refinement level by more than ``n``.  Offending coarse elements are
        split isotropically until the condition holds.

        Returns a mapping ``{active_id: ancestor_id}`` where ``ancestor_id`` is
        the element that was active before regularization and contains
        ``active_id`` (identity for untouched elements).
        """
        if n < 1:
            raise ValueError(f"Regularization level must be >= 1, got {n}.")

        parents: Dict[int, int] = {e.id: e.id for e in self.active_elements()}
        n_split = 0
        while True:
            nbrs = self.neighbor_map()
            to_split = sorted(
                eid for eid, others in nbrs.items()
                if any(self.elements[o].level - self.elements[eid].level > n for o in others)
            )
            if not to_split:
                break
            for eid in to_split:
                for son in self.refine_element_id(eid, RefinementType.H):
                    parents[son.id] = parents[eid]
                n_split += 1

        if n_split:
            logger.debug("Regularization (n=%d) split %d elements.", n, n_split)
        return {eid: anc for eid, anc in parents.items() if self.elements[eid].active}

    def max_level_jump(self) -> int:
        """Largest refinement-level difference across adjacent active elements."""
        jump = 0
        for eid, others in self.neighbor_map().items():
            for o in others:
                jump = max(jump, abs(self.elements[o].level - self.elements[eid].level))
        return jump

    def __repr__(self):
        return (f"<Mesh {self.get_num_active_elements()} active / "
                f"{self.get_max_element_id()} ids, {self.num_base} base>")
