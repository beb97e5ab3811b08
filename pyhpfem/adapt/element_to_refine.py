"""pyhpfem.adapt.element_to_refine
Refinement decisions passed between selectors and the adaptivity engine.
"""
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional

from pyhpfem.core.orders import order_str
from pyhpfem.core.topology import RefinementType
from pyhpfem.utils.constants import MAX_ELEMENT_SONS

__all__ = ["RefinementType", "ElementReference", "ElementToRefine", "son_slots"]


class ElementReference(NamedTuple):
    """Handle of one (element, component) pair."""
    id: int
    comp: int


def _no_orders() -> List[int]:
    return [0] * MAX_ELEMENT_SONS


@dataclass
class ElementToRefine:
    """
    How one element of one component is refined.

    ``p`` holds the encoded orders of the sons in their mesh slots (slot 0 for
    a P-only change, slots 0..3 for ``H``, 0..1 for ``ANISO_H`` and 2..3 for
    ``ANISO_V``).  ``q`` optionally holds the son orders the selector
    suggests should the element end up split isotropically by a component
    sharing its mesh.
    """
    id: int = -1
    comp: int = -1
    split: RefinementType = RefinementType.P
    p: List[int] = field(default_factory=_no_orders)
    q: Optional[List[int]] = None

    @property
    def reference(self) -> ElementReference:
        return ElementReference(self.id, self.comp)

    def son_slots(self) -> List[int]:
        return son_slots(self.split)

    def copy(self) -> "ElementToRefine":
        q = None if self.q is None else list(self.q)
        return ElementToRefine(self.id, self.comp, self.split, list(self.p), q)

    def __repr__(self):
        orders = ", ".join(order_str(self.p[s]) for s in self.son_slots())
        return f"ElementToRefine(id={self.id}, comp={self.comp}, {self.split.name}: [{orders}])"


def son_slots(split) -> List[int]:
    """Son slots written by a split type (slot 0 carries the new order of a P change)."""
    split = RefinementType(split)
    if split == RefinementType.H:
        return [0, 1, 2, 3]
    if split == RefinementType.ANISO_H:
        return [0, 1]
    if split == RefinementType.ANISO_V:
        return [2, 3]
    return [0]
