"""pyhpfem.core.traverse
Simultaneous traversal of several meshes over the same base partition.

Each visited state is a rectangle on which every mesh presents exactly one
active element covering it: the coarsest common refinement of all meshes.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

from pyhpfem.core.mesh import Mesh
from pyhpfem.core.topology import Element
from pyhpfem.utils.constants import GEOMETRY_TOL

__all__ = ["State", "traverse"]


@dataclass(frozen=True)
class State:
    elements: Tuple[Element, ...]   # one active element per mesh, in input order
    rect: Tuple[float, float, float, float]

    @property
    def area(self) -> float:
        return self.rect[2] * self.rect[3]


def _intersect(a, b, tol: float = GEOMETRY_TOL) -> Optional[Tuple[float, float, float, float]]:
    x0, y0 = max(a[0], b[0]), max(a[1], b[1])
    x1, y1 = min(a[0] + a[2], b[0] + b[2]), min(a[1] + a[3], b[1] + b[3])
    if x1 - x0 <= tol or y1 - y0 <= tol:
        return None
    return (x0, y0, x1 - x0, y1 - y0)


def _check_bases(meshes: Sequence[Mesh]) -> None:
    first = meshes[0]
    for mesh in meshes[1:]:
        if mesh is first:
            continue
        if mesh.get_num_base_elements() != first.get_num_base_elements():
            raise ValueError("Meshes in a traversal must share the same base elements.")
        for a, b in zip(first.base_elements(), mesh.base_elements()):
            if not all(math.isclose(p, q, abs_tol=GEOMETRY_TOL) for p, q in zip(a.rect, b.rect)):
                raise ValueError(f"Base element {a.id} differs between meshes: {a.rect} vs {b.rect}.")


def _descend(meshes: Sequence[Mesh], elems: List[Element], rect) -> Iterator[State]:
    elems = list(elems)
    splitter = None
    for k, elem in enumerate(elems):
        while not elem.active:
            son = next((s for s in meshes[k].sons(elem) if s.contains_rect(rect)), None)
            if son is None:
                break
            elem = son
        elems[k] = elem
        if splitter is None and not elem.active:
            splitter = k

    if splitter is None:
        yield State(tuple(elems), rect)
        return

    for son in meshes[splitter].sons(elems[splitter]):
        sub = _intersect(rect, son.rect)
        if sub is not None:
            yield from _descend(meshes, elems, sub)


def traverse(meshes: Sequence[Mesh]) -> Iterator[State]:
    """
    Yield the states of a simultaneous traversal of ``meshes``.

    The same mesh object may appear several times; its slots then always
    hold the same element.  The states tile the domain exactly once.
    """
    meshes = list(meshes)
    if not meshes:
        return
    _check_bases(meshes)
    for bases in zip(*(m.base_elements() for m in meshes)):
        yield from _descend(meshes, list(bases), bases[0].rect)
