from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple

import numpy as np


class RefinementType(IntEnum):
    """How an element is (to be) refined."""
    P = -1          # polynomial order change only
    H = 0           # isotropic split into 4 sons
    ANISO_H = 1     # split by a horizontal cut into bottom/top sons (slots 0, 1)
    ANISO_V = 2     # split by a vertical cut into left/right sons (slots 2, 3)


@dataclass(slots=True, eq=False)
class Element:
    id: int                     # Stable element ID (index into the mesh arena)
    x0: float                   # Lower-left corner
    y0: float
    dx: float                   # Width
    dy: float                   # Height
    level: int = 0              # Depth in the refinement tree
    parent: Optional[int] = None
    sons: List[Optional[int]] = field(default_factory=lambda: [None] * 4)
    active: bool = True         # Leaf of the refinement tree
    used: bool = True           # False once the ID has been retired by unrefinement
    marker: int = 0             # Element marker inherited by sons
    curved: bool = False        # Touches a curved boundary

    def is_curved(self) -> bool:
        return self.curved

    def son_ids(self) -> List[int]:
        return [s for s in self.sons if s is not None]

    @property
    def rect(self) -> Tuple[float, float, float, float]:
        return (self.x0, self.y0, self.dx, self.dy)

    @property
    def area(self) -> float:
        return self.dx * self.dy

    def get_corner_points(self) -> np.ndarray:
        """Returns the four corner points of the element (CCW)."""
        return np.array([
            (self.x0, self.y0),
            (self.x0 + self.dx, self.y0),
            (self.x0 + self.dx, self.y0 + self.dy),
            (self.x0, self.y0 + self.dy),
        ])

    def contains_point(self, x: float, y: float, tol: float = 1e-12) -> bool:
        return (self.x0 - tol <= x <= self.x0 + self.dx + tol
                and self.y0 - tol <= y <= self.y0 + self.dy + tol)

    def contains_rect(self, rect, tol: float = 1e-12) -> bool:
        x0, y0, dx, dy = rect
        return (x0 >= self.x0 - tol and y0 >= self.y0 - tol
                and x0 + dx <= self.x0 + self.dx + tol
                and y0 + dy <= self.y0 + self.dy + tol)

    def __repr__(self):
        state = "active" if self.active else "inactive"
        return (f"Element {self.id}(level={self.level}, {state}, "
                f"[{self.x0:.3g},{self.x0 + self.dx:.3g}]x[{self.y0:.3g},{self.y0 + self.dy:.3g}])")
