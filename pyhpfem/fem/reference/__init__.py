# pyhpfem.fem.reference
"""
Order-agnostic reference-element factory for (anisotropic) quadrilaterals.
"""
from functools import lru_cache

import numpy as np

from .quad_qn import quad_qn


class Ref:
    def __init__(self, order_h, order_v):
        self.order_h = order_h
        self.order_v = order_v
        self.nodes, self._shape, self._grad = quad_qn(order_h, order_v)

    @property
    def n_basis(self) -> int:
        return (self.order_h + 1) * (self.order_v + 1)

    def shape(self, xi, eta) -> np.ndarray:
        """Basis values, shape (n_basis, npts)."""
        return self._shape(xi, eta)

    def grad(self, xi, eta):
        """Reference derivatives (d/dxi, d/deta), each (n_basis, npts)."""
        return self._grad(xi, eta)


@lru_cache(maxsize=None)
def get_reference(order_h: int, order_v: int | None = None) -> Ref:
    if order_v is None:
        order_v = order_h
    if order_h < 0 or order_v < 0:
        raise ValueError(f"Polynomial orders must be non-negative, got ({order_h}, {order_v}).")
    return Ref(int(order_h), int(order_v))
