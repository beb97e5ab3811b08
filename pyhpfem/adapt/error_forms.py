"""pyhpfem.adapt.error_forms
Bilinear forms measuring errors and norms of component pairs.
"""
from enum import Enum

import numpy as np

from pyhpfem.fem.functions import FieldValues

__all__ = ["ProjNormType", "ErrorForm", "default_norm"]


class ProjNormType(Enum):
    H1 = "h1"
    L2 = "l2"
    H1_SEMI = "h1_semi"


def default_norm(space) -> ProjNormType:
    """Natural norm of a space: L2 for discontinuous spaces, H1 otherwise."""
    return ProjNormType.L2 if space.space_type == "l2" else ProjNormType.H1


class ErrorForm:
    """
    ``value(wt, u, v)`` integrates ``u . v`` in the chosen norm with the
    quadrature weights ``wt``; ``ord(order_u, order_v)`` estimates the
    polynomial degree of the integrand.  Any object with these two methods
    can be registered with :meth:`pyhpfem.adapt.Adapt.set_error_form`.
    """

    def __init__(self, norm: ProjNormType = ProjNormType.H1):
        self.norm = ProjNormType(norm)

    def value(self, wt: np.ndarray, u: FieldValues, v: FieldValues) -> float:
        if self.norm is ProjNormType.L2:
            integrand = u.val * v.val
        elif self.norm is ProjNormType.H1_SEMI:
            integrand = u.dx * v.dx + u.dy * v.dy
        else:
            integrand = u.val * v.val + u.dx * v.dx + u.dy * v.dy
        return float(np.dot(wt, integrand))

    def ord(self, order_u: int, order_v: int) -> int:
        # derivatives of affine maps do not raise the degree
        return int(order_u) + int(order_v)

    def __repr__(self):
        return f"ErrorForm({self.norm.name})"
