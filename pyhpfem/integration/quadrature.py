"""pyhpfem.integration.quadrature
Gauss-Legendre rules on the reference square and on axis-aligned rectangles.
"""
import logging
from functools import lru_cache

import numba as _nb
import numpy as np
from numpy.polynomial.legendre import leggauss

from pyhpfem.utils.constants import MAX_QUAD_ORDER

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# 1-D Gauss-Legendre
# -------------------------------------------------------------------------
def gauss_legendre(n_points: int):
    if n_points < 1:
        raise ValueError(n_points)
    return leggauss(n_points)  # (points, weights)


def num_points(order: int) -> int:
    """Points per direction integrating polynomials of degree ``order`` exactly."""
    if order < 0:
        raise ValueError(order)
    return order // 2 + 1


# -------------------------------------------------------------------------
# Tensor-product construction on [-1, 1]^2
# -------------------------------------------------------------------------
@lru_cache(maxsize=None)
def quad_rule(order: int):
    """Tensor rule exact for degree ``order`` in each variable; ``pts`` is (n, 2)."""
    xi, wi = gauss_legendre(num_points(order))
    pts = np.array([[x, y] for x in xi for y in xi])
    wts = np.array([wx * wy for wx in wi for wy in wi])
    pts.flags.writeable = False
    wts.flags.writeable = False
    return pts, wts


def volume(order: int = 2):
    return quad_rule(order)


@_nb.njit(cache=True, fastmath=True)
def _map_rect_rule(x0, y0, dx, dy, pts_ref, w_ref):
    nQ = pts_ref.shape[0]
    xs = np.empty(nQ)
    ys = np.empty(nQ)
    wts = np.empty(nQ)
    jac = 0.25 * dx * dy
    for q in range(nQ):
        xs[q] = x0 + 0.5 * (pts_ref[q, 0] + 1.0) * dx
        ys[q] = y0 + 0.5 * (pts_ref[q, 1] + 1.0) * dy
        wts[q] = w_ref[q] * jac
    return xs, ys, wts


def rect_quadrature(rect, order: int):
    """Physical points ``(x, y)`` and Jacobian-scaled weights on ``rect = (x0, y0, dx, dy)``."""
    x0, y0, dx, dy = rect
    pts, wts = quad_rule(order)
    return _map_rect_rule(float(x0), float(y0), float(dx), float(dy),
                          np.ascontiguousarray(pts), np.ascontiguousarray(wts))


# -------------------------------------------------------------------------
# Order limiting
# -------------------------------------------------------------------------
def limit_order(order: int, warn: bool = True, max_order: int = MAX_QUAD_ORDER) -> int:
    """Clamp an integration order to ``max_order`` (logging a warning if ``warn``)."""
    if order > max_order:
        if warn:
            logger.warning("Integration order %d exceeds the maximum %d, using %d.",
                           order, max_order, max_order)
        return max_order
    return max(int(order), 0)


def limit_order_nowarn(order: int, max_order: int = MAX_QUAD_ORDER) -> int:
    return limit_order(order, warn=False, max_order=max_order)
