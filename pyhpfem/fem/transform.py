"""pyhpfem.fem.transform
Reference -> physical mapping for rectangular elements.

Elements are axis-aligned rectangles, so the map from the reference square
[-1,1]^2 is affine and its Jacobian is constant on each element.
"""
import numpy as np


def x_mapping(elem, xi, eta):
    """Reference coordinates -> physical ``(x, y)``."""
    x = elem.x0 + 0.5 * (np.asarray(xi, dtype=float) + 1.0) * elem.dx
    y = elem.y0 + 0.5 * (np.asarray(eta, dtype=float) + 1.0) * elem.dy
    return x, y


def inverse_mapping(elem, x, y):
    """Physical ``(x, y)`` -> reference ``(xi, eta)``."""
    xi = 2.0 * (np.asarray(x, dtype=float) - elem.x0) / elem.dx - 1.0
    eta = 2.0 * (np.asarray(y, dtype=float) - elem.y0) / elem.dy - 1.0
    return xi, eta


def jacobian(elem) -> np.ndarray:
    return np.array([[0.5 * elem.dx, 0.0], [0.0, 0.5 * elem.dy]])


def det_jacobian(elem) -> float:
    return 0.25 * elem.dx * elem.dy


def inv_jac_T(elem) -> np.ndarray:
    return np.array([[2.0 / elem.dx, 0.0], [0.0, 2.0 / elem.dy]])


def inv_ref_order(elem) -> int:
    """Polynomial order of the inverse reference map (0: constant for affine elements)."""
    return 0
