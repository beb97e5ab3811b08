from functools import lru_cache
import sympy as sp
import numpy as np


@lru_cache(maxsize=None)
def _lagrange_basis_1d(n: int):
    """1D Lagrange basis on n+1 equispaced nodes of [-1,1] and its first derivatives."""
    x = sp.symbols('x')
    nodes = np.linspace(-1.0, 1.0, n + 1) if n > 0 else np.array([0.0])
    L, dL = [], []
    for i, xi in enumerate(nodes):
        num = sp.Integer(1)
        den = 1.0
        for j, xj in enumerate(nodes):
            if i == j:
                continue
            num *= (x - xj)
            den *= (xi - xj)
        Li = sp.expand(num / den)
        # lambdify shape & derivative (SymPy -> numpy functions)
        L.append(sp.lambdify(x, Li, 'numpy'))
        dL.append(sp.lambdify(x, sp.diff(Li, x), 'numpy'))
    return nodes, tuple(L), tuple(dL)


def _eval_1d(funcs, z):
    # constants lambdify to scalars; broadcast them to the point shape
    z = np.asarray(z, dtype=float)
    return np.array([np.broadcast_to(f(z), z.shape) for f in funcs], dtype=float)


@lru_cache(maxsize=None)
def quad_qn(n_h: int, n_v: int):
    """
    Tensor-product Q_{n_h, n_v} on [-1,1]^2.
    Returns: (nodes, shape_fn, grad_fn) where
      nodes            -> ((n_h+1)(n_v+1), 2) reference node lattice
      shape_fn(xi,eta) -> ((n_h+1)(n_v+1), npts)
      grad_fn(xi,eta)  -> (d/dxi, d/deta), each ((n_h+1)(n_v+1), npts)
    Stacking order is (eta outer, xi inner): index = j*(n_h+1) + i
    """
    nodes_h, Lh, dLh = _lagrange_basis_1d(n_h)
    nodes_v, Lv, dLv = _lagrange_basis_1d(n_v)
    nodes = np.array([(xi, eta) for eta in nodes_v for xi in nodes_h])

    def _combine(fy, fx):
        # (nv, npts) x (nh, npts) -> (nv*nh, npts), eta outer
        return (fy[:, None, :] * fx[None, :, :]).reshape(-1, fx.shape[-1])

    def shape(xi, eta):
        xi = np.atleast_1d(xi)
        eta = np.atleast_1d(eta)
        return _combine(_eval_1d(Lv, eta), _eval_1d(Lh, xi))

    def grad(xi, eta):
        xi = np.atleast_1d(xi)
        eta = np.atleast_1d(eta)
        lx, ly = _eval_1d(Lh, xi), _eval_1d(Lv, eta)
        dx, dy = _eval_1d(dLh, xi), _eval_1d(dLv, eta)
        return _combine(ly, dx), _combine(dy, lx)

    return nodes, shape, grad
