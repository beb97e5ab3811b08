"""pyhpfem.adapt.error_evaluator
Integration of error forms over one traversal state or over the whole domain.
"""
from pyhpfem.core.traverse import traverse
from pyhpfem.fem.functions import LocalFunction, MeshFunction
from pyhpfem.fem.transform import inv_ref_order
from pyhpfem.integration.quadrature import limit_order, limit_order_nowarn, rect_quadrature

__all__ = ["integration_order", "eval_error", "eval_error_norm", "calc_error", "calc_norm"]


def integration_order(form, rsln1: MeshFunction, rsln2: MeshFunction, ref_elem) -> int:
    """Quadrature order for ``form`` on ``ref_elem``, clamped to the largest available rule."""
    order = inv_ref_order(ref_elem) + form.ord(rsln1.get_fn_order(), rsln2.get_fn_order())
    if rsln1.is_exact or rsln2.is_exact:
        return limit_order_nowarn(order)
    return limit_order(order)


def _rule(form, rsln1: LocalFunction, rsln2: LocalFunction, rect):
    return rect_quadrature(rect, integration_order(form, rsln1.fn, rsln2.fn, rsln1.element))


def eval_error(form, sln1: LocalFunction, sln2: LocalFunction,
               rsln1: LocalFunction, rsln2: LocalFunction, rect) -> float:
    """``|form(sln1 - rsln1, sln2 - rsln2)|`` integrated over ``rect``."""
    xs, ys, wt = _rule(form, rsln1, rsln2, rect)
    err1 = sln1.values(xs, ys) - rsln1.values(xs, ys)
    err2 = sln2.values(xs, ys) - rsln2.values(xs, ys)
    return abs(form.value(wt, err1, err2))


def eval_error_norm(form, rsln1: LocalFunction, rsln2: LocalFunction, rect) -> float:
    """``|form(rsln1, rsln2)|`` integrated over ``rect``."""
    xs, ys, wt = _rule(form, rsln1, rsln2, rect)
    return abs(form.value(wt, rsln1.values(xs, ys), rsln2.values(xs, ys)))


def calc_error(form, sln1: MeshFunction, sln2: MeshFunction,
               rsln1: MeshFunction, rsln2: MeshFunction) -> float:
    """Squared error of a component pair summed over the whole domain."""
    fns = (sln1, sln2, rsln1, rsln2)
    total = 0.0
    for state in traverse([f.get_mesh() for f in fns]):
        loc = [LocalFunction(f, e) for f, e in zip(fns, state.elements)]
        total += eval_error(form, *loc, state.rect)
    return total


def calc_norm(form, rsln1: MeshFunction, rsln2: MeshFunction) -> float:
    """Squared reference norm of a component pair summed over the whole domain."""
    total = 0.0
    for state in traverse([rsln1.get_mesh(), rsln2.get_mesh()]):
        r1, r2 = (LocalFunction(f, e) for f, e in zip((rsln1, rsln2), state.elements))
        total += eval_error_norm(form, r1, r2, state.rect)
    return total
