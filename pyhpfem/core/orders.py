"""pyhpfem.core.orders
Encoded polynomial orders of quadrilateral elements.

A quad order packs the horizontal order ``h`` and the vertical order ``v``
into one integer, ``h + (v << ORDER_BITS)``.  A plain integer without a
vertical part is read as an isotropic order.
"""
from pyhpfem.utils.constants import ORDER_BITS, ORDER_MASK


def make_quad_order(h_order: int, v_order: int) -> int:
    return (int(v_order) << ORDER_BITS) + int(h_order)


def get_h_order(quad_order: int) -> int:
    return int(quad_order) & ORDER_MASK


def get_v_order(quad_order: int) -> int:
    return int(quad_order) >> ORDER_BITS


def normalize_order(order: int) -> int:
    """Turn a plain order ``p`` into ``make_quad_order(p, p)``; keep encoded ones."""
    if get_v_order(order) == 0:
        return make_quad_order(order, order)
    return int(order)


def max_quad_order(a: int, b: int) -> int:
    """Component-wise maximum of two encoded orders."""
    return make_quad_order(max(get_h_order(a), get_h_order(b)),
                           max(get_v_order(a), get_v_order(b)))


def order_str(quad_order: int) -> str:
    return f"({get_h_order(quad_order)},{get_v_order(quad_order)})"
