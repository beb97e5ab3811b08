from .quadrature import (
    gauss_legendre, quad_rule, volume, rect_quadrature, limit_order, limit_order_nowarn,
)
__all__ = ['gauss_legendre', 'quad_rule', 'volume', 'rect_quadrature',
           'limit_order', 'limit_order_nowarn']
