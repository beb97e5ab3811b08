"""pyhpfem.utils.constants
System-wide limits shared by the mesh, space and adaptivity layers.
"""

MAX_COMPONENTS = 10          # components of one coupled system
MAX_ELEMENT_SONS = 4         # son slots per element (quadrilaterals)

ORDER_BITS = 5               # encoded quad order: h + (v << ORDER_BITS)
ORDER_MASK = (1 << ORDER_BITS) - 1
MAX_P = 10                   # highest polynomial degree of a space

MAX_QUAD_ORDER = 24          # highest integration order handed to a Gauss rule

# Strategy 0 keeps refining while consecutive element errors differ by less
# than this relative amount (keeps symmetric meshes symmetric). Tunable.
STRATEGY0_ERROR_DROP = 1e-3

GEOMETRY_TOL = 1e-12
