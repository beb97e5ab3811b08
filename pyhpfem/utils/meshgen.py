"""pyhpfem.utils.meshgen
Structured base meshes.
"""
from pyhpfem.core.mesh import Mesh


def structured_rectangle(Lx: float, Ly: float, nx: int, ny: int,
                         offset=(0.0, 0.0), marker: int = 0) -> Mesh:
    """
    Base mesh of ``nx x ny`` equal rectangles covering
    ``[ox, ox+Lx] x [oy, oy+Ly]``; IDs run row by row from the bottom-left.
    """
    if nx < 1 or ny < 1:
        raise ValueError(f"Need at least one element per direction, got ({nx}, {ny}).")
    ox, oy = offset
    hx, hy = Lx / nx, Ly / ny
    mesh = Mesh()
    for j in range(ny):
        for i in range(nx):
            mesh.add_base_element(ox + i * hx, oy + j * hy, hx, hy, marker=marker)
    return mesh
