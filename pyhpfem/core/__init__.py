from .topology import Element, RefinementType
from .mesh import Mesh
from .space import Space, H1Space, L2Space, assign_dofs, construct_refined_space, construct_refined_spaces
from .traverse import traverse
__all__ = ['Element', 'RefinementType', 'Mesh', 'Space', 'H1Space', 'L2Space', 'assign_dofs',
           'construct_refined_space', 'construct_refined_spaces', 'traverse']
