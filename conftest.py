# conftest.py
import pytest
import sympy as sp

from pyhpfem.core import construct_refined_spaces
from pyhpfem.fem.functions import ExactSolution, Solution
from pyhpfem.utils.meshgen import structured_rectangle

X, Y = sp.symbols("x y")


@pytest.fixture
def unit_mesh():
    """2x2 base elements on the unit square (IDs 0..3 row by row)."""
    return structured_rectangle(1.0, 1.0, 2, 2)


@pytest.fixture
def peak_expr():
    """Sharp Gaussian centred in element 0 of ``unit_mesh``."""
    return sp.exp(-200 * ((X - 0.25) ** 2 + (Y - 0.25) ** 2))


@pytest.fixture
def coarse_and_reference():
    """
    Build ``(slns, rslns)`` for a list of spaces by nodal interpolation of
    SymPy expressions on the spaces and on their refined reference spaces.
    """
    def _make(spaces, exprs):
        ref_spaces = construct_refined_spaces(spaces)
        slns, rslns = [], []
        for space, ref_space, expr in zip(spaces, ref_spaces, exprs):
            exact = ExactSolution(space.get_mesh(), expr)
            slns.append(Solution.interpolate(space, exact))
            rslns.append(Solution.interpolate(ref_space, exact))
        return slns, rslns
    return _make
