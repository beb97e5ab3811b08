import logging

import numpy as np
import pytest
import sympy as sp

from pyhpfem.adapt import (Adapt, AdaptivityParameters, ElementReference, ElementToRefine, ErrorFlags,
                           ErrorForm, HOnlySelector, POnlySelector, ProjBasedSelector, RefinementType,
                           Selector)
from pyhpfem.core import H1Space, Mesh, construct_refined_space
from pyhpfem.core.orders import make_quad_order
from pyhpfem.fem.functions import Solution
from pyhpfem.utils.meshgen import structured_rectangle

x, y = sp.symbols("x y")
H, P = RefinementType.H, RefinementType.P
ABS_FLAGS = ErrorFlags.TOTAL_ERROR_ABS | ErrorFlags.ELEMENT_ERROR_ABS


class FixedSelector(Selector):
    """Proposes the same split for every element, keeping its order."""

    def __init__(self, split, accept=True):
        super().__init__()
        self.split = split
        self.accept = accept

    def select_refinement(self, element, quad_order, rsln, refinement):
        if not self.accept:
            return False
        refinement.split = self.split
        refinement.p = [quad_order] * 4
        refinement.q = [quad_order] * 4
        return True


@pytest.fixture
def single(unit_mesh, peak_expr, coarse_and_reference):
    space = H1Space(unit_mesh, 1)
    (sln,), (rsln,) = coarse_and_reference([space], [peak_expr])
    adapt = Adapt(space)
    adapt.calc_err_est(sln, rsln)
    return adapt, space, sln, rsln


@pytest.fixture
def shared(unit_mesh, peak_expr, coarse_and_reference):
    spaces = [H1Space(unit_mesh, 1), H1Space(unit_mesh, 1)]
    slns, rslns = coarse_and_reference(spaces, [peak_expr, peak_expr])
    adapt = Adapt(spaces)
    adapt.calc_err_est(slns, rslns)
    return adapt, spaces


@pytest.fixture
def symmetric(unit_mesh, coarse_and_reference):
    """Four elements with equal errors."""
    space = H1Space(unit_mesh, 1)
    (sln,), (rsln,) = coarse_and_reference([space], [x * (1 - x) * y * (1 - y)])
    adapt = Adapt(space)
    adapt.calc_err_est(sln, rsln)
    return adapt


def refinements(adapt):
    return sorted((r.id, r.comp, r.split) for r in adapt.get_last_refinements())


# ---------------------------------------------------------------------------
# error pass
# ---------------------------------------------------------------------------
def test_element_errors_sum_to_component_error(unit_mesh, peak_expr, coarse_and_reference):
    unit_mesh.refine_element_id(0)
    space = H1Space(unit_mesh, 2)
    (sln,), (rsln,) = coarse_and_reference([space], [peak_expr])
    adapt = Adapt(space)
    total, comps = adapt.calc_err_est(sln, rsln, return_component_errors=True)
    errs = adapt.errors[0]
    active = [e.id for e in unit_mesh.active_elements()]
    inactive = [e.id for e in unit_mesh.inactive_elements()]
    assert np.all(errs >= 0)
    assert np.all(errs[inactive] == 0)
    assert np.isclose(errs[active].sum(), comps[0] ** 2)
    assert np.isclose(total, comps[0])
    assert np.isclose(adapt.get_total_error_squared(), errs.sum())
    assert adapt.have_errors
    assert adapt.error_time >= 0


def test_absolute_and_relative_errors(single):
    adapt, space, sln, rsln = single
    total_abs = adapt.calc_err_est(sln, rsln, error_flags=ABS_FLAGS)
    assert np.isclose(adapt.errors[0].sum(), total_abs ** 2)
    total_rel = adapt.calc_err_est(sln, rsln)
    assert np.isclose(total_rel, total_abs / np.sqrt(adapt.norms_squared[0]))


def test_exact_error_does_not_store(unit_mesh):
    from pyhpfem.fem.functions import ExactSolution, Solution
    space = H1Space(unit_mesh, 1)
    exact = ExactSolution(unit_mesh, x ** 2)
    adapt = Adapt(space)
    err = adapt.calc_err_exact(Solution.interpolate(space, exact), exact)
    assert err > 0
    assert not adapt.have_errors


def test_cross_error_form(unit_mesh, peak_expr, coarse_and_reference):
    spaces = [H1Space(unit_mesh, 1), H1Space(unit_mesh, 1)]
    slns, rslns = coarse_and_reference(spaces, [peak_expr, peak_expr])
    adapt = Adapt(spaces)
    plain = adapt.calc_err_est(slns, rslns, error_flags=ABS_FLAGS)
    adapt.set_error_form(0, 1, ErrorForm())
    coupled = adapt.calc_err_est(slns, rslns, error_flags=ABS_FLAGS)
    # identical components: the cross term equals one diagonal term
    assert np.isclose(coupled ** 2, 1.5 * plain ** 2)


def test_regular_queue_is_sorted(shared, unit_mesh):
    adapt, _ = shared
    queue = adapt.regular_queue
    assert len(queue) == 2 * unit_mesh.get_num_active_elements() == adapt.get_num_active_elements()
    errs = [adapt.get_element_error_squared(r.comp, r.id) for r in queue]
    assert all(a >= b for a, b in zip(errs, errs[1:]))
    # equal errors of the two components: lower component first
    assert queue[0] == (0, 0) and queue[1] == (0, 1)


# ---------------------------------------------------------------------------
# adaptivity step
# ---------------------------------------------------------------------------
def test_strategy1_refines_peak_element(single, unit_mesh):
    adapt, space, _, _ = single
    assert adapt.regular_queue[0] == (0, 0)
    done = adapt.adapt(HOnlySelector(), thr=0.3, strat=1)
    assert not done
    assert not adapt.have_errors
    assert refinements(adapt) == [(0, 0, H)]
    assert unit_mesh.get_num_active_elements() == 7
    # 9 vertices + 5 new ones, no edge dofs at order 1
    assert space.get_num_dofs() == 14


def test_params_object(single, unit_mesh):
    adapt = single[0]
    assert not adapt.adapt([HOnlySelector()], params=AdaptivityParameters(threshold=0.3, strategy=1))
    assert refinements(adapt) == [(0, 0, H)]


def test_projection_selector_step(single):
    adapt = single[0]
    assert not adapt.adapt(ProjBasedSelector(), thr=0.3, strat=1)
    assert [r.id for r in adapt.get_last_refinements()] == [0]


def test_strategy0_stops_after_dominant_element(single):
    adapt = single[0]
    adapt.adapt(HOnlySelector(), thr=0.3, strat=0)
    assert refinements(adapt) == [(0, 0, H)]


def test_strategy0_keeps_equal_errors_together(symmetric, unit_mesh):
    symmetric.adapt(HOnlySelector(), thr=0.3, strat=0)
    assert [r[0] for r in refinements(symmetric)] == [0, 1, 2, 3]
    assert unit_mesh.get_num_active_elements() == 16


def test_strategy3_processed_limit(symmetric):
    limit = 0.25 * symmetric.get_total_error_squared()
    symmetric.adapt(HOnlySelector(), thr=0.0, strat=3, to_be_processed=limit)
    assert len(symmetric.get_last_refinements()) == 2


def test_strategy2_nothing_to_do(single, unit_mesh, caplog):
    adapt = single[0]
    with caplog.at_level(logging.WARNING, logger="pyhpfem.adapt.adapt"):
        done = adapt.adapt(HOnlySelector(), thr=1e6, strat=2)
    assert done
    assert "could be refined" in caplog.text
    assert adapt.have_errors
    assert unit_mesh.get_num_active_elements() == 4
    # errors are still valid, so another step is allowed
    assert not adapt.adapt(HOnlySelector(), thr=0.3, strat=1)


def test_all_candidates_rejected(single):
    adapt = single[0]
    assert adapt.adapt(FixedSelector(H, accept=False), thr=0.3, strat=1)
    assert adapt.get_last_refinements() == []
    assert not adapt.have_errors


def test_p_refinement_is_idempotent(unit_mesh):
    space = H1Space(unit_mesh, 1)
    adapt = Adapt(space)
    ref = ElementToRefine(2, 0, P, [make_quad_order(3, 2), 0, 0, 0])
    adapt.apply_refinement(ref)
    once = space.get_element_order(2)
    adapt.apply_refinement(ref)
    assert space.get_element_order(2) == once == make_quad_order(3, 2)
    assert unit_mesh.get_num_active_elements() == 4


def test_split_replay_reassigns_orders(unit_mesh):
    space = H1Space(unit_mesh, 1)
    adapt = Adapt(space)
    adapt.apply_refinement(ElementToRefine(0, 0, H, [1, 1, 1, 1]))
    adapt.apply_refinement(ElementToRefine(0, 0, H, [2, 3, 2, 3]))
    assert unit_mesh.get_num_active_elements() == 7
    sons = unit_mesh.get_element(0).sons
    assert [space.get_element_order(s) for s in sons] == [make_quad_order(p, p) for p in (2, 3, 2, 3)]
    adapt.apply_refinement(ElementToRefine(1, 0, RefinementType.ANISO_V, [0, 0, 2, 4]))
    left, right = unit_mesh.get_element(1).sons[2:]
    assert space.get_element_order(left) == make_quad_order(2, 2)
    assert space.get_element_order(right) == make_quad_order(4, 4)


# ---------------------------------------------------------------------------
# shared meshes
# ---------------------------------------------------------------------------
def test_shared_mesh_split_is_mirrored(shared, unit_mesh):
    adapt, (s0, s1) = shared
    done = adapt.adapt([HOnlySelector(), POnlySelector()], thr=0.3, strat=1)
    assert not done
    assert refinements(adapt) == [(0, 0, H), (0, 1, H)]
    assert unit_mesh.get_num_active_elements() == 7
    for e in unit_mesh.active_elements():
        assert s0.get_element_order(e.id) == s1.get_element_order(e.id)


def test_shared_mesh_decision_is_synthesized(shared, unit_mesh):
    adapt, _ = shared
    adapt.adapt([HOnlySelector(), FixedSelector(H, accept=False)], thr=0.3, strat=1)
    assert refinements(adapt) == [(0, 0, H), (0, 1, H)]


def test_crossing_anisotropic_splits_become_isotropic(shared, unit_mesh):
    adapt, _ = shared
    adapt.adapt([FixedSelector(RefinementType.ANISO_H), FixedSelector(RefinementType.ANISO_V)],
                thr=0.3, strat=1)
    assert refinements(adapt) == [(0, 0, H), (0, 1, H)]
    assert None not in unit_mesh.get_element(0).sons


def test_anisotropic_split_beats_p(shared, unit_mesh):
    adapt, (s0, s1) = shared
    adapt.adapt([FixedSelector(P), FixedSelector(RefinementType.ANISO_V)], thr=0.3, strat=1)
    aniso = RefinementType.ANISO_V
    assert refinements(adapt) == [(0, 0, aniso), (0, 1, aniso)]
    assert unit_mesh.get_num_active_elements() == 5


def test_partners_come_from_the_regular_queue(shared, caplog):
    adapt, _ = shared
    with caplog.at_level(logging.INFO, logger="pyhpfem.adapt.adapt"):
        adapt.adapt([HOnlySelector(), HOnlySelector()], thr=0.3, strat=1)
    assert "Examined elements: 3 (priority: 0, ignored: 0, not changed: 0), " \
           "elements to process: 2." in caplog.text
    assert len(adapt.get_last_refinements()) == 2


def test_quiet_partner_does_not_override_p_decision(unit_mesh, peak_expr, coarse_and_reference):
    spaces = [H1Space(unit_mesh, 1), H1Space(unit_mesh, 1)]
    slns, rslns = coarse_and_reference(spaces, [peak_expr, x + y])
    adapt = Adapt(spaces)
    adapt.calc_err_est(slns, rslns)
    assert adapt.regular_queue[0] == (0, 0)
    adapt.adapt([POnlySelector(), HOnlySelector()], thr=0.3, strat=1)
    assert refinements(adapt) == [(0, 0, P)]
    assert unit_mesh.get_num_active_elements() == 4
    # orders on a shared mesh are homogenized after the step
    assert spaces[0].get_element_order(0) == make_quad_order(2, 2)
    assert spaces[1].get_element_order(0) == make_quad_order(2, 2)


def test_priority_entries_skip_the_stop_check(single, caplog):
    adapt = single[0]
    adapt.priority_queue.append(ElementReference(3, 0))
    with caplog.at_level(logging.INFO, logger="pyhpfem.adapt.adapt"):
        adapt.adapt(HOnlySelector(), thr=0.3, strat=1)
    assert "priority: 1, ignored: 0" in caplog.text
    assert refinements(adapt) == [(0, 0, H), (3, 0, H)]
    assert not adapt.priority_queue


def test_separate_meshes_refine_independently(unit_mesh, peak_expr, coarse_and_reference):
    other = unit_mesh.copy()
    spaces = [H1Space(unit_mesh, 1), H1Space(other, 1)]
    slns, rslns = coarse_and_reference(spaces, [peak_expr, peak_expr])
    adapt = Adapt(spaces)
    adapt.calc_err_est(slns, rslns)
    adapt.adapt([HOnlySelector(), FixedSelector(H, accept=False)], thr=0.3, strat=1)
    assert refinements(adapt) == [(0, 0, H)]
    assert unit_mesh.get_num_active_elements() == 7
    assert other.get_num_active_elements() == 4


def test_regularization_after_step(peak_expr, coarse_and_reference, caplog):
    mesh = structured_rectangle(1.0, 1.0, 2, 2)
    mesh.refine_element_id(0)
    mesh.refine_element_id(5)     # level 2 next to element 1
    spaces = [H1Space(mesh, 1), H1Space(mesh, 2)]
    slns, rslns = coarse_and_reference(spaces, [peak_expr, peak_expr])
    adapt = Adapt(spaces)
    adapt.calc_err_est(slns, rslns)
    with caplog.at_level(logging.WARNING, logger="pyhpfem.adapt.adapt"):
        adapt.adapt([HOnlySelector(), HOnlySelector()], thr=0.3, strat=1, regularize=0)
    assert "1-irregular" in caplog.text
    assert mesh.max_level_jump() <= 1
    for e in mesh.active_elements():
        assert spaces[0].get_element_order(e.id) == spaces[1].get_element_order(e.id)


# ---------------------------------------------------------------------------
# unrefinement
# ---------------------------------------------------------------------------
QUIET_LEFT = sp.Piecewise((0, x < 1), ((x - 1) ** 3, True))


def test_unrefine_merges_quiet_sons(coarse_and_reference):
    mesh = structured_rectangle(2.0, 1.0, 2, 1)
    sons = mesh.refine_element_id(0)
    s0, s1 = H1Space(mesh, 1), H1Space(mesh, 1)
    for son, order in zip(sons, [make_quad_order(3, 1), make_quad_order(2, 2), 1, 1]):
        s0.set_element_order(son.id, order)
    s1.set_element_order(sons[2].id, make_quad_order(1, 4))
    slns, rslns = coarse_and_reference([s0, s1], [QUIET_LEFT, QUIET_LEFT])
    adapt = Adapt([s0, s1])
    adapt.calc_err_est(slns, rslns)

    changed = adapt.unrefine(0.5)
    assert mesh.get_element(0).active
    assert mesh.get_num_active_elements() == 2
    assert all(not s.used for s in sons)
    # merged at the component-wise maximum, then lowered by one since its error vanishes
    assert s0.get_element_order(0) == make_quad_order(2, 1)
    assert s1.get_element_order(0) == make_quad_order(1, 3)
    assert s0.get_element_order(1) == make_quad_order(1, 1)
    assert changed == 3
    assert not adapt.have_errors
    assert adapt.get_element_error_squared(0, 0) == 0.0


def test_unrefine_separate_meshes(coarse_and_reference):
    mesh_a = structured_rectangle(2.0, 1.0, 2, 1)
    mesh_b = mesh_a.copy()
    mesh_a.refine_element_id(0)
    spaces = [H1Space(mesh_a, 2), H1Space(mesh_b, 1)]
    slns, rslns = coarse_and_reference(spaces, [QUIET_LEFT, QUIET_LEFT])
    adapt = Adapt(spaces)
    adapt.calc_err_est(slns, rslns)
    adapt.unrefine(0.5)
    assert mesh_a.get_num_active_elements() == 2
    assert mesh_b.get_num_active_elements() == 2
    assert spaces[0].get_element_order(0) == make_quad_order(1, 1)


def test_unrefine_keeps_curved_sons(coarse_and_reference):
    mesh = Mesh()
    mesh.add_base_element(0.0, 0.0, 1.0, 1.0, curved=True)
    mesh.add_base_element(1.0, 0.0, 1.0, 1.0)
    sons = mesh.refine_element_id(0)
    spaces = [H1Space(mesh, 1), H1Space(mesh, 1)]
    slns, rslns = coarse_and_reference(spaces, [QUIET_LEFT, QUIET_LEFT])
    adapt = Adapt(spaces)
    adapt.calc_err_est(slns, rslns)
    changed = adapt.unrefine(0.5)
    assert not mesh.get_element(0).active
    assert all(s.active for s in sons)
    assert mesh.get_num_active_elements() == 5
    # no merge; every quiet son is demoted in both components (already at the floor)
    assert changed == 8


# ---------------------------------------------------------------------------
# error pass corner cases
# ---------------------------------------------------------------------------
def test_strategy2_refines_elements_above_threshold(single, unit_mesh):
    adapt = single[0]
    errs = adapt.errors[0].copy()
    assert errs[3] < min(errs[1], errs[2])
    thr = np.sqrt(errs[3] * min(errs[1], errs[2]))
    done = adapt.adapt(HOnlySelector(), thr=thr, strat=2)
    assert not done
    assert not adapt.have_errors
    assert [r[0] for r in refinements(adapt)] == [0, 1, 2]
    assert unit_mesh.get_element(3).active


def test_zero_reference_norm_keeps_absolute_errors(unit_mesh, caplog):
    space = H1Space(unit_mesh, 1)
    sln = Solution.interpolate(space, lambda a, b: a)
    rsln = Solution.interpolate(construct_refined_space(space), lambda a, b: 0.0 * a)
    adapt = Adapt(space)
    with caplog.at_level(logging.WARNING, logger="pyhpfem.adapt.adapt"):
        total = adapt.calc_err_est(sln, rsln)
    assert "Reference norm of component 0 is zero" in caplog.text
    assert "Total reference norm is zero" in caplog.text
    # ||x||^2 in H1 on the unit square
    assert np.isclose(adapt.errors[0].sum(), 4.0 / 3.0)
    assert np.isclose(total, np.sqrt(4.0 / 3.0))
    relative = adapt.errors[0].copy()
    adapt.calc_err_est(sln, rsln, error_flags=ABS_FLAGS)
    assert np.allclose(adapt.errors[0], relative)
