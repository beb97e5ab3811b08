"""pyhpfem.adapt.adapt
hp-adaptivity engine for systems of components.

One cycle is ``calc_err_est`` (element errors and the ranking queue) followed
by ``adapt`` (selection, shared-mesh reconciliation, application, order
homogenization, regularization) or ``unrefine``.
"""
from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

from pyhpfem.adapt.element_to_refine import ElementReference, ElementToRefine, RefinementType, son_slots
from pyhpfem.adapt.error_evaluator import eval_error, eval_error_norm
from pyhpfem.adapt.error_forms import ErrorForm, ProjNormType, default_norm
from pyhpfem.adapt.parameters import DEFAULT_ERROR_FLAGS, AdaptivityParameters, split_error_flags
from pyhpfem.adapt.selectors import Selector
from pyhpfem.core.mesh import Mesh
from pyhpfem.core.orders import get_h_order, get_v_order, make_quad_order, max_quad_order
from pyhpfem.core.space import Space, assign_dofs
from pyhpfem.core.traverse import traverse
from pyhpfem.exceptions import AdaptivityStateError, ConfigurationError
from pyhpfem.fem.functions import LocalFunction, MeshFunction
from pyhpfem.utils.constants import MAX_COMPONENTS, STRATEGY0_ERROR_DROP

logger = logging.getLogger(__name__)

__all__ = ["Adapt"]


class Adapt:
    """
    Error-driven hp-refinement of one or several spaces.

    Components whose spaces share a :class:`~pyhpfem.core.mesh.Mesh` object
    are refined together: a split chosen for one of them is applied to all.

    Parameters
    ----------
    spaces : Space or sequence of Space
        One space per component (at most ``MAX_COMPONENTS``).
    proj_norms : ProjNormType or sequence, optional
        Norm of each diagonal error form; defaults to H1 for H1 spaces and
        L2 for L2 spaces.
    """

    def __init__(self, spaces, proj_norms=None):
        if isinstance(spaces, Space):
            spaces = [spaces]
        self.spaces: List[Space] = list(spaces)
        self.num = len(self.spaces)
        if self.num < 1:
            raise ConfigurationError("At least one space is required.")
        if self.num > MAX_COMPONENTS:
            raise ConfigurationError(f"Too many components ({self.num}), "
                                     f"at most {MAX_COMPONENTS} are supported.")

        if proj_norms is None:
            proj_norms = [default_norm(s) for s in self.spaces]
        elif isinstance(proj_norms, (ProjNormType, str)):
            proj_norms = [proj_norms]
        proj_norms = list(proj_norms)
        if len(proj_norms) != self.num:
            raise ConfigurationError(f"Expected {self.num} projection norms, got {len(proj_norms)}.")
        self.error_form: Dict[Tuple[int, int], object] = {
            (i, i): ErrorForm(ProjNormType(norm)) for i, norm in enumerate(proj_norms)
        }

        self.sln: Optional[List[MeshFunction]] = None
        self.rsln: Optional[List[MeshFunction]] = None
        self.errors: List[Optional[np.ndarray]] = [None] * self.num
        self.norms_squared = np.zeros(self.num)
        self.errors_squared_sum = 0.0
        self.have_errors = False
        self._mesh_seq: Optional[Tuple[int, ...]] = None

        self.regular_queue: List[ElementReference] = []
        self.priority_queue: Deque[ElementReference] = deque()
        self.last_refinements: List[ElementToRefine] = []
        self.error_time = 0.0

    # ------------------------------------------------------------------
    # configuration
    # ------------------------------------------------------------------
    def set_error_form(self, i, j=None, form=None) -> None:
        """``set_error_form(i, j, form)`` or ``set_error_form(form)`` for component (0, 0)."""
        if j is None and form is None:
            i, j, form = 0, 0, i
        if not (0 <= i < self.num and 0 <= j < self.num):
            raise ConfigurationError(f"Invalid component number ({i}, {j}).",
                                     context=f"{self.num} components, at most {MAX_COMPONENTS}")
        if form is None:
            if i == j:
                raise ConfigurationError(f"The diagonal error form ({i}, {i}) cannot be removed.")
            self.error_form.pop((i, j), None)
        else:
            self.error_form[(i, j)] = form

    def _meshes(self) -> List[Mesh]:
        return [s.get_mesh() for s in self.spaces]

    def _partners(self, comp: int) -> List[int]:
        """Other components whose space lives on the same mesh object."""
        mesh = self.spaces[comp].get_mesh()
        return [j for j in range(self.num) if j != comp and self.spaces[j].get_mesh() is mesh]

    def _mesh_groups(self) -> List[Tuple[Mesh, List[int]]]:
        groups: Dict[int, Tuple[Mesh, List[int]]] = {}
        for i, mesh in enumerate(self._meshes()):
            groups.setdefault(id(mesh), (mesh, []))[1].append(i)
        return list(groups.values())

    def _as_list(self, fns, what: str) -> List[MeshFunction]:
        if isinstance(fns, MeshFunction):
            fns = [fns]
        fns = list(fns)
        if len(fns) != self.num:
            raise ConfigurationError(f"Wrong number of {what}: expected {self.num}, got {len(fns)}.")
        return fns

    # ------------------------------------------------------------------
    # error computation
    # ------------------------------------------------------------------
    def calc_err_est(self, slns, rslns, solutions_for_adapt: bool = True,
                     error_flags: int = DEFAULT_ERROR_FLAGS, return_component_errors: bool = False):
        """Error of the coarse solutions ``slns`` estimated against the reference solutions ``rslns``."""
        return self.calc_err_internal(slns, rslns, solutions_for_adapt, error_flags,
                                      return_component_errors)

    def calc_err_exact(self, slns, exact_slns, solutions_for_adapt: bool = False,
                       error_flags: int = DEFAULT_ERROR_FLAGS, return_component_errors: bool = False):
        """Error of ``slns`` against closed-form solutions."""
        return self.calc_err_internal(slns, exact_slns, solutions_for_adapt, error_flags,
                                      return_component_errors)

    def calc_err_internal(self, slns, rslns, solutions_for_adapt: bool, error_flags: int,
                          return_component_errors: bool = False):
        """
        Integrate all error forms over the common refinement of the coarse and
        reference meshes.

        With ``solutions_for_adapt`` the element errors are stored (indexed by
        the coarse element IDs) and the regular queue is rebuilt.

        Returns the total error, or ``(total, [error per component])``.
        """
        slns = self._as_list(slns, "solutions")
        rslns = self._as_list(rslns, "reference solutions")
        total_rel, elem_rel = split_error_flags(error_flags)
        num = self.num
        if solutions_for_adapt:
            for i in range(num):
                if slns[i].get_mesh() is not self.spaces[i].get_mesh():
                    raise ConfigurationError(f"Solution {i} does not live on the mesh of space {i}.")

        t0 = time.perf_counter()
        errors_components = np.zeros(num)
        norms = np.zeros(num)
        errors = None
        if solutions_for_adapt:
            errors = [np.zeros(self.spaces[i].get_mesh().get_max_element_id()) for i in range(num)]
        forms = sorted(self.error_form.items(), key=lambda kv: kv[0])

        for state in traverse([f.get_mesh() for f in slns + rslns]):
            coarse = state.elements[:num]
            ref = state.elements[num:]
            for (i, j), form in forms:
                err = eval_error(form,
                                 LocalFunction(slns[i], coarse[i]), LocalFunction(slns[j], coarse[j]),
                                 LocalFunction(rslns[i], ref[i]), LocalFunction(rslns[j], ref[j]),
                                 state.rect)
                nrm = eval_error_norm(form, LocalFunction(rslns[i], ref[i]),
                                      LocalFunction(rslns[j], ref[j]), state.rect)
                errors_components[i] += err
                norms[i] += nrm
                if errors is not None:
                    errors[i][coarse[i].id] += err

        total_error = float(errors_components.sum())
        total_norm = float(norms.sum())

        if solutions_for_adapt:
            if elem_rel:
                for i in range(num):
                    if norms[i] > 0:
                        errors[i] /= norms[i]
                    else:
                        logger.warning("Reference norm of component %d is zero; "
                                       "its element errors stay absolute.", i)
            self.errors = errors
            self.norms_squared = norms
            # same convention as the stored element errors
            self.errors_squared_sum = float(sum(e.sum() for e in errors))
            self.sln, self.rsln = slns, rslns
            self.have_errors = True
            self._mesh_seq = tuple(m.seq for m in self._meshes())
            self.fill_regular_queue()

        self.error_time = time.perf_counter() - t0
        logger.info("Error pass over %d components took %.3g s.", num, self.error_time)

        if total_rel and total_norm > 0:
            total = math.sqrt(total_error / total_norm)
        else:
            if total_rel:
                logger.warning("Total reference norm is zero; returning the absolute error.")
            total = math.sqrt(total_error)
        if not return_component_errors:
            return total

        component_errors = []
        for i in range(num):
            if total_rel and norms[i] > 0:
                component_errors.append(math.sqrt(errors_components[i] / norms[i]))
            else:
                component_errors.append(math.sqrt(errors_components[i]))
        return total, component_errors

    def fill_regular_queue(self) -> None:
        """Rank all active (element, component) pairs by descending error."""
        self.regular_queue = [ElementReference(e.id, i)
                              for i, space in enumerate(self.spaces)
                              for e in space.get_mesh().active_elements()]
        self.regular_queue.sort(key=lambda r: (-self.errors[r.comp][r.id], r.comp, r.id))
        self.priority_queue.clear()
        logger.debug("Regular queue holds %d entries.", len(self.regular_queue))

    def _check_errors(self, operation: str) -> None:
        if not self.have_errors:
            raise AdaptivityStateError("Element errors have to be calculated first.",
                                       context=f"call calc_err_est() before {operation}()")
        if self._mesh_seq != tuple(m.seq for m in self._meshes()):
            raise AdaptivityStateError("Element errors are stale: a mesh changed after the error pass.",
                                       context=operation)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def get_element_error_squared(self, comp: int, elem_id: int) -> float:
        if self.errors[comp] is None:
            raise AdaptivityStateError("No element errors have been calculated.")
        return float(self.errors[comp][elem_id])

    def get_total_error_squared(self) -> float:
        return self.errors_squared_sum

    def get_num_active_elements(self) -> int:
        return sum(m.get_num_active_elements() for m in self._meshes())

    def get_last_refinements(self) -> List[ElementToRefine]:
        return self.last_refinements

    # ------------------------------------------------------------------
    # adaptivity step
    # ------------------------------------------------------------------
    def _should_stop(self, params: AdaptivityParameters, err_squared: float, err0_squared: float,
                     processed: float, threshold_squared: float) -> bool:
        strat, thr = params.strategy, params.threshold
        if strat == 0:
            return (processed > math.sqrt(thr) * self.errors_squared_sum
                    and abs((err_squared - err0_squared) / err0_squared) > STRATEGY0_ERROR_DROP)
        if strat == 1:
            return err_squared < threshold_squared
        if strat == 2:
            return err_squared < thr
        return err_squared < threshold_squared or processed > 1.5 * params.to_be_processed

    def adapt(self, refinement_selectors, thr: float = 0.3, strat: int = 0, regularize: int = -1,
              to_be_processed: float = 0.0, *, params: Optional[AdaptivityParameters] = None) -> bool:
        """
        Perform one adaptivity step.

        Returns ``True`` when nothing could be refined (no element was examined
        or every examined element was left unchanged).
        """
        if params is None:
            params = AdaptivityParameters(thr, strat, regularize, to_be_processed)
        self._check_errors("adapt")
        if isinstance(refinement_selectors, Selector):
            refinement_selectors = [refinement_selectors]
        selectors: List[Selector] = list(refinement_selectors)
        if len(selectors) != self.num:
            raise ConfigurationError(f"Wrong number of refinement selectors: "
                                     f"expected {self.num}, got {len(selectors)}.")
        t0 = time.perf_counter()

        to_refine: List[ElementToRefine] = []
        idx: Dict[ElementReference, int] = {}
        examined = set()

        err0_squared = 1000.0
        processed = 0.0
        threshold_squared = None
        num_examined = num_priority = num_ignored = num_not_changed = 0
        pos = 0

        while pos < len(self.regular_queue) or self.priority_queue:
            if self.priority_queue:
                ref = self.priority_queue.popleft()
                regular = False
                num_priority += 1
            else:
                ref = self.regular_queue[pos]
                pos += 1
                regular = True
            num_examined += 1

            if ref in examined:
                num_ignored += 1
                continue
            err_squared = float(self.errors[ref.comp][ref.id])

            if regular:
                if threshold_squared is None:
                    threshold_squared = params.threshold * err_squared
                if self._should_stop(params, err_squared, err0_squared, processed, threshold_squared):
                    break
            examined.add(ref)

            elem = self.spaces[ref.comp].get_mesh().get_element(ref.id)
            elem_ref = ElementToRefine(ref.id, ref.comp)
            current = self.spaces[ref.comp].get_element_order(ref.id)
            if selectors[ref.comp].select_refinement(elem, current, self.rsln[ref.comp], elem_ref):
                elem_ref.id, elem_ref.comp = ref.id, ref.comp
                idx[ref] = len(to_refine)
                to_refine.append(elem_ref)
                err0_squared = err_squared
                processed += err_squared
            else:
                logger.debug("Element (id:%d, comp:%d) not changed.", ref.id, ref.comp)
                num_not_changed += 1

        logger.info("Examined elements: %d (priority: %d, ignored: %d, not changed: %d), "
                    "elements to process: %d.", num_examined, num_priority, num_ignored,
                    num_not_changed, len(to_refine))

        done = False
        if num_examined == 0:
            done = True
        elif not to_refine:
            logger.warning("None of the elements selected for refinement could be refined. "
                           "Adaptivity step not successful, returning 'done'.")
            done = True

        self.fix_shared_mesh_refinements(to_refine, idx, selectors)
        self.apply_refinements(to_refine)
        self.homogenize_shared_mesh_orders()

        if params.regularize >= 0:
            level = params.regularize
            if level == 0:
                logger.warning("Total mesh regularization is not supported in adaptivity. "
                               "1-irregular mesh is used instead.")
                level = 1
            self.regularize_meshes(level)

        logger.info("Refined elements: %d in %.3g s.", len(to_refine), time.perf_counter() - t0)
        self.last_refinements = to_refine
        self.have_errors = params.strategy == 2 and done
        assign_dofs(self.spaces)
        return done

    def _retarget(self, elem_ref: ElementToRefine, split, selector: Selector,
                  suggested: Optional[List[int]]) -> None:
        space = self.spaces[elem_ref.comp]
        elem = space.get_mesh().get_element(elem_ref.id)
        elem_ref.split = RefinementType(split)
        elem_ref.p = list(selector.generate_shared_mesh_orders(
            elem, space.get_element_order(elem_ref.id), elem_ref.split, suggested))

    def fix_shared_mesh_refinements(self, to_refine: List[ElementToRefine],
                                    idx: Dict[ElementReference, int],
                                    selectors: Sequence[Selector]) -> None:
        """
        Give all components sharing a mesh the same split of each element.

        The more aggressive split wins (P < ANISO_H/ANISO_V < H, two different
        anisotropic splits give H).  Components without a decision of their
        own receive one; these are appended to ``to_refine``.
        """
        for inx in range(len(to_refine)):
            elem_ref = to_refine[inx]
            partners = self._partners(elem_ref.comp)
            if not partners:
                continue

            selected = elem_ref.split
            for j in partners:
                if selected == RefinementType.H:
                    break
                ii = idx.get(ElementReference(elem_ref.id, j))
                if ii is None:
                    continue
                other = to_refine[ii].split
                if other != selected and other != RefinementType.P:
                    if selected == RefinementType.P:
                        selected = other
                    else:
                        selected = RefinementType.H

            if selected == RefinementType.P:
                continue
            suggested = elem_ref.q if selected == RefinementType.H else None

            if elem_ref.split != selected:
                self._retarget(elem_ref, selected, selectors[elem_ref.comp], suggested)
            for j in partners:
                key = ElementReference(elem_ref.id, j)
                ii = idx.get(key)
                if ii is not None:
                    if to_refine[ii].split != selected:
                        self._retarget(to_refine[ii], selected, selectors[j], suggested)
                else:
                    new_ref = ElementToRefine(elem_ref.id, j)
                    self._retarget(new_ref, selected, selectors[j], suggested)
                    idx[key] = len(to_refine)
                    to_refine.append(new_ref)

    def apply_refinements(self, elems_to_refine: Sequence[ElementToRefine]) -> None:
        for elem_ref in elems_to_refine:
            self.apply_refinement(elem_ref)

    def apply_refinement(self, elem_ref: ElementToRefine) -> None:
        """
        Apply one decision.  A P change sets the element's order; a split
        refines the element if it is still active and sets the orders of the
        sons in the split's slots.
        """
        space = self.spaces[elem_ref.comp]
        mesh = space.get_mesh()
        elem = mesh.get_element(elem_ref.id)
        split = RefinementType(elem_ref.split)

        if split == RefinementType.P:
            space.set_element_order_internal(elem_ref.id, elem_ref.p[0])
            return
        if elem.active:
            mesh.refine_element_id(elem_ref.id, split)
        for slot in son_slots(split):
            son = elem.sons[slot]
            if son is None:
                raise AdaptivityStateError(f"Element {elem.id} is split differently than {split.name}.")
            space.set_element_order_internal(son, elem_ref.p[slot])

    def homogenize_shared_mesh_orders(self) -> None:
        """Raise each component's (h, v) orders to the maximum over the components sharing its mesh."""
        for mesh, comps in self._mesh_groups():
            if len(comps) < 2:
                continue
            for e in mesh.active_elements():
                order = self.spaces[comps[0]].get_element_order(e.id)
                for i in comps[1:]:
                    order = max_quad_order(order, self.spaces[i].get_element_order(e.id))
                for i in comps:
                    self.spaces[i].set_element_order_internal(e.id, order)

    def regularize_meshes(self, level: int) -> None:
        """Regularize every distinct mesh once and hand the orders on to the new elements."""
        for mesh, comps in self._mesh_groups():
            parents = mesh.regularize(level)
            for i in comps:
                self.spaces[i].distribute_orders(mesh, parents)

    # ------------------------------------------------------------------
    # unrefinement
    # ------------------------------------------------------------------
    def unrefine(self, thr: float) -> int:
        """
        Merge sibling groups whose summed error is below ``thr`` times the
        largest element error and lower the order of active elements whose
        error is below a quarter of that.  Works on exactly two components,
        on one shared mesh or on two separate meshes.

        Returns the number of merges and order reductions performed.
        """
        if self.num != 2:
            raise ConfigurationError(f"Unrefinement is implemented for two components only, "
                                     f"got {self.num}.")
        self._check_errors("unrefine")
        if not self.regular_queue:
            return 0
        top = self.regular_queue[0]
        scale = float(self.errors[top.comp][top.id])

        changed = 0
        for mesh, comps in self._mesh_groups():
            changed += self._unrefine_mesh(mesh, comps, thr * scale)
            for e in list(mesh.active_elements()):
                for i in comps:
                    if self.errors[i][e.id] < thr / 4 * scale:
                        order = self.spaces[i].get_element_order(e.id)
                        lowered = make_quad_order(max(get_h_order(order) - 1, 1),
                                                  max(get_v_order(order) - 1, 1))
                        self.spaces[i].set_element_order_internal(e.id, lowered)
                        changed += 1

        logger.info("Unrefined %d elements.", changed)
        self.have_errors = False
        assign_dofs(self.spaces)
        return changed

    def _unrefine_mesh(self, mesh: Mesh, comps: List[int], limit: float) -> int:
        merged = 0
        for e in list(mesh.inactive_elements()):
            sons = mesh.sons(e)
            if any(not s.active or s.is_curved() for s in sons):
                continue
            sums = [sum(self.errors[i][s.id] for s in sons) for i in comps]
            if all(total < limit for total in sums):
                orders = []
                for i in comps:
                    order = self.spaces[i].get_element_order(sons[0].id)
                    for s in sons[1:]:
                        order = max_quad_order(order, self.spaces[i].get_element_order(s.id))
                    orders.append(order)
                mesh.unrefine_element_id(e.id)
                for i, total, order in zip(comps, sums, orders):
                    self.errors[i][e.id] = total
                    self.spaces[i].set_element_order_internal(e.id, order)
                merged += 1
        return merged
