"""Interpolation and L2 projection of continuous functions onto finite element spaces.

Interpolation evaluates the target at the support points of a Lagrange
space. Projection assembles the global mass matrix ``M_ij = (phi_i, phi_j)``
and right-hand side ``Phi_i = (phi_i, f)`` from the local assembly kernel and
solves ``M F = Phi`` with unpreconditioned conjugate gradients, optionally
under affine constraints (hanging nodes, zero or projected boundary values).
"""
from typing import Dict, Optional

import numpy as onp
import scipy.sparse

from projax.fem import logger
from projax.fem.basis import get_quadrature
from projax.fem.solver import solve_constrained
from projax.functions import as_function, check_components
from projax.constraints import AffineConstraints
from projax.boundary import project_boundary_values


def _component_mask(component_mask, n_components):
    if component_mask is None:
        return onp.ones(n_components, dtype=bool)
    component_mask = onp.asarray(component_mask, dtype=bool)
    if component_mask.shape != (n_components,):
        raise ValueError(f"Component mask must have {n_components} entries")
    return component_mask


def _require_support_points(fe):
    if not fe.has_support_points:
        raise ValueError(
            f"Interpolation needs an element whose DoFs are point evaluations, got {fe.family}")


def _assign_last_writer_wins(dof_vector, dofs, values):
    """Scatter ``values`` into ``dof_vector``; for repeated DoFs the last occurrence wins."""
    dofs = dofs.reshape(-1)
    values = values.reshape(-1)
    reversed_dofs = dofs[::-1]
    unique_dofs, first_in_reversed = onp.unique(reversed_dofs, return_index=True)
    dof_vector[unique_dofs] = values[::-1][first_in_reversed]
    return dof_vector


def _interpolate_cells(fe, function, cell_ids, mask, dof_vector):
    local_dofs = fe.local_dofs_of_nodes(onp.arange(fe.num_local_nodes), mask)
    if len(cell_ids) == 0 or len(local_dofs) == 0:
        return dof_vector
    points = fe.node_points[fe.cell_nodes[cell_ids]]
    values = function.values(points).reshape(len(cell_ids), -1)
    return _assign_last_writer_wins(dof_vector, fe.cell_dofs[cell_ids][:, local_dofs],
                                    values[:, local_dofs])


def interpolate(fe, function, component_mask=None, dof_vector=None):
    """Interpolate a function at the support points of a Lagrange space.

    Owned cells are visited in ascending order. A DoF shared by several cells
    takes the value written by the last of them, which only matters for
    discontinuous targets.

    Args:
        fe (FiniteElement): A Lagrange space.
        function: Anything accepted by ``as_function`` with ``fe.n_components`` components.
        component_mask (array-like, optional): Components to interpolate.
            Entries of unselected components are left untouched.
        dof_vector (numpy.ndarray, optional): Vector to write into. A new
            zero vector is created if None.

    Returns:
        numpy.ndarray: The DoF vector.
    """
    _require_support_points(fe)
    function = as_function(function, fe.n_components)
    check_components(function, fe.n_components)
    mask = _component_mask(component_mask, fe.n_components)
    if dof_vector is None:
        dof_vector = onp.zeros(fe.num_total_dofs)
    else:
        dof_vector = onp.array(dof_vector, dtype=onp.float64)
    return _interpolate_cells(fe, function, fe.owned_cells(), mask, dof_vector)


def interpolate_based_on_material_id(fe, function_map: Dict[int, object], dof_vector,
                                     component_mask=None):
    """Interpolate a different function on each material.

    Cells whose material id has no entry in ``function_map`` are skipped. On
    DoFs shared between materials the cell visited last (highest cell index)
    wins.

    Returns:
        numpy.ndarray: A copy of ``dof_vector`` with the interpolated entries.
    """
    _require_support_points(fe)
    mask = _component_mask(component_mask, fe.n_components)
    functions = {}
    for material_id, function in function_map.items():
        functions[material_id] = as_function(function, fe.n_components)
        check_components(functions[material_id], fe.n_components)

    dof_vector = onp.array(dof_vector, dtype=onp.float64)
    cells = fe.owned_cells()
    cells = cells[onp.isin(fe.mesh.material_ids[cells], list(functions))]
    local_dofs = fe.local_dofs_of_nodes(onp.arange(fe.num_local_nodes), mask)
    if len(cells) == 0 or len(local_dofs) == 0:
        return dof_vector

    values = onp.zeros((len(cells), fe.num_local_dofs))
    for material_id, function in functions.items():
        rows = onp.flatnonzero(fe.mesh.material_ids[cells] == material_id)
        if len(rows) == 0:
            continue
        points = fe.node_points[fe.cell_nodes[cells[rows]]]
        values[rows] = function.values(points).reshape(len(rows), -1)
    return _assign_last_writer_wins(dof_vector, fe.cell_dofs[cells][:, local_dofs],
                                    values[:, local_dofs])


def get_position_vector(fe):
    """Interpolate the identity map ``x -> x`` into a vector Lagrange space."""
    if fe.n_components != fe.spacedim:
        raise ValueError(
            f"The position vector needs {fe.spacedim} components, the space has {fe.n_components}")
    return interpolate(fe, lambda x: x)


def _assemble(fe, local_matrices, cell_ids):
    inds = fe.cell_dofs[cell_ids]
    num_dofs_per_cell = inds.shape[1]
    I = onp.repeat(inds[:, :, None], num_dofs_per_cell, axis=2).reshape(-1)
    J = onp.repeat(inds[:, None, :], num_dofs_per_cell, axis=1).reshape(-1)
    return I, J, local_matrices.reshape(-1)


def create_mass_matrix(fe, gauss_order=None, coefficient=None):
    """Assemble the global mass matrix over the owned cells.

    Args:
        fe (FiniteElement): The space.
        gauss_order (int, optional): Quadrature degree. Defaults to ``fe.gauss_order``.
        coefficient (optional): Scalar function multiplying the integrand.

    Returns:
        scipy.sparse.csr_array: Matrix of shape (num_total_dofs, num_total_dofs).
    """
    quad_points, quad_weights = _quadrature(fe, gauss_order)
    coefficient = None if coefficient is None else as_function(coefficient, 1)
    logger.debug(f"Assembling mass matrix with {len(quad_weights)} quadrature points per cell")
    I_list, J_list, V_list = [], [], []
    for cell_ids in fe.cell_batches(fe.owned_cells()):
        cv = fe.cell_values(cell_ids, quad_points, quad_weights)
        JxW = cv.JxW
        if coefficient is not None:
            JxW = JxW * coefficient.values(cv.points)[..., 0]
        local = onp.einsum('cqik,cqjk,cq->cij', cv.shape_vals, cv.shape_vals, JxW)
        I, J, V = _assemble(fe, local, cell_ids)
        I_list.append(I)
        J_list.append(J)
        V_list.append(V)
    return _to_csr(I_list, J_list, V_list, fe.num_total_dofs)


def _to_csr(I_list, J_list, V_list, n_dofs):
    if not V_list:
        return scipy.sparse.csr_array((n_dofs, n_dofs))
    I = onp.concatenate(I_list)
    J = onp.concatenate(J_list)
    V = onp.concatenate(V_list)
    return scipy.sparse.csr_array((V, (I, J)), shape=(n_dofs, n_dofs))


def _quadrature(fe, gauss_order):
    if gauss_order is None or gauss_order == fe.gauss_order:
        return fe.quad_points, fe.quad_weights
    return get_quadrature(fe.basix_ele, gauss_order)


def create_right_hand_side(fe, function, gauss_order=None):
    """Assemble ``Phi_i = (phi_i, f)`` over the owned cells."""
    function = as_function(function, fe.n_components)
    check_components(function, fe.n_components)
    quad_points, quad_weights = _quadrature(fe, gauss_order)
    rhs = onp.zeros(fe.num_total_dofs)
    for cell_ids in fe.cell_batches(fe.owned_cells()):
        cv = fe.cell_values(cell_ids, quad_points, quad_weights)
        f_vals = function.values(cv.points)
        local = onp.einsum('cqdk,cqk,cq->cd', cv.shape_vals, f_vals, cv.JxW)
        onp.add.at(rhs, fe.cell_dofs[cell_ids], local)
    return rhs


def create_boundary_right_hand_side(fe, function, boundary_ids=None, gauss_order=None):
    """Assemble ``(phi_i, f)_Gamma`` over boundary facets of owned cells carrying ``boundary_ids``."""
    function = as_function(function, fe.n_components)
    check_components(function, fe.n_components)
    boundary_inds, _ = fe.mesh.select_boundary(boundary_ids)
    boundary_inds = boundary_inds[fe.mesh.owned[boundary_inds[:, 0]]]
    rhs = onp.zeros(fe.num_total_dofs)
    if len(boundary_inds) == 0:
        return rhs
    fv = fe.face_values(boundary_inds, gauss_order)
    f_vals = function.values(fv.points)
    local = onp.einsum('fqdk,fqk,fq->fd', fv.shape_vals, f_vals, fv.JxW)
    onp.add.at(rhs, fe.cell_dofs[fv.cell_ids], local)
    return rhs


def create_point_source_vector(fe, point, direction=None):
    """Vector of ``phi_i(p)``, or ``phi_i(p) . d`` for a direction ``d``.

    Scalar sources need a single-component space; vector spaces need a
    direction with ``n_components`` entries.
    """
    cell_id, X = fe.mesh.find_cell(point)
    cv = fe.cell_values([cell_id], X[None, :], onp.ones(1))
    if direction is None:
        if fe.n_components != 1:
            raise ValueError("A point source on a vector space needs a direction")
        direction = onp.ones(1)
    direction = onp.asarray(direction, dtype=onp.float64).reshape(-1)
    if direction.shape[0] != fe.n_components:
        raise ValueError(f"Direction must have {fe.n_components} components")
    rhs = onp.zeros(fe.num_total_dofs)
    rhs[fe.cell_dofs[cell_id]] = cv.shape_vals[0, 0] @ direction
    return rhs


def project(fe, function, constraints: Optional[AffineConstraints] = None,
            enforce_zero_boundary=False, project_to_boundary_first=False,
            gauss_order=None, face_gauss_order=None, solver_options=None):
    """L2-project a function onto a finite element space.

    Solves ``M F = Phi`` under the union of ``constraints`` and, optionally,
    boundary constraints. Lines from ``constraints`` take precedence over the
    boundary constraints on shared DoFs.

    Args:
        fe (FiniteElement): Target space.
        function: Anything accepted by ``as_function``.
        constraints (AffineConstraints, optional): Constraints to respect, for
            example hanging nodes. Not modified.
        enforce_zero_boundary (bool): Constrain all boundary DoFs to zero.
            Takes precedence over ``project_to_boundary_first``.
        project_to_boundary_first (bool): Fix boundary DoFs to the
            projection of ``function`` onto the boundary trace first.
        gauss_order (int, optional): Cell quadrature degree; must integrate
            the mass matrix exactly (``2 * degree`` on affine cells).
        face_gauss_order (int, optional): Facet quadrature degree for
            ``project_to_boundary_first``.
        solver_options (dict, optional): See ``projax.fem.solver.linear_solver``.

    Returns:
        numpy.ndarray: The coefficient vector.
    """
    function = as_function(function, fe.n_components)
    check_components(function, fe.n_components)
    logger.info(f"Projecting onto {fe.family}{fe.degree} space with {fe.num_total_dofs} dofs")

    all_constraints = AffineConstraints()
    if constraints is not None:
        all_constraints.merge(constraints)
    if enforce_zero_boundary:
        zero_values = {int(dof): 0. for dof in fe.boundary_dofs()}
        all_constraints.add_boundary_values(zero_values)
    elif project_to_boundary_first:
        boundary_ids = onp.unique(fe.mesh.boundary_ids)
        project_boundary_values(fe, {int(i): function for i in boundary_ids}, all_constraints,
                                gauss_order=face_gauss_order, solver_options=solver_options)
    all_constraints.close()

    mass_matrix = create_mass_matrix(fe, gauss_order)
    rhs = create_right_hand_side(fe, function, gauss_order)
    solution = solve_constrained(mass_matrix, rhs, all_constraints, solver_options)
    logger.info(f"Projection finished, {len(all_constraints)} constrained dofs")
    return solution
