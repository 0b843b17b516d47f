"""Boundary constraints from boundary data.

Every constraint-building function follows the same pattern: collect the
boundary facets (of owned cells) whose id is requested, evaluate or solve the
local contributions, and add the resulting lines to an ``AffineConstraints``
under first-writer-wins. The constraint set is returned; a new one is
created when none is passed in. Facets are visited in the order of
``mesh.boundary_inds``, so DoFs shared by facets with different ids take the
value of the first facet visited.
"""
from typing import Dict, Optional, Sequence

import basix
import jax.numpy as np
import numpy as onp
import scipy.sparse

from projax.fem import logger
from projax.fem.solver import linear_solver
from projax.functions import Function, as_function, check_components
from projax.constraints import AffineConstraints


def _owned_boundary(fe, boundary_ids):
    boundary_inds, ids = fe.mesh.select_boundary(boundary_ids)
    owned = fe.mesh.owned[boundary_inds[:, 0]]
    return boundary_inds[owned], ids[owned]


def _component_range(function, first_vector_component, dim):
    """Restrict ``function`` to components ``[first, first + dim)``."""
    if function.n_components < first_vector_component + dim:
        raise ValueError(
            f"Boundary function has {function.n_components} components, needs at least "
            f"{first_vector_component + dim}")
    if first_vector_component == 0 and function.n_components == dim:
        return function
    return Function(lambda x: function._value(x)[first_vector_component:first_vector_component + dim],
                    dim)


def _remap_components(function, component_mapping):
    """Spread the components of ``function`` over the space's components.

    Entries of ``component_mapping`` that are None leave their component at zero.
    """
    targets = onp.array([c for c, source in enumerate(component_mapping) if source is not None])
    sources = onp.array([source for source in component_mapping if source is not None])
    if sources.min() < 0 or sources.max() >= function.n_components:
        raise ValueError(
            f"Component mapping refers to components {sources.tolist()} of a boundary "
            f"function with {function.n_components} components")
    n_components = len(component_mapping)

    def remapped(x):
        return np.zeros(n_components).at[targets].set(function._value(x)[sources])
    return Function(remapped, n_components)


def interpolate_boundary_values(fe, function_map: Dict[int, object],
                                constraints: Optional[AffineConstraints] = None,
                                component_mask=None):
    """Constrain boundary DoFs to the values of boundary functions at their support points.

    Args:
        fe (FiniteElement): A Lagrange space.
        function_map (dict): Boundary id -> function with ``fe.n_components`` components.
        constraints (AffineConstraints, optional): Set to add to.
        component_mask (array-like, optional): Components to constrain.

    Returns:
        AffineConstraints: The constraint set.

    Raises:
        ValueError: If the mask selects components of non-primitive (vector-valued)
            shape functions, or a function has the wrong number of components.
    """
    if constraints is None:
        constraints = AffineConstraints()
    if component_mask is None:
        component_mask = onp.ones(fe.n_components, dtype=bool)
    component_mask = onp.asarray(component_mask, dtype=bool)
    if component_mask.shape != (fe.n_components,):
        raise ValueError(f"Component mask must have {fe.n_components} entries")
    if not component_mask.any():
        return constraints
    if not fe.is_primitive:
        raise ValueError(
            f"{fe.family} shape functions are not primitive and cannot be interpolated "
            f"on the boundary; use a projection-based constraint instead")

    functions = {}
    for boundary_id, function in function_map.items():
        functions[boundary_id] = as_function(function, fe.n_components)
        check_components(functions[boundary_id], fe.n_components, "boundary function")

    boundary_inds, ids = _owned_boundary(fe, functions.keys())
    if len(boundary_inds) == 0:
        logger.debug(f"No boundary facets with ids {list(functions)}")
        return constraints

    closure = onp.array([fe.facet_closure_nodes[f] for f in boundary_inds[:, 1]])
    nodes = fe.cell_nodes[boundary_inds[:, 0][:, None], closure]
    values = onp.zeros(nodes.shape + (fe.n_components,))
    for boundary_id, function in functions.items():
        rows = onp.flatnonzero(ids == boundary_id)
        if len(rows) > 0:
            values[rows] = function.values(fe.node_points[nodes[rows]])

    components = onp.flatnonzero(component_mask)
    dofs = nodes[:, :, None] * fe.vec + components[None, None, :]
    values = values[:, :, components]
    inserted = 0
    for dof, value in zip(dofs.reshape(-1), values.reshape(-1)):
        inserted += constraints.add_line(dof, (), value)
    logger.debug(f"Interpolated boundary values: {inserted} new constraints")
    return constraints


def _local_index_table(index_lists):
    return onp.array([list(indices) for indices in index_lists], dtype=onp.int64)


def project_boundary_values(fe, function_map: Dict[int, object],
                            constraints: Optional[AffineConstraints] = None,
                            component_mapping: Optional[Sequence[int]] = None,
                            gauss_order=None, solver_options=None):
    """Constrain boundary DoFs to the L2 projection of boundary data onto the boundary trace.

    Builds the facet mass matrix and right-hand side over exactly the facets
    whose id is in ``function_map`` and solves it with conjugate gradients.
    For Raviart-Thomas spaces the normal traces are projected instead:
    ``M_ij = (phi_i . n, phi_j . n)``, ``b_i = (phi_i . n, f . n)``. In 1-D the
    boundary values are interpolated.

    Args:
        fe (FiniteElement): A Lagrange or Raviart-Thomas space.
        function_map (dict): Boundary id -> function.
        constraints (AffineConstraints, optional): Set to add to.
        component_mapping (sequence, optional): For each component of the
            space, the component of the boundary function that feeds it, or
            None for a component the boundary function does not populate.
            Such components are neither projected nor constrained, so a
            ``dim``-component velocity can fill the velocity part of a
            velocity-pressure space. Plain callables are taken to have as
            many components as the highest mapped index requires.
        gauss_order (int, optional): Facet quadrature degree.
        solver_options (dict, optional): See ``projax.fem.solver.linear_solver``.

    Returns:
        AffineConstraints: The constraint set.
    """
    if constraints is None:
        constraints = AffineConstraints()
    if fe.map_type == basix.MapType.covariantPiola:
        raise ValueError("Use project_boundary_values_curl_conforming_l2 for Nedelec spaces")

    component_mask = onp.ones(fe.n_components, dtype=bool)
    n_source = fe.n_components
    if component_mapping is not None:
        component_mapping = list(component_mapping)
        if len(component_mapping) != fe.n_components:
            raise ValueError(f"Component mapping must have {fe.n_components} entries")
        component_mask = onp.array([source is not None for source in component_mapping])
        if not component_mask.any():
            return constraints
        if not component_mask.all() and fe.map_type == basix.MapType.contravariantPiola:
            raise ValueError("Raviart-Thomas boundary values need every vector component")
        n_source = max(source for source in component_mapping if source is not None) + 1

    functions = {}
    for boundary_id, function in function_map.items():
        if component_mapping is not None:
            function = _remap_components(as_function(function, n_source), component_mapping)
        else:
            function = as_function(function, fe.n_components)
        check_components(function, fe.n_components, "boundary function")
        functions[boundary_id] = function

    if fe.dim == 1:
        return interpolate_boundary_values(fe, functions, constraints, component_mask)

    boundary_inds, ids = _owned_boundary(fe, functions.keys())
    if len(boundary_inds) == 0:
        logger.debug(f"No boundary facets with ids {list(functions)}")
        return constraints

    fv = fe.face_values(boundary_inds, gauss_order)
    f_vals = onp.zeros(fv.points.shape[:2] + (fe.n_components,))
    for boundary_id, function in functions.items():
        rows = onp.flatnonzero(ids == boundary_id)
        if len(rows) > 0:
            f_vals[rows] = function.values(fv.points[rows])

    if fe.map_type == basix.MapType.contravariantPiola:
        local = _local_index_table(fe.facet_interior_nodes[f] for f in boundary_inds[:, 1])
        vals = onp.take_along_axis(fv.shape_vals, local[:, None, :, None], axis=2)
        vals_n = onp.einsum('fqik,fqk->fqi', vals, fv.normals)
        f_n = onp.einsum('fqk,fqk->fq', f_vals, fv.normals)
        local_matrices = onp.einsum('fqi,fqj,fq->fij', vals_n, vals_n, fv.JxW)
        local_rhs = onp.einsum('fqi,fq,fq->fi', vals_n, f_n, fv.JxW)
    else:
        local = _local_index_table(fe.local_dofs_of_nodes(fe.facet_closure_nodes[f], component_mask)
                                   for f in boundary_inds[:, 1])
        vals = onp.take_along_axis(fv.shape_vals, local[:, None, :, None], axis=2)
        local_matrices = onp.einsum('fqik,fqjk,fq->fij', vals, vals, fv.JxW)
        local_rhs = onp.einsum('fqik,fqk,fq->fi', vals, f_vals, fv.JxW)

    global_dofs = onp.take_along_axis(fe.cell_dofs[boundary_inds[:, 0]], local, axis=1)
    boundary_dofs, compressed = onp.unique(global_dofs, return_inverse=True)
    compressed = compressed.reshape(global_dofs.shape)
    n = len(boundary_dofs)
    num_local = compressed.shape[1]
    I = onp.repeat(compressed[:, :, None], num_local, axis=2).reshape(-1)
    J = onp.repeat(compressed[:, None, :], num_local, axis=1).reshape(-1)
    mass_matrix = scipy.sparse.csr_array((local_matrices.reshape(-1), (I, J)), shape=(n, n))
    rhs = onp.zeros(n)
    onp.add.at(rhs, compressed, local_rhs)

    logger.info(f"Projecting boundary values onto {n} boundary dofs")
    values = linear_solver(mass_matrix, rhs, onp.zeros(n), solver_options)
    inserted = constraints.add_boundary_values(dict(zip(boundary_dofs.tolist(), values.tolist())))
    logger.debug(f"Projected boundary values: {inserted} new constraints")
    return constraints


def project_boundary_values_curl_conforming_l2(fe, first_vector_component, boundary_function,
                                               boundary_id,
                                               constraints: Optional[AffineConstraints] = None,
                                               gauss_order=None):
    """Constrain the tangential trace of a Nedelec space to that of a vector field.

    Edge stage: on every boundary edge solve ``A x = b`` with
    ``A_ij = (s_i . t, s_j . t)_e`` and ``b_i = (s_i . t, F . t)_e`` for the
    edge-interior DoFs. Face stage (3-D): on every boundary face subtract the
    edge contributions, ``r = F - sum x s``, and solve ``B y = c`` with
    ``B_ij = (n x s_i, n x s_j)_f`` and ``c_i = (n x r, n x s_i)_f`` for the
    face-interior DoFs.

    Args:
        fe (FiniteElement): A Nedelec (first kind) space.
        first_vector_component (int): First component of ``boundary_function``
            holding the field.
        boundary_function: Function with at least ``first_vector_component + dim`` components.
        boundary_id (int): Boundary id to constrain.
        constraints (AffineConstraints, optional): Set to add to.
        gauss_order (int, optional): Edge and face quadrature degree.

    Returns:
        AffineConstraints: The constraint set.

    Raises:
        ValueError: For any other element family.
    """
    if fe.map_type != basix.MapType.covariantPiola:
        raise ValueError(f"Curl-conforming boundary values need a Nedelec space, got {fe.family}")
    if constraints is None:
        constraints = AffineConstraints()
    if gauss_order is None:
        gauss_order = fe.gauss_order + 2
    dim = fe.dim
    function = _component_range(as_function(boundary_function, first_vector_component + dim),
                                first_vector_component, dim)
    boundary_inds, _ = _owned_boundary(fe, [boundary_id])
    entity_dofs = fe.element.entity_dofs
    edge_solutions = {}

    def solve_edge(cell, local_edge):
        edge = fe.mesh.cell_entities[1][cell, local_edge]
        local = list(entity_dofs[1][local_edge])
        if edge in edge_solutions or not local:
            return
        ev = fe.edge_values([cell], local_edge, gauss_order)
        s_t = onp.einsum('qig,qg->qi', ev.shape_vals[0][:, local, :], ev.tangents[0])
        f_t = onp.einsum('qg,qg->q', function.values(ev.points[0]), ev.tangents[0])
        A = onp.einsum('qi,qj,q->ij', s_t, s_t, ev.JxW[0])
        b = onp.einsum('qi,q,q->i', s_t, f_t, ev.JxW[0])
        x = onp.linalg.solve(A, b)
        edge_solutions[edge] = x
        for dof, value in zip(fe.cell_dofs[cell, local], x):
            constraints.add_line(dof, (), value)

    if dim == 2:
        for cell, facet in boundary_inds:
            solve_edge(cell, facet)
    else:
        connectivity = basix.cell.sub_entity_connectivity(fe.basix_ele)[2]
        for cell, facet in boundary_inds:
            local_edges = connectivity[facet][1]
            for local_edge in local_edges:
                solve_edge(cell, local_edge)
            face_local = list(entity_dofs[2][facet])
            if not face_local:
                continue
            fv = fe.face_values([[cell, facet]], gauss_order)
            shape_vals = fv.shape_vals[0]
            residual = function.values(fv.points[0])
            for local_edge in local_edges:
                edge = fe.mesh.cell_entities[1][cell, local_edge]
                edge_local = list(entity_dofs[1][local_edge])
                if edge_local:
                    residual = residual - onp.einsum('qig,i->qg', shape_vals[:, edge_local, :],
                                                     edge_solutions[edge])
            normals = fv.normals[0]
            n_x_s = onp.cross(normals[:, None, :], shape_vals[:, face_local, :])
            n_x_r = onp.cross(normals, residual)
            B = onp.einsum('qia,qja,q->ij', n_x_s, n_x_s, fv.JxW[0])
            c = onp.einsum('qa,qia,q->i', n_x_r, n_x_s, fv.JxW[0])
            y = onp.linalg.solve(B, c)
            for dof, value in zip(fe.cell_dofs[cell, face_local], y):
                constraints.add_line(dof, (), value)

    logger.debug(f"Curl-conforming boundary values on id {boundary_id}: "
                 f"{len(edge_solutions)} edges, {len(boundary_inds)} facets")
    return constraints


def project_boundary_values_div_conforming(fe, first_vector_component, boundary_function,
                                           boundary_id,
                                           constraints: Optional[AffineConstraints] = None):
    """Constrain the normal trace of a Raviart-Thomas space to that of a vector field.

    The facet DoFs are the element's own facet functionals (normal moments)
    applied to the contravariant pull-back of the field.

    Raises:
        ValueError: For any other element family.
    """
    if fe.map_type != basix.MapType.contravariantPiola:
        raise ValueError(f"Div-conforming boundary values need a Raviart-Thomas space, got {fe.family}")
    if constraints is None:
        constraints = AffineConstraints()
    dim = fe.dim
    function = _component_range(as_function(boundary_function, first_vector_component + dim),
                                first_vector_component, dim)
    boundary_inds, _ = _owned_boundary(fe, [boundary_id])

    inserted = 0
    for facet in onp.unique(boundary_inds[:, 1]):
        cells = boundary_inds[boundary_inds[:, 1] == facet, 0]
        points = fe.element.x[dim - 1][facet]
        functionals = fe.element.M[dim - 1][facet][:, :, :, 0]
        cv = fe.cell_values(cells, points, onp.ones(len(points)))
        reference_values = fe.pull_back(function.values(cv.points), cv)
        dof_values = onp.einsum('ivp,cpv->ci', functionals, reference_values)
        local = list(fe.element.entity_dofs[dim - 1][facet])
        for dofs, values in zip(fe.cell_dofs[cells][:, local], dof_values):
            for dof, value in zip(dofs, values):
                inserted += constraints.add_line(dof, (), value)
    logger.debug(f"Div-conforming boundary values on id {boundary_id}: {inserted} new constraints")
    return constraints
