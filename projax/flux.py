"""Normal and tangential flux constraints on vector-valued Lagrange spaces.

These constraints impose ``u . n = g . n`` (normal flux) or ``u x n = g x n``
(tangential flux) at the boundary support points of a vector field. The work
is split into three steps:

1. ``collect_normal_bundles`` walks the tagged boundary facets and records,
   for every support point, one outward normal per adjacent boundary facet
   together with the cell it came from.
2. ``resolve_normal_directions`` decides per point which directions to
   constrain. Normals coming from different cells are averaged (a faceted
   approximation of a smooth boundary). Several normals from the same cell
   mark a genuine corner: in 2-D the point is fully constrained, in 3-D the
   cross product of each such cell's normal pair gives the edge direction,
   these are averaged over cells and the two directions orthogonal to it are
   constrained. Cells contributing a single normal at a ridge are left out
   of that average.
3. The resolved directions become affine constraint lines, eliminating for
   each direction the best-conditioned vector component (pivoted QR).
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import basix
import numpy as onp
import scipy.linalg

from projax.fem import logger
from projax.functions import as_function, check_components
from projax.constraints import AffineConstraints


@dataclass
class NormalBundle:
    """Normals gathered at one boundary support point.

    Attributes:
        node (int): Global node of the support point.
        point (numpy.ndarray): Its coordinates.
        entries (list): (cell id, unit outward normal) pairs, one per adjacent
            tagged boundary facet.
        value (numpy.ndarray): Boundary vector ``g`` at the point, taken from
            the first facet visited.
    """
    node: int
    point: onp.ndarray
    entries: List[Tuple[int, onp.ndarray]] = field(default_factory=list)
    value: Optional[onp.ndarray] = None


def _check_flux_space(fe, first_vector_component):
    if fe.dim < 2:
        raise ValueError("Flux constraints are only defined in dimension 2 and higher")
    if fe.spacedim != fe.dim:
        raise ValueError("Flux constraints need a mesh of full dimension")
    if not fe.has_support_points:
        raise ValueError(f"Flux constraints need a Lagrange space, got {fe.family}")
    if fe.vec < first_vector_component + fe.dim:
        raise ValueError(
            f"Space with {fe.vec} components has no vector field starting at component "
            f"{first_vector_component}")


def collect_normal_bundles(fe, first_vector_component, boundary_ids: Iterable[int],
                           function_map: Optional[Dict[int, object]] = None):
    """Gather the normal-direction bundle of every support point on tagged facets.

    Args:
        fe (FiniteElement): Vector Lagrange space.
        first_vector_component (int): First component of the vector field.
        boundary_ids (iterable of int): Boundary ids to visit.
        function_map (dict, optional): Boundary id -> function with ``dim``
            components giving ``g``. Zero if None.

    Returns:
        OrderedDict: node -> NormalBundle, in first-visit order.
    """
    _check_flux_space(fe, first_vector_component)
    dim = fe.dim
    boundary_ids = list(boundary_ids)
    functions = {}
    if function_map is not None:
        missing = [boundary_id for boundary_id in boundary_ids if boundary_id not in function_map]
        if missing:
            raise ValueError(f"No boundary function given for boundary ids {missing}")
        for boundary_id in boundary_ids:
            functions[boundary_id] = as_function(function_map[boundary_id], dim)
            check_components(functions[boundary_id], dim, "boundary function")

    boundary_inds, ids = fe.mesh.select_boundary(boundary_ids)
    owned = fe.mesh.owned[boundary_inds[:, 0]]
    boundary_inds, ids = boundary_inds[owned], ids[owned]

    reference_normals = onp.asarray(basix.cell.facet_outward_normals(fe.basix_ele))

    # Normals at the support points of every tagged facet, grouped by local facet.
    normals = [None] * len(boundary_inds)
    for facet in onp.unique(boundary_inds[:, 1]):
        rows = onp.flatnonzero(boundary_inds[:, 1] == facet)
        closure = fe.facet_closure_nodes[facet]
        cv = fe.cell_values(boundary_inds[rows, 0], fe.element.points[closure])
        n = onp.einsum('cqtg,t->cqg', cv.inverse_jacobians, reference_normals[facet])
        n = n / onp.linalg.norm(n, axis=-1, keepdims=True)
        for row, row_normals in zip(rows, n):
            normals[row] = row_normals

    bundles = OrderedDict()
    for row, (cell, facet) in enumerate(boundary_inds):
        nodes = fe.cell_nodes[cell, fe.facet_closure_nodes[facet]]
        points = fe.node_points[nodes]
        if ids[row] in functions:
            values = functions[ids[row]].values(points)
        else:
            values = onp.zeros((len(nodes), dim))
        for node, point, normal, value in zip(nodes, points, normals[row], values):
            bundle = bundles.setdefault(int(node), NormalBundle(int(node), point))
            bundle.entries.append((int(cell), normal))
            if bundle.value is None:
                bundle.value = value
    logger.debug(f"Collected normal bundles at {len(bundles)} boundary points")
    return bundles


def _distinct_normals_by_cell(entries, tol):
    by_cell = OrderedDict()
    for cell, normal in entries:
        normals = by_cell.setdefault(cell, [])
        if not any(abs(onp.dot(normal, other)) > 1. - tol for other in normals):
            normals.append(onp.asarray(normal, dtype=onp.float64))
    return by_cell


def _orthogonal_complement(direction):
    _, _, vh = onp.linalg.svd(direction[None, :])
    return vh[1:]


def resolve_normal_directions(entries, dim, tol=1e-10):
    """Decide which directions a normal-flux constraint fixes at one point.

    Args:
        entries (list): (cell id, unit normal) pairs of one bundle.
        dim (int): Space dimension.

    Returns:
        tuple: ``(directions, averaged)``. ``directions`` has shape (k, dim)
        with orthonormal rows; ``averaged`` is True when all normals came from
        different cells and were averaged into a single direction. At corners
        ``averaged`` is False and ``k`` is 2 (3-D ridge) or ``dim``.
    """
    by_cell = _distinct_normals_by_cell(entries, tol)
    full = onp.eye(dim)

    if all(len(normals) == 1 for normals in by_cell.values()):
        average = onp.mean([normals[0] for normals in by_cell.values()], axis=0)
        length = onp.linalg.norm(average)
        if length < tol:
            return full, False
        return (average / length)[None, :], True

    if dim == 2:
        return full, False

    tangents = []
    for normals in by_cell.values():
        if len(normals) > 2:
            return full, False
        if len(normals) == 2:
            t = onp.cross(normals[0], normals[1])
            t = t / onp.linalg.norm(t)
            if tangents and onp.dot(t, tangents[0]) < 0.:
                t = -t
            tangents.append(t)
    average = onp.mean(tangents, axis=0)
    length = onp.linalg.norm(average)
    if length < tol:
        return full, False
    return _orthogonal_complement(average / length), False


def _add_direction_constraints(constraints, dofs, directions, value, tol=1e-14):
    """Add lines enforcing ``d . u = d . g`` for every row ``d`` of ``directions``."""
    dim = len(dofs)
    num_directions = directions.shape[0]
    inserted = 0
    if num_directions == dim:
        for dof, component_value in zip(dofs, value):
            inserted += constraints.add_line(dof, (), component_value)
        return inserted

    targets = directions @ value
    _, _, permutation = scipy.linalg.qr(directions, pivoting=True)
    pivots = permutation[:num_directions]
    free = permutation[num_directions:]
    inverse = onp.linalg.inv(directions[:, pivots])
    coefficients = -inverse @ directions[:, free]
    inhomogeneities = inverse @ targets
    for m, pivot in enumerate(pivots):
        entries = [(dofs[j], coefficients[m, k]) for k, j in enumerate(free)
                   if abs(coefficients[m, k]) > tol]
        inserted += constraints.add_line(dofs[pivot], entries, inhomogeneities[m])
    return inserted


def _compute_flux_constraints(fe, first_vector_component, boundary_ids, function_map,
                              constraints, tangential):
    if constraints is None:
        constraints = AffineConstraints()
    bundles = collect_normal_bundles(fe, first_vector_component, boundary_ids, function_map)
    dim = fe.dim
    inserted = 0
    corners = 0
    for node, bundle in bundles.items():
        directions, averaged = resolve_normal_directions(bundle.entries, dim)
        if tangential:
            directions = _orthogonal_complement(directions[0]) if averaged else onp.eye(dim)
        corners += not averaged
        dofs = [node * fe.vec + first_vector_component + c for c in range(dim)]
        inserted += _add_direction_constraints(constraints, dofs, directions, bundle.value)
    kind = "tangential" if tangential else "normal"
    logger.info(f"Computed {kind} flux constraints: {inserted} lines at {len(bundles)} points "
                f"({corners} corners)")
    return constraints


def compute_nonzero_normal_flux_constraints(fe, first_vector_component, boundary_ids,
                                            function_map,
                                            constraints: Optional[AffineConstraints] = None):
    """Constrain ``u . n = g . n`` on the given boundary ids.

    Args:
        fe (FiniteElement): Vector Lagrange space.
        first_vector_component (int): First component of the vector field ``u``.
        boundary_ids (iterable of int): Boundary ids to constrain.
        function_map (dict): Boundary id -> ``g`` with ``dim`` components.
        constraints (AffineConstraints, optional): Set to add to.

    Returns:
        AffineConstraints: The constraint set.

    Raises:
        ValueError: In 1-D, and for spaces without a vector field at
            ``first_vector_component``.
    """
    return _compute_flux_constraints(fe, first_vector_component, boundary_ids, function_map,
                                     constraints, tangential=False)


def compute_no_normal_flux_constraints(fe, first_vector_component, boundary_ids,
                                       constraints: Optional[AffineConstraints] = None):
    """Constrain ``u . n = 0`` on the given boundary ids."""
    return _compute_flux_constraints(fe, first_vector_component, boundary_ids, None,
                                     constraints, tangential=False)


def compute_nonzero_tangential_flux_constraints(fe, first_vector_component, boundary_ids,
                                                function_map,
                                                constraints: Optional[AffineConstraints] = None):
    """Constrain ``u x n = g x n`` on the given boundary ids.

    Where the normals were averaged, the ``dim - 1`` directions orthogonal to
    the averaged normal are constrained; at corners and ridges all components
    are.
    """
    return _compute_flux_constraints(fe, first_vector_component, boundary_ids, function_map,
                                     constraints, tangential=True)


def compute_normal_flux_constraints(fe, first_vector_component, boundary_ids,
                                    constraints: Optional[AffineConstraints] = None):
    """Constrain ``u x n = 0`` on the given boundary ids."""
    return _compute_flux_constraints(fe, first_vector_component, boundary_ids, None,
                                     constraints, tangential=True)
