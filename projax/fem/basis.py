"""Reference cells, finite element bases and quadrature rules.

This module wraps the Basix library to provide everything that lives on the
reference cell: the geometric configuration of each supported cell type,
creation of Lagrange, Nedelec and Raviart-Thomas elements, tabulation of
shape functions and their reference gradients, and quadrature rules for
cells, facets and edges (mapped into the reference cell).
"""
import basix
import numpy as onp

from projax.fem import logger


ELEMENT_FAMILIES = {
    'P': basix.ElementFamily.P,
    'Q': basix.ElementFamily.P,
    'Lagrange': basix.ElementFamily.P,
    'N1curl': basix.ElementFamily.N1E,
    'Nedelec': basix.ElementFamily.N1E,
    'RT': basix.ElementFamily.RT,
    'Raviart-Thomas': basix.ElementFamily.RT,
}

SIMPLEX_CELLS = (basix.CellType.interval, basix.CellType.triangle,
                 basix.CellType.tetrahedron)


def get_elements(ele_type):
    """Get the geometric configuration for a mesh element type.

    Args:
        ele_type (str): Element type identifier. Supported types:
            - 'INTERVAL2': 2-node line segment
            - 'TRI3': 3-node triangle
            - 'QUAD4': 4-node quadrilateral
            - 'TET4': 4-node tetrahedron
            - 'HEX8': 8-node hexahedron

    Returns:
        tuple: A 3-tuple containing:
            - basix_ele (basix.CellType): Basix cell type for the element
            - basix_face_ele (basix.CellType): Basix cell type of its facets
            - re_order (list): Permutation taking meshio vertex order to
              Basix vertex order

    Raises:
        NotImplementedError: If element type is not supported.

    Example:
        >>> basix_ele, basix_face_ele, re_order = get_elements('QUAD4')
    """
    if ele_type == 'HEX8':
        re_order = [0, 1, 3, 2, 4, 5, 7, 6]
        basix_ele = basix.CellType.hexahedron
        basix_face_ele = basix.CellType.quadrilateral
    elif ele_type == 'TET4':
        re_order = [0, 1, 2, 3]
        basix_ele = basix.CellType.tetrahedron
        basix_face_ele = basix.CellType.triangle
    elif ele_type == 'QUAD4':
        re_order = [0, 1, 3, 2]
        basix_ele = basix.CellType.quadrilateral
        basix_face_ele = basix.CellType.interval
    elif ele_type == 'TRI3':
        re_order = [0, 1, 2]
        basix_ele = basix.CellType.triangle
        basix_face_ele = basix.CellType.interval
    elif ele_type == 'INTERVAL2':
        re_order = [0, 1]
        basix_ele = basix.CellType.interval
        basix_face_ele = basix.CellType.point
    else:
        raise NotImplementedError(f"Unsupported element type: {ele_type}")

    return basix_ele, basix_face_ele, re_order


def get_element_family(family):
    """Translate a family name into a ``basix.ElementFamily``."""
    if family not in ELEMENT_FAMILIES:
        raise NotImplementedError(f"Unknown element family: {family}")
    return ELEMENT_FAMILIES[family]


def create_element(family, ele_type, degree):
    """Create a Basix element on the reference cell of ``ele_type``.

    Lagrange elements use GLL-warped points. Nedelec (first kind) and
    Raviart-Thomas elements use Legendre integral moments and are restricted
    to simplices, where sorting cell vertices by global index gives every
    shared edge and face the same orientation from both sides. For the same
    reason Lagrange elements on quadrilaterals and hexahedra are limited to
    degree 2 (at most one DoF per edge or face).

    Args:
        family (str): One of the keys of ``ELEMENT_FAMILIES``.
        ele_type (str): Mesh element type, see ``get_elements``.
        degree (int): Polynomial degree (>= 1).

    Returns:
        basix.finite_element.FiniteElement: The reference element.
    """
    element_family = get_element_family(family)
    basix_ele, _, _ = get_elements(ele_type)
    if degree < 1:
        raise ValueError(f"Element degree must be >= 1, got {degree}")

    if element_family == basix.ElementFamily.P:
        if basix_ele not in SIMPLEX_CELLS and degree > 2:
            raise NotImplementedError(
                f"Lagrange degree {degree} on {ele_type} needs edge orientation "
                f"transformations; only degree <= 2 is supported")
        variant = basix.LagrangeVariant.gll_warped
    else:
        if basix_ele not in SIMPLEX_CELLS or basix_ele == basix.CellType.interval:
            raise NotImplementedError(
                f"{family} elements are only supported on triangles and tetrahedra")
        variant = basix.LagrangeVariant.legendre

    element = basix.create_element(element_family, basix_ele, degree, variant)
    logger.debug(f"Created {family}{degree} element on {ele_type} with {element.dim} dofs")
    return element


def get_quadrature(basix_cell, gauss_order):
    """Quadrature points and weights on a reference cell.

    A point "cell" (the facet of an interval) gets the single trivial rule
    with unit weight.
    """
    if basix_cell == basix.CellType.point:
        return onp.zeros((1, 0)), onp.ones(1)
    points, weights = basix.make_quadrature(basix_cell, gauss_order)
    return onp.asarray(points), onp.asarray(weights)


def get_shape_vals_and_grads(element, points):
    """Tabulate shape functions and reference gradients.

    Args:
        element: Basix element.
        points (numpy.ndarray): Reference points, shape (num_points, dim).

    Returns:
        tuple: A 2-tuple containing:
            - shape_values (numpy.ndarray): Shape (num_points, num_dofs, value_size)
            - shape_grads_ref (numpy.ndarray): Reference gradients,
              shape (num_points, num_dofs, value_size, dim)
    """
    points = onp.asarray(points, dtype=onp.float64)
    dim = points.shape[1]
    vals_and_grads = element.tabulate(1, points)
    shape_values = vals_and_grads[0]
    shape_grads_ref = onp.transpose(vals_and_grads[1:dim + 1], axes=(1, 2, 3, 0))
    return shape_values, shape_grads_ref


def reference_entity_jacobian(basix_ele, dim, index):
    """Columns spanning a sub-entity of the reference cell.

    Returns an array of shape (tdim, dim) whose k-th column is
    ``v_{k+1} - v_0`` for the vertices of the sub-entity.
    """
    vertices = basix.geometry(basix_ele)
    entity = basix.topology(basix_ele)[dim][index]
    v0 = vertices[entity[0]]
    columns = [vertices[entity[k + 1]] - v0 for k in range(dim)]
    if not columns:
        return onp.zeros((vertices.shape[1], 0))
    return onp.stack(columns, axis=1)


def reference_entity_scale(basix_ele, dim, index):
    """Measure scaling of a reference sub-entity relative to its own reference cell."""
    jacobian = reference_entity_jacobian(basix_ele, dim, index)
    if dim == 0:
        return 1.
    return float(onp.sqrt(onp.linalg.det(jacobian.T @ jacobian)))


def map_to_reference_entity(basix_ele, dim, index, points):
    """Map points of a sub-entity's reference cell into the reference cell.

    Reference facets of simplices and hypercubes are affine images of their
    own reference cells, so ``x = v_0 + J_e X`` is exact.
    """
    vertices = basix.geometry(basix_ele)
    entity = basix.topology(basix_ele)[dim][index]
    jacobian = reference_entity_jacobian(basix_ele, dim, index)
    points = onp.asarray(points, dtype=onp.float64)
    # The facet of an interval is a point: its quadrature points have no coordinates.
    points = points.reshape(len(points), dim)
    return vertices[entity[0]][None, :] + points @ jacobian.T


def get_face_quadrature(basix_ele, basix_face_ele, gauss_order):
    """Quadrature on every facet of the reference cell.

    Returns:
        tuple: A 4-tuple containing:
            - face_quad_points (numpy.ndarray): Points in reference cell
              coordinates. Shape: (num_faces, num_face_quads, dim)
            - face_weights (numpy.ndarray): Weights scaled by the reference
              facet measure. Shape: (num_faces, num_face_quads)
            - face_normals (numpy.ndarray): Reference outward normals.
              Shape: (num_faces, dim)
            - face_inds (list): Local vertex indices of each facet.
    """
    points, weights = get_quadrature(basix_face_ele, gauss_order)
    vertices = basix.geometry(basix_ele)
    dim = vertices.shape[1]
    facets = basix.topology(basix_ele)[dim - 1]
    face_quad_points = []
    face_weights = []
    for f in range(len(facets)):
        face_quad_points.append(map_to_reference_entity(basix_ele, dim - 1, f, points))
        face_weights.append(weights * reference_entity_scale(basix_ele, dim - 1, f))
    face_quad_points = onp.stack(face_quad_points)
    face_weights = onp.stack(face_weights)
    if dim == 1:
        face_normals = onp.array([[-1.], [1.]])
    else:
        face_normals = onp.asarray(basix.cell.facet_outward_normals(basix_ele))
    face_inds = [list(facet) for facet in facets]
    logger.debug(f"face_quad_points.shape = (num_faces, num_face_quads, dim) = {face_quad_points.shape}")
    return face_quad_points, face_weights, face_normals, face_inds


def get_edge_quadrature(basix_ele, gauss_order):
    """Quadrature on every edge of the reference cell.

    Returns:
        tuple: A 3-tuple containing:
            - edge_quad_points (numpy.ndarray): Shape (num_edges, num_quads, dim)
            - weights (numpy.ndarray): Weights on the unit interval, shape (num_quads,)
            - edge_tangents (numpy.ndarray): Unnormalized reference tangents
              ``v_1 - v_0``, shape (num_edges, dim)
    """
    points, weights = get_quadrature(basix.CellType.interval, gauss_order)
    edges = basix.topology(basix_ele)[1]
    edge_quad_points = onp.stack(
        [map_to_reference_entity(basix_ele, 1, e, points) for e in range(len(edges))])
    edge_tangents = onp.stack(
        [reference_entity_jacobian(basix_ele, 1, e)[:, 0] for e in range(len(edges))])
    return edge_quad_points, weights, edge_tangents


def closure_dofs(element, basix_ele, dim, index):
    """Local DoFs supported on the closure of a reference sub-entity."""
    connectivity = basix.cell.sub_entity_connectivity(basix_ele)[dim][index]
    dofs = []
    for sub_dim in range(dim + 1):
        for sub_index in connectivity[sub_dim]:
            dofs.extend(element.entity_dofs[sub_dim][sub_index])
    return sorted(dofs)
