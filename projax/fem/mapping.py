"""Geometric mapping between reference and physical cells.

The geometry of every cell is described by its vertex (P1/Q1) element, so
the mapping is affine on simplices and multilinear on quadrilaterals and
hexahedra. On codimension-one meshes (cells of dimension ``dim`` embedded in
``spacedim = dim + 1``) the Jacobian is rectangular; its determinant is the
Gram determinant and its inverse the Moore-Penrose pseudo-inverse, which
turns reference gradients into tangential gradients.
"""
import basix
import jax.numpy as np
import numpy as onp

from projax.fem.basis import get_shape_vals_and_grads


class DegenerateCellError(RuntimeError):
    """Raised when the mapping of a cell is singular at an evaluation point."""


def get_geometry_element(basix_ele):
    return basix.create_element(basix.ElementFamily.P, basix_ele, 1)


def tabulate_geometry(basix_ele, ref_points):
    """Vertex shape functions and their reference gradients.

    Returns:
        tuple: ``(geo_vals, geo_grads)`` with shapes (num_points, num_vertices)
        and (num_points, num_vertices, dim).
    """
    vals, grads = get_shape_vals_and_grads(get_geometry_element(basix_ele), ref_points)
    return vals[:, :, 0], grads[:, :, 0, :]


def compute_jacobians(cell_coords, geo_grads):
    """Jacobians of shape (num_cells, num_points, spacedim, dim)."""
    return np.einsum('cvg,qvt->cqgt', cell_coords, geo_grads)


def physical_points(cell_coords, geo_vals):
    """Physical images of reference points, shape (num_cells, num_points, spacedim)."""
    return np.einsum('qv,cvg->cqg', geo_vals, cell_coords)


def jacobian_determinants(jacobians):
    """Signed determinant for square Jacobians, Gram determinant otherwise."""
    spacedim, dim = jacobians.shape[-2:]
    if spacedim == dim:
        return np.linalg.det(jacobians)
    gram = np.einsum('...gt,...gs->...ts', jacobians, jacobians)
    return np.sqrt(np.linalg.det(gram))


def inverse_jacobians(jacobians):
    """Inverse (or left pseudo-inverse) Jacobians, shape (..., dim, spacedim)."""
    spacedim, dim = jacobians.shape[-2:]
    if spacedim == dim:
        return np.linalg.inv(jacobians)
    gram = np.einsum('...gt,...gs->...ts', jacobians, jacobians)
    return np.einsum('...ts,...gs->...tg', np.linalg.inv(gram), jacobians)


def check_jacobians(detJ, cell_coords, cell_ids, dim, rtol=1e-12):
    """Raise ``DegenerateCellError`` if any |det J| vanishes relative to the cell size.

    Args:
        detJ (array): Determinants, shape (num_cells, num_points).
        cell_coords (numpy.ndarray): Vertex coordinates, shape (num_cells, num_vertices, spacedim).
        cell_ids (numpy.ndarray): Global ids of the cells, used in the error message.
        dim (int): Topological dimension.
    """
    detJ = onp.asarray(detJ)
    diameter = onp.max(onp.ptp(cell_coords, axis=1), axis=1)
    bad = onp.abs(detJ) <= rtol * diameter[:, None]**dim
    if onp.any(bad):
        bad_cells = onp.asarray(cell_ids)[onp.any(bad, axis=1)]
        raise DegenerateCellError(
            f"Singular mapping on cell(s) {bad_cells[:10].tolist()}")


def in_reference_cell(basix_ele, X, tol=1e-10):
    if basix_ele in (basix.CellType.quadrilateral, basix.CellType.hexahedron):
        return bool(onp.all(X >= -tol) and onp.all(X <= 1. + tol))
    return bool(onp.all(X >= -tol) and onp.sum(X) <= 1. + tol)


def inverse_map(cell_coords, x, basix_ele, tol=1e-13, max_iter=25):
    """Reference coordinates of a physical point by Newton iteration.

    Args:
        cell_coords (numpy.ndarray): Vertex coordinates of one cell, shape (num_vertices, spacedim).
        x (numpy.ndarray): Physical point, shape (spacedim,).
        basix_ele (basix.CellType): Reference cell.

    Returns:
        tuple: ``(X, distance)`` where ``distance`` is ``|x - F(X)|``. It is
        nonzero when the point is off a codimension-one cell.
    """
    geo_element = get_geometry_element(basix_ele)
    X = onp.mean(basix.geometry(basix_ele), axis=0)
    x = onp.asarray(x, dtype=onp.float64)
    for _ in range(max_iter):
        vals, grads = get_shape_vals_and_grads(geo_element, X[None, :])
        x_k = vals[0, :, 0] @ cell_coords
        jacobian = cell_coords.T @ grads[0, :, 0, :]
        dX = onp.linalg.lstsq(jacobian, x - x_k, rcond=None)[0]
        X = X + dX
        if onp.linalg.norm(dX) < tol:
            break
    vals, _ = get_shape_vals_and_grads(geo_element, X[None, :])
    distance = onp.linalg.norm(x - vals[0, :, 0] @ cell_coords)
    return X, distance
