"""Finite element spaces and the local assembly kernel.

``FiniteElement`` couples a mesh with a Basix reference element. It numbers
the global degrees of freedom entity by entity (vertices, edges, faces,
cells) and, given cells or boundary facets plus a quadrature rule, produces
physical-space shape function values, gradients and integration weights at
every quadrature point. Vector-valued Lagrange spaces (``vec > 1``) use the
global numbering ``dof = node * vec + component``.
"""
from dataclasses import dataclass
from typing import Optional

import basix
import jax.numpy as np
import numpy as onp

from projax.fem import logger
from projax.fem.basis import (create_element, get_quadrature, get_shape_vals_and_grads,
                              get_face_quadrature, get_edge_quadrature, closure_dofs)
from projax.fem.mapping import (tabulate_geometry, compute_jacobians, physical_points,
                                jacobian_determinants, inverse_jacobians, check_jacobians)
from projax.fem.mesh import Mesh


@dataclass
class CellValues:
    """Kernel output on a batch of cells.

    Attributes:
        cell_ids: Cells of the batch, shape (num_cells,).
        points: Physical quadrature points, shape (num_cells, num_quads, spacedim).
        shape_vals: Shape (num_cells, num_quads, num_local_dofs, n_components).
        shape_grads: Shape (num_cells, num_quads, num_local_dofs, n_components, spacedim).
        JxW: Integration weights, shape (num_cells, num_quads).
        jacobians: Shape (num_cells, num_quads, spacedim, dim).
        inverse_jacobians: Shape (num_cells, num_quads, dim, spacedim).
        detJ: Shape (num_cells, num_quads).
    """
    cell_ids: onp.ndarray
    points: onp.ndarray
    shape_vals: onp.ndarray
    shape_grads: onp.ndarray
    JxW: onp.ndarray
    jacobians: onp.ndarray
    inverse_jacobians: onp.ndarray
    detJ: onp.ndarray


@dataclass
class FaceValues(CellValues):
    """Kernel output on boundary facets; ``normals`` are unit outward normals."""
    normals: Optional[onp.ndarray] = None


@dataclass
class EdgeValues(CellValues):
    """Kernel output on one local edge of a batch of cells; ``tangents`` are unit tangents."""
    tangents: Optional[onp.ndarray] = None


@dataclass
class FiniteElement:
    """A finite element space on a mesh.

    Attributes:
        mesh (Mesh): The mesh.
        family (str): 'P'/'Q' (Lagrange), 'N1curl' (Nedelec first kind) or 'RT'
            (Raviart-Thomas).
        degree (int): Polynomial degree.
        vec (int): Number of components of a Lagrange space. Must be 1 for
            vector-valued elements.
        gauss_order (int, optional): Default cell quadrature degree. Defaults
            to ``2 * degree``, which integrates the mass matrix exactly on
            affine cells.
    """
    mesh: Mesh
    family: str = 'P'
    degree: int = 1
    vec: int = 1
    gauss_order: Optional[int] = None

    def __post_init__(self):
        self.ele_type = self.mesh.ele_type
        self.basix_ele = self.mesh.basix_ele
        self.basix_face_ele = self.mesh.basix_face_ele
        self.dim = self.mesh.dim
        self.spacedim = self.mesh.spacedim
        self.num_cells = self.mesh.num_cells
        self.element = create_element(self.family, self.ele_type, self.degree)
        self.map_type = self.element.map_type
        self.value_size = int(onp.prod(self.element.value_shape))
        if self.value_size > 1 and self.vec != 1:
            raise ValueError(f"{self.family} elements are vector-valued; vec must be 1")
        if self.map_type != basix.MapType.identity and self.spacedim != self.dim:
            raise NotImplementedError("Piola-mapped elements need spacedim == dim")
        self.n_components = self.vec * self.value_size
        self.is_primitive = self.value_size == 1
        self.has_support_points = self.map_type == basix.MapType.identity
        self.num_local_nodes = self.element.dim
        self.num_local_dofs = self.num_local_nodes * self.vec

        if self.gauss_order is None:
            self.gauss_order = 2 * self.degree
        self.quad_points, self.quad_weights = get_quadrature(self.basix_ele, self.gauss_order)

        num_facets = len(basix.topology(self.basix_ele)[self.dim - 1])
        self.facet_closure_nodes = [closure_dofs(self.element, self.basix_ele, self.dim - 1, f)
                                    for f in range(num_facets)]
        self.facet_interior_nodes = [list(self.element.entity_dofs[self.dim - 1][f])
                                     for f in range(num_facets)]

        self._distribute_dofs()
        self._compute_support_points()
        logger.debug(f"{self.family}{self.degree} space (vec={self.vec}) on {self.num_cells} "
                     f"{self.ele_type} cells: {self.num_total_dofs} dofs")

    def _distribute_dofs(self):
        entity_dofs = self.element.entity_dofs
        cell_nodes = onp.zeros((self.num_cells, self.num_local_nodes), dtype=onp.int64)
        offset = 0
        for d in range(self.dim + 1):
            if len(entity_dofs[d]) == 0 or len(entity_dofs[d][0]) == 0:
                continue
            n_d = len(entity_dofs[d][0])
            for e, local_dofs in enumerate(entity_dofs[d]):
                global_entities = self.mesh.cell_entities[d][:, e]
                cell_nodes[:, local_dofs] = (offset + global_entities[:, None] * n_d
                                             + onp.arange(n_d)[None, :])
            offset += self.mesh.num_entities(d) * n_d
        self.cell_nodes = cell_nodes
        self.num_total_nodes = offset
        self.num_total_dofs = self.num_total_nodes * self.vec
        self.cell_dofs = (cell_nodes[:, :, None] * self.vec
                          + onp.arange(self.vec)[None, None, :]).reshape(self.num_cells, -1)

    def _compute_support_points(self):
        if not self.has_support_points:
            self.node_points = None
            return
        coords = self.mesh.points[self.mesh.cell_vertices]
        geo_vals, _ = tabulate_geometry(self.basix_ele, self.element.points)
        cell_support_points = onp.asarray(physical_points(coords, geo_vals))
        self.node_points = onp.zeros((self.num_total_nodes, self.spacedim))
        self.node_points[self.cell_nodes.reshape(-1)] = cell_support_points.reshape(-1, self.spacedim)

    def dof_component(self, dofs):
        """Vector component of global DoFs of a Lagrange space."""
        return onp.asarray(dofs) % self.vec

    def local_dofs_of_nodes(self, local_nodes, component_mask=None):
        """Local DoF indices of local nodes, restricted to masked components."""
        local_nodes = onp.asarray(local_nodes, dtype=onp.int64)
        components = onp.arange(self.vec)
        if component_mask is not None:
            components = components[onp.asarray(component_mask, dtype=bool)]
        return (local_nodes[:, None] * self.vec + components[None, :]).reshape(-1)

    def boundary_dofs(self, boundary_ids=None, component_mask=None):
        """Sorted global DoFs on the closure of the selected boundary facets."""
        boundary_inds, _ = self.mesh.select_boundary(boundary_ids)
        dofs = [self.cell_dofs[c, self.local_dofs_of_nodes(self.facet_closure_nodes[f], component_mask)]
                for c, f in boundary_inds]
        if not dofs:
            return onp.zeros(0, dtype=onp.int64)
        return onp.unique(onp.concatenate(dofs))

    def owned_cells(self):
        return onp.flatnonzero(self.mesh.owned)

    def cell_batches(self, cell_ids=None, batch_size=2048):
        """Yield consecutive batches of cell ids, in ascending traversal order."""
        if cell_ids is None:
            cell_ids = onp.arange(self.num_cells)
        cell_ids = onp.asarray(cell_ids, dtype=onp.int64)
        for start in range(0, len(cell_ids), batch_size):
            yield cell_ids[start:start + batch_size]

    def cell_values(self, cell_ids=None, quad_points=None, quad_weights=None):
        """Evaluate the local assembly kernel on a batch of cells.

        Args:
            cell_ids (array-like, optional): Cells to evaluate. Defaults to all cells.
            quad_points (numpy.ndarray, optional): Reference points, shape
                (num_quads, dim). Defaults to the cell quadrature rule.
            quad_weights (numpy.ndarray, optional): Reference weights. Defaults
                to ones when ``quad_points`` is given.

        Returns:
            CellValues: Physical values, gradients and weights.

        Raises:
            DegenerateCellError: If a mapping is singular at a point.
        """
        if cell_ids is None:
            cell_ids = onp.arange(self.num_cells)
        cell_ids = onp.atleast_1d(onp.asarray(cell_ids, dtype=onp.int64))
        if quad_points is None:
            quad_points, quad_weights = self.quad_points, self.quad_weights
        quad_points = onp.asarray(quad_points, dtype=onp.float64).reshape(-1, self.dim)
        if quad_weights is None:
            quad_weights = onp.ones(len(quad_points))

        coords = self.mesh.points[self.mesh.cell_vertices[cell_ids]]
        geo_vals, geo_grads = tabulate_geometry(self.basix_ele, quad_points)
        jacobians = compute_jacobians(coords, geo_grads)
        detJ = jacobian_determinants(jacobians)
        check_jacobians(detJ, coords, cell_ids, self.dim)
        inv_jacobians = inverse_jacobians(jacobians)
        points = physical_points(coords, geo_vals)

        shape_vals_ref, shape_grads_ref = get_shape_vals_and_grads(self.element, quad_points)
        shape_vals, shape_grads = self._push_forward(shape_vals_ref, shape_grads_ref,
                                                     jacobians, inv_jacobians, detJ)
        JxW = np.asarray(quad_weights)[None, :] * np.abs(detJ)
        return CellValues(cell_ids, onp.asarray(points), onp.asarray(shape_vals),
                          onp.asarray(shape_grads), onp.asarray(JxW), onp.asarray(jacobians),
                          onp.asarray(inv_jacobians), onp.asarray(detJ))

    def _push_forward(self, vals_ref, grads_ref, jacobians, inv_jacobians, detJ):
        num_cells, num_quads = detJ.shape
        if self.map_type == basix.MapType.identity:
            vals = np.broadcast_to(vals_ref[None], (num_cells,) + vals_ref.shape)
            grads = np.einsum('qdvt,cqtg->cqdvg', grads_ref, inv_jacobians)
        elif self.map_type == basix.MapType.covariantPiola:
            vals = np.einsum('cqtg,qdt->cqdg', inv_jacobians, vals_ref)
            grads = np.einsum('cqtg,qdts,cqsh->cqdgh', inv_jacobians, grads_ref, inv_jacobians)
        elif self.map_type == basix.MapType.contravariantPiola:
            vals = np.einsum('cqgt,qdt->cqdg', jacobians, vals_ref) / detJ[:, :, None, None]
            grads = (np.einsum('cqgt,qdts,cqsh->cqdgh', jacobians, grads_ref, inv_jacobians)
                     / detJ[:, :, None, None, None])
        else:
            raise NotImplementedError(f"Unsupported map type {self.map_type}")

        if self.vec > 1:
            eye = np.eye(self.vec)
            vals = np.einsum('cqd,vw->cqdvw', vals[..., 0], eye).reshape(
                num_cells, num_quads, self.num_local_dofs, self.vec)
            grads = np.einsum('cqdg,vw->cqdvwg', grads[..., 0, :], eye).reshape(
                num_cells, num_quads, self.num_local_dofs, self.vec, self.spacedim)
        return vals, grads

    def face_values(self, boundary_inds, gauss_order=None):
        """Evaluate the local assembly kernel on boundary facets.

        The weights follow Nanson's formula, ``w |J^{-T} N| |det J|``, with the
        reference facet measure folded into ``w``.

        Args:
            boundary_inds (numpy.ndarray): (cell, local facet) rows.
            gauss_order (int, optional): Facet quadrature degree. Defaults to
                the cell quadrature degree.

        Returns:
            FaceValues: Values in the order of ``boundary_inds``.
        """
        if gauss_order is None:
            gauss_order = self.gauss_order
        boundary_inds = onp.asarray(boundary_inds, dtype=onp.int64).reshape(-1, 2)
        face_quad_points, face_weights, face_normals, _ = get_face_quadrature(
            self.basix_ele, self.basix_face_ele, gauss_order)
        num_faces = len(boundary_inds)
        num_face_quads = face_quad_points.shape[1]
        shape = (num_faces, num_face_quads)
        points = onp.zeros(shape + (self.spacedim,))
        shape_vals = onp.zeros(shape + (self.num_local_dofs, self.n_components))
        shape_grads = onp.zeros(shape + (self.num_local_dofs, self.n_components, self.spacedim))
        JxW = onp.zeros(shape)
        jacobians = onp.zeros(shape + (self.spacedim, self.dim))
        inv_jacobians = onp.zeros(shape + (self.dim, self.spacedim))
        detJ = onp.zeros(shape)
        normals = onp.zeros(shape + (self.spacedim,))

        for f in onp.unique(boundary_inds[:, 1]):
            rows = onp.flatnonzero(boundary_inds[:, 1] == f)
            cv = self.cell_values(boundary_inds[rows, 0], face_quad_points[f], face_weights[f])
            n = onp.einsum('cqtg,t->cqg', cv.inverse_jacobians, face_normals[f])
            scale = onp.linalg.norm(n, axis=-1)
            points[rows] = cv.points
            shape_vals[rows] = cv.shape_vals
            shape_grads[rows] = cv.shape_grads
            JxW[rows] = face_weights[f][None, :] * onp.abs(cv.detJ) * scale
            jacobians[rows] = cv.jacobians
            inv_jacobians[rows] = cv.inverse_jacobians
            detJ[rows] = cv.detJ
            normals[rows] = n / scale[..., None]

        return FaceValues(boundary_inds[:, 0], points, shape_vals, shape_grads, JxW,
                          jacobians, inv_jacobians, detJ, normals=normals)

    def edge_values(self, cell_ids, local_edge, gauss_order=None):
        """Evaluate the local assembly kernel on one local edge of each cell.

        Tangents point from the lower to the higher global vertex of the edge
        on simplex meshes.
        """
        if gauss_order is None:
            gauss_order = self.gauss_order
        edge_quad_points, weights, edge_tangents = get_edge_quadrature(self.basix_ele, gauss_order)
        cv = self.cell_values(cell_ids, edge_quad_points[local_edge], weights)
        t = onp.einsum('cqgt,t->cqg', cv.jacobians, edge_tangents[local_edge])
        length = onp.linalg.norm(t, axis=-1)
        JxW = weights[None, :] * length
        return EdgeValues(cv.cell_ids, cv.points, cv.shape_vals, cv.shape_grads, JxW,
                          cv.jacobians, cv.inverse_jacobians, cv.detJ,
                          tangents=t / length[..., None])

    def function_values(self, dof_vector, values):
        """Values of a discrete field at the points of ``values``, shape (num_cells, num_quads, n_components)."""
        local = onp.asarray(dof_vector)[self.cell_dofs[values.cell_ids]]
        return onp.einsum('cd,cqdk->cqk', local, values.shape_vals)

    def function_grads(self, dof_vector, values):
        """Gradients of a discrete field, shape (num_cells, num_quads, n_components, spacedim)."""
        local = onp.asarray(dof_vector)[self.cell_dofs[values.cell_ids]]
        return onp.einsum('cd,cqdkg->cqkg', local, values.shape_grads)

    def pull_back(self, values, cv):
        """Map physical vector values at the points of ``cv`` to reference values.

        Inverse of the element's push-forward: identity, ``J^T f`` (covariant
        Piola) or ``det J J^{-1} f`` (contravariant Piola).
        """
        if self.map_type == basix.MapType.identity:
            return values
        if self.map_type == basix.MapType.covariantPiola:
            return onp.einsum('cqgt,cqg->cqt', cv.jacobians, values)
        if self.map_type == basix.MapType.contravariantPiola:
            return cv.detJ[..., None] * onp.einsum('cqtg,cqg->cqt', cv.inverse_jacobians, values)
        raise NotImplementedError(f"Unsupported map type {self.map_type}")
