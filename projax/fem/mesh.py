"""Finite element mesh storage, topology and structured mesh generation.

This module provides the Mesh class, which stores vertex coordinates and cell
connectivity and derives everything the engines need from them: Basix vertex
ordering, edge and face numbering, boundary facets with boundary ids,
material ids, an ownership mask for partitioned runs, and point location.
Structured meshes are built through meshio.

Example:
    Basic usage for creating a structured mesh:

    >>> from projax.fem.mesh import rectangle_mesh
    >>> mesh = rectangle_mesh(4, 4, 1.0, 1.0, ele_type="TRI3")
    >>> mesh.mark_boundary(lambda x: np.isclose(x[0], 0.), 1)
"""

import basix
import numpy as onp
import meshio

from projax.fem import logger
from projax.fem.basis import get_elements, SIMPLEX_CELLS
from projax.fem.mapping import inverse_map, in_reference_cell

import jax
import jax.numpy as np


class Mesh:
    """A finite element mesh with the topology needed for DoF numbering.

    Attributes:
        points (numpy.ndarray): Vertex coordinates with shape (num_points, spacedim).
        cells (numpy.ndarray): Connectivity in meshio vertex order, shape (num_cells, num_vertices).
        ele_type (str): Element type identifier ('INTERVAL2', 'TRI3', 'QUAD4', 'TET4', 'HEX8').
        cell_vertices (numpy.ndarray): Connectivity in Basix vertex order. Simplex
            vertices are sorted by global index.
        cell_entities (dict): For each dimension d, the global index of every local
            sub-entity of dimension d, shape (num_cells, num_local_entities).
        boundary_inds (numpy.ndarray): Boundary facets as (cell, local facet) rows,
            sorted by cell then local facet.
        boundary_ids (numpy.ndarray): Boundary id of every boundary facet.
        material_ids (numpy.ndarray): Material id of every cell.
        owned (numpy.ndarray): Boolean mask of cells owned by this process.
    """

    def __init__(self, points, cells, ele_type="TET4", material_ids=None, owned=None):
        """Initialize a finite element mesh.

        Args:
            points (numpy.ndarray): Vertex coordinates with shape (num_points, spacedim).
            cells (numpy.ndarray): Connectivity in meshio vertex order.
            ele_type (str, optional): Element type identifier. Defaults to "TET4".
            material_ids (numpy.ndarray, optional): Material id per cell. Defaults to 0.
            owned (numpy.ndarray, optional): Ownership mask per cell. Defaults to all True.

        Raises:
            ValueError: If the point dimension is smaller than the cell dimension or
                some points are not used by any cell.
        """
        self.points = onp.asarray(points, dtype=onp.float64)
        if self.points.ndim == 1:
            self.points = self.points[:, None]
        self.cells = onp.asarray(cells, dtype=onp.int64)
        self.ele_type = ele_type
        self.basix_ele, self.basix_face_ele, self.re_order = get_elements(ele_type)
        self.dim = len(basix.topology(self.basix_ele)) - 1
        self.spacedim = self.points.shape[1]
        if self.spacedim < self.dim:
            raise ValueError(
                f"{ele_type} cells need points of dimension >= {self.dim}, got {self.spacedim}")
        self.num_cells = self.cells.shape[0]
        self.num_points = self.points.shape[0]
        if len(onp.unique(self.cells)) != self.num_points:
            raise ValueError("Every mesh point must be a vertex of at least one cell")

        self.cell_vertices = self.cells[:, self.re_order]
        if self.basix_ele in SIMPLEX_CELLS:
            self.cell_vertices = onp.sort(self.cell_vertices, axis=1)

        if material_ids is None:
            material_ids = onp.zeros(self.num_cells, dtype=onp.int64)
        self.material_ids = onp.asarray(material_ids, dtype=onp.int64)
        if owned is None:
            owned = onp.ones(self.num_cells, dtype=bool)
        self.owned = onp.asarray(owned, dtype=bool)

        self._build_topology()
        self._build_boundary()
        logger.debug(f"Mesh with {self.num_cells} {ele_type} cells, {self.num_points} points, "
                     f"{len(self.boundary_inds)} boundary facets")

    def _build_topology(self):
        topology = basix.topology(self.basix_ele)
        self.cell_entities = {0: self.cell_vertices}
        self.entity_vertices = {0: onp.arange(self.num_points)[:, None]}
        for d in range(1, self.dim):
            local = onp.array(topology[d])
            verts = self.cell_vertices[:, local]
            keys = onp.sort(verts, axis=2).reshape(-1, local.shape[1])
            unique_keys, inverse = onp.unique(keys, axis=0, return_inverse=True)
            self.entity_vertices[d] = unique_keys
            self.cell_entities[d] = inverse.reshape(self.num_cells, local.shape[0])
        self.cell_entities[self.dim] = onp.arange(self.num_cells)[:, None]
        self.local_facet_vertices = onp.array(topology[self.dim - 1])

    def _build_boundary(self):
        facets = self.cell_entities[self.dim - 1]
        counts = onp.bincount(facets.reshape(-1), minlength=self.num_entities(self.dim - 1))
        self.boundary_inds = onp.argwhere(counts[facets] == 1)
        self.boundary_ids = onp.zeros(len(self.boundary_inds), dtype=onp.int64)
        if self.dim == 1 and len(self.boundary_inds) > 0:
            # Left end gets id 0, right end id 1.
            cells, local = self.boundary_inds[:, 0], self.boundary_inds[:, 1]
            end_x = self.points[self.cell_vertices[cells, local], 0]
            mid_x = onp.mean(self.points[self.cell_vertices[cells], 0], axis=1)
            self.boundary_ids = onp.where(end_x < mid_x, 0, 1).astype(onp.int64)

    def num_entities(self, dim):
        """Number of mesh entities of topological dimension ``dim``."""
        if dim == 0:
            return self.num_points
        if dim == self.dim:
            return self.num_cells
        return len(self.entity_vertices[dim])

    def boundary_facet_points(self, boundary_inds=None):
        """Vertex coordinates of boundary facets, shape (num_facets, num_facet_vertices, spacedim)."""
        if boundary_inds is None:
            boundary_inds = self.boundary_inds
        cells, local = boundary_inds[:, 0], boundary_inds[:, 1]
        facet_vertices = self.cell_vertices[cells[:, None], self.local_facet_vertices[local]]
        return self.points[facet_vertices]

    def select_boundary(self, boundary_ids=None):
        """Boundary facets carrying one of ``boundary_ids`` (all facets if None)."""
        if boundary_ids is None:
            return self.boundary_inds, self.boundary_ids
        mask = onp.isin(self.boundary_ids, list(boundary_ids))
        return self.boundary_inds[mask], self.boundary_ids[mask]

    def mark_boundary(self, location_fn, boundary_id):
        """Tag the boundary facets whose vertices all satisfy ``location_fn``.

        Args:
            location_fn (Callable): A JAX-traceable function that inputs a point
                and returns a boolean value.
            boundary_id (int): Id given to the selected facets. Later calls
                overwrite earlier ones.

        Returns:
            int: The count of facets that were tagged.
        """
        if len(self.boundary_inds) == 0:
            return 0
        facet_points = self.boundary_facet_points()
        vmap_location_fn = jax.vmap(location_fn)

        def on_boundary(face_points):
            boundary_flag = vmap_location_fn(face_points)
            return np.all(boundary_flag)

        boundary_flags = onp.asarray(jax.vmap(on_boundary)(facet_points))
        self.boundary_ids[boundary_flags] = boundary_id
        logger.debug(f"Tagged {int(boundary_flags.sum())} boundary facets with id {boundary_id}")
        return int(boundary_flags.sum())

    def find_cell(self, point, tol=1e-10):
        """Locate the first cell containing ``point``.

        Returns:
            tuple: ``(cell_id, reference_point)``.

        Raises:
            ValueError: If no cell contains the point.
        """
        point = onp.asarray(point, dtype=onp.float64).reshape(-1)
        coords = self.points[self.cell_vertices]
        lower = coords.min(axis=1)
        upper = coords.max(axis=1)
        slack = tol * onp.max(upper - lower, axis=1, keepdims=True) + tol
        candidates = onp.flatnonzero(onp.all((point >= lower - slack) & (point <= upper + slack), axis=1))
        for cell_id in candidates:
            X, distance = inverse_map(coords[cell_id], point, self.basix_ele)
            scale = onp.max(upper[cell_id] - lower[cell_id])
            if distance <= 1e-8 * scale and in_reference_cell(self.basix_ele, X, tol=1e-8):
                return int(cell_id), X
        raise ValueError(f"Point {point.tolist()} is not inside the mesh")


def get_meshio_cell_type(ele_type):
    """Convert element type identifier to meshio cell type string.

    Raises:
        NotImplementedError: If the element type is not supported.
    """
    if ele_type == "TET4":
        cell_type = "tetra"
    elif ele_type == "HEX8":
        cell_type = "hexahedron"
    elif ele_type == "TRI3":
        cell_type = "triangle"
    elif ele_type == "QUAD4":
        cell_type = "quad"
    elif ele_type == "INTERVAL2":
        cell_type = "line"
    else:
        raise NotImplementedError
    return cell_type


def interval_mesh(N, length=1.0):
    """Generate a uniform 1D mesh of ``N`` segments on [0, length]."""
    points = onp.linspace(0, length, N + 1)[:, None]
    inds = onp.arange(N + 1)
    cells = onp.stack((inds[:-1], inds[1:]), axis=1)
    meshio_mesh = meshio.Mesh(points=points, cells={"line": cells})
    return Mesh(meshio_mesh.points, meshio_mesh.cells_dict["line"], ele_type="INTERVAL2")


def box_mesh(Nx, Ny, Nz, domain_x, domain_y, domain_z, ele_type="HEX8"):
    """Generate a structured 3D mesh of hexahedra or tetrahedra.

    Each hexahedron is split into six tetrahedra around its main diagonal
    (Kuhn triangulation) when ``ele_type`` is 'TET4', which is conforming
    across neighbouring boxes.

    Args:
        Nx (int): Number of elements in the x-direction.
        Ny (int): Number of elements in the y-direction.
        Nz (int): Number of elements in the z-direction.
        domain_x (float): Domain extent in the x-direction.
        domain_y (float): Domain extent in the y-direction.
        domain_z (float): Domain extent in the z-direction.
        ele_type (str, optional): 'HEX8' or 'TET4'. Defaults to "HEX8".

    Returns:
        Mesh: The mesh of [0, domain_x] x [0, domain_y] x [0, domain_z].
    """
    dim = 3
    x = onp.linspace(0, domain_x, Nx + 1)
    y = onp.linspace(0, domain_y, Ny + 1)
    z = onp.linspace(0, domain_z, Nz + 1)
    xv, yv, zv = onp.meshgrid(x, y, z, indexing="ij")
    points_xyz = onp.stack((xv, yv, zv), axis=dim)
    points = points_xyz.reshape(-1, dim)
    points_inds = onp.arange(len(points))
    points_inds_xyz = points_inds.reshape(Nx + 1, Ny + 1, Nz + 1)
    inds1 = points_inds_xyz[:-1, :-1, :-1]
    inds2 = points_inds_xyz[1:, :-1, :-1]
    inds3 = points_inds_xyz[1:, 1:, :-1]
    inds4 = points_inds_xyz[:-1, 1:, :-1]
    inds5 = points_inds_xyz[:-1, :-1, 1:]
    inds6 = points_inds_xyz[1:, :-1, 1:]
    inds7 = points_inds_xyz[1:, 1:, 1:]
    inds8 = points_inds_xyz[:-1, 1:, 1:]
    cells = onp.stack(
        (inds1, inds2, inds3, inds4, inds5, inds6, inds7, inds8), axis=dim
    ).reshape(-1, 8)
    if ele_type == "TET4":
        kuhn = onp.array([[0, 1, 2, 6], [0, 1, 5, 6], [0, 3, 2, 6],
                          [0, 3, 7, 6], [0, 4, 5, 6], [0, 4, 7, 6]])
        meshio_mesh = meshio.Mesh(points=points, cells={"tetra": cells[:, kuhn].reshape(-1, 4)})
    elif ele_type == "HEX8":
        meshio_mesh = meshio.Mesh(points=points, cells={"hexahedron": cells})
    else:
        raise NotImplementedError(f"box_mesh does not build {ele_type} cells")
    cell_type = get_meshio_cell_type(ele_type)
    out_mesh = Mesh(
        meshio_mesh.points[:, :3], meshio_mesh.cells_dict[cell_type], ele_type=ele_type
    )
    return out_mesh


def rectangle_mesh(Nx, Ny, domain_x, domain_y, ele_type="QUAD4"):
    """Generate a structured 2D mesh of quadrilaterals or triangles.

    Args:
        Nx (int): Number of elements in the x-direction.
        Ny (int): Number of elements in the y-direction.
        domain_x (float): Domain extent in the x-direction.
        domain_y (float): Domain extent in the y-direction.
        ele_type (str, optional): 'QUAD4' or 'TRI3' (each quadrilateral split
            along the same diagonal). Defaults to "QUAD4".

    Returns:
        Mesh: The mesh of [0, domain_x] x [0, domain_y].

    Example:
        >>> mesh = rectangle_mesh(20, 10, 2.0, 1.0)
        >>> print(f"Generated 2D mesh with {mesh.points.shape[0]} nodes")
    """
    dim = 2
    x = onp.linspace(0, domain_x, Nx + 1)
    y = onp.linspace(0, domain_y, Ny + 1)
    xv, yv = onp.meshgrid(x, y, indexing="ij")
    points_xy = onp.stack((xv, yv), axis=dim)
    points = points_xy.reshape(-1, dim)
    points_inds = onp.arange(len(points))
    points_inds_xy = points_inds.reshape(Nx + 1, Ny + 1)
    inds1 = points_inds_xy[:-1, :-1]
    inds2 = points_inds_xy[1:, :-1]
    inds3 = points_inds_xy[1:, 1:]
    inds4 = points_inds_xy[:-1, 1:]
    cells = onp.stack((inds1, inds2, inds3, inds4), axis=dim).reshape(-1, 4)
    if ele_type == "TRI3":
        triangles = cells[:, [[0, 1, 2], [0, 2, 3]]].reshape(-1, 3)
        meshio_mesh = meshio.Mesh(points=points, cells={"triangle": triangles})
    elif ele_type == "QUAD4":
        meshio_mesh = meshio.Mesh(points=points, cells={"quad": cells})
    else:
        raise NotImplementedError(f"rectangle_mesh does not build {ele_type} cells")
    cell_type = get_meshio_cell_type(ele_type)
    return Mesh(meshio_mesh.points, meshio_mesh.cells_dict[cell_type], ele_type=ele_type)
