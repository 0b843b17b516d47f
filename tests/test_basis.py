"""
Tests for projax.fem.basis module.

This module tests the reference-cell utilities: element configuration,
element creation, shape functions, and cell, facet and edge quadrature.
"""
import pytest
import numpy as np
import basix

from projax.fem.basis import (
    get_elements,
    create_element,
    get_quadrature,
    get_shape_vals_and_grads,
    get_face_quadrature,
    get_edge_quadrature,
    closure_dofs,
)

pytestmark = pytest.mark.integration


class TestGetElements:
    """Test the get_elements function for the supported mesh cells."""

    @pytest.mark.parametrize("ele_type,cell,face_cell,re_order", [
        ("INTERVAL2", basix.CellType.interval, basix.CellType.point, [0, 1]),
        ("TRI3", basix.CellType.triangle, basix.CellType.interval, [0, 1, 2]),
        ("QUAD4", basix.CellType.quadrilateral, basix.CellType.interval, [0, 1, 3, 2]),
        ("TET4", basix.CellType.tetrahedron, basix.CellType.triangle, [0, 1, 2, 3]),
        ("HEX8", basix.CellType.hexahedron, basix.CellType.quadrilateral,
         [0, 1, 3, 2, 4, 5, 7, 6]),
    ])
    def test_supported_element_types(self, ele_type, cell, face_cell, re_order):
        """Each mesh cell maps to its Basix cell, facet cell and vertex permutation."""
        basix_ele, basix_face_ele, order = get_elements(ele_type)
        assert basix_ele == cell
        assert basix_face_ele == face_cell
        assert order == re_order

    def test_unsupported_element_type(self):
        """Test that unsupported element types raise NotImplementedError."""
        with pytest.raises(NotImplementedError):
            get_elements("TET10")


class TestCreateElement:
    """Test element creation for the supported families."""

    @pytest.mark.parametrize("family,ele_type,degree,expected_dim", [
        ("P", "INTERVAL2", 3, 4),
        ("P", "TRI3", 2, 6),
        ("P", "TET4", 3, 20),
        ("Q", "QUAD4", 2, 9),
        ("Q", "HEX8", 1, 8),
        ("N1curl", "TRI3", 1, 3),
        ("N1curl", "TET4", 2, 20),
        ("RT", "TRI3", 2, 8),
        ("RT", "TET4", 1, 4),
    ])
    def test_element_dimensions(self, family, ele_type, degree, expected_dim):
        """Number of local DoFs per family, cell and degree."""
        element = create_element(family, ele_type, degree)
        assert element.dim == expected_dim

    def test_piola_map_types(self):
        """Nedelec elements are covariant, Raviart-Thomas contravariant."""
        assert create_element("N1curl", "TRI3", 1).map_type == basix.MapType.covariantPiola
        assert create_element("RT", "TRI3", 1).map_type == basix.MapType.contravariantPiola
        assert create_element("P", "TRI3", 1).map_type == basix.MapType.identity

    def test_high_order_hypercube_rejected(self):
        """Lagrange elements on quadrilaterals stop at degree 2."""
        with pytest.raises(NotImplementedError):
            create_element("Q", "QUAD4", 3)

    def test_vector_elements_need_simplices(self):
        with pytest.raises(NotImplementedError):
            create_element("RT", "QUAD4", 1)
        with pytest.raises(NotImplementedError):
            create_element("N1curl", "HEX8", 1)

    def test_unknown_family(self):
        with pytest.raises(NotImplementedError):
            create_element("DG", "TRI3", 1)

    def test_zero_degree(self):
        with pytest.raises(ValueError):
            create_element("P", "TRI3", 0)


class TestQuadrature:
    """Test cell quadrature rules."""

    @pytest.mark.parametrize("cell,volume", [
        (basix.CellType.interval, 1.),
        (basix.CellType.triangle, 0.5),
        (basix.CellType.quadrilateral, 1.),
        (basix.CellType.tetrahedron, 1. / 6.),
        (basix.CellType.hexahedron, 1.),
    ])
    def test_weights_sum_to_reference_volume(self, cell, volume):
        points, weights = get_quadrature(cell, 2)
        assert points.shape[0] == weights.shape[0]
        np.testing.assert_allclose(np.sum(weights), volume, rtol=1e-12)

    def test_point_cell(self):
        """The facet of an interval has a single unit-weight point."""
        points, weights = get_quadrature(basix.CellType.point, 3)
        assert points.shape == (1, 0)
        np.testing.assert_array_equal(weights, [1.])

    def test_exactness(self):
        """Degree 4 rule integrates x^2 y^2 on the triangle exactly (= 1/180)."""
        points, weights = get_quadrature(basix.CellType.triangle, 4)
        integral = np.sum(weights * points[:, 0]**2 * points[:, 1]**2)
        np.testing.assert_allclose(integral, 1. / 180., rtol=1e-12)


class TestGetShapeValsAndGrads:
    """Test the get_shape_vals_and_grads function."""

    @pytest.mark.parametrize("family,ele_type,degree", [
        ("P", "TRI3", 1), ("P", "TRI3", 3), ("Q", "QUAD4", 2),
        ("P", "TET4", 2), ("Q", "HEX8", 1), ("P", "INTERVAL2", 2),
    ])
    def test_partition_of_unity(self, family, ele_type, degree):
        """Lagrange shape functions sum to one and their gradients to zero."""
        element = create_element(family, ele_type, degree)
        basix_ele, _, _ = get_elements(ele_type)
        points, _ = get_quadrature(basix_ele, 3)
        vals, grads = get_shape_vals_and_grads(element, points)
        assert vals.shape == (len(points), element.dim, 1)
        assert grads.shape == (len(points), element.dim, 1, points.shape[1])
        np.testing.assert_allclose(np.sum(vals[:, :, 0], axis=1), 1., atol=1e-12)
        np.testing.assert_allclose(np.sum(grads[:, :, 0, :], axis=1), 0., atol=1e-11)

    def test_vector_valued_shapes(self):
        element = create_element("N1curl", "TET4", 1)
        points, _ = get_quadrature(basix.CellType.tetrahedron, 2)
        vals, grads = get_shape_vals_and_grads(element, points)
        assert vals.shape == (len(points), 6, 3)
        assert grads.shape == (len(points), 6, 3, 3)

    def test_nodal_property(self):
        """P2 shape functions are the identity at the element's own points."""
        element = create_element("P", "TRI3", 2)
        vals, _ = get_shape_vals_and_grads(element, element.points)
        np.testing.assert_allclose(vals[:, :, 0], np.eye(6), atol=1e-12)


class TestFaceQuadrature:
    """Test facet quadrature mapped into the reference cell."""

    def test_triangle_facets(self):
        face_points, face_weights, face_normals, face_inds = get_face_quadrature(
            basix.CellType.triangle, basix.CellType.interval, 2)
        assert face_points.shape[0] == 3
        assert face_points.shape[2] == 2
        # Facet 0 is the hypotenuse, the others have unit length.
        np.testing.assert_allclose(np.sum(face_weights, axis=1), [np.sqrt(2.), 1., 1.], rtol=1e-12)
        np.testing.assert_allclose(np.sum(face_points[0], axis=1), 1., atol=1e-12)
        np.testing.assert_allclose(np.linalg.norm(face_normals, axis=1), 1., rtol=1e-12)
        assert face_inds[0] == [1, 2]

    def test_hexahedron_facets(self):
        face_points, face_weights, face_normals, _ = get_face_quadrature(
            basix.CellType.hexahedron, basix.CellType.quadrilateral, 2)
        assert face_points.shape[0] == 6
        np.testing.assert_allclose(np.sum(face_weights, axis=1), 1., rtol=1e-12)
        for f in range(6):
            # Every quadrature point lies on the plane of its facet.
            offsets = face_points[f] @ face_normals[f]
            np.testing.assert_allclose(offsets, offsets[0], atol=1e-12)

    def test_interval_facets(self):
        face_points, face_weights, face_normals, _ = get_face_quadrature(
            basix.CellType.interval, basix.CellType.point, 2)
        np.testing.assert_allclose(face_points[:, 0, 0], [0., 1.], atol=1e-14)
        np.testing.assert_allclose(face_weights, [[1.], [1.]])
        np.testing.assert_allclose(face_normals, [[-1.], [1.]])


class TestEdgeQuadrature:

    def test_tetrahedron_edges(self):
        edge_points, weights, tangents = get_edge_quadrature(basix.CellType.tetrahedron, 2)
        assert edge_points.shape[0] == 6
        np.testing.assert_allclose(np.sum(weights), 1., rtol=1e-12)
        edges = basix.topology(basix.CellType.tetrahedron)[1]
        vertices = basix.geometry(basix.CellType.tetrahedron)
        for e, (v0, v1) in enumerate(edges):
            np.testing.assert_allclose(tangents[e], vertices[v1] - vertices[v0], atol=1e-14)


class TestClosureDofs:

    def test_p2_triangle_facet(self):
        """The hypotenuse carries vertices 1 and 2 and the DoF of edge 0."""
        element = create_element("P", "TRI3", 2)
        assert closure_dofs(element, basix.CellType.triangle, 1, 0) == [1, 2, 3]

    def test_hexahedron_face(self):
        element = create_element("Q", "HEX8", 1)
        dofs = closure_dofs(element, basix.CellType.hexahedron, 2, 0)
        assert dofs == [0, 1, 2, 3]

    def test_nedelec_interior_facet_dofs(self):
        """Lowest-order Nedelec DoFs live on edges only."""
        element = create_element("N1curl", "TET4", 1)
        assert closure_dofs(element, basix.CellType.tetrahedron, 2, 0) == sorted(
            sum((list(element.entity_dofs[1][e])
                 for e in basix.cell.sub_entity_connectivity(basix.CellType.tetrahedron)[2][0][1]), []))
