"""
Tests for projax.fem.mapping module.
"""
import pytest
import numpy as np
import basix

from projax.fem.mapping import (
    DegenerateCellError,
    tabulate_geometry,
    compute_jacobians,
    physical_points,
    jacobian_determinants,
    inverse_jacobians,
    check_jacobians,
    in_reference_cell,
    inverse_map,
)

pytestmark = pytest.mark.integration


def _jacobian(cell, coords, X):
    _, geo_grads = tabulate_geometry(cell, np.atleast_2d(X))
    return np.asarray(compute_jacobians(coords[None], geo_grads))[0, 0]


class TestJacobians:

    def test_scaled_triangle(self):
        coords = np.array([[0., 0.], [2., 0.], [0., 3.]])
        J = _jacobian(basix.CellType.triangle, coords, [1. / 3., 1. / 3.])
        np.testing.assert_allclose(J, [[2., 0.], [0., 3.]], atol=1e-14)
        np.testing.assert_allclose(jacobian_determinants(J), 6., rtol=1e-14)
        np.testing.assert_allclose(inverse_jacobians(J) @ J, np.eye(2), atol=1e-14)

    def test_bilinear_quadrilateral(self):
        """The Jacobian of a trapezoid varies over the cell."""
        coords = np.array([[0., 0.], [2., 0.], [0., 1.], [1., 1.]])
        J0 = _jacobian(basix.CellType.quadrilateral, coords, [0., 0.])
        J1 = _jacobian(basix.CellType.quadrilateral, coords, [0., 1.])
        np.testing.assert_allclose(J0[:, 0], [2., 0.], atol=1e-14)
        np.testing.assert_allclose(J1[:, 0], [1., 0.], atol=1e-14)

    def test_codimension_one(self):
        """A triangle in 3-D has the Gram determinant and a left pseudo-inverse."""
        coords = np.array([[0., 0., 1.], [2., 0., 1.], [0., 2., 1.]])
        J = _jacobian(basix.CellType.triangle, coords, [0.2, 0.2])
        assert J.shape == (3, 2)
        np.testing.assert_allclose(jacobian_determinants(J), 4., rtol=1e-14)
        K = np.asarray(inverse_jacobians(J))
        assert K.shape == (2, 3)
        np.testing.assert_allclose(K @ J, np.eye(2), atol=1e-14)

    def test_physical_points(self):
        coords = np.array([[[1., 1.], [3., 1.], [1., 2.]]])
        geo_vals, _ = tabulate_geometry(basix.CellType.triangle, np.array([[0.5, 0.5]]))
        x = np.asarray(physical_points(coords, geo_vals))
        np.testing.assert_allclose(x[0, 0], [2., 1.5], atol=1e-14)


class TestDegenerateCells:

    def test_collinear_triangle(self):
        coords = np.array([[[0., 0.], [1., 0.], [2., 0.]]])
        _, geo_grads = tabulate_geometry(basix.CellType.triangle, np.array([[0.2, 0.2]]))
        detJ = jacobian_determinants(compute_jacobians(coords, geo_grads))
        with pytest.raises(DegenerateCellError):
            check_jacobians(detJ, coords, np.array([7]), 2)

    def test_regular_cell_passes(self):
        coords = np.array([[[0., 0.], [1., 0.], [0., 1.]]])
        _, geo_grads = tabulate_geometry(basix.CellType.triangle, np.array([[0.2, 0.2]]))
        detJ = jacobian_determinants(compute_jacobians(coords, geo_grads))
        check_jacobians(detJ, coords, np.array([0]), 2)


class TestInverseMap:

    def test_quadrilateral(self):
        coords = np.array([[0., 0.], [2., 0.], [0., 2.], [2., 2.]])
        X, distance = inverse_map(coords, np.array([0.5, 1.5]), basix.CellType.quadrilateral)
        np.testing.assert_allclose(X, [0.25, 0.75], atol=1e-12)
        assert distance < 1e-12

    def test_off_surface_distance(self):
        """A point above a surface triangle reports its distance to the plane."""
        coords = np.array([[0., 0., 0.], [1., 0., 0.], [0., 1., 0.]])
        X, distance = inverse_map(coords, np.array([0.25, 0.25, 0.5]), basix.CellType.triangle)
        np.testing.assert_allclose(X, [0.25, 0.25], atol=1e-12)
        np.testing.assert_allclose(distance, 0.5, atol=1e-12)

    @pytest.mark.parametrize("cell,X,inside", [
        (basix.CellType.triangle, [0.5, 0.5], True),
        (basix.CellType.triangle, [0.6, 0.5], False),
        (basix.CellType.quadrilateral, [1., 0.], True),
        (basix.CellType.hexahedron, [0.5, 0.5, 1.1], False),
    ])
    def test_in_reference_cell(self, cell, X, inside):
        assert in_reference_cell(cell, np.array(X)) == inside
