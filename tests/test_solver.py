"""
Tests for projax.fem.solver module.
"""
import pytest
import numpy as np
import scipy.sparse
import scipy.sparse.linalg

from projax.constraints import AffineConstraints
from projax.fem.solver import linear_solver, solve_constrained, SolverError


@pytest.fixture
def laplacian():
    """1-D Laplacian stencil with n = 6."""
    n = 6
    A = scipy.sparse.diags([-np.ones(n - 1), 2. * np.ones(n), -np.ones(n - 1)], [-1, 0, 1],
                           format="csr")
    b = np.arange(1., n + 1.)
    return scipy.sparse.csr_array(A), b


class TestLinearSolver:

    def test_default_backend(self, laplacian):
        A, b = laplacian
        x = linear_solver(A, b, None)
        np.testing.assert_allclose(A @ x, b, atol=1e-9)

    def test_jax_backend(self, laplacian):
        A, b = laplacian
        x = linear_solver(A, b, np.zeros_like(b), {"jax_solver": {"precond": True}})
        np.testing.assert_allclose(A @ x, b, atol=1e-9)

    def test_custom_backend(self, laplacian):
        A, b = laplacian
        calls = []

        def solve(A, b, x0, solver_options):
            calls.append(solver_options)
            return scipy.sparse.linalg.spsolve(A.tocsc(), b)

        x = linear_solver(A, b, None, {"custom_solver": solve})
        assert len(calls) == 1
        np.testing.assert_allclose(A @ x, b, atol=1e-9)

    def test_petsc_backend(self, laplacian):
        pytest.importorskip("petsc4py")
        A, b = laplacian
        x = linear_solver(A, b, None, {"petsc_solver": {}})
        np.testing.assert_allclose(A @ x, b, atol=1e-9)

    def test_no_convergence(self, laplacian):
        A, b = laplacian
        with pytest.raises(SolverError):
            linear_solver(A, b, None, {"scipy_solver": {"maxiter": 1}})

    def test_empty_system(self):
        A = scipy.sparse.csr_array((0, 0))
        assert linear_solver(A, np.zeros(0), None).shape == (0,)


class TestSolveConstrained:

    def test_dirichlet_rows(self, laplacian):
        A, b = laplacian
        constraints = AffineConstraints()
        constraints.add_boundary_values({0: 1., 5: -2.})
        x = solve_constrained(A, b, constraints)
        assert x[0] == 1. and x[5] == -2.
        np.testing.assert_allclose((A @ x - b)[1:5], 0., atol=1e-9)

    def test_general_constraint(self, laplacian):
        A, b = laplacian
        constraints = AffineConstraints()
        constraints.add_line(2, [(3, 1.)], 0.5)
        x = solve_constrained(A, b, constraints)
        np.testing.assert_allclose(x[2], x[3] + 0.5, atol=1e-12)

    def test_all_constrained(self, laplacian):
        A, b = laplacian
        constraints = AffineConstraints()
        constraints.add_boundary_values({i: float(i) for i in range(6)})
        np.testing.assert_array_equal(solve_constrained(A, b, constraints), np.arange(6.))

    def test_without_constraints(self, laplacian):
        A, b = laplacian
        x = solve_constrained(A, b)
        np.testing.assert_allclose(A @ x, b, atol=1e-9)
