"""Linear solvers for mass-matrix systems.

The projection engines only ever solve symmetric positive definite systems
(cell and facet mass matrices, possibly condensed by affine constraints).
This module offers one dispatch point, ``linear_solver``, over several
backends selected through a ``solver_options`` dict:

    - 'scipy_solver' (default): unpreconditioned conjugate gradients from SciPy
    - 'jax_solver': conjugate gradients from ``jax.scipy.sparse.linalg`` on a
      BCOO matrix, optionally Jacobi preconditioned
    - 'petsc_solver': a PETSc KSP (``ksp_type='cg'``, ``pc_type='none'`` by default)
    - 'custom_solver': a user callable ``f(A, b, x0, solver_options)``

Each backend verifies convergence and raises ``SolverError`` otherwise, so a
failed solve never returns a silently wrong vector.

Example:
    >>> options = {'scipy_solver': {'rtol': 1e-12}}
    >>> x = linear_solver(A, b, x0, options)
"""

import jax
import jax.numpy as np
import numpy as onp
from jax.experimental.sparse import BCOO
import scipy
import scipy.sparse
import scipy.sparse.linalg
from typing import Dict, Optional, Any

from projax.fem import logger


DEFAULT_RTOL = 1e-12
DEFAULT_ATOL = 1e-14


class SolverError(RuntimeError):
    """Raised when a linear solve does not converge."""


def _check_residual(A, b, x, rtol, atol, backend):
    err = onp.linalg.norm(A @ x - b)
    bound = max(rtol * onp.linalg.norm(b), atol)
    logger.debug(f"{backend} - Finished solving, linear solve res = {err}")
    if not onp.isfinite(err) or err > 100. * bound:
        raise SolverError(f"{backend} linear solver failed to converge, err = {err}")


def scipy_solve(A, b, x0, rtol, atol, maxiter):
    """Solve with SciPy's conjugate gradient method, without preconditioning."""
    logger.debug(f"Scipy Solver - Solving linear system of size {A.shape[0]} with CG")
    x, info = scipy.sparse.linalg.cg(A, b, x0=x0, rtol=rtol, atol=atol, maxiter=maxiter)
    if info != 0:
        raise SolverError(f"Scipy CG did not converge (info = {info})")
    _check_residual(A, b, x, rtol, atol, "Scipy Solver")
    return x


def jax_solve(A, b, x0, precond, rtol, atol, maxiter):
    """Solves the system with JAX's conjugate gradient method.

    Args:
        A: System matrix (SciPy sparse).
        b: Right-hand side vector.
        x0: Initial guess.
        precond (bool): Whether to apply Jacobi preconditioning.
    """
    logger.debug(f"JAX Solver - Solving linear system")
    A_bcoo = BCOO.from_scipy_sparse(A).sort_indices()
    jacobi = np.array(A.diagonal())
    pc = (lambda x: x * (1.0 / jacobi)) if precond else None
    x, _ = jax.scipy.sparse.linalg.cg(
        lambda v: A_bcoo @ v, np.array(b), x0=np.array(x0), M=pc, tol=rtol, atol=atol,
        maxiter=maxiter
    )
    x = onp.asarray(x)
    _check_residual(A, b, x, rtol, atol, "JAX Solver")
    return x


def petsc_solve(A, b, ksp_type, pc_type, rtol, atol, maxiter):
    """Solve with a PETSc Krylov method.

    petsc4py is an optional dependency and is imported on first use.
    """
    from petsc4py import PETSc

    A = scipy.sparse.csr_array(A)
    A_petsc = PETSc.Mat().createAIJ(
        size=A.shape,
        csr=(A.indptr.astype(PETSc.IntType), A.indices.astype(PETSc.IntType), A.data))
    A_petsc.assemble()
    rhs = PETSc.Vec().createSeq(len(b))
    rhs.setValues(range(len(b)), onp.array(b))
    rhs.assemble()
    ksp = PETSc.KSP().create()
    ksp.setOperators(A_petsc)
    ksp.setFromOptions()
    ksp.setType(ksp_type)
    ksp.pc.setType(pc_type)
    ksp.setTolerances(rtol=rtol, atol=atol, max_it=maxiter)

    logger.debug(
        f"PETSc Solver - Solving linear system with ksp_type = {ksp.getType()}, pc = {ksp.pc.getType()}"
    )
    x = PETSc.Vec().createSeq(len(b))
    ksp.solve(rhs, x)
    reason = ksp.getConvergedReason()

    solution = x.getArray().copy()
    rhs.destroy()
    x.destroy()
    ksp.destroy()
    A_petsc.destroy()

    if reason < 0:
        raise SolverError(f"PETSc KSP diverged with reason {reason}")
    _check_residual(A, b, solution, rtol, atol, "PETSc Solver")
    return solution


def linear_solver(A, b, x0, solver_options: Optional[Dict[str, Any]] = None):
    """Unified interface for the linear solver backends.

    Args:
        A (scipy.sparse.csr_array): SPD system matrix.
        b (numpy.ndarray): Right-hand side vector.
        x0 (numpy.ndarray): Initial guess.
        solver_options (dict, optional): Backend selection, one of
            'scipy_solver', 'jax_solver', 'petsc_solver', 'custom_solver'.
            Backend dicts accept 'rtol', 'atol' and 'maxiter'; 'jax_solver'
            also 'precond', 'petsc_solver' also 'ksp_type' and 'pc_type'.

    Returns:
        numpy.ndarray: Solution vector x.

    Raises:
        SolverError: If the backend does not converge.
        NotImplementedError: If no valid solver is specified in options.
    """
    solver_options = dict(solver_options or {})
    if (
        len(
            solver_options.keys()
            & {"scipy_solver", "jax_solver", "petsc_solver", "custom_solver"}
        )
        == 0
    ):
        solver_options["scipy_solver"] = {}

    b = onp.asarray(b, dtype=onp.float64)
    if x0 is None:
        x0 = onp.zeros_like(b)
    if len(b) == 0:
        return onp.zeros(0)

    def option(key, name, default):
        return solver_options[key].get(name, default)

    if "scipy_solver" in solver_options:
        x = scipy_solve(A, b, x0,
                        option("scipy_solver", "rtol", DEFAULT_RTOL),
                        option("scipy_solver", "atol", DEFAULT_ATOL),
                        option("scipy_solver", "maxiter", 10 * len(b) + 100))
    elif "jax_solver" in solver_options:
        x = jax_solve(A, b, x0,
                      option("jax_solver", "precond", False),
                      option("jax_solver", "rtol", DEFAULT_RTOL),
                      option("jax_solver", "atol", DEFAULT_ATOL),
                      option("jax_solver", "maxiter", 10 * len(b) + 100))
    elif "petsc_solver" in solver_options:
        x = petsc_solve(A, b,
                        option("petsc_solver", "ksp_type", "cg"),
                        option("petsc_solver", "pc_type", "none"),
                        option("petsc_solver", "rtol", DEFAULT_RTOL),
                        option("petsc_solver", "atol", DEFAULT_ATOL),
                        option("petsc_solver", "maxiter", 10 * len(b) + 100))
    elif "custom_solver" in solver_options:
        # Users can define their own solver
        custom_solver = solver_options["custom_solver"]
        x = custom_solver(A, b, x0, solver_options)
    else:
        raise NotImplementedError(f"Unknown linear solver.")

    return onp.asarray(x)


def solve_constrained(A, b, constraints=None, solver_options=None):
    """Solve ``A x = b`` subject to affine constraints.

    The constraints are eliminated through the prolongation ``x = P y + k``
    and the reduced SPD system ``P^T A P y = P^T (b - A k)`` is solved.

    Args:
        A (scipy.sparse.csr_array): SPD matrix.
        b (numpy.ndarray): Right-hand side.
        constraints (AffineConstraints, optional): Closed automatically if needed.
        solver_options (dict, optional): See ``linear_solver``.

    Returns:
        numpy.ndarray: The constrained solution, satisfying every line exactly.
    """
    n_dofs = A.shape[0]
    if constraints is None or len(constraints) == 0:
        return linear_solver(A, b, onp.zeros(n_dofs), solver_options)

    P, k = constraints.prolongation(n_dofs)
    A_reduced = scipy.sparse.csr_array(P.T @ A @ P)
    b_reduced = P.T @ (onp.asarray(b) - A @ k)
    logger.debug(f"Condensed system: {n_dofs} dofs -> {A_reduced.shape[0]} free dofs")
    if A_reduced.shape[0] == 0:
        return k
    y = linear_solver(A_reduced, b_reduced, onp.zeros(A_reduced.shape[0]), solver_options)
    return P @ y + k
