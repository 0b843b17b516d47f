"""Error norms, point evaluation and mean values of discrete fields.

``integrate_difference`` computes one error measure per cell between a
discrete field and a reference function, and ``compute_global_error``
combines those into a single number with the aggregation rule belonging to
the norm:

    ==================  ============================================
    mean, L1_norm       sum of cell values
    L2_norm, H1_*,      root of the sum of squares
    Hdiv_seminorm
    Lp_norm, W1p_*      p-th root of the sum of p-th powers
    Linfty_norm,        maximum
    W1infty_seminorm
    W1infty_norm        undefined (aggregate its two summands separately)
    ==================  ============================================

Errors are always ``reference - discrete``. Only owned cells contribute.
"""
from enum import Enum
from functools import lru_cache
from typing import Optional

import jax
import jax.numpy as np
import numpy as onp

from projax.fem import logger
from projax.fem.basis import get_quadrature
from projax.functions import as_function, check_components


class NormType(Enum):
    mean = "mean"
    L1_norm = "L1_norm"
    L2_norm = "L2_norm"
    Lp_norm = "Lp_norm"
    Linfty_norm = "Linfty_norm"
    H1_seminorm = "H1_seminorm"
    Hdiv_seminorm = "Hdiv_seminorm"
    H1_norm = "H1_norm"
    W1p_seminorm = "W1p_seminorm"
    W1p_norm = "W1p_norm"
    W1infty_seminorm = "W1infty_seminorm"
    W1infty_norm = "W1infty_norm"

    def __str__(self):
        return self.value

    @classmethod
    def from_string(cls, name):
        """Parse a norm name such as ``'L2_norm'``.

        Raises:
            ValueError: If the name is not a norm type.
        """
        try:
            return cls(name)
        except ValueError:
            raise ValueError(
                f"Unknown norm type '{name}', expected one of {[n.value for n in cls]}") from None

    @property
    def uses_gradients(self):
        return self in GRADIENT_NORMS

    @property
    def uses_exponent(self):
        return self in (NormType.Lp_norm, NormType.W1p_norm, NormType.W1p_seminorm)


GRADIENT_NORMS = (NormType.H1_seminorm, NormType.Hdiv_seminorm, NormType.H1_norm,
                  NormType.W1p_seminorm, NormType.W1p_norm, NormType.W1infty_seminorm,
                  NormType.W1infty_norm)


class PointNotAvailableHere(LookupError):
    """The queried point lies in a cell owned by another process."""


def _as_norm(norm):
    if isinstance(norm, NormType):
        return norm
    return NormType.from_string(norm)


@lru_cache(maxsize=None)
def get_cell_error_kernel(norm, exponent, dim):
    """Build the jitted per-cell error kernel of a norm, once per (norm, exponent, dim).

    The kernel maps errors ``e`` (num_cells, num_quads, n_components), error
    gradients (num_cells, num_quads, n_components, spacedim), weights of the
    shape of ``e`` and ``JxW`` (num_cells, num_quads) to one value per cell.
    """
    p = exponent

    def integrate(density, JxW):
        return np.sum(density * JxW, axis=-1)

    def kernel(e, grad_e, w, JxW):
        abs_e = np.abs(e)
        grad_sq = np.sum(grad_e**2, axis=-1)
        grad_abs = np.sqrt(grad_sq)
        if norm == NormType.mean:
            return integrate(np.sum(e * w, axis=-1), JxW)
        if norm == NormType.L1_norm:
            return integrate(np.sum(abs_e * w, axis=-1), JxW)
        if norm == NormType.L2_norm:
            return np.sqrt(integrate(np.sum(e**2 * w, axis=-1), JxW))
        if norm == NormType.Lp_norm:
            return integrate(np.sum(abs_e**p * w, axis=-1), JxW)**(1. / p)
        if norm == NormType.Linfty_norm:
            return np.max(abs_e * w, axis=(1, 2))
        if norm == NormType.H1_seminorm:
            return np.sqrt(integrate(np.sum(grad_sq * w, axis=-1), JxW))
        if norm == NormType.Hdiv_seminorm:
            diagonal = np.stack([grad_e[:, :, c, c] for c in range(dim)], axis=-1)
            divergence = np.sum(diagonal * np.sqrt(w[:, :, :dim]), axis=-1)
            return np.sqrt(integrate(divergence**2, JxW))
        if norm == NormType.H1_norm:
            return np.sqrt(integrate(np.sum((e**2 + grad_sq) * w, axis=-1), JxW))
        if norm == NormType.W1p_seminorm:
            return integrate(np.sum(grad_abs**p * w, axis=-1), JxW)**(1. / p)
        if norm == NormType.W1p_norm:
            return integrate(np.sum((abs_e**p + grad_abs**p) * w, axis=-1), JxW)**(1. / p)
        if norm == NormType.W1infty_seminorm:
            return np.max(grad_abs * w, axis=(1, 2))
        if norm == NormType.W1infty_norm:
            return np.max(abs_e * w, axis=(1, 2)) + np.max(grad_abs * w, axis=(1, 2))
        raise NotImplementedError(f"Unknown norm {norm}")

    return jax.jit(kernel)


def _weights(weight, points, n_components):
    if weight is None:
        return onp.ones(points.shape[:-1] + (n_components,))
    values = weight.values(points)
    if weight.n_components == 1:
        return onp.broadcast_to(values, points.shape[:-1] + (n_components,))
    return values


def integrate_difference(fe, dof_vector, exact_solution, norm, gauss_order=None, weight=None,
                         exponent=2.):
    """Per-cell error between a discrete field and a reference function.

    Args:
        fe (FiniteElement): The space of ``dof_vector``.
        dof_vector (numpy.ndarray): Coefficients of the discrete field.
        exact_solution: Reference function with ``fe.n_components`` components.
            Gradients come from ``jax.jacfwd`` unless the function provides them.
        norm (NormType or str): The norm.
        gauss_order (int, optional): Quadrature degree. Defaults to ``fe.gauss_order``.
        weight (optional): Scalar weight, or one weight per component.
        exponent (float): ``p`` for Lp_norm, W1p_norm and W1p_seminorm; ignored otherwise.

    Returns:
        numpy.ndarray: One value per cell; zero on cells not owned here.

    Raises:
        ValueError: On component count mismatches, ``exponent < 1`` for a
            p-norm, or Hdiv_seminorm with fewer than ``dim`` components.
    """
    norm = _as_norm(norm)
    exact = as_function(exact_solution, fe.n_components)
    check_components(exact, fe.n_components, "reference function")
    if norm.uses_exponent and exponent < 1.:
        raise ValueError(f"{norm} needs an exponent >= 1, got {exponent}")
    if norm == NormType.Hdiv_seminorm and fe.n_components < fe.dim:
        raise ValueError(f"Hdiv_seminorm needs at least {fe.dim} components")
    if weight is not None:
        weight = as_function(weight)
        if weight.n_components not in (1, fe.n_components):
            raise ValueError(
                f"Weight must have 1 or {fe.n_components} components, got {weight.n_components}")

    if gauss_order is None:
        quad_points, quad_weights = fe.quad_points, fe.quad_weights
    else:
        quad_points, quad_weights = get_quadrature(fe.basix_ele, gauss_order)

    kernel = get_cell_error_kernel(norm, float(exponent), fe.dim)
    dof_vector = onp.asarray(dof_vector, dtype=onp.float64)
    cellwise_error = onp.zeros(fe.num_cells)
    for cell_ids in fe.cell_batches(fe.owned_cells()):
        cv = fe.cell_values(cell_ids, quad_points, quad_weights)
        e = exact.values(cv.points) - fe.function_values(dof_vector, cv)
        if norm.uses_gradients:
            exact_grads = exact.gradients(cv.points)
            if fe.spacedim > fe.dim:
                tangent_projector = onp.einsum('cqgt,cqth->cqgh', cv.jacobians, cv.inverse_jacobians)
                exact_grads = onp.einsum('cqkh,cqgh->cqkg', exact_grads, tangent_projector)
            grad_e = exact_grads - fe.function_grads(dof_vector, cv)
        else:
            grad_e = onp.zeros(e.shape + (fe.spacedim,))
        w = _weights(weight, cv.points, fe.n_components)
        cellwise_error[cell_ids] = onp.asarray(kernel(e, grad_e, w, cv.JxW))
    logger.debug(f"integrate_difference({norm}) on {len(fe.owned_cells())} owned cells")
    return cellwise_error


def _allreduce(comm, value, op):
    if comm is None:
        return value
    from mpi4py import MPI
    return comm.allreduce(value, op=MPI.MAX if op == "max" else MPI.SUM)


def compute_global_error(mesh, cellwise_error, norm, exponent=2., comm=None):
    """Aggregate per-cell errors over the owned cells.

    Args:
        mesh (Mesh): Mesh providing the ownership mask.
        cellwise_error (numpy.ndarray): Output of ``integrate_difference``.
        norm (NormType or str): The norm the cell values were computed with.
        exponent (float): ``p`` for Lp_norm, W1p_norm and W1p_seminorm.
        comm (optional): An mpi4py communicator for a collective reduction.

    Returns:
        float: The global error.

    Raises:
        ValueError: For W1infty_norm, whose two summands have to be
            aggregated separately.
    """
    norm = _as_norm(norm)
    values = onp.asarray(cellwise_error, dtype=onp.float64)[mesh.owned]
    if norm in (NormType.mean, NormType.L1_norm):
        return float(_allreduce(comm, float(onp.sum(values)), "sum"))
    if norm in (NormType.L2_norm, NormType.H1_seminorm, NormType.Hdiv_seminorm, NormType.H1_norm):
        return float(onp.sqrt(_allreduce(comm, float(onp.sum(values**2)), "sum")))
    if norm in (NormType.Lp_norm, NormType.W1p_norm, NormType.W1p_seminorm):
        return float(_allreduce(comm, float(onp.sum(values**exponent)), "sum")**(1. / exponent))
    if norm in (NormType.Linfty_norm, NormType.W1infty_seminorm):
        local = float(onp.max(values)) if len(values) else 0.
        return float(_allreduce(comm, local, "max"))
    raise ValueError(
        f"{norm} has no global aggregation; compute Linfty_norm and W1infty_seminorm "
        f"separately and add them")


def _point_cell_values(fe, point):
    cell_id, X = fe.mesh.find_cell(point)
    if not fe.mesh.owned[cell_id]:
        raise PointNotAvailableHere(f"Point {list(point)} lies in cell {cell_id}, not owned here")
    return fe.cell_values([cell_id], X[None, :], onp.ones(1))


def point_value(fe, dof_vector, point):
    """Value of a discrete field at a point, shape (n_components,).

    Raises:
        PointNotAvailableHere: If the containing cell is not owned.
        ValueError: If the point is outside the mesh.
    """
    cv = _point_cell_values(fe, point)
    return fe.function_values(dof_vector, cv)[0, 0]


def point_gradient(fe, dof_vector, point):
    """Gradient of a discrete field at a point, shape (n_components, spacedim)."""
    cv = _point_cell_values(fe, point)
    return fe.function_grads(dof_vector, cv)[0, 0]


def point_difference(fe, dof_vector, exact_solution, point):
    """``exact(point) - u_h(point)`` per component."""
    exact = as_function(exact_solution, fe.n_components)
    check_components(exact, fe.n_components, "reference function")
    return exact.evaluate(point) - point_value(fe, dof_vector, point)


def compute_mean_value(fe, dof_vector, component, gauss_order=None, comm=None):
    """Integral mean ``(int u_c) / |Omega|`` of one component over the owned cells."""
    if not 0 <= component < fe.n_components:
        raise ValueError(f"Component {component} out of range for {fe.n_components} components")
    if gauss_order is None:
        quad_points, quad_weights = fe.quad_points, fe.quad_weights
    else:
        quad_points, quad_weights = get_quadrature(fe.basix_ele, gauss_order)
    integral = 0.
    volume = 0.
    for cell_ids in fe.cell_batches(fe.owned_cells()):
        cv = fe.cell_values(cell_ids, quad_points, quad_weights)
        u = fe.function_values(dof_vector, cv)[..., component]
        integral += float(onp.sum(u * cv.JxW))
        volume += float(onp.sum(cv.JxW))
    integral = _allreduce(comm, integral, "sum")
    volume = _allreduce(comm, volume, "sum")
    return integral / volume


def subtract_mean_value(vector, selected: Optional[onp.ndarray] = None):
    """Subtract the algebraic mean of the selected entries from those entries.

    Args:
        vector (numpy.ndarray): Input vector (not modified).
        selected (numpy.ndarray, optional): Boolean mask; all entries if None.

    Returns:
        numpy.ndarray: The shifted copy.
    """
    vector = onp.array(vector, dtype=onp.float64)
    if selected is None:
        selected = onp.ones(len(vector), dtype=bool)
    selected = onp.asarray(selected, dtype=bool)
    if selected.shape != vector.shape:
        raise ValueError("Selection mask must match the vector length")
    if not selected.any():
        raise ValueError("At least one entry must be selected")
    vector[selected] -= onp.mean(vector[selected])
    return vector
