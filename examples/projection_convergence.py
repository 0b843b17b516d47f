import jax.numpy as np
import numpy as onp
import os
from projax.fem.mesh import rectangle_mesh
from projax.fem.fe import FiniteElement
from projax.projection import project
from projax.norms import integrate_difference, compute_global_error, NormType
from projax.utils import save_as_vtk
from projax.fem import logger

data_dir = os.path.join(os.path.dirname(__file__), 'data')
vtk_path = os.path.join(data_dir, f'vtk/errors.vtu')

# Target field.
def f(x):
    return np.sin(np.pi * x[0]) * np.cos(np.pi * x[1])

degree = 2
ele_type = "TRI3"
L = 1.0

errors = []
sizes = [4, 8, 16, 32]
for N in sizes:
    mesh = rectangle_mesh(N, N, L, L, ele_type)
    fe = FiniteElement(mesh, 'P', degree)
    u = project(fe, f, project_to_boundary_first=True, solver_options={'scipy_solver': {}})
    cellwise = integrate_difference(fe, u, f, NormType.L2_norm, gauss_order=2 * degree + 2)
    errors.append(compute_global_error(mesh, cellwise, NormType.L2_norm))
    logger.info(f"N = {N}: L2 error = {errors[-1]:.3e}")

rates = onp.log2(onp.array(errors[:-1]) / onp.array(errors[1:]))
logger.info(f"Observed L2 convergence rates: {rates}")

# Cell-wise H1 error of the finest projection.
cellwise = integrate_difference(fe, u, f, NormType.H1_seminorm)
save_as_vtk(fe, vtk_path, cell_infos=[('H1_error', cellwise)],
            point_infos=[('u', u[:mesh.num_points])])
