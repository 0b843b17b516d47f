import numpy as onp
from projax.fem.mesh import get_meshio_cell_type
import meshio
import os


def save_as_vtk(fe, sol_file, cell_infos=None, point_infos=None):
    """Write cell-wise and per-vertex data of a finite element space to a VTK file.

    Args:
        fe (FiniteElement): Space whose mesh is written.
        sol_file (str): Output path; missing directories are created.
        cell_infos (list, optional): (name, data) pairs with ``num_cells`` rows,
            e.g. the output of ``integrate_difference``.
        point_infos (list, optional): (name, data) pairs with ``num_points`` rows.
    """
    if cell_infos is None and point_infos is None:
        raise ValueError("At least one of cell_infos or point_infos must be provided.")
    mesh = fe.mesh
    cell_type = get_meshio_cell_type(mesh.ele_type)
    sol_dir = os.path.dirname(sol_file)
    if sol_dir:
        os.makedirs(sol_dir, exist_ok=True)

    points = mesh.points
    if points.shape[1] < 3:
        # VTK expects three coordinates
        points = onp.hstack([points, onp.zeros((mesh.num_points, 3 - points.shape[1]))])
    out_mesh = meshio.Mesh(points=points, cells={cell_type: mesh.cells})

    if cell_infos is not None:
        out_mesh.cell_data = {}
        for name, data in cell_infos:
            data = onp.asarray(data, dtype=onp.float32)
            assert data.shape[0] == mesh.num_cells, (
                f"cell data wrong shape, got {data.shape}, expected first dim = {mesh.num_cells}"
            )
            if data.ndim == 1:
                data = data.reshape(mesh.num_cells, 1)
            else:
                data = data.reshape(mesh.num_cells, -1)
            out_mesh.cell_data[name] = [data]

    if point_infos is not None:
        for name, data in point_infos:
            data = onp.asarray(data, dtype=onp.float32)
            assert data.shape[0] == mesh.num_points, (
                f"point data wrong shape, got {data.shape}, expected first dim = {mesh.num_points}"
            )
            out_mesh.point_data[name] = data

    out_mesh.write(sol_file)
