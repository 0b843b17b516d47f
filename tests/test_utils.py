"""
Tests for projax.utils.save_as_vtk.
"""
import pytest
import numpy as np
import meshio

from projax.fem.fe import FiniteElement
from projax.norms import integrate_difference, NormType
from projax.utils import save_as_vtk


class TestSaveAsVtk:

    def test_cell_and_point_data(self, tri_mesh, temp_workspace):
        fe = FiniteElement(tri_mesh, "P", 1)
        errors = integrate_difference(fe, np.zeros(fe.num_total_dofs), lambda x: x[0],
                                      NormType.L2_norm)
        sol_file = temp_workspace / "vtk" / "errors.vtu"
        save_as_vtk(fe, str(sol_file), cell_infos=[("error", errors)],
                    point_infos=[("x", tri_mesh.points[:, 0])])
        assert sol_file.exists()
        written = meshio.read(str(sol_file))
        assert written.points.shape == (tri_mesh.num_points, 3)
        np.testing.assert_allclose(written.cell_data["error"][0].reshape(-1), errors, rtol=1e-6)
        np.testing.assert_allclose(written.point_data["x"], tri_mesh.points[:, 0], rtol=1e-6)

    def test_hexahedra(self, hex_mesh, temp_workspace):
        fe = FiniteElement(hex_mesh, "Q", 1)
        sol_file = temp_workspace / "hex.vtu"
        save_as_vtk(fe, str(sol_file), cell_infos=[("id", np.arange(hex_mesh.num_cells))])
        written = meshio.read(str(sol_file))
        assert written.cells_dict["hexahedron"].shape == (hex_mesh.num_cells, 8)

    def test_requires_data(self, tri_mesh, temp_workspace):
        fe = FiniteElement(tri_mesh, "P", 1)
        with pytest.raises(ValueError):
            save_as_vtk(fe, str(temp_workspace / "empty.vtu"))
