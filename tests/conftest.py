"""
Pytest configuration and fixtures for projax tests.

This configuration ensures environment validation tests run first
before any other tests to verify the development environment is
properly set up, and provides the small meshes shared by the
engine tests.
"""
import pytest
import sys

import numpy as np


def pytest_collection_modifyitems(config, items):
    """Modify test collection to prioritize environment tests.

    Args:
        config: pytest configuration object
        items: List of collected test items
    """
    env_tests = []
    other_tests = []

    for item in items:
        if "test_environment.py" in str(item.fspath):
            env_tests.append(item)
        else:
            other_tests.append(item)

    env_test_priority = {
        "test_python_version": 1,
        "test_numpy_available": 2,
        "test_jax_available": 3,
        "test_jax_x64_enabled": 4,
        "test_basix_available": 5,
        "test_projax_importable": 99,  # Package tests last in env
    }

    def get_env_test_priority(item):
        """Get priority for environment test ordering."""
        test_name = item.name.split("[")[0]  # Remove parametrization
        return env_test_priority.get(test_name, 50)

    env_tests.sort(key=get_env_test_priority)

    items[:] = env_tests + other_tests


def pytest_sessionstart(session):
    """Print information about test execution order."""
    print("\n" + "="*60)
    print("projax Test Suite")
    print("="*60)
    print("Environment validation tests will run first")
    print("Warnings are automatically suppressed")
    print("="*60)


def pytest_runtest_setup(item):
    """Add the environment validation marker to environment tests."""
    if "test_environment.py" in str(item.fspath):
        if not hasattr(item, "pytestmark"):
            item.pytestmark = []
        env_marker = pytest.mark.env_validation
        if env_marker not in item.pytestmark:
            item.pytestmark.append(env_marker)


@pytest.fixture(scope="session", autouse=True)
def validate_environment():
    """Session-scoped fixture to validate basic environment setup.

    Yields:
        dict: Environment validation results
    """
    validation_results = {}
    validation_results["python_version"] = sys.version_info
    validation_results["numpy_version"] = np.__version__

    import jax
    validation_results["jax_devices"] = len(jax.devices())

    yield validation_results


@pytest.fixture
def temp_workspace(tmp_path):
    """Provide a temporary workspace for tests that need file I/O.

    Returns:
        Path: Temporary directory path
    """
    workspace = tmp_path / "test_workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def tri_mesh():
    """Unit square split into 4 x 4 x 2 triangles."""
    from projax.fem.mesh import rectangle_mesh
    return rectangle_mesh(4, 4, 1., 1., ele_type="TRI3")


@pytest.fixture
def quad_mesh():
    """Unit square with 4 x 4 quadrilaterals."""
    from projax.fem.mesh import rectangle_mesh
    return rectangle_mesh(4, 4, 1., 1., ele_type="QUAD4")


@pytest.fixture
def tet_mesh():
    """Unit cube with 2 x 2 x 2 boxes, each split into six tetrahedra."""
    from projax.fem.mesh import box_mesh
    return box_mesh(2, 2, 2, 1., 1., 1., ele_type="TET4")


@pytest.fixture
def hex_mesh():
    """Unit cube with 2 x 2 x 2 hexahedra."""
    from projax.fem.mesh import box_mesh
    return box_mesh(2, 2, 2, 1., 1., 1., ele_type="HEX8")


@pytest.fixture
def line_mesh():
    """Unit interval with 4 segments."""
    from projax.fem.mesh import interval_mesh
    return interval_mesh(4, 1.)


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "env_validation: mark test as environment validation"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
