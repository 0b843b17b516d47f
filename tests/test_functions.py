"""
Tests for projax.functions.
"""
import pytest
import numpy as np
import jax.numpy as jnp

from projax.functions import (Function, ConstantFunction, ZeroFunction, ComponentSelectFunction,
                              FunctionLike, as_function, check_components)


class Paraboloid:
    """A user-defined function that only provides ``n_components`` and ``evaluate``."""
    n_components = 1

    def evaluate(self, point):
        return jnp.sum(point**2)


class TestFunction:

    def test_batched_values(self):
        f = Function(lambda x: jnp.array([x[0], x[0] * x[1]]), 2)
        points = np.array([[[1., 2.], [3., 4.]]])
        values = f.values(points)
        assert values.shape == (1, 2, 2)
        np.testing.assert_allclose(values[0, 1], [3., 12.])

    def test_automatic_gradient(self):
        f = Function(lambda x: x[0]**2 + 3. * x[1])
        grads = f.gradients(np.array([[2., 0.]]))
        np.testing.assert_allclose(grads[0], [[4., 3.]])

    def test_explicit_gradient(self):
        f = Function(lambda x: x[0], gradient=lambda x: jnp.array([[7., 7.]]))
        np.testing.assert_allclose(f.gradients(np.zeros((1, 2)))[0], [[7., 7.]])

    def test_evaluate(self):
        f = Function(lambda x: 2. * x[0])
        np.testing.assert_allclose(f([1.5, 0.]), [3.])

    def test_empty_points(self):
        f = Function(lambda x: x[0], 1)
        assert f.values(np.zeros((0, 2))).shape == (0, 1)


class TestConstants:

    def test_constant(self):
        f = ConstantFunction([1., 2.])
        assert f.n_components == 2
        np.testing.assert_allclose(f.values(np.zeros((3, 2))), [[1., 2.]] * 3)
        np.testing.assert_allclose(f.gradients(np.zeros((1, 2))), 0.)

    def test_zero(self):
        f = ZeroFunction(3)
        np.testing.assert_array_equal(f.evaluate([1., 1.]), [0., 0., 0.])

    def test_component_select(self):
        f = ComponentSelectFunction((1, 3), 4, value=2.)
        np.testing.assert_array_equal(f.evaluate([0., 0.]), [0., 2., 2., 0.])
        g = ComponentSelectFunction(0, 2)
        np.testing.assert_array_equal(g.evaluate([0., 0.]), [1., 0.])


class TestAsFunction:

    def test_protocol_object(self):
        obj = Paraboloid()
        assert isinstance(obj, FunctionLike)
        f = as_function(obj)
        np.testing.assert_allclose(f.values(np.array([[1., 2.]])), [[5.]])
        np.testing.assert_allclose(f.gradients(np.array([[1., 2.]])), [[[2., 4.]]])

    def test_scalar_constant(self):
        f = as_function(3., 2)
        np.testing.assert_array_equal(f.evaluate([0., 0.]), [3., 3.])

    def test_callable(self):
        f = as_function(lambda x: x, 2)
        assert f.n_components == 2

    def test_passthrough(self):
        f = Function(lambda x: x[0])
        assert as_function(f) is f

    def test_check_components(self):
        with pytest.raises(ValueError):
            check_components(ConstantFunction([1., 2.]), 3)
