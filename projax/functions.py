"""Continuous functions accepted by the engines.

Any object with an ``n_components`` attribute and an ``evaluate(point)``
method satisfies ``FunctionLike``; no base class is required. The engines
wrap such objects (and plain callables) into ``Function``, which evaluates
batches of points with ``jax.vmap`` and differentiates with ``jax.jacfwd``
when no explicit gradient is supplied. Wrapped callables must therefore be
JAX-traceable (use ``jax.numpy`` inside them).
"""
from typing import Callable, Optional, Protocol, runtime_checkable

import jax
import jax.numpy as np
import numpy as onp


@runtime_checkable
class FunctionLike(Protocol):
    n_components: int

    def evaluate(self, point):
        ...


class Function:
    """A vector-valued function of a point.

    Args:
        fn (Callable): Maps a point of shape (spacedim,) to a scalar or an
            array of ``n_components`` values.
        n_components (int): Number of components.
        gradient (Callable, optional): Maps a point to an array of shape
            (n_components, spacedim). Defaults to ``jax.jacfwd`` of ``fn``.
    """

    def __init__(self, fn: Callable, n_components: int = 1, gradient: Optional[Callable] = None):
        self.fn = fn
        self.n_components = n_components
        self.gradient = gradient

    def _value(self, x):
        return np.reshape(np.asarray(self.fn(x), dtype=np.float64), (self.n_components,))

    def _gradient(self, x):
        if self.gradient is not None:
            return np.reshape(np.asarray(self.gradient(x), dtype=np.float64),
                              (self.n_components, x.shape[-1]))
        return jax.jacfwd(self._value)(x)

    def evaluate(self, point):
        return onp.asarray(self._value(np.asarray(point, dtype=np.float64)))

    def __call__(self, point):
        return self.evaluate(point)

    def values(self, points):
        """Evaluate at points of shape (..., spacedim); returns (..., n_components)."""
        points = onp.asarray(points, dtype=onp.float64)
        flat = points.reshape(-1, points.shape[-1])
        if flat.shape[0] == 0:
            return onp.zeros(points.shape[:-1] + (self.n_components,))
        vals = jax.vmap(self._value)(flat)
        return onp.asarray(vals).reshape(points.shape[:-1] + (self.n_components,))

    def gradients(self, points):
        """Gradients at points of shape (..., spacedim); returns (..., n_components, spacedim)."""
        points = onp.asarray(points, dtype=onp.float64)
        flat = points.reshape(-1, points.shape[-1])
        if flat.shape[0] == 0:
            return onp.zeros(points.shape[:-1] + (self.n_components, points.shape[-1]))
        grads = jax.vmap(self._gradient)(flat)
        return onp.asarray(grads).reshape(points.shape[:-1] + (self.n_components, points.shape[-1]))


class ConstantFunction(Function):
    """A function with the same value everywhere."""

    def __init__(self, value, n_components: Optional[int] = None):
        value = onp.atleast_1d(onp.asarray(value, dtype=onp.float64))
        if n_components is not None and value.size == 1:
            value = onp.full(n_components, value[0])
        self.value = value
        constant = np.asarray(value)
        super().__init__(lambda x: constant + 0. * x[0], len(value))


class ZeroFunction(ConstantFunction):

    def __init__(self, n_components: int = 1):
        super().__init__(0., n_components)


class ComponentSelectFunction(ConstantFunction):
    """Constant weight equal to ``value`` on a component range and zero elsewhere.

    Args:
        selected (int or tuple): One component, or a half-open ``(start, end)`` range.
        n_components (int): Total number of components.
        value (float): Weight on the selected components.
    """

    def __init__(self, selected, n_components: int, value: float = 1.):
        if isinstance(selected, (int, onp.integer)):
            selected = (int(selected), int(selected) + 1)
        weights = onp.zeros(n_components)
        weights[selected[0]:selected[1]] = value
        super().__init__(weights)


def as_function(obj, n_components: Optional[int] = None) -> Function:
    """Wrap callables, ``FunctionLike`` objects and constants into a ``Function``.

    Args:
        obj: A ``Function``, an object with ``n_components`` and ``evaluate``,
            a callable of one point, or a constant (scalar or array).
        n_components (int, optional): Component count for plain callables and
            scalar constants. Defaults to 1 for callables.
    """
    if isinstance(obj, Function):
        return obj
    if isinstance(obj, FunctionLike):
        return Function(obj.evaluate, obj.n_components, getattr(obj, "gradient", None))
    if callable(obj):
        return Function(obj, 1 if n_components is None else n_components)
    return ConstantFunction(obj, n_components)


def check_components(function: Function, expected: int, what: str = "function"):
    """Raise ``ValueError`` if ``function`` does not have ``expected`` components."""
    if function.n_components != expected:
        raise ValueError(
            f"The {what} has {function.n_components} components, expected {expected}")
