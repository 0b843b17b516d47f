"""
Global warnings configuration for projax.

This module configures warning filters to suppress known harmless warnings
from dependencies.
"""
import warnings


def configure_warnings():
    """Configure global warning filters for the projax package."""

    # NumPy and scientific computing warnings
    warnings.filterwarnings(
        "ignore",
        message=".*numpy.dtype size changed.*",
        category=RuntimeWarning
    )

    # Sparse products on freshly assembled CSR arrays
    warnings.filterwarnings(
        "ignore",
        message=".*Changing the sparsity structure.*",
    )

    # JAX warnings (common in GPU-less environments)
    warnings.filterwarnings(
        "ignore",
        message=".*jax.*",
        category=UserWarning
    )


# Auto-configure warnings when this module is imported
configure_warnings()
