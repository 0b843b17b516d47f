"""projax: interpolation, L2 projection, boundary constraints and error norms for finite element spaces."""
from projax import warnings_config  # noqa: F401
from projax.fem import logger  # noqa: F401

__version__ = "0.1.0"
