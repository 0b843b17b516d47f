import logging

from jax import config

config.update("jax_enable_x64", True)

logger = logging.getLogger("projax")
logger.setLevel(logging.INFO)

if not logger.handlers:
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "[%(asctime)s][%(levelname)s] %(name)s - %(message)s",
        datefmt="%m-%d %H:%M:%S",
    )
    ch.setFormatter(formatter)
    logger.addHandler(ch)
    logger.propagate = False
