"""Hill models, data containers, sampler and generated quantities.

Re-export key submodules for convenient access.
"""

from . import (
    bayes,
    data_structures,
    errors,
    generated,
    models,
    nuts,
    posterior,
    priors,
    transforms,
    variants,
)

__all__ = [
    "bayes",
    "data_structures",
    "errors",
    "generated",
    "models",
    "nuts",
    "posterior",
    "priors",
    "transforms",
    "variants",
]
