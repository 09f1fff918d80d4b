"""
cremid - Shared / group-specific Gaussian mixtures for multi-group data

Public API:
    Sampling:
        fit - Run the sampler on data Y with group labels C
        Chain - Saved draws with per-sweep event counts and the echoed inputs
        MixtureState - Latent state of one sweep

    Priors:
        default_prior - Prior with every option at its default for given data
        save_prior_config - Save a prior to JSON
        load_prior_config - Load a prior from JSON

    Persistence:
        save_chain - Save a Chain to .npz
        load_chain - Load a Chain from .npz
        dump_state - Write a single MixtureState for post-mortem inspection

    Errors:
        InvalidInputError - Malformed data or group labels
        NonPositiveDefiniteError - Covariance could not be made SPD
        SamplerInstabilityError - Non-finite densities or weights during a sweep

Example:
    import numpy as np
    from cremid import fit

    chain = fit(Y, C, prior={'K': 8}, mcmc={'nburn': 500, 'nsave': 200})
    last = chain.state(chain.n_saved - 1)
    print(last.rho, np.unique(last.Z))
"""
# CRITICAL: Import jax_config FIRST to set environment variables before JAX loads
from . import jax_config  # noqa: F401

# Import mcmc subpackage to register the pytree types
from . import mcmc as _mcmc  # noqa: F401

from .mcmc import fit, Chain, MixtureState
from .prior_config import default_prior, save_prior_config, load_prior_config
from .checkpoint_io import save_chain, load_chain, dump_state
from .error_handling import (
    InvalidInputError,
    NonPositiveDefiniteError,
    SamplerInstabilityError,
)

__all__ = [
    'fit',
    'Chain',
    'MixtureState',
    'default_prior',
    'save_prior_config',
    'load_prior_config',
    'save_chain',
    'load_chain',
    'dump_state',
    'InvalidInputError',
    'NonPositiveDefiniteError',
    'SamplerInstabilityError',
]
