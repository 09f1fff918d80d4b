"""
Sampler Configuration and Initialization.

This module handles setting up and validating a sampler run:
- configure_sampler: Main configuration entry point
- initial_labels: k-means warm start of the component labels
- initialize_state: Build the starting MixtureState
- gen_rng_keys: Generate JAX random keys

Configuration is split into two parts:
- user_config: Serializable dicts (prior and mcmc) echoed into the Chain
- runtime_ctx: JAX-dependent objects that exist only during execution

All config keys use lowercase with underscores (e.g., 'nburn', 'merge_par').
"""

import jax
import jax.numpy as jnp
import jax.random as random
import numpy as np
from dataclasses import replace
from scipy.cluster.vq import kmeans2
from typing import Any, Dict, Optional, Tuple

from ..error_handling import (
    InvalidInputError,
    validate_data,
    validate_group_labels,
    validate_mcmc_config,
    validate_prior_config,
)
from ..prior_config import clean_prior
from .components import sample_components
from .types import MixtureState, PriorArrays, RunParams, build_prior_arrays
from .utils import clean_config

import logging
logger = logging.getLogger('cremid')


def gen_rng_keys(rng_seed: int) -> Tuple[Any, Any]:
    """Generate JAX random keys from seed.

    Returns:
        (master_key, init_key): Tuple of JAX PRNGKeys
    """
    mkey = jax.random.PRNGKey(rng_seed)
    master_key, init_key = random.split(mkey, 2)
    return master_key, init_key


def configure_sampler(
    Y,
    C,
    prior: Optional[Dict[str, Any]] = None,
    mcmc_config: Optional[Dict[str, Any]] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Validate inputs and build everything a run needs.

    Args:
        Y: Data matrix (n, p)
        C: Group labels (n,) with values 1..J
        prior: Prior options (missing ones get defaults)
        mcmc_config: Schedule options (missing ones get defaults)

    Returns:
        user_config: {'prior': cleaned prior dict, 'mcmc': cleaned mcmc dict}
        runtime_ctx: Dict with JAX keys, converted data, PriorArrays and RunParams

    Raises:
        InvalidInputError: For malformed Y or C
        ValueError: For out-of-support prior or schedule options
    """
    validate_data(Y, C)
    J = validate_group_labels(C)
    Y = np.asarray(Y, dtype=np.float64)
    p = Y.shape[1]

    mcmc_config = clean_config(mcmc_config)
    validate_mcmc_config(mcmc_config)
    prior = clean_prior(prior, Y)
    validate_prior_config(prior, p)

    # Configure JAX precision
    if mcmc_config['use_double']:
        jax.config.update("jax_enable_x64", True)
        jnp_float_dtype = jnp.float64
    else:
        jax.config.update("jax_enable_x64", False)
        jnp_float_dtype = jnp.float32

    master_key, init_key = gen_rng_keys(mcmc_config['seed'])

    run_params = RunParams(
        NBURN=mcmc_config['nburn'],
        NSAVE=mcmc_config['nsave'],
        NSKIP=mcmc_config['nskip'],
        NDISPLAY=mcmc_config['ndisplay'],
        SEED=mcmc_config['seed'],
        MAX_CHOLESKY_TRIES=mcmc_config['max_cholesky_tries'],
        FALLBACK_WARNING_THRESHOLD=mcmc_config['fallback_warning_threshold'],
        DUMP_PATH=mcmc_config['dump_path'],
    )

    runtime_ctx = {
        'jnp_float_dtype': jnp_float_dtype,
        'master_key': master_key,
        'init_key': init_key,
        'Y': jnp.asarray(Y, dtype=jnp_float_dtype),
        'C': jnp.asarray(np.asarray(C).astype(np.int32) - 1),
        'J': J,
        'prior_arrays': build_prior_arrays(prior),
        'run_params': run_params,
    }
    user_config = {'prior': prior, 'mcmc': mcmc_config}
    return user_config, runtime_ctx


def initial_labels(Y, K: int, seed: int = 0) -> np.ndarray:
    """
    k-means warm start of the labels (k-means++ seeding, 100 iterations).

    Returns:
        Z: 0-based labels (n,)
    """
    Y = np.asarray(Y, dtype=np.float64)
    K = min(K, Y.shape[0])
    _, Z = kmeans2(Y, K, iter=100, minit='++', seed=seed)
    return Z.astype(np.int32)


def _validate_initial_state(state: Dict[str, Any], n: int, K: int) -> None:
    errors = []
    if state.get('Z') is not None:
        Z = np.asarray(state['Z'])
        if Z.shape != (n,):
            errors.append(f"Z must have shape ({n},), got {Z.shape}")
        elif Z.min() < 0 or Z.max() >= K:
            errors.append(f"Z must contain 0-based labels in 0..{K - 1}")
    if state.get('R') is not None:
        R = np.asarray(state['R'])
        if R.shape != (K,):
            errors.append(f"R must have shape ({K},), got {R.shape}")
        elif not np.all(np.isin(R, (0, 1))):
            errors.append("R must contain only 0 and 1")
    if errors:
        raise InvalidInputError("Invalid initial state:\n  " + "\n  ".join(errors))


def initialize_state(
    init_key,
    Y,
    J: int,
    prior: Dict[str, Any],
    prior_arrays: PriorArrays,
    mcmc_config: Dict[str, Any],
    state: Optional[Dict[str, Any]] = None,
) -> MixtureState:
    """
    Build the starting MixtureState.

    Labels come from state['Z'] or the k-means warm start; R from state['R']
    or independent draws with P(R_k = 0) = tau_eta[0] / sum(tau_eta). The
    NIW hyperparameters start at their prior centers, components are drawn
    from their posterior given the initial labels, weights are uniform
    within each pool and rho, varphi, alpha start at their prior means.
    """
    state = dict(state or {})
    n = Y.shape[0]
    K = prior_arrays.K
    _validate_initial_state(state, n, K)
    key_R, key_comp = random.split(init_key)

    if state.get('Z') is not None:
        Z = np.asarray(state['Z']).astype(np.int32)
    else:
        Z = initial_labels(np.asarray(Y), K, seed=mcmc_config['seed'])

    if state.get('R') is not None:
        R = np.asarray(state['R']).astype(np.int32)
    else:
        tau_eta = np.asarray(prior['tau_eta'])
        p_specific = tau_eta[0] / tau_eta.sum()
        R = np.asarray(random.bernoulli(key_R, 1.0 - p_specific, (K,))).astype(np.int32)

    shared = R == 1
    n_shared = int(shared.sum())
    n_specific = K - n_shared
    w0 = np.where(shared, 1.0 / max(n_shared, 1), 0.0)
    w = np.tile(np.where(~shared, 1.0 / max(n_specific, 1), 0.0), (J, 1))

    tau_k0 = np.asarray(prior['tau_k0'])
    tau_alpha = np.asarray(prior['tau_alpha'])
    tau_rho = np.asarray(prior['tau_rho'])
    tau_varphi = np.asarray(prior['tau_varphi'])
    dtype = Y.dtype

    initial = MixtureState(
        Z=jnp.asarray(Z),
        mu=jnp.zeros((K, Y.shape[1]), dtype=dtype),
        Sigma=jnp.tile(jnp.eye(Y.shape[1], dtype=dtype), (K, 1, 1)),
        w0=jnp.asarray(w0, dtype=dtype),
        w=jnp.asarray(w, dtype=dtype),
        rho=jnp.asarray(tau_rho[0] / tau_rho.sum(), dtype=dtype),
        varphi=jnp.asarray(tau_varphi[0] / tau_varphi.sum(), dtype=dtype),
        alpha=jnp.full((J + 1,), tau_alpha[0] / tau_alpha[1], dtype=dtype),
        R=jnp.asarray(R),
        m_1=jnp.asarray(prior_arrays.m_0, dtype=dtype),
        k_0=jnp.asarray(tau_k0[0] / tau_k0[1], dtype=dtype),
        Psi_1=jnp.asarray(prior_arrays.Psi_2, dtype=dtype),
    )

    mu, Sigma, _ = sample_components(
        key_comp, Y, initial.Z, initial, prior_arrays, mcmc_config['max_cholesky_tries']
    )
    logger.debug(f"Initial state: {len(np.unique(Z))} occupied components, {n_shared} shared")
    return replace(initial, mu=mu, Sigma=Sigma)
