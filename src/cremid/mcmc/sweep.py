"""
One Gibbs Sweep.

Runs every update of the sampler once, in a fixed order:

1. labels Z
2. component parameters (mu, Sigma), then the NIW hyperparameters
3. sharing indicators R (adaptive truncation only)
4. weights w0 / w_j, then rho, then varphi
5. concentrations alpha
6. merge step (if enabled)

Each step gets its own sub-key split from the sweep key, so a sweep is
fully determined by (key, state).
"""

from dataclasses import replace
from typing import Tuple

import jax.numpy as jnp
import jax.random as random

from ..error_handling import SamplerInstabilityError
from .components import sample_components, sample_hyperparameters
from .concentration import sample_concentration
from .labels import sample_labels
from .merge import merge_components
from .types import MixtureState, PriorArrays, RunParams, SweepInfo, resolve_roles
from .weights import group_component_counts, sample_rho, sample_sharing, sample_varphi, sample_weights


def _check_finite(state: MixtureState, names):
    for name in names:
        if not bool(jnp.all(jnp.isfinite(getattr(state, name)))):
            raise SamplerInstabilityError(f"Non-finite values in '{name}' after update", state=state)


def gibbs_sweep(
    key,
    Y,
    C,
    J: int,
    state: MixtureState,
    prior: PriorArrays,
    run_params: RunParams,
) -> Tuple[MixtureState, jnp.ndarray, SweepInfo]:
    """
    Advance the chain by one sweep.

    Args:
        key: JAX random key for this and later sweeps
        Y: Data (n, p)
        C: 0-based group index per observation (n,)
        J: Number of groups
        state: Current state
        prior: Prior arrays
        run_params: Run parameters (Cholesky retry budget)

    Returns:
        state: New state
        key: Key to pass to the next sweep
        info: Fallback and merge counts of this sweep

    Raises:
        SamplerInstabilityError: On non-finite densities or weights
        NonPositiveDefiniteError: If a covariance draw cannot be made SPD
    """
    key, k_labels, k_comp, k_hyper, k_share, k_weights, k_rho, k_varphi, k_alpha, k_merge = \
        random.split(key, 10)
    max_tries = run_params.MAX_CHOLESKY_TRIES

    # 1. Labels
    roles = resolve_roles(state.R)
    Z, n_fallback = sample_labels(k_labels, Y, C, state, roles)

    # 2. Components and hyperparameters
    mu, Sigma, _ = sample_components(k_comp, Y, Z, state, prior, max_tries)
    m_1, k_0, Psi_1 = sample_hyperparameters(k_hyper, mu, Sigma, state.m_1, state.k_0, prior)
    state = replace(state, Z=Z, mu=mu, Sigma=Sigma, m_1=m_1, k_0=k_0, Psi_1=Psi_1)
    _check_finite(state, ('mu', 'Sigma', 'm_1', 'k_0', 'Psi_1'))

    # 3. Sharing indicators
    counts = group_component_counts(Z, C, J, state.K)
    if prior.truncation_type == 'adaptive':
        R = sample_sharing(k_share, counts, state.R, state.rho, state.varphi, state.alpha)
        state = replace(state, R=R)
        roles = resolve_roles(R)

    # 4. Weights, rho, varphi
    w0, w = sample_weights(k_weights, counts, state.alpha, roles)
    rho = sample_rho(k_rho, counts, roles, prior)
    varphi = sample_varphi(k_varphi, roles, prior)
    state = replace(state, w0=w0, w=w, rho=rho, varphi=varphi)
    _check_finite(state, ('w0', 'w', 'rho', 'varphi'))

    # 5. Concentrations
    alpha = sample_concentration(
        k_alpha, counts, roles, state.alpha, prior.tau_alpha,
        prior.epsilon_range[0], shared_alpha=prior.shared_alpha,
    )
    state = replace(state, alpha=alpha)
    _check_finite(state, ('alpha',))

    # 6. Merge
    state, n_merged = merge_components(k_merge, Y, state, prior, roles, max_tries)

    return state, key, SweepInfo(n_fallback=n_fallback, n_merged=n_merged)
