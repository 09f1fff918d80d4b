"""
Component Parameter Sampler.

Conjugate Normal-Inverse-Wishart updates of the component arena:
- component_statistics: occupancy, sample means and scatter per component
- niw_posterior: conjugate NIW parameters per component
- sample_components: draw every (mu_k, Sigma_k) with one sub-key per component
- sample_hyperparameters: Gibbs updates of the NIW hyperparameters m_1, k_0, Psi_1
- sample_from_prior: draw a single component from the current NIW prior

Component prior:
    Sigma_k ~ IW(nu_1, Psi_1)
    mu_k | Sigma_k ~ N(m_1, Sigma_k / k_0)
Hyperpriors:
    m_1 ~ N(m_0, V_0)
    k_0 ~ Gamma(tau_k0[0], rate=tau_k0[1])
    Psi_1 ~ Wishart(nu_2, Psi_2 / nu_2)
"""

import jax
import jax.numpy as jnp
import jax.random as random
import jax.scipy.linalg
import numpy as np
from functools import partial
from typing import NamedTuple

from ..error_handling import NonPositiveDefiniteError
from .linalg import (
    failed_factors,
    regularized_cholesky,
    sample_niw,
    sample_wishart,
    symmetrize,
)
from .types import MixtureState, PriorArrays

import logging
logger = logging.getLogger('cremid')


class ComponentStats(NamedTuple):
    """Sufficient statistics of the observations assigned to each slot."""
    counts: jnp.ndarray   # (K,)
    means: jnp.ndarray    # (K, p), zero for empty slots
    scatter: jnp.ndarray  # (K, p, p) centered scatter matrices


class NIWParams(NamedTuple):
    """Standard parameters of a batch of NIW laws."""
    loc: jnp.ndarray      # (K, p)
    scaling: jnp.ndarray  # (K,)
    df: jnp.ndarray       # (K,)
    scale: jnp.ndarray    # (K, p, p)


@partial(jax.jit, static_argnums=(2,))
def component_statistics(Y, Z, K):
    """
    Occupancy, sample mean and centered scatter of every component slot.

    Args:
        Y: Data (n, p)
        Z: Labels (n,)
        K: Number of slots (static)
    """
    one_hot = jax.nn.one_hot(Z, K, dtype=Y.dtype)              # (n, K)
    counts = jnp.sum(one_hot, axis=0)
    means = (one_hot.T @ Y) / jnp.maximum(counts, 1.0)[:, None]
    centered = Y[:, None, :] - means[None, :, :]                # (n, K, p)
    scatter = jnp.einsum('nk,nki,nkj->kij', one_hot, centered, centered)
    return ComponentStats(counts=counts, means=means, scatter=scatter)


@jax.jit
def niw_posterior(stats: ComponentStats, m_1, k_0, nu_1, Psi_1) -> NIWParams:
    """
    Conjugate NIW update for every slot.

    Empty slots (count 0) get the prior (m_1, k_0, nu_1, Psi_1) back.
    """
    n = stats.counts
    scaling = k_0 + n
    loc = (k_0 * m_1[None, :] + n[:, None] * stats.means) / scaling[:, None]
    df = nu_1 + n
    diff = stats.means - m_1[None, :]
    shrink = (k_0 * n / scaling)[:, None, None]
    scale = Psi_1[None] + stats.scatter + shrink * jnp.einsum('ki,kj->kij', diff, diff)
    return NIWParams(loc=loc, scaling=scaling, df=df, scale=symmetrize(scale))


_sample_niw_batch = jax.jit(jax.vmap(sample_niw))


def _regularize_scales(scale, epsilon_range, max_tries):
    """Jitter any posterior scale matrix whose Cholesky factor fails."""
    bad = np.flatnonzero(failed_factors(jnp.linalg.cholesky(scale)))
    for k in bad:
        L = regularized_cholesky(scale[k], epsilon_range, max_tries)
        scale = scale.at[k].set(L @ L.T)
        logger.debug(f"Regularized NIW scale matrix of component {k}")
    return scale


def draw_niw_components(key, post: NIWParams, epsilon_range=(1e-10, 1.0), max_tries=8):
    """
    Draw one (mu, Sigma) per slot from a batch of NIW laws.

    Each slot uses its own sub-key. Slots whose covariance draw is not
    numerically SPD are redrawn with fresh sub-keys.

    Raises:
        NonPositiveDefiniteError: If a slot still fails after max_tries redraws
    """
    K = post.loc.shape[0]
    post = post._replace(scale=_regularize_scales(post.scale, epsilon_range, max_tries))

    key, draw_key = random.split(key)
    mu, Sigma = _sample_niw_batch(random.split(draw_key, K), *post)
    failed = failed_factors(jnp.linalg.cholesky(Sigma))

    tries = 0
    while np.any(failed):
        if tries >= max_tries:
            raise NonPositiveDefiniteError(
                f"Covariance draw for component(s) {np.flatnonzero(failed).tolist()} "
                f"not positive-definite after {max_tries} redraws"
            )
        logger.debug(f"Redrawing {int(failed.sum())} near-singular covariance(s)")
        key, draw_key = random.split(key)
        new_mu, new_Sigma = _sample_niw_batch(random.split(draw_key, K), *post)
        mu = jnp.where(failed[:, None], new_mu, mu)
        Sigma = jnp.where(failed[:, None, None], new_Sigma, Sigma)
        failed = failed_factors(jnp.linalg.cholesky(Sigma))
        tries += 1

    return mu, Sigma


def sample_components(key, Y, Z, state: MixtureState, prior: PriorArrays, max_tries=8):
    """
    Gibbs update of every component's (mean, covariance).

    Occupied slots are drawn from their NIW posterior; empty slots are drawn
    from the prior, which keeps them available for later reassignment.

    Returns:
        mu: (K, p)
        Sigma: (K, p, p)
        counts: (K,) occupancy used for the update
    """
    stats = component_statistics(Y, Z, state.K)
    post = niw_posterior(stats, state.m_1, state.k_0, prior.nu_1, state.Psi_1)
    mu, Sigma = draw_niw_components(key, post, tuple(np.asarray(prior.epsilon_range)), max_tries)
    return mu, Sigma, stats.counts


def sample_from_prior(key, state: MixtureState, prior: PriorArrays):
    """Draw a single (mu, Sigma) from the current component prior."""
    return sample_niw(key, state.m_1, state.k_0, prior.nu_1, state.Psi_1)


@jax.jit
def sample_hyperparameters(key, mu, Sigma, m_1, k_0, prior: PriorArrays):
    """
    Conjugate updates of the NIW hyperparameters given all K components.

    Order: m_1 | k_0, then k_0 | m_1, then Psi_1.

    Returns:
        (m_1, k_0, Psi_1)
    """
    K, p = mu.shape
    key_m, key_k, key_psi = random.split(key, 3)
    eye = jnp.eye(p, dtype=mu.dtype)

    L_sigma = jnp.linalg.cholesky(Sigma)
    precisions = jax.vmap(lambda L: jax.scipy.linalg.cho_solve((L, True), eye))(L_sigma)
    precision_sum = jnp.sum(precisions, axis=0)

    # m_1 ~ N(Lambda^-1 h, Lambda^-1)
    L_v0 = jnp.linalg.cholesky(prior.V_0)
    V_0_inv = jax.scipy.linalg.cho_solve((L_v0, True), eye)
    Lambda = symmetrize(V_0_inv + k_0 * precision_sum)
    h = V_0_inv @ prior.m_0 + k_0 * jnp.einsum('kij,kj->i', precisions, mu)
    L_lambda = jnp.linalg.cholesky(Lambda)
    loc = jax.scipy.linalg.cho_solve((L_lambda, True), h)
    z = random.normal(key_m, (p,), dtype=mu.dtype)
    m_1 = loc + jax.scipy.linalg.solve_triangular(L_lambda.T, z, lower=False)

    # k_0 ~ Gamma(a + K p / 2, b + sum_k (mu_k - m_1)' Sigma_k^-1 (mu_k - m_1) / 2)
    diff = mu - m_1[None, :]
    mahalanobis = jnp.einsum('ki,kij,kj->', diff, precisions, diff)
    shape = prior.tau_k0[0] + 0.5 * K * p
    rate = prior.tau_k0[1] + 0.5 * mahalanobis
    k_0 = jnp.maximum(random.gamma(key_k, shape) / rate, prior.epsilon_range[0])

    # Psi_1 ~ W(nu_2 + K nu_1, (nu_2 Psi_2^-1 + sum_k Sigma_k^-1)^-1)
    L_psi2 = jnp.linalg.cholesky(prior.Psi_2)
    inv_scale = symmetrize(prior.nu_2 * jax.scipy.linalg.cho_solve((L_psi2, True), eye) + precision_sum)
    scale = jax.scipy.linalg.cho_solve((jnp.linalg.cholesky(inv_scale), True), eye)
    Psi_1 = sample_wishart(key_psi, prior.nu_2 + K * prior.nu_1, symmetrize(scale))

    return m_1, k_0, Psi_1
