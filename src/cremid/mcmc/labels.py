"""
Label Sampler.

Resamples every observation's component label given the current component
parameters and the shared / specific weight decomposition:

    pi_{j,k} = rho * w0_k          if k is shared
    pi_{j,k} = (1 - rho) * w_{j,k} if k is specific

The n x K log-likelihood matrix is the dominant cost of a sweep; each
component's covariance is factored once and reused for all observations.
"""

import jax
import jax.numpy as jnp
import jax.random as random
import numpy as np

from ..error_handling import SamplerInstabilityError
from .linalg import mvn_logpdf, safe_log
from .types import ComponentRoles, MixtureState


@jax.jit
def log_mixture_weights(w0, w, rho, roles: ComponentRoles):
    """
    log pi_{j,k} for every group and slot, shape (J, K).

    Zero mass (empty pool, rho at 0 or 1, zero weight) maps to -inf.
    """
    log_shared = safe_log(rho) + safe_log(w0)          # (K,)
    log_specific = safe_log(1.0 - rho) + safe_log(w)   # (J, K)
    return jnp.where(roles.shared[None, :], log_shared[None, :], log_specific)


@jax.jit
def component_log_likelihoods(Y, mu, Sigma):
    """
    log N(y_i | mu_k, Sigma_k) for every observation and slot, shape (n, K).
    """
    L = jnp.linalg.cholesky(Sigma)
    return jax.vmap(lambda mean, factor: mvn_logpdf(Y, mean, factor), out_axes=1)(mu, L)


@jax.jit
def label_logits(log_lik, log_weights, C):
    """
    Unnormalized log label probabilities with the uniform safety net.

    Rows where every slot has zero mass are replaced by a flat row.

    Returns:
        logits: (n, K)
        dead: (n,) bool, rows that fell back to uniform
    """
    logits = log_weights[C] + log_lik
    dead = ~jnp.any(jnp.isfinite(logits), axis=1)
    logits = jnp.where(dead[:, None], 0.0, logits)
    return logits, dead


def sample_labels(key, Y, C, state: MixtureState, roles: ComponentRoles):
    """
    Draw every label Z_i from its full conditional.

    Args:
        key: JAX random key
        Y: Data (n, p)
        C: 0-based group index per observation (n,)
        state: Current state (component parameters, weights, rho)
        roles: Roles resolved from state.R

    Returns:
        Z: New labels (n,)
        n_fallback: Number of observations drawn from the uniform fallback

    Raises:
        SamplerInstabilityError: If any log-likelihood or weight is NaN / +inf
    """
    log_lik = component_log_likelihoods(Y, state.mu, state.Sigma)
    if not bool(jnp.all(jnp.isfinite(log_lik) | jnp.isneginf(log_lik))):
        raise SamplerInstabilityError("Non-finite component log-density in label update", state=state)

    log_weights = log_mixture_weights(state.w0, state.w, state.rho, roles)
    logits, dead = label_logits(log_lik, log_weights, C)
    if bool(jnp.any(jnp.isnan(logits))):
        raise SamplerInstabilityError("NaN label probabilities in label update", state=state)

    Z = random.categorical(key, logits, axis=-1).astype(jnp.int32)
    return Z, int(np.sum(np.asarray(dead)))
