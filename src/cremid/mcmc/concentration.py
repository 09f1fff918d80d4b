"""
Concentration Sampler.

Auxiliary-variable update of the Dirichlet concentrations (Escobar & West,
1995, extended to several pools as in Teh et al., 2006). A pool is the
shared part or one group's specific part. For every pool g holding n_g > 0
labels on k_g occupied slots:

    eta_g ~ Beta(alpha_g + 1, n_g)
    s_g   ~ Bernoulli(n_g / (n_g + alpha_g))

then, with alpha ~ Gamma(a, rate=b) a priori,

    alpha ~ Gamma(a + sum_g k_g - sum_g s_g, b - sum_g log eta_g)

With shared_alpha every pool feeds the same alpha; otherwise each pool's
alpha uses its own (eta_g, s_g).
"""

from functools import partial

import jax
import jax.numpy as jnp
import jax.random as random

from .types import ComponentRoles


@jax.jit
def pool_occupancy(counts, roles: ComponentRoles):
    """
    Labels and occupied slots per pool.

    Args:
        counts: (J, K) label counts per group

    Returns:
        n: (J + 1,) labels per pool, shared pool first
        k: (J + 1,) occupied slots per pool
    """
    shared = roles.shared[None, :]
    shared_counts = jnp.sum(counts * shared, axis=0)
    specific_counts = counts * ~shared
    n = jnp.concatenate([jnp.sum(shared_counts)[None], jnp.sum(specific_counts, axis=1)])
    k = jnp.concatenate([jnp.sum(shared_counts > 0)[None], jnp.sum(specific_counts > 0, axis=1)])
    return n, k.astype(counts.dtype)


@partial(jax.jit, static_argnames=('shared_alpha',))
def sample_concentration(key, counts, roles: ComponentRoles, alpha, tau_alpha, floor, shared_alpha=True):
    """
    Update the (J + 1,) concentration vector.

    Pools without labels carry no information and are left out of the
    auxiliary sums; for unshared alpha their entry is drawn from the prior.
    The result is floored at `floor` to stay strictly positive.
    """
    n, k = pool_occupancy(counts, roles)
    active = n > 0
    key_eta, key_s, key_gamma = random.split(key, 3)

    eta = random.beta(key_eta, alpha + 1.0, jnp.where(active, n, 1.0))
    s = random.bernoulli(key_s, n / (n + alpha)) & active
    log_eta = jnp.where(active, jnp.log(eta), 0.0)
    s = s.astype(alpha.dtype)
    k = jnp.where(active, k, 0.0)

    a, b = tau_alpha[0], tau_alpha[1]
    if shared_alpha:
        shape = a + jnp.sum(k) - jnp.sum(s)
        rate = b - jnp.sum(log_eta)
        new_alpha = jnp.full_like(alpha, random.gamma(key_gamma, shape) / rate)
    else:
        shape = a + k - s
        rate = b - log_eta
        new_alpha = random.gamma(key_gamma, shape) / rate

    return jnp.maximum(new_alpha, floor)
