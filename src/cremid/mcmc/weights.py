"""
Weight Sampler.

Updates of the weight structure, run in this order within a sweep:
- sample_sharing: Metropolis flips of the sharing indicators R (only when
  truncation_type == "adaptive")
- sample_weights: Dirichlet draws of w0 and every w_j
- sample_rho: spike-and-slab update of the shared mass rho
- sample_varphi: spike-and-slab update of the sharing probability varphi

Spike-and-slab construction (rho and varphi): the prior is
    p0 * delta_0 + p1 * delta_1 + (1 - p0 - p1) * Beta(a, b)
and the likelihood is Bernoulli with `successes` and `failures`. The
posterior is sampled discrete part first: choose delta_0, delta_1 or the
slab with probabilities proportional to
    p0 * [successes == 0], p1 * [failures == 0],
    (1 - p0 - p1) * B(a + successes, b + failures) / B(a, b),
then draw Beta(a + successes, b + failures) if the slab was chosen.
"""

from functools import partial

import jax
import jax.numpy as jnp
import jax.random as random
from jax.scipy.special import betaln, gammaln, xlogy

from .linalg import safe_log
from .types import ComponentRoles


@partial(jax.jit, static_argnums=(2, 3))
def group_component_counts(Z, C, J, K):
    """Number of observations of group j carrying label k, shape (J, K)."""
    return jnp.zeros((J, K)).at[C, Z].add(1.0)


# =============================================================================
# DIRICHLET WEIGHTS
# =============================================================================

def masked_dirichlet(key, concentration, mask):
    """
    Dirichlet draw restricted to the slots in mask.

    Drawn in log space (log-gamma then softmax) so tiny concentrations do
    not underflow to an all-zero vector. Slots outside mask get exactly 0;
    an empty mask gives the all-zero vector.
    """
    log_g = random.loggamma(key, jnp.where(mask, concentration, 1.0))
    log_g = jnp.where(mask, log_g, -jnp.inf)
    weights = jnp.where(mask, jax.nn.softmax(log_g), 0.0)
    return jnp.where(jnp.any(mask), weights, 0.0)


@jax.jit
def sample_weights(key, counts, alpha, roles: ComponentRoles):
    """
    Conjugate Dirichlet-multinomial update of w0 and w_1..w_J.

    w0  ~ Dir(alpha_0 / K0 + shared counts pooled over groups)
    w_j ~ Dir(alpha_j / K1 + group j counts on specific slots)

    Args:
        key: JAX random key
        counts: (J, K) label counts per group
        alpha: (J + 1,) concentrations
        roles: Current component roles

    Returns:
        w0: (K,)
        w: (J, K)
    """
    J = counts.shape[0]
    shared = roles.shared
    K0 = jnp.maximum(roles.n_shared, 1)
    K1 = jnp.maximum(roles.n_specific, 1)

    key_shared, key_specific = random.split(key)
    w0 = masked_dirichlet(key_shared, alpha[0] / K0 + jnp.sum(counts, axis=0), shared)
    concentration = alpha[1:, None] / K1 + counts
    w = jax.vmap(masked_dirichlet, in_axes=(0, 0, None))(
        random.split(key_specific, J), concentration, ~shared
    )
    return w0, w


# =============================================================================
# SPIKE-AND-SLAB PROPORTIONS
# =============================================================================

def point_mass_log_weights(successes, failures, tau, point_masses):
    """Log posterior probabilities of (delta_0, delta_1, slab)."""
    a, b = tau[0], tau[1]
    p0, p1 = point_masses[0], point_masses[1]
    log_slab = betaln(a + successes, b + failures) - betaln(a, b)
    return jnp.stack([
        safe_log(p0) + jnp.where(successes == 0, 0.0, -jnp.inf),
        safe_log(p1) + jnp.where(failures == 0, 0.0, -jnp.inf),
        safe_log(1.0 - p0 - p1) + log_slab,
    ])


@jax.jit
def sample_point_mass_beta(key, successes, failures, tau, point_masses, floor):
    """
    Draw from the spike-and-slab posterior, discrete part first.

    Slab draws are clipped into [floor, 1 - floor] so a continuous draw is
    never mistaken for a point mass.
    """
    key_choice, key_slab = random.split(key)
    choice = random.categorical(key_choice, point_mass_log_weights(successes, failures, tau, point_masses))
    slab = random.beta(key_slab, tau[0] + successes, tau[1] + failures)
    slab = jnp.clip(slab, floor, 1.0 - floor)
    return jnp.where(choice == 0, 0.0, jnp.where(choice == 1, 1.0, slab))


def sample_rho(key, counts, roles: ComponentRoles, prior):
    """
    Update the shared mass rho.

    Successes are labels on shared slots, failures labels on specific slots.
    """
    on_shared = jnp.sum(counts * roles.shared[None, :])
    on_specific = jnp.sum(counts) - on_shared
    return sample_point_mass_beta(
        key, on_shared, on_specific, prior.tau_rho, prior.point_masses_rho, prior.epsilon_range[0]
    )


def sample_varphi(key, roles: ComponentRoles, prior):
    """
    Update varphi, the prior probability that a component is shared.

    Successes are shared slots (K0), failures specific slots (K1). A point
    mass at 0 means no component is shared at all.
    """
    return sample_point_mass_beta(
        key, roles.n_shared, roles.n_specific, prior.tau_varphi,
        prior.point_masses_varphi, prior.epsilon_range[0]
    )


# =============================================================================
# SHARING INDICATORS
# =============================================================================

def _dirichlet_multinomial_logpmf(counts, concentration, mask):
    """
    log p(labels | pool) with the pool's Dirichlet weights integrated out.

    counts: (K,) labels per slot; concentration: total alpha of the pool,
    spread evenly over the slots in mask. An empty pool can only explain
    zero labels.
    """
    size = jnp.sum(mask)
    total = jnp.sum(counts * mask)
    per_slot = concentration / jnp.maximum(size, 1)
    log_pmf = (gammaln(concentration) - gammaln(concentration + total)
               + jnp.sum(jnp.where(mask, gammaln(per_slot + counts) - gammaln(per_slot), 0.0)))
    return jnp.where(size > 0, log_pmf, jnp.where(total > 0, -jnp.inf, 0.0))


def collapsed_log_likelihood(counts, shared, rho, varphi, alpha):
    """
    log p(Z, R | rho, varphi, alpha) with all weight vectors integrated out.

    Each label contributes log(rho) if its slot is shared and log(1 - rho)
    otherwise; each pool contributes its Dirichlet-multinomial term; R
    contributes K0 log(varphi) + K1 log(1 - varphi).
    """
    K = shared.shape[0]
    K0 = jnp.sum(shared).astype(counts.dtype)
    on_shared = jnp.sum(counts * shared[None, :])
    on_specific = jnp.sum(counts) - on_shared

    log_lik = xlogy(on_shared, rho) + xlogy(on_specific, 1.0 - rho)
    log_lik += _dirichlet_multinomial_logpmf(jnp.sum(counts, axis=0), alpha[0], shared)
    log_lik += jnp.sum(jax.vmap(_dirichlet_multinomial_logpmf, in_axes=(0, 0, None))(
        counts, alpha[1:], ~shared
    ))
    log_lik += xlogy(K0, varphi) + xlogy(K - K0, 1.0 - varphi)
    return log_lik


@jax.jit
def sample_sharing(key, counts, R, rho, varphi, alpha):
    """
    Metropolis update of each sharing indicator in turn.

    Proposal: flip R_k. The flip is symmetric, so acceptance uses the ratio
    of collapsed_log_likelihood under the two configurations. A component
    whose labels cannot be explained by the other role (e.g. rho == 0 for a
    flip to shared) is never moved.

    Returns:
        R: (K,) updated indicators
    """
    K = R.shape[0]
    log_u = jnp.log(random.uniform(key, (K,)))

    def score(indicators):
        return collapsed_log_likelihood(counts, indicators == 1, rho, varphi, alpha)

    def body(k, carry):
        indicators, current = carry
        proposal = indicators.at[k].set(1 - indicators[k])
        proposed = score(proposal)
        accept = log_u[k] < proposed - current
        return jnp.where(accept, proposal, indicators), jnp.where(accept, proposed, current)

    R, _ = jax.lax.fori_loop(0, K, body, (R, score(R)))
    return R
