"""
Merge Step.

Post-sweep consolidation of near-duplicate components. Every pair of
occupied slots is compared by symmetrized KL divergence; pairs closer than
merge_par are merged greedily in ascending-divergence order:

1. labels of the smaller slot move to the larger slot (the survivor)
2. the survivor is redrawn from the NIW posterior of the union
3. the vacated slot is reseeded from the prior

The survivor keeps its role. When both slots share a role the absorbed
pool weight moves onto the survivor; otherwise the absorbed slot's weight
is zeroed and its own pool renormalized.

A slot merged away takes no further part in the sweep. A pair whose member
was already re-estimated this sweep has its divergence recomputed before
merging. If the survivor's redraw is not SPD the merge is skipped.

Runs on the host: the greedy loop is sequential and short.
"""

from dataclasses import replace
from itertools import combinations

import jax
import jax.numpy as jnp
import jax.random as random
import numpy as np

from ..error_handling import NonPositiveDefiniteError
from .components import ComponentStats, component_statistics, niw_posterior, draw_niw_components, sample_from_prior
from .linalg import failed_factors, symmetrized_kl
from .types import ComponentRoles, MixtureState, PriorArrays

import logging
logger = logging.getLogger('cremid')


_pairwise_kl = jax.jit(jax.vmap(symmetrized_kl))


def merge_candidates(Z, mu, Sigma, K):
    """
    Pairs of occupied slots with their divergences, sorted ascending.

    Returns:
        pairs: (m, 2) int array of slot indices
        divergences: (m,) float array
    """
    occupied = np.flatnonzero(np.bincount(np.asarray(Z), minlength=K) > 0)
    pairs = np.array(list(combinations(occupied, 2)), dtype=np.int64).reshape(-1, 2)
    if len(pairs) == 0:
        return pairs, np.zeros(0)

    divergences = np.asarray(_pairwise_kl(mu[pairs[:, 0]], Sigma[pairs[:, 0]],
                                          mu[pairs[:, 1]], Sigma[pairs[:, 1]]))
    order = np.argsort(divergences, kind='stable')
    return pairs[order], divergences[order]


def _redraw_union(key, Y, union, state: MixtureState, prior: PriorArrays, max_tries):
    """Draw (mu, Sigma) from the NIW posterior of the observations in union."""
    # Slot 0 holds the union; only its statistics are kept
    stats = component_statistics(Y, jnp.where(union, 0, 1), 2)
    stats = ComponentStats(*(field[:1] for field in stats))
    post = niw_posterior(stats, state.m_1, state.k_0, prior.nu_1, state.Psi_1)
    mu, Sigma = draw_niw_components(key, post, tuple(np.asarray(prior.epsilon_range)), max_tries)
    return mu[0], Sigma[0]


def _drop_from_pool(weights, absorbed):
    """Zero the absorbed slot and renormalize; a pool left with no mass is kept as is."""
    remaining = weights.copy()
    remaining[..., absorbed] = 0.0
    total = remaining.sum(axis=-1, keepdims=True)
    return np.where(total > 0, remaining / np.where(total > 0, total, 1.0), weights)
def merge_components(key, Y, state: MixtureState, prior: PriorArrays, roles: ComponentRoles,
                     max_tries=8):
    """
    Merge near-duplicate components of state.

    Args:
        key: JAX random key
        Y: Data (n, p)
        state: State after the weight and concentration updates
        prior: Prior arrays (merge_step, merge_par)
        roles: Roles resolved from state.R

    Returns:
        state: Updated state
        n_merged: Number of merges performed
    """
    if not prior.merge_step:
        return state, 0

    K = state.K
    shared = np.asarray(roles.shared)
    pairs, divergences = merge_candidates(state.Z, state.mu, state.Sigma, K)
    if len(pairs) == 0 or not divergences[0] < prior.merge_par:
        return state, 0

    Z = np.array(state.Z)
    mu = np.array(state.mu)
    Sigma = np.array(state.Sigma)
    w0 = np.array(state.w0)
    w = np.array(state.w)
    counts = np.bincount(Z, minlength=K)

    merged_away = set()
    touched = set()
    n_merged = 0

    for (a, b), divergence in zip(pairs, divergences):
        if not divergence < prior.merge_par:
            break
        if a in merged_away or b in merged_away:
            continue
        if a in touched or b in touched:
            divergence = float(symmetrized_kl(mu[a], Sigma[a], mu[b], Sigma[b]))
            if not divergence < prior.merge_par:
                continue

        survivor, absorbed = (a, b) if counts[a] >= counts[b] else (b, a)
        union = (Z == survivor) | (Z == absorbed)

        key, key_union, key_reseed = random.split(key, 3)
        try:
            new_mu, new_Sigma = _redraw_union(key_union, Y, union, state, prior, max_tries)
        except NonPositiveDefiniteError:
            logger.debug(f"Skipping merge of components {absorbed} -> {survivor}: merged covariance not SPD")
            continue
        seed_mu, seed_Sigma = sample_from_prior(key_reseed, state, prior)
        if failed_factors(jnp.linalg.cholesky(seed_Sigma)):
            logger.debug(f"Skipping merge of components {absorbed} -> {survivor}: reseed draw not SPD")
            continue

        Z[Z == absorbed] = survivor
        counts[survivor] += counts[absorbed]
        counts[absorbed] = 0
        mu[survivor], Sigma[survivor] = np.asarray(new_mu), np.asarray(new_Sigma)
        mu[absorbed], Sigma[absorbed] = np.asarray(seed_mu), np.asarray(seed_Sigma)
        if shared[survivor] != shared[absorbed]:
            if shared[absorbed]:
                w0 = _drop_from_pool(w0, absorbed)
            else:
                w = _drop_from_pool(w, absorbed)
        elif shared[survivor]:
            w0[survivor] += w0[absorbed]
            w0[absorbed] = 0.0
        else:
            w[:, survivor] += w[:, absorbed]
            w[:, absorbed] = 0.0

        logger.debug(f"Merged component {absorbed} into {survivor} (divergence {divergence:.4g})")
        merged_away.add(absorbed)
        touched.add(survivor)
        n_merged += 1

    if n_merged == 0:
        return state, 0

    state = replace(
        state,
        Z=jnp.asarray(Z, dtype=state.Z.dtype),
        mu=jnp.asarray(mu),
        Sigma=jnp.asarray(Sigma),
        w0=jnp.asarray(w0),
        w=jnp.asarray(w),
    )
    return state, n_merged
