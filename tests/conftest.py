"""
Pytest configuration and shared fixtures for cremid tests.
"""

import pytest
import numpy as np
import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)

from cremid.mcmc.types import MixtureState, build_prior_arrays
from cremid.prior_config import clean_prior


@pytest.fixture
def rng_seed():
    """Default RNG seed for reproducible tests."""
    return 42


@pytest.fixture
def two_group_data(rng_seed):
    """
    Two groups in 2-d: a component common to both groups at the origin plus
    one group-specific component each, far from everything else.

    Returns:
        Y: (90, 2) data
        C: (90,) group labels in 1..2
        source: (90,) generating cluster: 0 common, 1 group-1 only, 2 group-2 only
    """
    rng = np.random.default_rng(rng_seed)
    common_1 = rng.normal(0.0, 1.0, size=(25, 2))
    common_2 = rng.normal(0.0, 1.0, size=(25, 2))
    only_1 = rng.normal([10.0, 10.0], 1.0, size=(20, 2))
    only_2 = rng.normal([-10.0, 10.0], 1.0, size=(20, 2))
    Y = np.vstack([common_1, only_1, common_2, only_2])
    C = np.repeat([1, 1, 2, 2], [25, 20, 25, 20])
    source = np.repeat([0, 1, 0, 2], [25, 20, 25, 20])
    return Y, C, source


@pytest.fixture
def small_prior(two_group_data):
    """Cleaned prior dict with a small arena."""
    Y, _, _ = two_group_data
    return clean_prior({'K': 4}, Y)


@pytest.fixture
def prior_arrays(small_prior):
    return build_prior_arrays(small_prior)


@pytest.fixture
def fast_mcmc():
    """Very short schedule for end-to-end runs."""
    return {'nburn': 5, 'nsave': 5, 'nskip': 1, 'ndisplay': 0, 'seed': 3}


def make_state(Z, R, mu, Sigma, J, rho=0.5, varphi=0.5, alpha=1.0, m_1=None, k_0=1.0, Psi_1=None):
    """Build a MixtureState with uniform weights inside each pool."""
    R = np.asarray(R, dtype=np.int32)
    mu = np.asarray(mu, dtype=np.float64)
    K, p = mu.shape
    shared = R == 1
    w0 = np.where(shared, 1.0 / max(shared.sum(), 1), 0.0)
    w = np.tile(np.where(~shared, 1.0 / max((~shared).sum(), 1), 0.0), (J, 1))
    return MixtureState(
        Z=jnp.asarray(np.asarray(Z, dtype=np.int32)),
        mu=jnp.asarray(mu),
        Sigma=jnp.asarray(np.asarray(Sigma, dtype=np.float64)),
        w0=jnp.asarray(w0),
        w=jnp.asarray(w),
        rho=jnp.asarray(rho, dtype=jnp.float64),
        varphi=jnp.asarray(varphi, dtype=jnp.float64),
        alpha=jnp.full((J + 1,), alpha, dtype=jnp.float64),
        R=jnp.asarray(R),
        m_1=jnp.zeros(p) if m_1 is None else jnp.asarray(m_1, dtype=jnp.float64),
        k_0=jnp.asarray(k_0, dtype=jnp.float64),
        Psi_1=jnp.eye(p) if Psi_1 is None else jnp.asarray(Psi_1, dtype=jnp.float64),
    )


@pytest.fixture
def state_factory():
    """Fixture exposing make_state to test modules."""
    return make_state


def assert_valid_state(state, n, J, K):
    """Structural invariants every sweep must preserve."""
    Z = np.asarray(state.Z)
    R = np.asarray(state.R)
    assert Z.shape == (n,)
    assert Z.min() >= 0 and Z.max() < K
    assert set(np.unique(R)) <= {0, 1}
    shared = R == 1
    n_shared = int(shared.sum())
    assert n_shared + int((~shared).sum()) == K

    for Sigma_k in np.asarray(state.Sigma):
        np.testing.assert_allclose(Sigma_k, Sigma_k.T, atol=1e-10)
        assert np.all(np.linalg.eigvalsh(Sigma_k) > 0)

    w0 = np.asarray(state.w0)
    w = np.asarray(state.w)
    assert w.shape == (J, K)
    assert np.all(w0 >= 0) and np.all(w >= 0)
    assert np.all(w0[~shared] == 0)
    assert np.all(w[:, shared] == 0)
    if n_shared > 0:
        assert abs(w0.sum() - 1.0) < 1e-9
    if n_shared < K:
        np.testing.assert_allclose(w.sum(axis=1), 1.0, atol=1e-9)

    assert 0.0 <= float(state.rho) <= 1.0
    assert 0.0 <= float(state.varphi) <= 1.0
    assert np.all(np.asarray(state.alpha) > 0)
    assert float(state.k_0) > 0
    assert np.all(np.linalg.eigvalsh(np.asarray(state.Psi_1)) > 0)


@pytest.fixture
def check_state():
    """Fixture exposing assert_valid_state to test modules."""
    return assert_valid_state
