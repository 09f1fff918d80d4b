"""
Sampler Data Structures and Type Definitions.

This module contains the core data structures used by the sampler:
- MixtureState: Full latent state of one sweep (JAX pytree)
- PriorArrays: Prior hyperparameters as arrays plus static policies (JAX pytree)
- RunParams: Immutable schedule parameters
- ComponentRoles: Shared / specific role of each component slot
- SweepInfo: Per-sweep event counts reported to the driver
- Chain: Saved draws plus the echoed data
"""

import jax
import jax.numpy as jnp
import numpy as np
from dataclasses import dataclass, fields
from typing import Any, Dict, NamedTuple, Optional


@dataclass(frozen=True)
class MixtureState:
    """
    Latent state of one Gibbs sweep.

    Component slots form a fixed arena indexed 0..K-1. Weight vectors are
    stored in arena form: w0[k] > 0 only for shared slots, w[j, k] > 0 only
    for specific slots, so their shapes never change when R does.

    Registered as a JAX pytree so states can be passed through jit and
    stacked with jax.tree_util.tree_map.
    """
    Z: jnp.ndarray        # (n,) component label per observation, 0-based
    mu: jnp.ndarray       # (K, p) component means
    Sigma: jnp.ndarray    # (K, p, p) component covariances
    w0: jnp.ndarray       # (K,) shared weights
    w: jnp.ndarray        # (J, K) group-specific weights
    rho: jnp.ndarray      # () mass of the shared part
    varphi: jnp.ndarray   # () prior probability that a component is shared
    alpha: jnp.ndarray    # (J + 1,) concentrations: [shared, group 1..J]
    R: jnp.ndarray        # (K,) 1 = shared, 0 = group-specific
    m_1: jnp.ndarray      # (p,) NIW location
    k_0: jnp.ndarray      # () NIW mean scaling
    Psi_1: jnp.ndarray    # (p, p) Inverse-Wishart scale

    @property
    def K(self) -> int:
        return self.mu.shape[-2]


_STATE_FIELDS = tuple(f.name for f in fields(MixtureState))


def _state_flatten(state):
    """Flatten MixtureState for JAX pytree."""
    return tuple(getattr(state, name) for name in _STATE_FIELDS), None


def _state_unflatten(aux_data, children):
    """Unflatten MixtureState from JAX pytree."""
    return MixtureState(*children)


jax.tree_util.register_pytree_node(
    MixtureState,
    _state_flatten,
    _state_unflatten
)


@dataclass(frozen=True)
class PriorArrays:
    """
    Prior hyperparameters ready for the samplers.

    Arrays are pytree children (traced); the policy fields are auxiliary
    data (static), so changing a policy recompiles rather than branching
    at run time.
    """
    m_0: jnp.ndarray                 # (p,) location of the hyperprior on m_1
    V_0: jnp.ndarray                 # (p, p) scale of the hyperprior on m_1
    nu_1: jnp.ndarray                # () IW degrees of freedom of each Sigma_k
    nu_2: jnp.ndarray                # () Wishart degrees of freedom of Psi_1
    Psi_2: jnp.ndarray               # (p, p) prior mean of Psi_1
    tau_k0: jnp.ndarray              # (2,) Gamma shape / rate of k_0
    tau_alpha: jnp.ndarray           # (2,) Gamma shape / rate of alpha
    tau_rho: jnp.ndarray             # (2,) Beta slab of rho
    tau_varphi: jnp.ndarray          # (2,) Beta slab of varphi
    point_masses_rho: jnp.ndarray    # (2,) prior mass of rho at 0 and 1
    point_masses_varphi: jnp.ndarray # (2,) prior mass of varphi at 0 and 1
    epsilon_range: jnp.ndarray       # (2,) numerical floor / ceiling

    # Static policies
    K: int
    merge_step: bool
    merge_par: float
    shared_alpha: bool
    truncation_type: str

    @property
    def epsilon(self) -> float:
        return float(self.epsilon_range[0])


_PRIOR_ARRAY_FIELDS = (
    'm_0', 'V_0', 'nu_1', 'nu_2', 'Psi_2', 'tau_k0', 'tau_alpha', 'tau_rho',
    'tau_varphi', 'point_masses_rho', 'point_masses_varphi', 'epsilon_range',
)
_PRIOR_STATIC_FIELDS = ('K', 'merge_step', 'merge_par', 'shared_alpha', 'truncation_type')


def _prior_flatten(prior):
    """Flatten PriorArrays for JAX pytree."""
    children = tuple(getattr(prior, name) for name in _PRIOR_ARRAY_FIELDS)
    aux_data = tuple(getattr(prior, name) for name in _PRIOR_STATIC_FIELDS)
    return children, aux_data


def _prior_unflatten(aux_data, children):
    """Unflatten PriorArrays from JAX pytree."""
    kwargs = dict(zip(_PRIOR_ARRAY_FIELDS, children))
    kwargs.update(zip(_PRIOR_STATIC_FIELDS, aux_data))
    return PriorArrays(**kwargs)


jax.tree_util.register_pytree_node(
    PriorArrays,
    _prior_flatten,
    _prior_unflatten
)


def build_prior_arrays(prior: Dict[str, Any]) -> PriorArrays:
    """
    Convert a cleaned prior dict into PriorArrays.

    Args:
        prior: Prior dict with every option filled in (see prior_config.clean_prior)
    """
    as_array = lambda name: jnp.asarray(np.asarray(prior[name], dtype=np.float64))
    return PriorArrays(
        **{name: as_array(name) for name in _PRIOR_ARRAY_FIELDS},
        K=int(prior['K']),
        merge_step=bool(prior['merge_step']),
        merge_par=float(prior['merge_par']),
        shared_alpha=bool(prior['shared_alpha']),
        truncation_type=str(prior['truncation_type']),
    )


@dataclass(frozen=True)
class RunParams:
    """
    Immutable run parameters for the sampling schedule.

    Total sweeps = NBURN + NSAVE * NSKIP.
    """
    NBURN: int
    NSAVE: int
    NSKIP: int
    NDISPLAY: int
    SEED: int
    MAX_CHOLESKY_TRIES: int = 8
    FALLBACK_WARNING_THRESHOLD: int = 1
    DUMP_PATH: Optional[str] = None

    @property
    def total_sweeps(self) -> int:
        return self.NBURN + self.NSAVE * self.NSKIP

    def is_saved(self, iteration: int) -> bool:
        """Whether the state after 0-based sweep `iteration` is kept."""
        if iteration < self.NBURN:
            return False
        return (iteration - self.NBURN + 1) % self.NSKIP == 0


class ComponentRoles(NamedTuple):
    """
    Role of every component slot, resolved from R at the start of a step.

    shared[k] is True for Shared(pool_index[k] into w_0) and False for
    Specific(pool_index[k] into every w_j).
    """
    shared: jnp.ndarray      # (K,) bool
    pool_index: jnp.ndarray  # (K,) int

    @property
    def n_shared(self):
        return jnp.sum(self.shared)

    @property
    def n_specific(self):
        return self.shared.shape[0] - jnp.sum(self.shared)


@jax.jit
def resolve_roles(R) -> ComponentRoles:
    """Build ComponentRoles from the sharing indicator vector."""
    shared = R == 1
    shared_rank = jnp.cumsum(shared) - 1
    specific_rank = jnp.cumsum(~shared) - 1
    return ComponentRoles(shared=shared, pool_index=jnp.where(shared, shared_rank, specific_rank))


class SweepInfo(NamedTuple):
    """Events counted during one sweep."""
    n_fallback: int
    n_merged: int


@dataclass(frozen=True)
class Chain:
    """
    Output of a sampler run.

    draws holds every saved MixtureState stacked along a leading axis of
    length n_saved (None when nothing was saved). fallback_counts and
    merge_counts have one entry per sweep, burn-in included.
    """
    draws: Optional[MixtureState]
    fallback_counts: np.ndarray
    merge_counts: np.ndarray
    Y: np.ndarray
    C: np.ndarray
    prior: Dict[str, Any]
    mcmc: Dict[str, Any]
    wall_time: float = 0.0

    @property
    def n_saved(self) -> int:
        return 0 if self.draws is None else int(self.draws.Z.shape[0])

    def state(self, i: int) -> MixtureState:
        """The i-th saved MixtureState."""
        if self.draws is None:
            raise IndexError("Chain has no saved draws")
        return jax.tree_util.tree_map(lambda x: x[i], self.draws)

    def save(self, filepath: str) -> None:
        # Import here to avoid circular dependency
        from ..checkpoint_io import save_chain
        save_chain(filepath, self)

    @classmethod
    def load(cls, filepath: str) -> 'Chain':
        from ..checkpoint_io import load_chain
        return load_chain(filepath)
