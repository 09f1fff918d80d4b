"""
MCMC Subpackage - Core sampler implementation.

This package contains the sampling engine:
- backend: Main entry point (fit)
- config: Configuration and initialization
- sweep: One Gibbs sweep in fixed step order
- components: NIW component and hyperparameter updates
- labels: Label update
- weights: Weight, rho, varphi and sharing-indicator updates
- concentration: Concentration update
- merge: Post-sweep merge of near-duplicate components
- linalg: Dense linear algebra kernels
- types: Core data structures (MixtureState, PriorArrays, RunParams, Chain)
- utils: Miscellaneous utilities
"""

# Import types first (needed by other modules)
from .types import (
    Chain,
    ComponentRoles,
    MixtureState,
    PriorArrays,
    RunParams,
    SweepInfo,
    build_prior_arrays,
    resolve_roles,
)

# Import main entry point
from .backend import fit

# Import commonly used functions
from .config import (
    configure_sampler,
    gen_rng_keys,
    initial_labels,
    initialize_state,
)
from .sweep import gibbs_sweep

__all__ = [
    # Main entry point
    'fit',
    # Types
    'Chain',
    'ComponentRoles',
    'MixtureState',
    'PriorArrays',
    'RunParams',
    'SweepInfo',
    'build_prior_arrays',
    'resolve_roles',
    # Config
    'configure_sampler',
    'gen_rng_keys',
    'initial_labels',
    'initialize_state',
    # Sweep
    'gibbs_sweep',
]
