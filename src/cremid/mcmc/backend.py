"""
Sampler Backend - Main Entry Point.

This module provides the fit() function that runs the sampler end to end:
validation and configuration, initialization, the burn-in / save / thin
loop, and assembly of the Chain. The implementation is split across
several modules:

- types: Data structures (MixtureState, PriorArrays, RunParams, Chain)
- config: Configuration and initialization
- sweep: One Gibbs sweep in fixed step order
- components, labels, weights, concentration, merge: the individual updates
"""

import jax
import numpy as np
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from .types import Chain, MixtureState, RunParams
from .config import configure_sampler, initialize_state
from .sweep import gibbs_sweep

# Import error handling for diagnostics
from ..error_handling import (
    NonPositiveDefiniteError,
    SamplerInstabilityError,
    diagnose_chain,
    print_diagnostics,
)
from ..checkpoint_io import dump_state

import logging
logger = logging.getLogger('cremid')

# Public API for this module
__all__ = [
    'fit',
]


# =============================================================================
# FIT HELPER FUNCTIONS
# =============================================================================

def _handle_failure(error, state: MixtureState, sweep: int, run_params: RunParams) -> None:
    """
    Log a fatal sweep error and write a diagnostic dump if requested.

    The error is annotated with the sweep number; the caller re-raises it.
    """
    if isinstance(error, SamplerInstabilityError):
        error.sweep = sweep
        if error.state is None:
            error.state = state
        dump_source = error.state
    else:
        dump_source = state

    logger.error(f"Sampler failed at sweep {sweep}: {error}")
    if run_params.DUMP_PATH is not None:
        path = dump_state(run_params.DUMP_PATH, dump_source, sweep=sweep, message=str(error))
        logger.error(f"State at failure dumped to {path}")


def _run_sweeps(
    key,
    Y,
    C,
    J: int,
    state: MixtureState,
    prior_arrays,
    run_params: RunParams,
) -> Tuple[List[MixtureState], np.ndarray, np.ndarray, float]:
    """
    Execute the main sampling loop.

    Returns:
        saved: Saved states (arrays still on device)
        fallback_counts: (total_sweeps,) uniform-fallback label draws per sweep
        merge_counts: (total_sweeps,) merges per sweep
        wall_time: Total wall clock time for sampling
    """
    total = run_params.total_sweeps
    fallback_counts = np.zeros(total, dtype=np.int64)
    merge_counts = np.zeros(total, dtype=np.int64)
    saved = []

    if total <= 0:
        return saved, fallback_counts, merge_counts, 0.0

    print("\n--- MCMC RUN ---", flush=True)
    print(f"  Burn-in sweeps: {run_params.NBURN}, saved draws: {run_params.NSAVE}, "
          f"thinning: {run_params.NSKIP}", flush=True)

    start_run_time = time.perf_counter()
    for iteration in range(total):
        try:
            state, key, info = gibbs_sweep(key, Y, C, J, state, prior_arrays, run_params)
        except (SamplerInstabilityError, NonPositiveDefiniteError) as error:
            _handle_failure(error, state, iteration, run_params)
            raise

        fallback_counts[iteration] = info.n_fallback
        merge_counts[iteration] = info.n_merged
        if 0 < run_params.FALLBACK_WARNING_THRESHOLD <= info.n_fallback:
            logger.warning(
                f"Sweep {iteration}: {info.n_fallback} label(s) drawn from the uniform fallback"
            )

        if run_params.is_saved(iteration):
            saved.append(state)

        if run_params.NDISPLAY > 0 and (iteration + 1) % run_params.NDISPLAY == 0:
            phase = "burn-in" if iteration < run_params.NBURN else "saving"
            n_occupied = len(np.unique(np.asarray(state.Z)))
            print(f"  Sweep {iteration + 1}/{total} ({phase}): "
                  f"{n_occupied} occupied components, {len(saved)} draws saved", flush=True)

    jax.block_until_ready(state)
    wall_time = time.perf_counter() - start_run_time

    print(f"\n--- MCMC Run Summary ---")
    print(f"  Total Wall Time: {timedelta(seconds=int(wall_time))} ({wall_time:.2f}s)")

    total_fallbacks = int(fallback_counts.sum())
    if total_fallbacks > 0:
        logger.warning(
            f"{total_fallbacks} label draw(s) fell back to uniform probabilities "
            f"over {int(np.count_nonzero(fallback_counts))} sweep(s)"
        )

    return saved, fallback_counts, merge_counts, wall_time


def _stack_draws(saved: List[MixtureState]) -> Optional[MixtureState]:
    """Transfer saved states to host and stack them along a leading axis."""
    if not saved:
        return None
    print("Transferring draws to Host...", flush=True)
    host = jax.device_get(saved)
    return jax.tree_util.tree_map(lambda *leaves: np.stack(leaves), *host)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def fit(
    Y,
    C,
    prior: Optional[Dict[str, Any]] = None,
    mcmc: Optional[Dict[str, Any]] = None,
    state: Optional[Dict[str, Any]] = None,
) -> Chain:
    """
    Fit the multi-group shared / specific Gaussian mixture by MCMC.

    Args:
        Y: Data matrix (n, p)
        C: Group label of every row of Y, values 1..J with no gaps
        prior: Prior options; any missing option takes its default
            (see prior_config.default_prior)
        mcmc: Schedule options:
            - nburn: burn-in sweeps (default 5000)
            - nsave: draws to keep (default 1000)
            - nskip: thinning, keep every nskip-th sweep (default 1)
            - ndisplay: progress line every ndisplay sweeps, 0 for none (default 1000)
            - seed: RNG seed (default 0)
            - use_double: run in float64 (default True)
            - max_cholesky_tries: jitter / redraw budget (default 8)
            - fallback_warning_threshold: per-sweep fallback count that triggers
              a warning (default 1)
            - dump_path: where to write the state if a sweep fails (default None)
        state: Optional starting values: 'Z' (0-based labels), 'R' (0/1 per component)

    Returns:
        Chain with nsave stacked draws

    Raises:
        InvalidInputError: Malformed data, group labels or starting state
        ValueError: Invalid prior or mcmc options
        SamplerInstabilityError: Non-finite densities or weights during a sweep
        NonPositiveDefiniteError: A covariance could not be made SPD
    """
    user_config, runtime_ctx = configure_sampler(Y, C, prior, mcmc)
    prior_dict = user_config['prior']
    mcmc_config = user_config['mcmc']
    run_params = runtime_ctx['run_params']
    prior_arrays = runtime_ctx['prior_arrays']
    Y_jax, C_jax, J = runtime_ctx['Y'], runtime_ctx['C'], runtime_ctx['J']

    print("Generating initial state...", flush=True)
    initial = initialize_state(
        runtime_ctx['init_key'], Y_jax, J, prior_dict, prior_arrays, mcmc_config, state
    )

    saved, fallback_counts, merge_counts, wall_time = _run_sweeps(
        runtime_ctx['master_key'], Y_jax, C_jax, J, initial, prior_arrays, run_params
    )

    chain = Chain(
        draws=_stack_draws(saved),
        fallback_counts=fallback_counts,
        merge_counts=merge_counts,
        Y=np.asarray(Y, dtype=np.float64),
        C=np.asarray(C),
        prior=prior_dict,
        mcmc=mcmc_config,
        wall_time=wall_time,
    )
    print_diagnostics(diagnose_chain(chain))
    return chain
