"""
Error Handling and Validation Utilities for the Sampler

This module provides the exception types raised by the sampler, validation
functions for inputs and configuration, and sampler-health diagnostics.

Exceptions:
    InvalidInputError - malformed data or group labels (never retried)
    NonPositiveDefiniteError - Cholesky failure (retried with jitter, then fatal)
    SamplerInstabilityError - non-finite densities or weights (aborts the chain)
"""

from typing import Any, Dict

import numpy as np

import logging
logger = logging.getLogger('cremid')


TRUNCATION_TYPES = ('fixed', 'adaptive')


class InvalidInputError(ValueError):
    """Input data or group labels cannot be sampled from."""


class NonPositiveDefiniteError(ValueError):
    """A matrix expected to be symmetric positive-definite is not."""


class SamplerInstabilityError(RuntimeError):
    """
    Numerical breakdown inside a sweep.

    Carries the state the sweep started from so the driver can dump it.
    The driver fills in `sweep` before re-raising.
    """

    def __init__(self, message, state=None, sweep=None):
        super().__init__(message)
        self.state = state
        self.sweep = sweep


def validate_group_labels(C) -> int:
    """
    Check that group labels are exactly the integers 1..J with no gaps.

    Args:
        C: Group label vector (n,)

    Returns:
        J: Number of groups

    Raises:
        InvalidInputError: If labels are not integers or skip a value
    """
    C = np.asarray(C)
    if C.ndim != 1 or C.size == 0:
        raise InvalidInputError(f"Group labels must be a non-empty vector, got shape {C.shape}")
    if not np.all(np.isfinite(C)) or not np.all(np.equal(np.mod(C, 1), 0)):
        raise InvalidInputError("Group labels must be integers")

    unique = np.unique(C.astype(np.int64))
    J = len(unique)
    if not np.array_equal(unique, np.arange(1, J + 1)):
        raise InvalidInputError(
            f"Group labels should look like 1, 2, ..., J; got unique values {unique.tolist()}"
        )
    return J


def validate_data(Y, C) -> None:
    """
    Validates the data matrix against the group label vector.

    Raises:
        InvalidInputError: If shapes disagree or Y has non-finite entries
    """
    Y = np.asarray(Y)
    errors = []

    if Y.ndim != 2:
        errors.append(f"Y must be a 2-d matrix, got {Y.ndim} dimension(s)")
    elif Y.shape[0] != np.asarray(C).shape[0]:
        errors.append(f"Y has {Y.shape[0]} rows but C has {np.asarray(C).shape[0]} labels")
    if Y.size and not np.all(np.isfinite(Y)):
        errors.append("Y contains NaN or Inf values")

    if errors:
        raise InvalidInputError("Invalid input data:\n  " + "\n  ".join(errors))


def validate_mcmc_config(mcmc_config: Dict[str, Any]) -> None:
    """
    Validates that MCMC schedule configuration is sensible.

    Args:
        mcmc_config: Configuration dictionary (already cleaned)

    Raises:
        ValueError: If configuration is invalid
    """
    errors = []

    if mcmc_config['nburn'] < 0:
        errors.append("nburn must be >= 0")

    if mcmc_config['nsave'] < 0:
        errors.append("nsave must be >= 0")

    if mcmc_config['nskip'] < 1:
        errors.append("nskip must be >= 1")

    if mcmc_config['ndisplay'] < 0:
        errors.append("ndisplay must be >= 0")

    if mcmc_config['max_cholesky_tries'] < 1:
        errors.append("max_cholesky_tries must be >= 1")

    if not isinstance(mcmc_config['use_double'], bool):
        errors.append(f"use_double must be True or False, got {mcmc_config['use_double']!r}")

    if errors:
        raise ValueError("Invalid MCMC configuration:\n  " + "\n  ".join(errors))


def validate_prior_config(prior: Dict[str, Any], p: int) -> None:
    """
    Validates a cleaned prior configuration against the data dimension.

    Args:
        prior: Prior dict with every option filled in
        p: Data dimension

    Raises:
        ValueError: If any hyperparameter is out of its support
    """
    errors = []

    if int(prior['K']) < 1:
        errors.append("K must be >= 1")

    floor, ceiling = prior['epsilon_range']
    if not 0 < floor < ceiling:
        errors.append(f"epsilon_range must satisfy 0 < min < max, got {tuple(prior['epsilon_range'])}")

    if np.shape(prior['m_0']) != (p,):
        errors.append(f"m_0 must have shape ({p},), got {np.shape(prior['m_0'])}")

    for name in ('V_0', 'Psi_2'):
        matrix = np.asarray(prior[name], dtype=float)
        if matrix.shape != (p, p):
            errors.append(f"{name} must have shape ({p}, {p}), got {matrix.shape}")
        elif not np.allclose(matrix, matrix.T):
            errors.append(f"{name} must be symmetric")
        elif np.any(np.linalg.eigvalsh(matrix) <= 0):
            errors.append(f"{name} must be positive-definite")

    for name in ('nu_1', 'nu_2'):
        if prior[name] <= p - 1:
            errors.append(f"{name} must be > p - 1 = {p - 1}, got {prior[name]}")

    for name in ('tau_k0', 'tau_alpha', 'tau_rho', 'tau_varphi', 'tau_eta'):
        values = np.asarray(prior[name], dtype=float)
        if values.shape != (2,) or np.any(values <= 0):
            errors.append(f"{name} must be two positive numbers, got {prior[name]}")

    for name in ('point_masses_rho', 'point_masses_varphi'):
        masses = np.asarray(prior[name], dtype=float)
        if masses.shape != (2,) or np.any(masses < 0) or masses.sum() > 1:
            errors.append(f"{name} must be two non-negative numbers summing to <= 1, got {prior[name]}")

    if prior['merge_par'] <= 0:
        errors.append("merge_par must be > 0")

    if prior['truncation_type'] not in TRUNCATION_TYPES:
        errors.append(f"truncation_type must be one of {TRUNCATION_TYPES}, got '{prior['truncation_type']}'")

    if errors:
        raise ValueError("Invalid prior configuration:\n  " + "\n  ".join(errors))


def diagnose_chain(chain) -> Dict[str, Any]:
    """
    Checks a finished chain for signs of numerical trouble.

    Args:
        chain: Chain returned by fit()

    Returns:
        diagnostics: Dictionary with issues, warnings, and info
    """
    diagnostics = {
        'issues': [],
        'warnings': [],
        'info': []
    }

    draws = chain.draws
    if draws is not None:
        for name in ('mu', 'Sigma', 'w0', 'w', 'rho', 'varphi', 'alpha'):
            if not np.all(np.isfinite(getattr(draws, name))):
                diagnostics['issues'].append(f"Saved draws of '{name}' contain NaN or Inf values")

    total_fallbacks = int(np.sum(chain.fallback_counts))
    if total_fallbacks > 0:
        sweeps_hit = int(np.count_nonzero(chain.fallback_counts))
        diagnostics['warnings'].append(
            f"{total_fallbacks} label draw(s) over {sweeps_hit} sweep(s) fell back to uniform "
            f"probabilities - the mixture has lost support for some observations"
        )

    diagnostics['info'].append(f"Saved draws: {chain.n_saved}")
    diagnostics['info'].append(f"Total sweeps: {len(chain.fallback_counts)}")
    diagnostics['info'].append(f"Components merged: {int(np.sum(chain.merge_counts))}")
    if draws is not None and chain.n_saved > 0:
        occupied = [len(np.unique(z)) for z in draws.Z]
        diagnostics['info'].append(
            f"Occupied components per draw: min {min(occupied)}, max {max(occupied)}"
        )

    return diagnostics


def print_diagnostics(diagnostics: Dict[str, Any]) -> None:
    """Pretty-print diagnostics from diagnose_chain."""
    if diagnostics['issues']:
        logger.error("[ERROR] ISSUES:")
        for issue in diagnostics['issues']:
            logger.error(f"  - {issue}")

    if diagnostics['warnings']:
        logger.warning("[WARN] WARNINGS:")
        for warning in diagnostics['warnings']:
            logger.warning(f"  - {warning}")

    if diagnostics['info']:
        logger.info("[INFO] INFO:")
        for info in diagnostics['info']:
            logger.info(f"  - {info}")

    if not diagnostics['issues'] and not diagnostics['warnings']:
        logger.info("[OK] No issues detected")
