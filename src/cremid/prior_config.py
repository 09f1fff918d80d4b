"""
Prior configuration utilities.

This module fills in data-dependent prior defaults and saves / loads a
cleaned prior to JSON so a run's hyperparameters can be inspected or
reused without re-deriving them from the data.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np


def _empirical_moments(Y):
    Y = np.asarray(Y, dtype=np.float64)
    center = Y.mean(axis=0)
    if Y.shape[0] > 1:
        cov = np.atleast_2d(np.cov(Y, rowvar=False))
    else:
        cov = np.eye(Y.shape[1])
    # Degenerate columns (constant data) would give a singular default scale
    if np.any(np.linalg.eigvalsh(cov) <= 0):
        cov = cov + np.eye(Y.shape[1]) * max(float(np.mean(np.diag(cov))), 1.0) * 1e-6
    return center, cov


def default_prior(Y) -> Dict[str, Any]:
    """
    Prior with every option at its default for data Y (n x p).

    Data-dependent entries: m_0 = column means, V_0 = 100 * cov(Y),
    Psi_2 = cov(Y), nu_1 = nu_2 = p + 2.
    """
    p = np.asarray(Y).shape[1]
    center, cov = _empirical_moments(Y)
    return {
        'K': 10,
        'epsilon_range': [1e-10, 1.0],
        'm_0': center,
        'V_0': 100.0 * cov,
        'nu_1': p + 2.0,
        'nu_2': p + 2.0,
        'Psi_2': cov,
        'tau_k0': [4.0, 4.0],
        'tau_alpha': [1.0, 1.0],
        'tau_rho': [0.5, 0.5],
        'tau_varphi': [0.5, 0.5],
        'point_masses_rho': [0.0, 0.0],
        'point_masses_varphi': [0.0, 0.0],
        'merge_step': True,
        'merge_par': 0.1,
        'shared_alpha': True,
        'truncation_type': 'fixed',
        'tau_eta': [1.0, 1.0],
    }


def clean_prior(prior: Optional[Dict[str, Any]], Y) -> Dict[str, Any]:
    """
    Fill every missing prior option with its default.

    User values are kept as given; array-valued options are converted to
    float64 numpy arrays.
    """
    prior = dict(prior or {})
    for name, value in default_prior(Y).items():
        prior.setdefault(name, value)

    for name in ('m_0', 'V_0', 'Psi_2', 'epsilon_range', 'tau_k0', 'tau_alpha', 'tau_rho',
                 'tau_varphi', 'point_masses_rho', 'point_masses_varphi', 'tau_eta'):
        prior[name] = np.asarray(prior[name], dtype=np.float64)
    for name in ('nu_1', 'nu_2', 'merge_par'):
        prior[name] = float(prior[name])
    prior['K'] = int(prior['K'])
    prior['merge_step'] = bool(prior['merge_step'])
    prior['shared_alpha'] = bool(prior['shared_alpha'])
    return prior


def save_prior_config(filepath: str, prior: Dict[str, Any]) -> str:
    """
    Save a prior configuration to JSON.

    Args:
        filepath: Destination .json path
        prior: Prior dict (numpy arrays are written as nested lists)

    Returns:
        Path to saved config file
    """
    # Convert numpy arrays to lists for JSON serialization
    def convert_for_json(obj):
        if hasattr(obj, 'tolist'):
            return obj.tolist()
        elif isinstance(obj, dict):
            return {k: convert_for_json(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [convert_for_json(item) for item in obj]
        return obj

    config_path = Path(filepath)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        json.dump(convert_for_json(prior), f, indent=2)

    print(f"Prior config saved: {config_path}", flush=True)
    return str(config_path)


def load_prior_config(filepath: str) -> Optional[Dict[str, Any]]:
    """
    Load a prior configuration from JSON.

    Returns:
        Dict with prior config, or None if file doesn't exist
    """
    config_path = Path(filepath)
    if not config_path.exists():
        return None

    with open(config_path, 'r') as f:
        return json.load(f)
