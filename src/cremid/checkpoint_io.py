"""
Checkpoint I/O utilities for saving and loading sampler output.

This module provides functions for:
- Saving a finished Chain to disk
- Loading a Chain back (draws, event counts, echoed data and configs)
- Dumping a single MixtureState when a sweep breaks down numerically
"""

import json
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

import logging
logger = logging.getLogger('cremid')


def _state_fields():
    # Import here to avoid circular dependency
    from .mcmc.types import MixtureState
    return MixtureState, tuple(f.name for f in fields(MixtureState))


def _npz_path(filepath) -> Path:
    # np.savez_compressed appends .npz when the suffix is missing
    filepath = Path(filepath)
    if filepath.suffix != '.npz':
        filepath = filepath.with_name(filepath.name + '.npz')
    return filepath


def _config_to_json(config: Dict[str, Any]) -> str:
    def convert_for_json(obj):
        if hasattr(obj, 'tolist'):
            return obj.tolist()
        elif isinstance(obj, dict):
            return {k: convert_for_json(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [convert_for_json(item) for item in obj]
        return obj
    return json.dumps(convert_for_json(config))


def save_chain(filepath: str, chain) -> None:
    """
    Save a Chain to disk.

    Args:
        filepath: Path to save to (.npz is appended when missing)
        chain: Chain returned by fit()

    Saves:
        - Every saved draw, one array per state field (prefixed 'draw_')
        - Per-sweep fallback and merge counts
        - The data (Y, C) and the prior / mcmc configs as JSON
    """
    _, names = _state_fields()
    payload = {
        'fallback_counts': np.asarray(chain.fallback_counts),
        'merge_counts': np.asarray(chain.merge_counts),
        'Y': np.asarray(chain.Y),
        'C': np.asarray(chain.C),
        'prior': _config_to_json(chain.prior),
        'mcmc': _config_to_json(chain.mcmc),
        'wall_time': float(chain.wall_time),
        'n_saved': chain.n_saved,
    }
    if chain.draws is not None:
        for name in names:
            payload[f'draw_{name}'] = np.asarray(getattr(chain.draws, name))

    filepath = _npz_path(filepath)
    np.savez_compressed(filepath, **payload)
    logger.info(f"Chain saved to {filepath}")


def load_chain(filepath: str):
    """
    Load a Chain saved with save_chain.

    Array-valued prior options come back as numpy arrays.
    """
    from .mcmc.types import Chain
    MixtureState, names = _state_fields()

    filepath = _npz_path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Chain file not found: {filepath}")

    # Copy arrays to avoid keeping memory-mapped file references
    with np.load(filepath, allow_pickle=False) as data:
        draws = None
        if int(data['n_saved']) > 0:
            draws = MixtureState(**{name: data[f'draw_{name}'].copy() for name in names})
        prior = {
            k: (np.asarray(v, dtype=np.float64) if isinstance(v, list) else v)
            for k, v in json.loads(str(data['prior'])).items()
        }
        chain = Chain(
            draws=draws,
            fallback_counts=data['fallback_counts'].copy(),
            merge_counts=data['merge_counts'].copy(),
            Y=data['Y'].copy(),
            C=data['C'].copy(),
            prior=prior,
            mcmc=json.loads(str(data['mcmc'])),
            wall_time=float(data['wall_time']),
        )

    logger.info(f"Chain loaded from {filepath}: {chain.n_saved} saved draws")
    return chain


def dump_state(filepath: str, state, sweep: Optional[int] = None, message: str = "") -> str:
    """
    Write a MixtureState to disk for post-mortem inspection.

    Args:
        filepath: Destination (.npz file)
        state: MixtureState (may hold non-finite values)
        sweep: 0-based sweep number at which the failure happened
        message: Error message stored alongside the state

    Returns:
        Path of the written file
    """
    _, names = _state_fields()
    payload = {name: np.asarray(getattr(state, name)) for name in names}
    payload['sweep'] = -1 if sweep is None else int(sweep)
    payload['message'] = str(message)

    filepath = _npz_path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(filepath, **payload)
    logger.info(f"State dump written to {filepath}")
    return str(filepath)


def load_state_dump(filepath: str) -> Dict[str, Any]:
    """
    Load a dump written by dump_state.

    Returns:
        Dict with 'state' (MixtureState of numpy arrays), 'sweep' and 'message'
    """
    MixtureState, names = _state_fields()
    with np.load(_npz_path(filepath), allow_pickle=False) as data:
        return {
            'state': MixtureState(**{name: data[name].copy() for name in names}),
            'sweep': int(data['sweep']),
            'message': str(data['message']),
        }
