"""
JAX Configuration - MUST be imported before any JAX imports.

This module sets environment variables for JAX configuration including:
- Double precision (the sampler's conjugate updates need float64)
- Persistent compilation cache directory
- Minimum compile time threshold for caching
"""
import os
from pathlib import Path

# --- PRECISION ---
# Covariance draws and Cholesky factors lose positive-definiteness in float32
os.environ.setdefault("JAX_ENABLE_X64", "1")

# --- PERSISTENT COMPILATION CACHE ---
# Enables cross-session caching of compiled kernels
_JAX_CACHE_DIR = Path.home() / ".cache" / "jax" / "cremid_cache"
_JAX_CACHE_DIR.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("JAX_COMPILATION_CACHE_DIR", str(_JAX_CACHE_DIR))
os.environ.setdefault("JAX_PERSISTENT_CACHE_MIN_COMPILE_TIME_SECS", "1.0")
