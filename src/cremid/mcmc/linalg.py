"""
Dense Linear Algebra Kernels.

Matrix operations shared by every sampler step:
- cholesky / regularized_cholesky: SPD factorization with jitter retries
- failed_factors: per-matrix failure mask for batched factorizations
- log_det_from_cholesky, quadratic_form, mvn_logpdf: Gaussian density pieces
- sample_wishart, sample_invwishart, sample_niw: conjugate draws (Bartlett)
- niw_logpdf: Normal-Inverse-Wishart log density
- symmetrized_kl: divergence between two Gaussian laws
- safe_log: log that maps zero mass to -inf without warnings

Every random function takes an explicit JAX key. Nothing here touches
global random state.
"""

import numpy as np
import jax
import jax.numpy as jnp
import jax.random as random
import jax.scipy.linalg
from jax.scipy.special import multigammaln

from ..error_handling import NonPositiveDefiniteError

import logging
logger = logging.getLogger('cremid')


LOG_2PI = float(np.log(2.0 * np.pi))

# Jitter grows by this factor on each failed factorization
JITTER_GROWTH = 10.0


# =============================================================================
# FACTORIZATION
# =============================================================================

def failed_factors(L):
    """
    Mask of Cholesky factors that did not succeed.

    jnp.linalg.cholesky returns NaN instead of raising, so failure is read
    off the factor itself.

    Args:
        L: Factor(s) with shape (..., p, p)

    Returns:
        Boolean numpy array with shape (...)
    """
    return np.asarray(~jnp.all(jnp.isfinite(L), axis=(-2, -1)))


def cholesky(M):
    """
    Lower Cholesky factor of a symmetric positive-definite matrix.

    Args:
        M: Matrix (p, p) or batch of matrices (..., p, p)

    Returns:
        L: Lower-triangular factor with L @ L.T == M

    Raises:
        NonPositiveDefiniteError: If any matrix is not SPD
    """
    L = jnp.linalg.cholesky(jnp.asarray(M))
    if np.any(failed_factors(L)):
        raise NonPositiveDefiniteError("Matrix is not symmetric positive-definite")
    return L


def regularized_cholesky(M, epsilon_range=(1e-10, 1.0), max_tries=8):
    """
    Cholesky factor with diagonal jitter on failure.

    The first retry adds epsilon_range[0] * mean(|diag(M)|) to the diagonal;
    each later retry multiplies the jitter by 10, capped at
    epsilon_range[1] * mean(|diag(M)|).

    Args:
        M: Single matrix (p, p)
        epsilon_range: (floor, ceiling) of the relative jitter
        max_tries: Number of jittered attempts before giving up

    Returns:
        L: Lower Cholesky factor of M (+ jitter * I)

    Raises:
        NonPositiveDefiniteError: After max_tries consecutive failures
    """
    M = jnp.asarray(M)
    L = jnp.linalg.cholesky(M)
    if not failed_factors(L):
        return L

    if not bool(jnp.all(jnp.isfinite(M))):
        raise NonPositiveDefiniteError("Matrix contains NaN or Inf values")

    floor, ceiling = epsilon_range
    scale = float(jnp.mean(jnp.abs(jnp.diag(M))))
    if not np.isfinite(scale) or scale == 0.0:
        scale = 1.0

    eye = jnp.eye(M.shape[-1], dtype=M.dtype)
    jitter = floor * scale
    for attempt in range(max_tries):
        L = jnp.linalg.cholesky(M + jitter * eye)
        if not failed_factors(L):
            logger.debug(f"Cholesky succeeded after {attempt + 1} jitter attempt(s) (jitter={jitter:.3g})")
            return L
        jitter = min(jitter * JITTER_GROWTH, ceiling * scale)

    raise NonPositiveDefiniteError(
        f"Matrix is not positive-definite after {max_tries} jitter attempts (last jitter {jitter:.3g})"
    )


def log_det_from_cholesky(L):
    """log|M| from the lower Cholesky factor of M."""
    return 2.0 * jnp.sum(jnp.log(jnp.diagonal(L, axis1=-2, axis2=-1)), axis=-1)


def quadratic_form(L, x):
    """
    (x)' M^{-1} (x) for every row of x, using the Cholesky factor L of M.

    Args:
        L: Lower factor (p, p)
        x: Vector (p,) or rows (n, p)
    """
    z = jax.scipy.linalg.solve_triangular(L, jnp.atleast_2d(x).T, lower=True)
    q = jnp.sum(z ** 2, axis=0)
    return q[0] if jnp.ndim(x) == 1 else q


def mvn_logpdf(x, mean, L):
    """
    Multivariate normal log density with covariance factor L.

    Args:
        x: Point (p,) or points (n, p)
        mean: Mean vector (p,)
        L: Lower Cholesky factor of the covariance (p, p)
    """
    p = mean.shape[-1]
    return -0.5 * (p * LOG_2PI + log_det_from_cholesky(L) + quadratic_form(L, x - mean))


def safe_log(x):
    """Elementwise log with exact zeros mapped to -inf."""
    positive = x > 0
    return jnp.where(positive, jnp.log(jnp.where(positive, x, 1.0)), -jnp.inf)


def symmetrize(M):
    return 0.5 * (M + jnp.swapaxes(M, -2, -1))


# =============================================================================
# SAMPLING
# =============================================================================

def sample_bartlett(key, df, p):
    """
    Bartlett factor A of a standard Wishart draw: A @ A.T ~ W(df, I_p).

    Diagonal entries are sqrt(chi2(df - i)), strictly-lower entries N(0, 1).
    """
    key_diag, key_off = random.split(key)
    dof = df - jnp.arange(p)
    diag = jnp.sqrt(2.0 * random.gamma(key_diag, dof / 2.0))
    off = jnp.tril(random.normal(key_off, (p, p)), k=-1)
    return off + jnp.diag(diag)


@jax.jit
def sample_wishart(key, df, scale):
    """Draw W ~ Wishart(df, scale) with E[W] = df * scale."""
    p = scale.shape[-1]
    T = jnp.linalg.cholesky(scale) @ sample_bartlett(key, df, p)
    return symmetrize(T @ T.T)


def _invwishart_with_root(key, df, scale):
    """
    Draw Sigma ~ IW(df, scale) and a square root G with G @ G.T == Sigma.

    If W ~ W(df, scale^{-1}) then W = C^{-T} A A' C^{-1} with C = chol(scale),
    so Sigma = W^{-1} = (C A^{-T})(C A^{-T})' and scale is never inverted.
    """
    p = scale.shape[-1]
    C = jnp.linalg.cholesky(scale)
    A = sample_bartlett(key, df, p)
    A_inv = jax.scipy.linalg.solve_triangular(A, jnp.eye(p, dtype=scale.dtype), lower=True)
    G = C @ A_inv.T
    return symmetrize(G @ G.T), G


@jax.jit
def sample_invwishart(key, df, scale):
    """Draw Sigma ~ Inverse-Wishart(df, scale) with E[Sigma] = scale / (df - p - 1)."""
    cov, _ = _invwishart_with_root(key, df, scale)
    return cov


@jax.jit
def sample_niw(key, mean0, scale0, df0, prior_cov):
    """
    Draw (mean, cov) from a Normal-Inverse-Wishart law.

    cov ~ IW(df0, prior_cov), then mean | cov ~ N(mean0, cov / scale0).

    Args:
        key: JAX random key
        mean0: Location (p,)
        scale0: Mean precision scaling (kappa), scalar
        df0: Degrees of freedom, scalar
        prior_cov: Inverse-Wishart scale matrix (p, p)

    Returns:
        mean: (p,)
        cov: (p, p)
    """
    key_cov, key_mean = random.split(key)
    cov, root = _invwishart_with_root(key_cov, df0, prior_cov)
    z = random.normal(key_mean, mean0.shape, dtype=mean0.dtype)
    mean = mean0 + root @ z / jnp.sqrt(scale0)
    return mean, cov


# =============================================================================
# DENSITIES AND DIVERGENCES
# =============================================================================

@jax.jit
def invwishart_logpdf(cov, df, scale):
    """Inverse-Wishart log density of cov."""
    p = cov.shape[-1]
    L_cov = jnp.linalg.cholesky(cov)
    L_scale = jnp.linalg.cholesky(scale)
    trace_term = jnp.trace(jax.scipy.linalg.cho_solve((L_cov, True), scale))
    return (0.5 * df * log_det_from_cholesky(L_scale)
            - 0.5 * df * p * jnp.log(2.0)
            - multigammaln(0.5 * df, p)
            - 0.5 * (df + p + 1) * log_det_from_cholesky(L_cov)
            - 0.5 * trace_term)


@jax.jit
def niw_logpdf(mean, cov, mean0, scale0, df0, prior_cov):
    """Normal-Inverse-Wishart log density of (mean, cov)."""
    L_mean = jnp.linalg.cholesky(cov / scale0)
    return invwishart_logpdf(cov, df0, prior_cov) + mvn_logpdf(mean, mean0, L_mean)


@jax.jit
def symmetrized_kl(mean_a, cov_a, mean_b, cov_b):
    """
    Symmetrized Kullback-Leibler divergence 0.5 * (KL(a||b) + KL(b||a)).

    The log-determinant terms cancel, leaving
    0.25 * [tr(Sb^-1 Sa) + tr(Sa^-1 Sb) + d'(Sa^-1 + Sb^-1)d - 2p].
    """
    p = mean_a.shape[-1]
    L_a = jnp.linalg.cholesky(cov_a)
    L_b = jnp.linalg.cholesky(cov_b)
    diff = mean_a - mean_b
    trace_ab = jnp.trace(jax.scipy.linalg.cho_solve((L_b, True), cov_a))
    trace_ba = jnp.trace(jax.scipy.linalg.cho_solve((L_a, True), cov_b))
    mahalanobis = quadratic_form(L_a, diff) + quadratic_form(L_b, diff)
    return 0.25 * (trace_ab + trace_ba + mahalanobis - 2.0 * p)
