"""
Joint delay-time inversion for WAVECORR.

Every off-diagonal lag ``lag[i, j]`` is treated as a measurement of
``delay_i - delay_j``. The measurements form an over-determined sparse
linear system that is solved by least squares (after VanDecar & Crosson,
BSSA 1990). The absolute time origin is unobservable, so the system has
a one-dimensional null space; it is removed by appending the constraint
row ``sum(delay) = 0``.

The result is a per-trace statistics table with columns:

0. mean correlation with all other traces
1. high side 1-sigma spread of column 0
2. low side 1-sigma spread of column 0
3. least-squares delay correction (seconds)
4. rms residual of the delay fit (seconds)
"""

import logging
import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.linalg import lsqr

from .traceset import InputError

logger = logging.getLogger(__name__)

STAT_MEAN_CORR = 0
STAT_CORR_HIGH = 1
STAT_CORR_LOW = 2
STAT_DELAY = 3
STAT_DELAY_RMS = 4
STAT_COLUMNS = ('mean_corr', 'corr_err_high', 'corr_err_low', 'delay', 'delay_rms')


def _check_square(name, matrix):
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise InputError(f"{name} must be a square matrix, got shape {matrix.shape}")
    return matrix


def correlation_spread(coefficients):
    """
    Mean off-diagonal correlation per trace with asymmetric 1-sigma errors.

    The high (low) error is the rms deviation of the values lying above
    (below) the mean, so a skewed distribution gives unequal errors.

    Returns
    -------
    mean, err_high, err_low : ndarray
        Length-M arrays. ``mean`` is NaN for a trace with no finite
        off-diagonal value; the errors are 0 when a side is empty.
    """
    coefficients = _check_square('coefficients', coefficients)
    n = coefficients.shape[0]
    mean = np.full(n, np.nan)
    err_high = np.zeros(n)
    err_low = np.zeros(n)

    for i in range(n):
        row = np.delete(coefficients[i], i)
        row = row[np.isfinite(row)]
        if row.size == 0:
            continue
        mean[i] = np.mean(row)
        resid = row - mean[i]
        above = resid[resid > 0]
        below = resid[resid < 0]
        if above.size:
            err_high[i] = np.sqrt(np.mean(above**2))
        if below.size:
            err_low[i] = np.sqrt(np.mean(below**2))

    return mean, err_high, err_low


def solve_delays(lags, atol=1e-12, btol=1e-12):
    """
    Least-squares per-trace delays from a pairwise lag matrix.

    Parameters
    ----------
    lags : array-like
        (M, M) lag matrix in seconds. Non-finite entries are skipped.
    atol, btol : float
        Stopping tolerances passed to ``scipy.sparse.linalg.lsqr``.

    Returns
    -------
    delays : ndarray
        Length-M delays summing to zero.
    rms : ndarray
        Per-trace rms of ``(delay_i - delay_j) - lag[i, j]`` over j != i.
    """
    lags = _check_square('lags', lags)
    n = lags.shape[0]
    if n < 2:
        return np.zeros(n), np.zeros(n)

    rows_i, rows_j = np.nonzero(~np.eye(n, dtype=bool))
    obs = lags[rows_i, rows_j]
    ok = np.isfinite(obs)
    rows_i, rows_j, obs = rows_i[ok], rows_j[ok], obs[ok]
    n_obs = obs.size

    obs_index = np.arange(n_obs)
    row_index = np.concatenate([obs_index, obs_index, np.full(n, n_obs)])
    col_index = np.concatenate([rows_i, rows_j, np.arange(n)])
    values = np.concatenate([np.ones(n_obs), -np.ones(n_obs), np.ones(n)])

    # last row is the zero-mean constraint
    design = coo_matrix((values, (row_index, col_index)), shape=(n_obs + 1, n)).tocsr()
    rhs = np.concatenate([obs, [0.0]])

    result = lsqr(design, rhs, atol=atol, btol=btol, iter_lim=max(100, 4 * n))
    delays, istop, itn = result[0], result[1], result[2]
    logger.debug(f"Delay inversion: {n_obs} observations, {n} unknowns, "
                 f"lsqr stop={istop} after {itn} iterations")

    predicted = delays[:, None] - delays[None, :]
    resid = predicted - lags
    np.fill_diagonal(resid, np.nan)
    finite = np.isfinite(resid)
    counts = finite.sum(axis=1)
    sq = np.where(finite, resid**2, 0.0).sum(axis=1)
    rms = np.zeros(n)
    has = counts > 0
    rms[has] = np.sqrt(sq[has] / counts[has])

    return delays, rms


def invert_delays(lags, coefficients):
    """
    Build the per-trace statistics table from the lag and coefficient matrices.

    Parameters
    ----------
    lags : array-like
        (M, M) antisymmetric lag matrix in seconds
    coefficients : array-like
        (M, M) symmetric coefficient matrix

    Returns
    -------
    stat : ndarray
        (M, 5) table, see module docstring for the column meanings.
        For a single trace the mean correlation is NaN and everything
        else is 0.
    """
    lags = _check_square('lags', lags)
    coefficients = _check_square('coefficients', coefficients)
    if lags.shape != coefficients.shape:
        raise InputError(f"lag matrix {lags.shape} and coefficient matrix "
                         f"{coefficients.shape} differ in shape")
    n = lags.shape[0]
    if n < 1:
        raise InputError("at least one trace is required")

    stat = np.zeros((n, len(STAT_COLUMNS)))
    mean, err_high, err_low = correlation_spread(coefficients)
    stat[:, STAT_MEAN_CORR] = mean
    stat[:, STAT_CORR_HIGH] = err_high
    stat[:, STAT_CORR_LOW] = err_low

    delays, rms = solve_delays(lags)
    stat[:, STAT_DELAY] = delays
    stat[:, STAT_DELAY_RMS] = rms

    if n > 1:
        logger.info(f"Delay inversion for {n} traces: max |delay| = "
                    f"{np.max(np.abs(delays)):.4f} s, mean rms = {np.mean(rms):.4f} s")
    return stat
