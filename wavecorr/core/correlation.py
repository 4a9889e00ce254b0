"""
Waveform cross-correlation module for WAVECORR.

Provides:
- Normalized cross-correlation of a single pair of traces (peak
  coefficient and lag)
- Construction of the full coefficient and lag matrices for a TraceSet,
  optionally on a multiprocessing pool with cooperative cancellation

Sign convention
---------------
``lag[i, j] > 0`` means the matched feature on trace i occurs later,
relative to its trigger, than the feature on trace j does relative to
its own trigger. Lags between traces of a TraceSet therefore include the
difference of their trigger-to-start offsets. Adding ``lag[i, j]`` to the
trigger of trace i aligns it with trace j.
"""

from typing import Optional, Tuple
import logging
import multiprocessing as mp
import signal as signal_module
import numpy as np
from scipy import signal

from .traceset import TraceSet, InputError

logger = logging.getLogger(__name__)

# Per-process state installed by the pool initializer so the data matrix is
# shipped to each worker once instead of with every chunk.
_WORKER_STATE = None


class CorrelationCancelled(RuntimeError):
    """
    Raised when a matrix build is cancelled before every pair is done.

    Attributes
    ----------
    coefficients, lags : ndarray
        Partial M x M matrices. Cells whose pair was not correlated are NaN.
    pairs_done, pairs_total : int
        Progress at the moment of cancellation.
    """

    def __init__(self, coefficients, lags, pairs_done, pairs_total):
        super().__init__(
            f"correlation cancelled after {pairs_done} of {pairs_total} pairs"
        )
        self.coefficients = coefficients
        self.lags = lags
        self.pairs_done = pairs_done
        self.pairs_total = pairs_total


def correlate_pair(trace_a: np.ndarray,
                   trace_b: np.ndarray,
                   sampling_rate: float,
                   max_lag: Optional[float] = None,
                   method: str = 'fft',
                   interpolate: bool = False) -> Tuple[float, float]:
    """Correlate two equal-length traces and return the peak and its lag.

    Parameters
    ----------
    trace_a, trace_b : np.ndarray
        1-D sample arrays of identical length.
    sampling_rate : float
        Common sampling rate (Hz).
    max_lag : float, optional
        Largest |lag| in seconds to search. Default searches the full
        overlap.
    method : str
        'fft' (frequency domain) or 'direct' (time domain). Both give the
        same result to floating point precision.
    interpolate : bool
        Refine the peak position with a three-point parabola, giving
        sub-sample lags.

    Returns
    -------
    coefficient : float
        Signed normalized correlation at the lag of maximal magnitude.
    lag : float
        Lag in seconds (positive when the feature on ``trace_a`` is later).
        A flat or non-finite trace returns the sentinel ``(0.0, 0.0)``.
    """
    a = np.asarray(trace_a, dtype=np.float64)
    b = np.asarray(trace_b, dtype=np.float64)

    if a.ndim != 1 or b.ndim != 1:
        raise InputError("traces must be 1-D")
    if a.size != b.size:
        raise InputError(f"traces must have equal length ({a.size} != {b.size})")
    if a.size == 0:
        raise InputError("traces must not be empty")
    if sampling_rate is None or sampling_rate <= 0:
        raise InputError(f"sampling_rate must be positive, got {sampling_rate}")
    if method not in ('fft', 'direct'):
        raise InputError(f"unknown correlation method '{method}'")
    if max_lag is not None and max_lag < 0:
        raise InputError(f"max_lag must be non-negative, got {max_lag}")

    if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
        logger.debug("non-finite samples in pair; returning sentinel")
        return 0.0, 0.0

    a = a - np.mean(a)
    b = b - np.mean(b)
    norm = np.sqrt(np.dot(a, a) * np.dot(b, b))
    if norm == 0:
        logger.debug("zero-variance trace in pair; returning sentinel")
        return 0.0, 0.0

    cc = signal.correlate(a, b, mode='full', method=method) / norm
    lags = signal.correlation_lags(a.size, b.size, mode='full')

    if max_lag is not None:
        max_samples = int(np.floor(max_lag * sampling_rate + 1e-9))
        window = np.abs(lags) <= max_samples
        cc = cc[window]
        lags = lags[window]

    peak = int(np.argmax(np.abs(cc)))
    coefficient = float(cc[peak])
    lag = float(lags[peak])

    if interpolate and 0 < peak < cc.size - 1:
        # fit the magnitude so negative peaks refine the same way
        sign = 1.0 if coefficient >= 0 else -1.0
        y0, y1, y2 = sign * cc[peak - 1], sign * cc[peak], sign * cc[peak + 1]
        denom = y0 - 2 * y1 + y2
        if denom != 0:
            offset = 0.5 * (y0 - y2) / denom
            lag += offset
            coefficient = sign * float(y1 - 0.25 * (y0 - y2) * offset)

    coefficient = float(np.clip(coefficient, -1.0, 1.0))
    return coefficient, lag / sampling_rate


def _make_state(data, sampling_rate, max_lag, method, interpolate):
    return {
        'data': data,
        'sampling_rate': sampling_rate,
        'max_lag': max_lag,
        'method': method,
        'interpolate': interpolate,
    }


def _init_worker(*args):
    global _WORKER_STATE
    # interrupts are handled by the parent through the cancel event
    signal_module.signal(signal_module.SIGINT, signal_module.SIG_IGN)
    _WORKER_STATE = _make_state(*args)


def _correlate_chunk(pairs, state=None):
    """Correlate a chunk of (i, j) pairs; returns (i, j, coefficients, lags)."""
    state = state if state is not None else _WORKER_STATE
    rows, cols = pairs
    data = state['data']
    coefs = np.empty(len(rows))
    lags = np.empty(len(rows))
    for k, (i, j) in enumerate(zip(rows, cols)):
        coefs[k], lags[k] = correlate_pair(
            data[i], data[j], state['sampling_rate'],
            max_lag=state['max_lag'],
            method=state['method'],
            interpolate=state['interpolate'],
        )
    return rows, cols, coefs, lags


def _mirror(upper_coef, upper_lag):
    """Expand upper-triangle scratch buffers into full matrices."""
    n = upper_coef.shape[0]
    iu, ju = np.triu_indices(n, k=1)

    coefficients = np.eye(n, dtype=np.float64)
    coefficients[iu, ju] = upper_coef[iu, ju]
    coefficients[ju, iu] = upper_coef[iu, ju]

    lags = np.zeros((n, n), dtype=np.float64)
    lags[iu, ju] = upper_lag[iu, ju]
    lags[ju, iu] = -upper_lag[iu, ju]
    return coefficients, lags


def _resolve_input(traces, sampling_rate):
    if isinstance(traces, TraceSet):
        traces.check()
        return traces.data, traces.sampling_rate, traces.relative_start_times()

    data = np.asarray(traces, dtype=np.float64)
    if data.ndim != 2:
        raise InputError("data must be 2D (n_traces, n_samples)")
    if sampling_rate is None or sampling_rate <= 0:
        raise InputError("a positive sampling_rate is required for array input")
    # array rows share a common time origin
    return data, float(sampling_rate), np.zeros(data.shape[0])


def build_correlation_matrix(traces,
                             sampling_rate: Optional[float] = None,
                             max_lag: Optional[float] = None,
                             method: str = 'fft',
                             interpolate: bool = False,
                             n_processes: Optional[int] = 1,
                             chunk_size: Optional[int] = None,
                             cancel_event=None) -> Tuple[np.ndarray, np.ndarray]:
    """Build the coefficient and lag matrices for every pair of traces.

    Only the strict upper triangle (i < j) is correlated; the lower triangle
    is copied from it, so the coefficient matrix is exactly symmetric and
    the lag matrix exactly antisymmetric.

    Parameters
    ----------
    traces : TraceSet or np.ndarray
        A TraceSet, or an array of shape (n_traces, n_samples).
    sampling_rate : float, optional
        Required when ``traces`` is an array.
    max_lag : float, optional
        Maximum |lag| in seconds. Default is the full overlap.
    method : str
        Passed to :func:`correlate_pair`.
    interpolate : bool
        Passed to :func:`correlate_pair`.
    n_processes : int or None
        Worker processes. 1 runs sequentially, None uses all cores.
    chunk_size : int, optional
        Pairs per task. Defaults to roughly four tasks per worker.
    cancel_event : object with ``is_set()``, optional
        Polled between chunks; when set, remaining pairs are abandoned and
        :class:`CorrelationCancelled` is raised with the partial matrices.

    Returns
    -------
    coefficients : np.ndarray
        (M, M) symmetric matrix, diagonal 1.
    lags : np.ndarray
        (M, M) antisymmetric matrix in seconds, diagonal 0. For a
        TraceSet the lags are measured relative to each trace's trigger;
        array rows are taken to share one time origin.
    """
    data, fs, rel_start = _resolve_input(traces, sampling_rate)
    n_traces, n_samples = data.shape

    if n_traces < 2:
        return np.eye(n_traces, dtype=np.float64), np.zeros((n_traces, n_traces))
    if n_samples == 0:
        raise InputError("traces must not be empty")

    iu, ju = np.triu_indices(n_traces, k=1)
    n_pairs = len(iu)

    if n_processes is None:
        n_procs = mp.cpu_count()
    else:
        n_procs = max(1, int(n_processes))
    n_procs = min(n_procs, n_pairs)

    if chunk_size is None:
        chunk_size = max(1, int(np.ceil(n_pairs / (4 * n_procs))))
    chunks = [(iu[k:k + chunk_size], ju[k:k + chunk_size])
              for k in range(0, n_pairs, chunk_size)]

    logger.info(f"Correlating {n_pairs} pairs of {n_traces} traces "
                f"({n_samples} samples @ {fs} Hz) using {n_procs} process(es)")

    upper_coef = np.full((n_traces, n_traces), np.nan)
    upper_lag = np.full((n_traces, n_traces), np.nan)
    pairs_done = 0

    def _store(result):
        rows, cols, coefs, lags = result
        upper_coef[rows, cols] = coefs
        # window lag plus the trigger-to-start offset difference;
        # degenerate pairs keep the (0, 0) sentinel
        offsets = np.where(coefs != 0, rel_start[rows] - rel_start[cols], 0.0)
        upper_lag[rows, cols] = lags + offsets
        return len(rows)

    def _cancelled():
        return cancel_event is not None and cancel_event.is_set()

    def _abort():
        logger.warning(f"Correlation cancelled after {pairs_done}/{n_pairs} pairs")
        partial_coef, partial_lag = _mirror(upper_coef, upper_lag)
        raise CorrelationCancelled(partial_coef, partial_lag, pairs_done, n_pairs)

    initargs = (data, fs, max_lag, method, interpolate)

    if n_procs == 1:
        state = _make_state(*initargs)
        for chunk in chunks:
            if _cancelled():
                _abort()
            pairs_done += _store(_correlate_chunk(chunk, state))
    else:
        with mp.Pool(processes=n_procs, initializer=_init_worker,
                     initargs=initargs) as pool:
            for result in pool.imap_unordered(_correlate_chunk, chunks):
                pairs_done += _store(result)
                if _cancelled() and pairs_done < n_pairs:
                    pool.terminate()
                    _abort()

    coefficients, lags = _mirror(upper_coef, upper_lag)

    n_flat = int(np.sum(upper_coef[iu, ju] == 0))
    if n_flat:
        logger.debug(f"{n_flat} pair(s) returned the degenerate sentinel")

    return coefficients, lags
