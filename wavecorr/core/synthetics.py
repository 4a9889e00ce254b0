"""
Synthetic trace sets for offline testing of WAVECORR.

The wavelet is evaluated analytically at every sample, so an integer
sample shift gives an exactly shifted copy with no wrap-around.
"""

import numpy as np
from obspy import Trace, UTCDateTime

from .traceset import TraceSet


def wavelet(t, frequency=5.0, width=0.1):
    """Gaussian-windowed cosine centred on t = 0 (seconds)."""
    t = np.asarray(t, dtype=np.float64)
    return np.exp(-0.5 * (t / width)**2) * np.cos(2 * np.pi * frequency * t)


def _make_trace(data, sampling_rate, starttime, station):
    tr = Trace(np.asarray(data, dtype=np.float64))
    tr.stats.sampling_rate = sampling_rate
    tr.stats.starttime = starttime
    tr.stats.network = 'XX'
    tr.stats.station = station
    tr.stats.location = ''
    tr.stats.channel = 'EHZ'
    return tr


def shifted_pulse_traceset(shifts, sampling_rate=100.0, npts=512,
                           frequency=5.0, width=0.1, noise=0.0, seed=None,
                           starttime=UTCDateTime(2020, 1, 1), spacing=60.0):
    """
    Identical pulses delayed by integer sample ``shifts``.

    Trace k starts ``k * spacing`` seconds after ``starttime`` and its
    trigger sits at the unshifted pulse centre, so the pulse on trace k
    arrives ``shifts[k] / sampling_rate`` seconds after its trigger.

    Parameters
    ----------
    shifts : sequence of int
        Delay of each pulse in samples
    noise : float
        Standard deviation of additive Gaussian noise
    seed : int, optional
        Seed for the noise generator

    Returns
    -------
    traceset : TraceSet
    """
    rng = np.random.default_rng(seed)
    centre = npts // 2
    n = np.arange(npts)
    traces = []
    triggers = []
    for k, shift in enumerate(shifts):
        t = (n - centre - int(shift)) / sampling_rate
        data = wavelet(t, frequency=frequency, width=width)
        if noise > 0:
            data = data + noise * rng.standard_normal(npts)
        start = starttime + k * spacing
        traces.append(_make_trace(data, sampling_rate, start, 'SYN'))
        triggers.append(start + centre / sampling_rate)
    return TraceSet(traces, triggers)


def make_synthetic_traceset(n_traces, n_families=2, sampling_rate=100.0,
                            npts=1024, max_shift=0.2, noise=0.05, seed=None):
    """
    Random traces drawn from ``n_families`` distinct wavelets.

    Each trace takes the wavelet of one family, delayed by a random whole
    number of samples up to ``max_shift`` seconds, plus Gaussian noise.

    Returns
    -------
    traceset : TraceSet
    truth : dict
        'family' (0-based family of each trace) and 'shift' (seconds)
    """
    rng = np.random.default_rng(seed)
    max_samples = int(round(max_shift * sampling_rate))
    frequencies = np.linspace(2.0, 8.0, max(n_families, 1))
    widths = np.linspace(0.25, 0.08, max(n_families, 1))

    families = np.arange(n_traces) % max(n_families, 1)
    rng.shuffle(families)
    shifts = rng.integers(-max_samples, max_samples + 1, size=n_traces)

    centre = npts // 2
    n = np.arange(npts)
    starttime = UTCDateTime(2020, 1, 1)
    traces = []
    triggers = []
    for k in range(n_traces):
        fam = families[k]
        t = (n - centre - shifts[k]) / sampling_rate
        data = wavelet(t, frequency=frequencies[fam], width=widths[fam])
        data = data + noise * rng.standard_normal(npts)
        start = starttime + 3600.0 * k
        traces.append(_make_trace(data, sampling_rate, start, f'S{fam:02d}'))
        triggers.append(start + centre / sampling_rate)

    truth = {'family': families, 'shift': shifts / sampling_rate}
    return TraceSet(traces, triggers), truth
