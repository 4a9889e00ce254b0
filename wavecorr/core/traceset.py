"""
Trace container module for WAVECORR.

A TraceSet holds M equal-length, equal-rate ObsPy traces together with one
trigger instant per trace. Triggers are the reference times that lags and
delay corrections are measured against.

Preprocessing (detrend, taper, resample, gap filling, length unification)
is expected to be complete before traces are placed in a TraceSet; the set
only checks that the precondition holds.
"""

import logging
import numpy as np

from obspy import Trace, UTCDateTime

logger = logging.getLogger(__name__)


class InputError(ValueError):
    """Raised when traces, triggers or derived matrices violate a precondition."""


def _to_ns(value):
    """Trigger value as integer nanoseconds since the epoch."""
    if isinstance(value, UTCDateTime):
        return value.ns
    if isinstance(value, str):
        return UTCDateTime(value).ns
    return UTCDateTime(float(value)).ns


class TraceSet:
    """
    Ordered traces plus parallel trigger times.

    Triggers are held as integer nanoseconds, the resolution of
    UTCDateTime, so trigger-relative times such as
    :meth:`relative_start_times` are exact. The ``triggers`` property is a
    float epoch-seconds view of them and only resolves about 0.2 us at
    present-day epochs; use ``trigger_times`` or ``relative_start_times``
    where sub-microsecond arithmetic matters.

    Parameters
    ----------
    traces : iterable of obspy.Trace
        Preprocessed traces. They are copied on construction.
    triggers : scalar, sequence or None
        Trigger times as UTCDateTime, ISO strings or epoch seconds. A scalar
        is applied to every trace. If None, each trigger defaults to one
        quarter of the way from trace start to trace end.
    """

    def __init__(self, traces, triggers=None):
        copies = []
        for tr in traces:
            if not isinstance(tr, Trace):
                raise InputError(f"expected obspy.Trace, got {type(tr).__name__}")
            tr = tr.copy()
            tr.data = np.asarray(tr.data, dtype=np.float64)
            copies.append(tr)
        self._traces = tuple(copies)
        self._trigger_ns = self._resolve_triggers(triggers)

    def _resolve_triggers(self, triggers):
        n = len(self._traces)
        if triggers is None:
            return np.array([
                (tr.stats.starttime
                 + 0.25 * (tr.stats.endtime - tr.stats.starttime)).ns
                for tr in self._traces
            ], dtype=np.int64)

        if np.isscalar(triggers) or isinstance(triggers, UTCDateTime):
            return np.full(n, _to_ns(triggers), dtype=np.int64)

        trig = np.array([_to_ns(t) for t in triggers], dtype=np.int64)
        if trig.size == 1 and n > 1:
            return np.full(n, trig[0])
        if trig.size != n:
            raise InputError(
                f"trigger count ({trig.size}) must be 1 or match trace count ({n})"
            )
        return trig

    def __len__(self):
        return len(self._traces)

    def __getitem__(self, index):
        return self._traces[index]

    def __iter__(self):
        return iter(self._traces)

    def __repr__(self):
        if not self._traces:
            return "TraceSet(0 traces)"
        return (f"TraceSet({len(self)} traces, {self.npts} samples "
                f"@ {self.sampling_rate} Hz)")

    @property
    def traces(self):
        return self._traces

    @property
    def triggers(self):
        """Trigger times as float epoch seconds (read-only copy)."""
        return self._trigger_ns / 1e9

    @property
    def trigger_times(self):
        return [UTCDateTime(ns=int(t)) for t in self._trigger_ns]

    @property
    def ntraces(self):
        return len(self._traces)

    @property
    def stations(self):
        return [tr.stats.station for tr in self._traces]

    @property
    def channels(self):
        return [tr.stats.channel for tr in self._traces]

    @property
    def networks(self):
        return [tr.stats.network for tr in self._traces]

    @property
    def locations(self):
        return [tr.stats.location for tr in self._traces]

    @property
    def ids(self):
        return [tr.id for tr in self._traces]

    @property
    def sampling_rate(self):
        """Sample rate of the first trace (all traces share it once checked)."""
        if not self._traces:
            raise InputError("empty TraceSet has no sampling rate")
        return float(self._traces[0].stats.sampling_rate)

    @property
    def npts(self):
        if not self._traces:
            raise InputError("empty TraceSet has no length")
        return int(self._traces[0].stats.npts)

    @property
    def data(self):
        """All samples as an (M, N) float64 matrix."""
        self.check()
        return np.vstack([tr.data for tr in self._traces])

    def check(self):
        """
        Verify that the set is non-empty and all traces share rate and length.

        Raises
        ------
        InputError
            If any precondition is violated.
        """
        if len(self._traces) < 1:
            raise InputError("TraceSet must contain at least one trace")

        rates = {float(tr.stats.sampling_rate) for tr in self._traces}
        if len(rates) > 1:
            raise InputError(f"traces have differing sample rates: {sorted(rates)}")
        if self.sampling_rate <= 0:
            raise InputError(f"sampling rate must be positive, got {self.sampling_rate}")

        lengths = {int(tr.stats.npts) for tr in self._traces}
        if len(lengths) > 1:
            raise InputError(f"traces have differing lengths: {sorted(lengths)}")

        return True

    def relative_start_times(self):
        """Trace start minus trigger, in seconds, for each trace."""
        starts = np.array([tr.stats.starttime.ns for tr in self._traces], dtype=np.int64)
        return (starts - self._trigger_ns) / 1e9

    def with_triggers(self, triggers):
        return TraceSet(self._traces, triggers)

    def select(self, indices):
        """Return a new TraceSet containing only ``indices`` (in that order)."""
        idx = np.asarray(indices, dtype=int).ravel()
        if idx.size and (idx.min() < -len(self) or idx.max() >= len(self)):
            raise InputError(f"index out of range for {len(self)} traces")
        times = self.trigger_times
        return TraceSet([self._traces[i] for i in idx], [times[i] for i in idx])
