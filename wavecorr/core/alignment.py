"""Trigger time adjustment from least-squares delay corrections."""

import numpy as np
from obspy import UTCDateTime

from .traceset import InputError


def adjust_triggers(triggers, delays):
    """
    Add a per-trace delay correction (seconds) to each trigger time.

    Sample data is never touched; re-cropping traces around the adjusted
    triggers is up to the caller.

    Parameters
    ----------
    triggers : sequence
        Epoch seconds or UTCDateTime objects
    delays : array-like
        Delay corrections in seconds, usually column 3 of the stat table

    Returns
    -------
    adjusted : ndarray or list
        Float array for numeric input, list of UTCDateTime otherwise
    """
    delays = np.asarray(delays, dtype=np.float64).ravel()
    triggers = list(triggers)
    if len(triggers) != delays.size:
        raise InputError(f"{len(triggers)} triggers but {delays.size} delays")

    if any(isinstance(t, UTCDateTime) for t in triggers):
        return [UTCDateTime(t) + float(d) for t, d in zip(triggers, delays)]
    return np.asarray(triggers, dtype=np.float64) + delays
