"""
Stream conversion module for WAVECORR.

Turns ObsPy streams (or waveform files readable by ObsPy) into TraceSets
and reads trigger lists. Traces must already be preprocessed to a common
sample rate and length; nothing is resampled or padded here.
"""

import os
import glob
import logging
import numpy as np

from obspy import read, Stream, UTCDateTime

from ..core.traceset import TraceSet, InputError

logger = logging.getLogger(__name__)


def traceset_from_stream(stream, triggers=None):
    """
    Build a TraceSet from an ObsPy stream.

    Parameters
    ----------
    stream : obspy.Stream or list of obspy.Trace
        Preprocessed traces, in the order they should appear in the set
    triggers : optional
        Trigger times; see :class:`wavecorr.core.TraceSet`

    Returns
    -------
    traceset : TraceSet
    """
    traces = list(stream)
    for tr in traces:
        if hasattr(tr.data, 'mask') and np.any(tr.data.mask):
            raise InputError(f"{tr.id}: trace has gaps; fill them before correlating")

    traceset = TraceSet(traces, triggers)
    traceset.check()
    logger.info(f"TraceSet of {len(traceset)} traces, {traceset.npts} samples "
                f"@ {traceset.sampling_rate} Hz")
    return traceset


def read_traceset(patterns, triggers=None, format=None):
    """
    Read waveform files into a TraceSet.

    Parameters
    ----------
    patterns : str or list of str
        File names or glob patterns. Matches of each pattern are read in
        sorted order, so triggers must be listed in that order too.
    triggers : optional
        Trigger times; see :class:`wavecorr.core.TraceSet`
    format : str, optional
        ObsPy format name (e.g. 'MSEED', 'SAC'); autodetected if None

    Returns
    -------
    traceset : TraceSet
    """
    if isinstance(patterns, str):
        patterns = [patterns]

    stream = Stream()
    for pattern in patterns:
        files = sorted(glob.glob(pattern))
        if not files:
            logger.warning(f"No files match {pattern}")
            continue
        for f in files:
            try:
                stream += read(f, format=format)
            except Exception as e:
                logger.warning(f"Failed to read {f}: {e}")

    if len(stream) == 0:
        raise InputError(f"no traces could be read from {patterns}")

    # Convert integer data to float so demeaning is exact
    for tr in stream:
        if tr.data.dtype.kind == 'i':
            tr.data = tr.data.astype(np.float64)

    logger.info(f"Read {len(stream)} traces from {len(patterns)} pattern(s)")
    return traceset_from_stream(stream, triggers)


def read_triggers(path):
    """
    Read trigger times from a text file.

    One time per line in any format understood by ``UTCDateTime`` (ISO
    strings or epoch seconds). Blank lines and lines starting with '#' are
    ignored.

    Returns
    -------
    triggers : list of UTCDateTime
    """
    if not os.path.exists(path):
        raise InputError(f"trigger file not found: {path}")

    triggers = []
    with open(path) as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            try:
                value = float(line)
            except ValueError:
                value = line
            try:
                triggers.append(UTCDateTime(value))
            except Exception as e:
                raise InputError(f"{path}:{lineno}: cannot parse trigger '{line}' ({e})")

    logger.info(f"Read {len(triggers)} triggers from {path}")
    return triggers
