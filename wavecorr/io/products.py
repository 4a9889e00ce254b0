"""
Persistence of correlation products.

Products are stored in a NumPy ``.npz`` archive. Coefficient and lag
matrices are written as float32. The archive also records the number of
traces, the trace ids, the triggers, the linkage method and the distance
convention used to build the linkage tree, so a dendrogram drawn from the
stored tree later stays consistent with the stored matrices.
"""

import os
import logging
import numpy as np
import pandas as pd

from obspy import UTCDateTime

from ..core.traceset import InputError
from ..core.correlation_set import PRODUCTS
from ..core.delays import STAT_COLUMNS
from ..core.linkage import DISTANCE_CONVENTION

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_FLOAT32_PRODUCTS = ('corr', 'lags')


def save_products(path, cset):
    """
    Write the valid products of a CorrelationSet to ``path`` (.npz).

    Products that have not been computed are left out.
    """
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)

    arrays = {
        'format_version': np.array(FORMAT_VERSION),
        'ntraces': np.array(len(cset)),
        'ids': np.array(cset.traceset.ids, dtype=str),
        'triggers': np.asarray(cset.triggers, dtype=np.float64),
        'trigger_ns': np.array([t.ns for t in cset.traceset.trigger_times], dtype=np.int64),
        'distance_convention': np.array(DISTANCE_CONVENTION),
    }
    for name in PRODUCTS:
        if not cset.has(name):
            continue
        value = getattr(cset, name)
        if name in _FLOAT32_PRODUCTS:
            value = np.asarray(value, dtype=np.float32)
        arrays[name] = value
    if cset.link_method is not None:
        arrays['link_method'] = np.array(cset.link_method)

    np.savez(path, **arrays)
    saved = [name for name in PRODUCTS if name in arrays]
    logger.info(f"Saved {saved} for {len(cset)} traces to {path}")


def load_products(path):
    """
    Read an archive written by :func:`save_products`.

    Returns
    -------
    products : dict
        'ntraces', 'ids', 'triggers', 'distance_convention', any stored
        products ('corr', 'lags', 'stat', 'link', 'clust'), plus
        'trigger_times' and 'link_method' when present.

    Raises
    ------
    InputError
        If the archive was built with a different distance convention or
        its matrices do not match the stored trace count.
    """
    with np.load(path, allow_pickle=False) as npz:
        data = {key: npz[key] for key in npz.files}

    convention = str(data['distance_convention'])
    if convention != DISTANCE_CONVENTION:
        raise InputError(f"{path}: distance convention '{convention}' "
                         f"differs from '{DISTANCE_CONVENTION}'")

    n = int(data['ntraces'])
    products = {
        'ntraces': n,
        'ids': [str(s) for s in data['ids']],
        'triggers': data['triggers'],
        'distance_convention': convention,
    }
    if 'trigger_ns' in data:
        # exact triggers; the float 'triggers' view is only good to ~0.2 us
        products['trigger_times'] = [UTCDateTime(ns=int(t)) for t in data['trigger_ns']]
    expected = {
        'corr': (n, n),
        'lags': (n, n),
        'stat': (n, len(STAT_COLUMNS)),
        'link': (max(n - 1, 0), 3),
        'clust': (n,),
    }
    for name in PRODUCTS:
        if name not in data:
            continue
        if data[name].shape != expected[name]:
            raise InputError(f"{path}: '{name}' has shape {data[name].shape}, "
                             f"expected {expected[name]}")
        products[name] = data[name]
    if 'link_method' in data:
        products['link_method'] = str(data['link_method'])

    logger.info(f"Loaded {[k for k in PRODUCTS if k in products]} for {n} traces from {path}")
    return products


def write_summary(path, cset):
    """
    Write a per-trace CSV summary (id, trigger, statistics, cluster).

    Returns the pandas DataFrame that was written.
    """
    df = pd.DataFrame({
        'id': cset.traceset.ids,
        'trigger': [t.isoformat() for t in cset.traceset.trigger_times],
    })
    if cset.has('stat'):
        for k, col in enumerate(STAT_COLUMNS):
            df[col] = cset.stat[:, k]
    if cset.has('clust'):
        df['cluster'] = cset.clust

    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    df.to_csv(path, index=False)
    logger.info(f"Wrote summary of {len(df)} traces to {path}")
    return df
