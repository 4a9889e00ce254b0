"""
Correlation container for WAVECORR.

A CorrelationSet holds a TraceSet together with every product derived
from it:

- ``corr``  : coefficient matrix (M x M)
- ``lags``  : lag matrix in seconds (M x M)
- ``stat``  : per-trace statistics table (M x 5)
- ``link``  : linkage tree ((M - 1) x 3)
- ``clust`` : cluster id per trace (M)

Products are only valid for the traces and triggers they were computed
from. Replacing traces or triggers drops every product, and recomputing a
product drops everything downstream of it. Reading a dropped product
raises :class:`StaleProductError`.

There is no incremental update. Removing or re-ordering traces shifts
matrix indices, so :meth:`CorrelationSet.subset`, :meth:`CorrelationSet.sort`,
:meth:`CorrelationSet.cat` and :meth:`CorrelationSet.match` return new sets
that must be recomputed from ``xcorr`` onwards.
"""

import logging
import numpy as np

from .traceset import TraceSet, InputError
from .correlation import build_correlation_matrix, CorrelationCancelled
from .delays import invert_delays, STAT_DELAY
from .linkage import build_linkage
from .clusters import cut_tree, cut_tree_maxclust, family_statistics
from .alignment import adjust_triggers

logger = logging.getLogger(__name__)

PRODUCTS = ('corr', 'lags', 'stat', 'link', 'clust')

# product -> products that must be dropped when it is recomputed
_DOWNSTREAM = {
    'corr': ('stat', 'link', 'clust'),
    'lags': ('stat',),
    'stat': (),
    'link': ('clust',),
    'clust': (),
}


class StaleProductError(RuntimeError):
    """Raised when a derived product is read before it has been (re)computed."""


class CorrelationSet:
    """
    Traces, triggers and their correlation products.

    Parameters
    ----------
    traces : TraceSet, obspy.Stream or iterable of obspy.Trace
        Preprocessed, equal-length, equal-rate traces
    triggers : optional
        Trigger times; see :class:`TraceSet`. Ignored when ``traces`` is
        already a TraceSet and ``triggers`` is None.
    """

    def __init__(self, traces, triggers=None):
        if isinstance(traces, TraceSet) and triggers is None:
            traceset = traces
        else:
            traceset = TraceSet(traces, triggers)
        self._products = dict.fromkeys(PRODUCTS)
        self.link_method = None
        self._traceset = traceset

    def __len__(self):
        return len(self._traceset)

    def __repr__(self):
        valid = [p for p in PRODUCTS if self._products[p] is not None]
        return f"CorrelationSet({len(self)} traces, products={valid})"

    # -- trace data ---------------------------------------------------------

    @property
    def traceset(self):
        return self._traceset

    @traceset.setter
    def traceset(self, traceset):
        if not isinstance(traceset, TraceSet):
            raise InputError("traceset must be a TraceSet")
        self._traceset = traceset
        self.invalidate()

    @property
    def traces(self):
        return self._traceset.traces

    @traces.setter
    def traces(self, traces):
        traces = list(traces)
        triggers = self._traceset.trigger_times if len(traces) == len(self) else None
        self.traceset = TraceSet(traces, triggers)

    @property
    def triggers(self):
        return self._traceset.triggers

    @triggers.setter
    def triggers(self, triggers):
        self.traceset = self._traceset.with_triggers(triggers)

    @property
    def ntraces(self):
        return len(self._traceset)

    # -- products -----------------------------------------------------------

    def invalidate(self, products=PRODUCTS):
        for name in products:
            self._products[name] = None
        if 'link' in products:
            self.link_method = None

    def has(self, product):
        return self._products[product] is not None

    def _get(self, product):
        value = self._products[product]
        if value is None:
            raise StaleProductError(
                f"'{product}' has not been computed for the current traces"
            )
        return value

    def _set(self, product, value):
        self.invalidate(_DOWNSTREAM[product])
        self._products[product] = value

    @property
    def corr(self):
        return self._get('corr')

    @property
    def lags(self):
        return self._get('lags')

    @property
    def stat(self):
        return self._get('stat')

    @property
    def link(self):
        return self._get('link')

    @property
    def clust(self):
        return self._get('clust')

    # -- processing ---------------------------------------------------------

    def xcorr(self, max_lag=None, method='fft', interpolate=False,
              n_processes=1, cancel_event=None):
        """Compute the coefficient and lag matrices."""
        try:
            corr, lags = build_correlation_matrix(
                self._traceset,
                max_lag=max_lag,
                method=method,
                interpolate=interpolate,
                n_processes=n_processes,
                cancel_event=cancel_event,
            )
        except CorrelationCancelled:
            self.invalidate()
            raise
        self._set('corr', corr)
        self._set('lags', lags)
        return self

    def getstat(self):
        """Compute the per-trace statistics table (needs ``xcorr``)."""
        self._set('stat', invert_delays(self.lags, self.corr))
        return self

    def linkage(self, method='average'):
        """Compute the linkage tree (needs ``xcorr``)."""
        tree = build_linkage(self.corr, method=method)
        self._set('link', tree)
        self.link_method = method
        return self

    def cluster(self, threshold=None, min_correlation=None, maxclust=None):
        """
        Assign traces to families (needs ``linkage``).

        Give exactly one of:

        threshold : float
            Cut distance (1 - coefficient)
        min_correlation : float
            Cut at distance ``1 - min_correlation``
        maxclust : int
            Form at most this many families
        """
        given = [v is not None for v in (threshold, min_correlation, maxclust)]
        if sum(given) != 1:
            raise InputError("give exactly one of threshold, min_correlation, maxclust")

        if maxclust is not None:
            clusters = cut_tree_maxclust(self.link, maxclust)
        else:
            if min_correlation is not None:
                threshold = 1.0 - float(min_correlation)
            clusters = cut_tree(self.link, threshold)
        self._set('clust', clusters)
        return self

    def adjusttrig(self):
        """
        Shift triggers by the least-squares delays (needs ``getstat``).

        Moving triggers changes the trace set, so every product is dropped.
        """
        new_triggers = adjust_triggers(self._traceset.trigger_times, self.stat[:, STAT_DELAY])
        logger.info(f"Adjusted {len(new_triggers)} triggers by up to "
                    f"{np.max(np.abs(self.stat[:, STAT_DELAY])):.4f} s")
        self.triggers = new_triggers
        return self

    # -- families and re-indexing -------------------------------------------

    def family_members(self, cluster_id):
        """Trace indices belonging to family ``cluster_id``."""
        return np.flatnonzero(self.clust == int(cluster_id))

    def family_statistics(self):
        return family_statistics(self.corr, self.clust)

    def subset(self, indices):
        """
        New CorrelationSet holding only ``indices``.

        Derived products are not carried over; call ``xcorr`` again.
        """
        indices = np.asarray(indices, dtype=int).ravel()
        logger.info(f"Subset of {indices.size}/{len(self)} traces; "
                    f"products must be recomputed")
        return CorrelationSet(self._traceset.select(indices))

    def sort(self):
        """New CorrelationSet with traces ordered by trigger time."""
        order = np.argsort(self.triggers, kind='stable')
        return CorrelationSet(self._traceset.select(order))

    def cat(self, *others):
        """
        New CorrelationSet holding these traces followed by those of ``others``.

        Triggers travel with their traces; derived products are not carried
        over.
        """
        traces = list(self.traces)
        times = self._traceset.trigger_times
        for other in others:
            traces.extend(other.traces)
            times.extend(other.traceset.trigger_times)

        traceset = TraceSet(traces, times)
        traceset.check()
        logger.info(f"Concatenated {1 + len(others)} sets into {len(traceset)} traces")
        return CorrelationSet(traceset)

    def match(self, other, tolerance):
        """
        Pair traces of this set and ``other`` whose triggers agree.

        Parameters
        ----------
        other : CorrelationSet
        tolerance : float
            Largest trigger difference in seconds for two traces to match

        Returns
        -------
        mine, theirs : CorrelationSet
            New sets of equal length, in this set's trigger order, where
            trace k of ``mine`` matches trace k of ``theirs``. Each trace is
            used at most once; closer pairs are taken first.
        """
        if tolerance < 0:
            raise InputError(f"tolerance must be non-negative, got {tolerance}")

        ns_a = np.array([t.ns for t in self._traceset.trigger_times], dtype=np.int64)
        ns_b = np.array([t.ns for t in other.traceset.trigger_times], dtype=np.int64)
        gap = np.abs(ns_a[:, None] - ns_b[None, :]) / 1e9

        cand_a, cand_b = np.nonzero(gap <= tolerance)
        order = np.lexsort((cand_b, cand_a, gap[cand_a, cand_b]))
        used_a, used_b = set(), set()
        pairs = []
        for k in order:
            i, j = int(cand_a[k]), int(cand_b[k])
            if i in used_a or j in used_b:
                continue
            used_a.add(i)
            used_b.add(j)
            pairs.append((i, j))

        pairs.sort(key=lambda p: (ns_a[p[0]], p[0]))
        idx_a = [i for i, _ in pairs]
        idx_b = [j for _, j in pairs]
        logger.info(f"Matched {len(pairs)} of {len(self)}/{len(other)} traces "
                    f"within {tolerance} s")
        return self.subset(idx_a), other.subset(idx_b)
