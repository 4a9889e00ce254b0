import threading

import numpy as np
import pytest

from wavecorr.core import CorrelationSet, StaleProductError, CorrelationCancelled, InputError
from wavecorr.core.delays import STAT_DELAY
from wavecorr.core.synthetics import shifted_pulse_traceset
from obspy import UTCDateTime


def _computed_set(shifts=(0, 2, 5, 5)):
    cset = CorrelationSet(shifted_pulse_traceset(list(shifts)))
    cset.xcorr().getstat().linkage().cluster(threshold=0.01)
    return cset


def test_full_pipeline():
    cset = _computed_set()
    assert cset.corr.shape == (4, 4)
    assert cset.stat.shape == (4, 5)
    assert cset.link.shape == (3, 3)
    assert list(cset.clust) == [1, 1, 1, 1]
    assert cset.link_method == 'average'
    assert list(cset.family_members(1)) == [0, 1, 2, 3]
    assert cset.family_statistics()[0]['size'] == 4


def test_unset_products_raise():
    cset = CorrelationSet(shifted_pulse_traceset([0, 1]))
    for name in ('corr', 'lags', 'stat', 'link', 'clust'):
        assert not cset.has(name)
        with pytest.raises(StaleProductError):
            getattr(cset, name)
    with pytest.raises(StaleProductError):
        cset.getstat()


def test_new_triggers_drop_every_product():
    cset = _computed_set()
    cset.triggers = cset.triggers + 1.0
    for name in ('corr', 'lags', 'stat', 'link', 'clust'):
        assert not cset.has(name)
    assert cset.link_method is None


def test_new_traces_drop_every_product():
    cset = _computed_set()
    times = cset.traceset.trigger_times
    cset.traces = list(shifted_pulse_traceset([1, 1, 1, 1]).traces)
    assert not cset.has('corr')
    assert cset.traceset.trigger_times == times


def test_recomputing_drops_downstream_products():
    cset = _computed_set()
    cset.linkage(method='single')
    assert cset.has('stat')
    assert not cset.has('clust')
    assert cset.link_method == 'single'

    cset.cluster(maxclust=2)
    cset.xcorr()
    assert cset.has('corr') and cset.has('lags')
    for name in ('stat', 'link', 'clust'):
        assert not cset.has(name)


def test_cluster_needs_exactly_one_cut():
    cset = _computed_set()
    with pytest.raises(InputError):
        cset.cluster()
    with pytest.raises(InputError):
        cset.cluster(threshold=0.1, maxclust=2)
    cset.cluster(min_correlation=1.0)
    assert list(cset.clust) == [1, 2, 3, 4]


def test_adjusttrig_moves_triggers_by_delays():
    cset = _computed_set()
    before = cset.traceset.relative_start_times()
    delays = cset.stat[:, STAT_DELAY].copy()
    cset.adjusttrig()

    assert not cset.has('corr')
    np.testing.assert_allclose(cset.traceset.relative_start_times(), before - delays, atol=1e-8)
    # the shifts are (0, 2, 5, 5) samples at 100 Hz around a mean of 3
    np.testing.assert_allclose(delays, [-0.03, -0.01, 0.02, 0.02], atol=1e-8)


def test_cancelled_xcorr_leaves_no_products():
    cset = _computed_set()
    event = threading.Event()
    event.set()
    with pytest.raises(CorrelationCancelled):
        cset.xcorr(cancel_event=event)
    assert not cset.has('corr')
    assert not cset.has('clust')


def test_subset_and_sort_return_fresh_sets():
    cset = _computed_set()
    sub = cset.subset([3, 1])
    assert len(sub) == 2
    assert not sub.has('corr')
    assert cset.has('corr')
    times = cset.traceset.trigger_times
    assert sub.traceset.trigger_times == [times[3], times[1]]

    ordered = sub.sort()
    assert np.all(np.diff(ordered.triggers) >= 0)
    assert ordered.traceset.stations == ['SYN', 'SYN']


def test_adjusttrig_aligns_unequal_trigger_offsets():
    shifts = np.array([0, 0, 3])
    ts = shifted_pulse_traceset(shifts)
    times = ts.trigger_times
    cset = CorrelationSet(ts.with_triggers([times[0], times[1] + 0.1, times[2] - 0.05]))
    cset.xcorr().getstat()
    np.testing.assert_allclose(cset.lags[1, 0], -0.1, atol=1e-9)

    cset.adjusttrig()
    # pulse arrival relative to its trigger is now the same on every trace
    arrival = cset.traceset.relative_start_times() + shifts / 100.0
    assert np.ptp(arrival) < 1e-6


def test_cat_appends_traces_and_triggers():
    a = _computed_set((0, 1))
    b = CorrelationSet(shifted_pulse_traceset([2], starttime=UTCDateTime(2020, 1, 2)))
    both = a.cat(b)

    assert len(both) == 3
    assert not both.has('corr')
    assert both.traceset.trigger_times == a.traceset.trigger_times + b.traceset.trigger_times

    short = CorrelationSet(shifted_pulse_traceset([0], npts=256))
    with pytest.raises(InputError):
        a.cat(short)


def test_match_pairs_triggers_within_tolerance():
    t0 = UTCDateTime(2020, 1, 1)
    a = CorrelationSet(shifted_pulse_traceset([0, 0, 0], starttime=t0))
    b = CorrelationSet(shifted_pulse_traceset([1, 1], starttime=t0 + 60.3))

    mine, theirs = a.match(b, 0.5)
    assert len(mine) == len(theirs) == 2
    assert mine.traceset.trigger_times == a.traceset.trigger_times[1:]
    assert theirs.traceset.trigger_times == b.traceset.trigger_times

    # each trace is used once, closest pairs first
    mine, theirs = a.match(b, 100.0)
    assert mine.traceset.trigger_times == a.traceset.trigger_times[1:]

    mine, theirs = a.match(b, 0.1)
    assert len(mine) == len(theirs) == 0

    with pytest.raises(InputError):
        a.match(b, -1.0)
