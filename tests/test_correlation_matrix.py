import threading

import numpy as np
import pytest

import wavecorr.core.correlation as correlation
from wavecorr.core.correlation import build_correlation_matrix, CorrelationCancelled
from wavecorr.core.synthetics import shifted_pulse_traceset, make_synthetic_traceset
from wavecorr.core.traceset import TraceSet, InputError
from obspy import Trace


def test_shifted_pulses_give_exact_lags():
    shifts = np.array([0, 2, 5, 5])
    ts = shifted_pulse_traceset(shifts)
    corr, lags = build_correlation_matrix(ts)

    np.testing.assert_allclose(corr, np.ones((4, 4)), atol=1e-9)
    expected = (shifts[:, None] - shifts[None, :]) / 100.0
    np.testing.assert_allclose(lags, expected, atol=1e-12)
    assert lags[2, 3] == 0.0


def test_matrix_symmetry_and_diagonal():
    ts, _ = make_synthetic_traceset(7, n_families=2, noise=0.2, seed=5)
    corr, lags = build_correlation_matrix(ts)

    assert corr.shape == (7, 7)
    assert np.array_equal(corr, corr.T)
    assert np.array_equal(lags, -lags.T)
    assert np.all(np.diag(corr) == 1.0)
    assert np.all(np.diag(lags) == 0.0)
    assert np.all(np.abs(corr) <= 1.0)


def test_only_upper_triangle_is_correlated(monkeypatch):
    calls = []
    original = correlation.correlate_pair

    def counting(*args, **kwargs):
        calls.append(1)
        return original(*args, **kwargs)

    monkeypatch.setattr(correlation, 'correlate_pair', counting)
    ts = shifted_pulse_traceset([0, 1, 2, 3, 4])
    build_correlation_matrix(ts)
    assert len(calls) == 10


def test_fewer_than_two_traces_skip_the_correlator(monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("correlator should not run")

    monkeypatch.setattr(correlation, 'correlate_pair', boom)

    corr, lags = build_correlation_matrix(shifted_pulse_traceset([3]))
    assert np.array_equal(corr, np.eye(1))
    assert np.array_equal(lags, np.zeros((1, 1)))

    corr, lags = build_correlation_matrix(np.zeros((0, 50)), sampling_rate=100.0)
    assert corr.shape == (0, 0)
    assert lags.shape == (0, 0)


def test_array_input_matches_traceset_input():
    ts = shifted_pulse_traceset([0, 4, -3], noise=0.05, seed=2)
    c1, l1 = build_correlation_matrix(ts)
    c2, l2 = build_correlation_matrix(ts.data, sampling_rate=ts.sampling_rate)
    assert np.array_equal(c1, c2)
    assert np.array_equal(l1, l2)


def test_array_input_needs_sampling_rate():
    with pytest.raises(InputError):
        build_correlation_matrix(np.zeros((3, 10)))
    with pytest.raises(InputError):
        build_correlation_matrix(np.zeros(10), sampling_rate=100.0)


def test_unequal_lengths_raise():
    a = Trace(np.random.randn(100))
    b = Trace(np.random.randn(120))
    with pytest.raises(InputError):
        build_correlation_matrix(TraceSet([a, b]))


def test_parallel_matches_sequential():
    ts, _ = make_synthetic_traceset(6, n_families=2, noise=0.1, seed=9)
    c_seq, l_seq = build_correlation_matrix(ts, n_processes=1)
    c_par, l_par = build_correlation_matrix(ts, n_processes=2, chunk_size=3)
    assert np.array_equal(c_seq, c_par)
    assert np.array_equal(l_seq, l_par)


def test_cancel_before_start_returns_empty_partial():
    ts = shifted_pulse_traceset([0, 1, 2, 3])
    event = threading.Event()
    event.set()

    with pytest.raises(CorrelationCancelled) as info:
        build_correlation_matrix(ts, cancel_event=event)

    err = info.value
    assert err.pairs_done == 0
    assert err.pairs_total == 6
    off = ~np.eye(4, dtype=bool)
    assert np.all(np.isnan(err.coefficients[off]))
    assert np.all(np.diag(err.coefficients) == 1.0)


class _CancelAfter:
    """Reports cancellation from the n-th poll onwards."""

    def __init__(self, n):
        self.n = n
        self.polls = 0

    def is_set(self):
        self.polls += 1
        return self.polls >= self.n


def test_cancel_between_chunks_keeps_finished_pairs():
    ts = shifted_pulse_traceset([0, 1, 2, 3])

    with pytest.raises(CorrelationCancelled) as info:
        build_correlation_matrix(ts, chunk_size=1, cancel_event=_CancelAfter(2))

    err = info.value
    assert err.pairs_done == 1
    # pairs run in (0, 1), (0, 2), ... order
    assert err.coefficients[0, 1] == pytest.approx(1.0, abs=1e-9)
    assert err.lags[1, 0] == pytest.approx(0.01)
    assert np.isnan(err.coefficients[0, 2])
    assert np.isnan(err.lags[2, 3])


def test_parallel_cancel_terminates_pool():
    ts = shifted_pulse_traceset([0, 1, 2, 3])

    with pytest.raises(CorrelationCancelled) as info:
        build_correlation_matrix(ts, n_processes=2, chunk_size=1,
                                 cancel_event=_CancelAfter(1))

    err = info.value
    assert err.pairs_done == 1
    assert err.pairs_total == 6
    iu, ju = np.triu_indices(4, k=1)
    done = np.isfinite(err.coefficients[iu, ju])
    assert done.sum() == err.pairs_done
    assert np.array_equal(np.isfinite(err.lags[iu, ju]), done)
    assert np.array_equal(np.isnan(err.lags[ju, iu]), ~done)


def test_lags_are_measured_from_the_triggers():
    # same pulse at the same sample, but the second trigger sits 0.1 s later
    ts = shifted_pulse_traceset([0, 0])
    times = ts.trigger_times
    moved = ts.with_triggers([times[0], times[1] + 0.1])
    np.testing.assert_allclose(np.diff(moved.relative_start_times()), -0.1, atol=1e-9)

    corr, lags = build_correlation_matrix(moved)
    assert corr[0, 1] == pytest.approx(1.0, abs=1e-9)
    assert lags[1, 0] == pytest.approx(-0.1, abs=1e-9)
    assert lags[0, 1] == -lags[1, 0]


def test_trigger_offsets_add_to_sample_lags():
    ts = shifted_pulse_traceset([0, 5])
    times = ts.trigger_times
    moved = ts.with_triggers([times[0], times[1] - 0.02])
    _, lags = build_correlation_matrix(moved)
    # pulse 1 is 0.05 s late in its window and its trigger 0.02 s early
    assert lags[1, 0] == pytest.approx(0.07, abs=1e-9)

    # array input has no triggers, only the window offset remains
    _, raw = build_correlation_matrix(moved.data, sampling_rate=100.0)
    assert raw[1, 0] == pytest.approx(0.05, abs=1e-9)
