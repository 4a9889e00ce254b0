import numpy as np
import pytest
from scipy.cluster import hierarchy
from scipy.spatial.distance import squareform

from wavecorr.core.correlation import build_correlation_matrix
from wavecorr.core.linkage import build_linkage, to_scipy_linkage, check_tree, similarity_to_distance
from wavecorr.core.clusters import cut_tree
from wavecorr.core.synthetics import make_synthetic_traceset
from wavecorr.core.traceset import InputError


def _random_coefficients(n, seed):
    rng = np.random.default_rng(seed)
    a = rng.uniform(-1.0, 1.0, (n, n))
    c = 0.5 * (a + a.T)
    np.fill_diagonal(c, 1.0)
    return c


def test_tree_structure():
    ts, _ = make_synthetic_traceset(12, n_families=3, noise=0.1, seed=1)
    corr, _ = build_correlation_matrix(ts)
    tree = build_linkage(corr)

    n = 12
    assert tree.shape == (n - 1, 3)
    assert np.all(np.diff(tree[:, 2]) >= 0)
    assert np.all(tree[:, 0] < tree[:, 1])

    ids = tree[:, :2].astype(int).ravel()
    # every leaf and every internal node except the root is merged exactly once
    assert sorted(ids) == list(range(1, 2 * n - 1))
    for step, (left, right, _) in enumerate(tree):
        assert max(left, right) <= n + step


@pytest.mark.parametrize('method', ['average', 'single', 'complete', 'weighted'])
def test_heights_match_scipy(method):
    corr = _random_coefficients(9, seed=4)
    tree = build_linkage(corr, method=method)
    Z = hierarchy.linkage(squareform(1.0 - corr, checks=False), method=method)
    np.testing.assert_allclose(tree[:, 2], Z[:, 2], atol=1e-12)


def test_partitions_match_scipy():
    corr = _random_coefficients(10, seed=8)
    tree = build_linkage(corr)
    Z = hierarchy.linkage(squareform(1.0 - corr, checks=False), method='average')

    t = 0.5 * (tree[4, 2] + tree[5, 2])
    ours = cut_tree(tree, t)
    theirs = hierarchy.fcluster(Z, t, criterion='distance')

    def groups(labels):
        return {frozenset(np.flatnonzero(labels == k)) for k in np.unique(labels)}

    assert groups(ours) == groups(theirs)


def test_scipy_conversion_is_valid():
    corr = _random_coefficients(6, seed=2)
    Z = to_scipy_linkage(build_linkage(corr))
    assert hierarchy.is_valid_linkage(Z)
    assert Z[-1, 3] == 6


def test_ties_merge_lowest_ids_first():
    tree = build_linkage(np.ones((4, 4)))
    expected = np.array([[1, 2, 0.0],
                         [3, 4, 0.0],
                         [5, 6, 0.0]])
    assert np.array_equal(tree, expected)


def test_merge_records():
    corr = _random_coefficients(5, seed=3)
    tree, records = build_linkage(corr, return_records=True)
    assert [r.id for r in records] == [6, 7, 8, 9]
    assert records[-1].size == 5
    for rec, row in zip(records, tree):
        assert (rec.left, rec.right, rec.distance) == tuple(row)


def test_single_trace_has_empty_tree():
    tree = build_linkage(np.ones((1, 1)))
    assert tree.shape == (0, 3)


def test_bad_input_raises():
    with pytest.raises(InputError):
        build_linkage(np.eye(3), method='centroid')
    with pytest.raises(InputError):
        similarity_to_distance(np.full((2, 2), np.nan))
    with pytest.raises(InputError):
        check_tree([[1, 2, 0.5], [3, 4, 0.2], [5, 6, 0.9]])
    with pytest.raises(InputError):
        check_tree([[1, 2, 0.1], [1, 3, 0.2]])
