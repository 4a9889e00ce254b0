"""
Agglomerative clustering of traces for WAVECORR.

Similarity is turned into distance with the fixed rule

    distance = 1 - coefficient

and clusters are merged pairwise until a single root remains. Each merge
is kept as an immutable :class:`MergeRecord` in an arena indexed by
cluster id. Ids are never reused: leaves are 1..M and the cluster formed
by merge k (0-based) gets id M + 1 + k.

The linkage tree is returned as an (M - 1) x 3 array of
``[left_id, right_id, merge_distance]`` rows with ``left_id < right_id``.
"""

from collections import namedtuple
import logging
import numpy as np

from .traceset import InputError

logger = logging.getLogger(__name__)

DISTANCE_CONVENTION = '1 - coefficient'
LINKAGE_METHODS = ('average', 'single', 'complete', 'weighted')

MergeRecord = namedtuple('MergeRecord', ['id', 'left', 'right', 'distance', 'size'])


def similarity_to_distance(coefficients):
    """
    Convert a coefficient matrix to a distance matrix (``1 - coefficient``).

    Parameters
    ----------
    coefficients : array-like
        (M, M) symmetric coefficient matrix

    Returns
    -------
    distances : ndarray
        (M, M) matrix with zero diagonal, values in [0, 2]
    """
    coefficients = np.asarray(coefficients, dtype=np.float64)
    if coefficients.ndim != 2 or coefficients.shape[0] != coefficients.shape[1]:
        raise InputError(f"coefficients must be square, got shape {coefficients.shape}")
    if not np.all(np.isfinite(coefficients)):
        raise InputError("coefficient matrix contains non-finite values")

    distances = 1.0 - coefficients
    np.fill_diagonal(distances, 0.0)
    return distances


def _updated_distances(method, d_a, d_b, n_a, n_b):
    """Lance-Williams distance from every cluster to the union of a and b."""
    if method == 'average':
        return (n_a * d_a + n_b * d_b) / (n_a + n_b)
    if method == 'single':
        return np.minimum(d_a, d_b)
    if method == 'complete':
        return np.maximum(d_a, d_b)
    if method == 'weighted':
        return 0.5 * (d_a + d_b)
    raise InputError(f"unknown linkage method '{method}'")


def build_linkage(coefficients, method='average', return_records=False):
    """
    Build the merge tree for a coefficient matrix.

    At each step the pair of active clusters with the smallest distance is
    merged. Equal distances are resolved in favour of the lowest
    (smaller id, larger id) pair so the tree is reproducible.

    Parameters
    ----------
    coefficients : array-like
        (M, M) symmetric coefficient matrix
    method : str
        One of 'average' (default), 'single', 'complete', 'weighted'
    return_records : bool
        Also return the list of :class:`MergeRecord` (the merge arena)

    Returns
    -------
    tree : ndarray
        (M - 1, 3) array of ``[left_id, right_id, merge_distance]``
    records : list of MergeRecord
        Only when ``return_records`` is True
    """
    if method not in LINKAGE_METHODS:
        raise InputError(f"unknown linkage method '{method}'; "
                         f"expected one of {LINKAGE_METHODS}")

    dist = similarity_to_distance(coefficients)
    n = dist.shape[0]
    if n < 1:
        raise InputError("at least one trace is required")

    np.fill_diagonal(dist, np.inf)

    # dist is indexed by slot; slot_ids maps a slot to the cluster id living there
    slot_ids = np.arange(1, n + 1)
    sizes = np.ones(n, dtype=np.int64)
    records = []
    tree = np.zeros((n - 1, 3), dtype=np.float64)
    last_height = 0.0

    for step in range(n - 1):
        d_min = dist.min()
        cand_a, cand_b = np.nonzero(dist == d_min)
        id_a = slot_ids[cand_a]
        id_b = slot_ids[cand_b]
        low = np.minimum(id_a, id_b)
        high = np.maximum(id_a, id_b)
        pick = np.lexsort((high, low))[0]
        a, b = cand_a[pick], cand_b[pick]

        # Lance-Williams updates can undershoot the previous height by an ulp
        height = max(float(d_min), last_height)
        last_height = height

        new_id = n + 1 + step
        new_size = int(sizes[a] + sizes[b])
        records.append(MergeRecord(new_id, int(low[pick]), int(high[pick]), height, new_size))
        tree[step] = (low[pick], high[pick], height)

        merged = _updated_distances(method, dist[a], dist[b], sizes[a], sizes[b])
        dist[a, :] = merged
        dist[:, a] = merged
        dist[a, a] = np.inf
        dist[b, :] = np.inf
        dist[:, b] = np.inf

        sizes[a] = new_size
        slot_ids[a] = new_id

    if n > 1:
        logger.info(f"Built {method} linkage for {n} traces: "
                    f"merge distances {tree[0, 2]:.3f} .. {tree[-1, 2]:.3f}")

    if return_records:
        return tree, records
    return tree


def check_tree(tree):
    """
    Validate a linkage tree and return it as a float array.

    Raises
    ------
    InputError
        If the shape, ids or merge order are inconsistent.
    """
    tree = np.asarray(tree, dtype=np.float64)
    if tree.ndim != 2 or tree.shape[1] != 3:
        raise InputError(f"linkage tree must have shape (M - 1, 3), got {tree.shape}")
    n = tree.shape[0] + 1

    ids = tree[:, :2]
    if np.any(ids != np.round(ids)) or np.any(ids < 1):
        raise InputError("linkage ids must be positive integers")
    for step, (left, right, _) in enumerate(tree):
        if max(left, right) > n + step:
            raise InputError(f"merge {step} references cluster {int(max(left, right))} "
                             f"before it exists")
    used = ids.ravel().astype(int)
    if len(np.unique(used)) != used.size:
        raise InputError("a cluster id is merged more than once")
    if np.any(np.diff(tree[:, 2]) < 0):
        raise InputError("merge distances must be non-decreasing")
    return tree


def to_scipy_linkage(tree):
    """
    Convert a linkage tree to SciPy's (M - 1) x 4 linkage matrix.

    SciPy numbers leaves from 0 and stores the member count in a fourth
    column; the result can be passed to ``scipy.cluster.hierarchy``
    functions such as ``dendrogram``.
    """
    tree = check_tree(tree)
    n = tree.shape[0] + 1
    counts = np.ones(2 * n - 1)
    Z = np.zeros((n - 1, 4), dtype=np.float64)
    for step, (left, right, height) in enumerate(tree):
        l0, r0 = int(left) - 1, int(right) - 1
        counts[n + step] = counts[l0] + counts[r0]
        Z[step] = (l0, r0, height, counts[n + step])
    return Z
