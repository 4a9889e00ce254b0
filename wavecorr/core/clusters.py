"""
Cluster (family) extraction from a linkage tree.

Cutting the tree at a distance threshold binds together the subtrees of
every merge whose distance does not exceed the threshold. Families are
numbered 1..K by decreasing size, ties going to the family that holds the
lowest trace index, so family 1 is always the largest.
"""

import logging
import numpy as np

from .linkage import check_tree
from .traceset import InputError

logger = logging.getLogger(__name__)


def _number_families(roots):
    """Map arbitrary root labels to family ids ordered by size."""
    labels, first, inverse, counts = np.unique(
        roots, return_index=True, return_inverse=True, return_counts=True
    )
    order = np.lexsort((first, -counts))
    family_ids = np.empty(len(labels), dtype=int)
    family_ids[order] = np.arange(1, len(labels) + 1)
    return family_ids[inverse]


def _apply_merges(tree, bind):
    n = tree.shape[0] + 1
    parent = np.arange(2 * n)

    def find(x):
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for step, (left, right, _) in enumerate(tree):
        if not bind[step]:
            continue
        node = n + 1 + step
        parent[find(int(left))] = node
        parent[find(int(right))] = node

    roots = np.array([find(leaf) for leaf in range(1, n + 1)])
    return _number_families(roots)


def cut_tree(tree, threshold):
    """
    Assign every trace to a cluster by cutting the tree at ``threshold``.

    Parameters
    ----------
    tree : array-like
        (M - 1, 3) linkage tree from :func:`wavecorr.core.linkage.build_linkage`
    threshold : float
        Cut distance, in the units of the linkage distance (1 - coefficient).
        A threshold of 0 or less leaves every trace in its own cluster.

    Returns
    -------
    clusters : ndarray
        Length-M array of cluster ids (1..K)
    """
    tree = check_tree(tree)
    threshold = float(threshold)
    if np.isnan(threshold):
        raise InputError("threshold must be a number")

    if threshold <= 0:
        bind = np.zeros(tree.shape[0], dtype=bool)
    else:
        bind = tree[:, 2] <= threshold

    clusters = _apply_merges(tree, bind)
    logger.info(f"Cut at distance {threshold:.3f}: {tree.shape[0] + 1} traces "
                f"-> {clusters.max()} cluster(s)")
    return clusters


def cut_tree_maxclust(tree, maxclust):
    """
    Cut the tree into at most ``maxclust`` clusters.

    The last ``maxclust - 1`` merges are undone; all earlier merges bind.
    """
    tree = check_tree(tree)
    maxclust = int(maxclust)
    if maxclust < 1:
        raise InputError(f"maxclust must be at least 1, got {maxclust}")

    n = tree.shape[0] + 1
    n_bound = max(0, n - maxclust)
    bind = np.arange(tree.shape[0]) < n_bound

    clusters = _apply_merges(tree, bind)
    logger.info(f"Cut into at most {maxclust} cluster(s): {clusters.max()} formed")
    return clusters


def family_statistics(coefficients, clusters):
    """
    Summarize each family.

    Parameters
    ----------
    coefficients : array-like
        (M, M) coefficient matrix
    clusters : array-like
        Length-M cluster ids

    Returns
    -------
    families : list of dict
        One entry per family, in id order, with keys 'cluster', 'members'
        (trace indices), 'size' and 'mean_corr' (mean coefficient between
        distinct members, NaN for a single-member family).
    """
    coefficients = np.asarray(coefficients, dtype=np.float64)
    clusters = np.asarray(clusters, dtype=int)
    if coefficients.shape != (clusters.size, clusters.size):
        raise InputError(f"coefficient matrix {coefficients.shape} does not match "
                         f"{clusters.size} cluster labels")

    families = []
    for cid in np.unique(clusters):
        members = np.flatnonzero(clusters == cid)
        if members.size > 1:
            block = coefficients[np.ix_(members, members)]
            off = ~np.eye(members.size, dtype=bool)
            mean_corr = float(np.mean(block[off]))
        else:
            mean_corr = np.nan
        families.append({
            'cluster': int(cid),
            'members': members,
            'size': int(members.size),
            'mean_corr': mean_corr,
        })
    return families
