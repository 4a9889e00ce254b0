"""
Core algorithms for waveform correlation and family clustering.

This module provides:
- Trace containers with trigger times
- Cross-correlation of trace pairs and whole trace sets
- Least-squares delay-time inversion
- Linkage construction and cluster extraction
"""

from .traceset import TraceSet, InputError
from .correlation import correlate_pair, build_correlation_matrix, CorrelationCancelled
from .delays import invert_delays
from .linkage import build_linkage, to_scipy_linkage, DISTANCE_CONVENTION
from .clusters import cut_tree, cut_tree_maxclust, family_statistics
from .alignment import adjust_triggers
from .correlation_set import CorrelationSet, StaleProductError

__all__ = [
    'TraceSet',
    'InputError',
    'correlate_pair',
    'build_correlation_matrix',
    'CorrelationCancelled',
    'invert_delays',
    'build_linkage',
    'to_scipy_linkage',
    'DISTANCE_CONVENTION',
    'cut_tree',
    'cut_tree_maxclust',
    'family_statistics',
    'adjust_triggers',
    'CorrelationSet',
    'StaleProductError',
]
