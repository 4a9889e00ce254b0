"""
WAVECORR - Waveform Correlation and Event Family Clustering

Quantifies the similarity of a set of seismic traces that are each tied
to a trigger time, with relative delays estimated after VanDecar &
Crosson (1990).

This package provides:
- Pairwise normalized cross-correlation (coefficient and lag matrices)
- Joint least-squares inversion of pairwise lags for per-trace delays
- Hierarchical (agglomerative) clustering of traces into families
- Trigger adjustment from the inverted delays
- Conversion from ObsPy streams and persistence of the products

Waveform retrieval, preprocessing and plotting are left to the caller.
"""

__version__ = "0.1.0"
__author__ = "WAVECORR Development Team"

from . import core
from . import io

__all__ = ['core', 'io']
