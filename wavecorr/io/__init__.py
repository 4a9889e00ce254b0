"""
I/O modules for trace sets and correlation products.

Provides:
- Conversion of ObsPy streams and waveform files into TraceSets
- Reading trigger time lists
- Saving and loading correlation products (.npz)
"""

from .stream_adapter import traceset_from_stream, read_traceset, read_triggers
from .products import save_products, load_products, write_summary

__all__ = [
    'traceset_from_stream',
    'read_traceset',
    'read_triggers',
    'save_products',
    'load_products',
    'write_summary',
]
