#!/usr/bin/env python
"""
WAVECORR Driver - Waveform Correlation and Event Family Clustering

Reads a set of preprocessed waveform windows (one per event, all with the
same sample rate and length) plus their trigger times, then:

1. Cross-correlates every pair of traces (coefficient and lag matrices)
2. Inverts the pairwise lags for one delay correction per trace
3. Builds an agglomerative linkage tree on distance = 1 - coefficient
4. Cuts the tree into event families

Products are written to an .npz archive and a per-trace CSV summary.

Usage:
    python wavecorr_driver.py "events/*.mseed" --triggers picks.txt \\
        --min-correlation 0.7 --output out/products.npz --summary out/summary.csv

    # Options can also come from a YAML file (CLI arguments win):
    python wavecorr_driver.py --config wavecorr.yaml
"""

import os
import sys
import signal
import logging
import argparse
import threading
import numpy as np
import yaml

from obspy import UTCDateTime

from wavecorr.core import CorrelationSet, CorrelationCancelled, InputError, adjust_triggers
from wavecorr.core.delays import STAT_DELAY
from wavecorr.io import read_traceset, read_triggers, save_products, write_summary

# Module-level logger
logger = logging.getLogger(__name__)


def build_parser():
    parser = argparse.ArgumentParser(
        description='WAVECORR - waveform correlation, delay inversion and family clustering',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python wavecorr_driver.py "events/*.mseed" --triggers picks.txt --min-correlation 0.7
  python wavecorr_driver.py --config wavecorr.yaml --processes 8
        """
    )
    parser.add_argument('--config', default=None,
                        help='Path to YAML config file containing options (overridden by CLI args)')

    # Input
    parser.add_argument('inputs', nargs='*', default=[],
                        help='Waveform files or glob patterns (any ObsPy-readable format)')
    parser.add_argument('--format', default=None,
                        help='ObsPy waveform format (default: autodetect)')
    parser.add_argument('--triggers', default=None,
                        help='Text file with one trigger time per trace, in file read order. '
                             'Default: a quarter of the way into each trace')

    # Correlation
    parser.add_argument('--max-lag', type=float, default=None,
                        help='Maximum |lag| to search, in seconds (default: full overlap)')
    parser.add_argument('--method', choices=['fft', 'direct'], default='fft',
                        help='Cross-correlation method (default: fft)')
    parser.add_argument('--interpolate', action='store_true',
                        help='Refine lags to sub-sample precision')
    parser.add_argument('--processes', '-p', type=int, default=1,
                        help='Number of parallel processes (0 = all cores, default: 1)')

    # Clustering
    parser.add_argument('--linkage', choices=['average', 'single', 'complete', 'weighted'],
                        default='average',
                        help='Linkage rule (default: average)')
    parser.add_argument('--threshold', '-t', type=float, default=None,
                        help='Cut distance (1 - coefficient) for families')
    parser.add_argument('--min-correlation', type=float, default=None,
                        help='Cut families at this correlation (default 0.7 when no cut is given)')
    parser.add_argument('--maxclust', type=int, default=None,
                        help='Form at most this many families')

    # Output
    parser.add_argument('--output', '-o', default='wavecorr_products.npz',
                        help='Output .npz archive for the correlation products')
    parser.add_argument('--summary', default=None,
                        help='Optional CSV file for the per-trace summary')
    parser.add_argument('--adjusted-triggers', default=None,
                        help='Optional text file to write delay-adjusted trigger times to')

    # Logging
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose output')
    return parser


def parse_args(argv=None):
    """Parse CLI arguments, taking defaults from the --config YAML file if given."""
    parser = build_parser()

    # First pass parse to detect config file, then set defaults from it so CLI args override config
    known_args, _ = parser.parse_known_args(argv)
    if known_args.config is not None:
        try:
            with open(known_args.config) as fh:
                cfg = yaml.safe_load(fh) or {}
            # Normalize keys: replace hyphens with underscore to match argparse dest names
            cfg_norm = {}
            for k, v in cfg.items():
                cfg_norm[k.replace('-', '_')] = v
            if isinstance(cfg_norm.get('inputs'), str):
                cfg_norm['inputs'] = [cfg_norm['inputs']]
            parser.set_defaults(**cfg_norm)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f'Failed to load config file {known_args.config}: {e}')

    args = parser.parse_args(argv)
    if not args.inputs:
        parser.error('no waveform inputs given (positional or "inputs" in --config)')

    cuts = [v is not None for v in (args.threshold, args.min_correlation, args.maxclust)]
    if sum(cuts) > 1:
        parser.error('give only one of --threshold, --min-correlation, --maxclust')
    if sum(cuts) == 0:
        args.min_correlation = 0.7
    return args


def write_triggers(path, triggers):
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(path, 'w') as fh:
        fh.write("# WAVECORR adjusted trigger times\n")
        for t in triggers:
            fh.write(f"{UTCDateTime(t).isoformat()}\n")
    logger.info(f"Wrote {len(triggers)} adjusted triggers to {path}")


def run(args, cancel_event=None):
    """
    Run the full correlation pipeline for parsed arguments.

    Returns
    -------
    cset : CorrelationSet
        The set holding every computed product
    """
    triggers = read_triggers(args.triggers) if args.triggers else None
    traceset = read_traceset(args.inputs, triggers, format=args.format)
    cset = CorrelationSet(traceset)

    n_processes = None if args.processes == 0 else args.processes
    if cancel_event is None:
        cancel_event = threading.Event()

    # Ctrl-C only asks the correlation build to stop between chunks; the
    # later stages get the normal KeyboardInterrupt
    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel_event.set())
    try:
        cset.xcorr(max_lag=args.max_lag, method=args.method,
                   interpolate=args.interpolate, n_processes=n_processes,
                   cancel_event=cancel_event)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)
    if cancel_event.is_set():
        raise KeyboardInterrupt("interrupted after correlation")

    cset.getstat()
    cset.linkage(method=args.linkage)
    cset.cluster(threshold=args.threshold, min_correlation=args.min_correlation,
                 maxclust=args.maxclust)

    families = cset.family_statistics()
    for fam in families:
        if fam['size'] > 1:
            logger.info(f"Family {fam['cluster']}: {fam['size']} traces, "
                        f"mean correlation {fam['mean_corr']:.3f}")
    n_single = int(np.sum([fam['size'] == 1 for fam in families]))
    logger.info(f"{int(cset.clust.max())} families ({n_single} single-trace)")

    save_products(args.output, cset)
    if args.summary:
        write_summary(args.summary, cset)
    if args.adjusted_triggers:
        adjusted = adjust_triggers(cset.traceset.trigger_times, cset.stat[:, STAT_DELAY])
        write_triggers(args.adjusted_triggers, adjusted)

    return cset


def main(argv=None):
    """Main entry point with argument parsing."""
    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s %(name)s %(levelname)s: %(message)s')
    args = parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info("=" * 60)
    logger.info("WAVECORR - Waveform Correlation and Family Clustering")
    logger.info("=" * 60)

    cancel_event = threading.Event()
    try:
        run(args, cancel_event=cancel_event)
    except CorrelationCancelled as e:
        logger.error(f"{e}; partial results discarded")
        return 130
    except KeyboardInterrupt:
        logger.error("Interrupted before the pipeline finished")
        return 130
    except InputError as e:
        logger.error(f"Invalid input: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
