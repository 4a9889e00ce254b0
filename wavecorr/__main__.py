"""Convenience entrypoint for WAVECORR.

This allows running the driver via:

  python -m wavecorr "events/*.mseed" --triggers picks.txt

It simply delegates to `wavecorr_driver.main()`.
"""
import sys

from wavecorr_driver import main


if __name__ == '__main__':
    sys.exit(main())
