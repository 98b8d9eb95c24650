"""perp_relay package root.

A relay between browser wallet users and the Hyperliquid perpetuals exchange.

- :py:mod:`perp_relay.hyperliquid` message encoding, signing and exchange access
- :py:mod:`perp_relay.server` HTTP API
"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 11)


def _check_python_version():
    """Try early abort if the Python version is too old."""
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"perp-relay needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
