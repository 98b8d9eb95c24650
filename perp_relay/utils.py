"""Misc helpers: logging setup, address and timestamp handling."""

import datetime
import logging
import os
from pathlib import Path
from typing import Optional

from eth_typing import HexAddress
from eth_utils import is_address


def setup_console_logging(
    default_log_level="info",
    log_file: Path | None = None,
    std_out_log_level: Optional[int] = None,
) -> logging.Logger:
    """Set up coloured log output for the server entrypoint.

    - ``LOG_LEVEL`` environment variable overrides ``default_log_level``

    - Tune down some noisy dependency library logging

    :param log_file:
        Output both console and this log file.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    if not std_out_log_level:
        std_out_log_level = numeric_level

    fmt = "%(asctime)s %(name)-44s %(message)s"
    date_fmt = "%H:%M:%S"

    try:
        # Optional dev dependency
        import coloredlogs

        coloredlogs.install(level=std_out_log_level, fmt=fmt, date_fmt=date_fmt)
    except ImportError:
        # non-ANSI e.g. Docker
        logging.basicConfig(level=std_out_log_level, format=fmt, datefmt=date_fmt)

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"
        log_file.parent.mkdir(parents=True, exist_ok=True)

        # The file is always logged with INFO level and
        # env var controls only terminal output
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(min(logging.INFO, numeric_level))
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))
        logging.getLogger().addHandler(file_handler)

    # Mute noise
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("filelock").setLevel(logging.WARNING)
    return logging.getLogger()


def normalise_address(address: str) -> HexAddress:
    """Lowercase an address after validating it.

    Registry keys and signer comparisons use the lowercase form.

    :raise ValueError:
        Not a 20-byte hex address
    """
    if not isinstance(address, str) or not is_address(address):
        raise ValueError(f"Not an address: {address!r}")
    return HexAddress(address.lower())


def get_timestamp_nonce() -> int:
    """Current UTC wall clock time in milliseconds.

    Used as the action nonce. The exchange only accepts nonces
    that are unique per signer and close to the current time.
    """
    return int(datetime.datetime.now(datetime.UTC).timestamp() * 1000)


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 string, as stored in the API wallet file."""
    return datetime.datetime.now(datetime.UTC).isoformat().replace("+00:00", "Z")
