"""Helpers: addresses, timestamps, retry logging."""

import datetime
import logging
from unittest.mock import MagicMock

import pytest

from perp_relay.logging_retry import LoggingRetry
from perp_relay.utils import get_timestamp_nonce, normalise_address, utc_now_iso


def test_normalise_address():
    assert normalise_address("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed") == "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
    for bad in ["0x1234", "", None, 1]:
        with pytest.raises(ValueError):
            normalise_address(bad)


def test_timestamp_nonce_is_milliseconds():
    before = datetime.datetime.now(datetime.UTC).timestamp() * 1000
    nonce = get_timestamp_nonce()
    assert isinstance(nonce, int)
    assert abs(nonce - before) < 60_000


def test_utc_now_iso():
    value = utc_now_iso()
    assert value.endswith("Z")
    assert datetime.datetime.fromisoformat(value.replace("Z", "+00:00")).tzinfo is not None


def test_logging_retry_keeps_logger(caplog):
    logger = logging.getLogger("test_retry")
    retry = LoggingRetry(total=3, logger=logger)

    response = MagicMock(status=503, reason="Service Unavailable")
    response.get_redirect_location.return_value = None
    response.headers = {}

    with caplog.at_level(logging.WARNING, logger="test_retry"):
        retried = retry.increment(method="POST", url="https://api.hyperliquid.xyz/info", response=response)

    assert retried.logger is logger
    assert retried.total == 2
    assert "Retrying: POST https://api.hyperliquid.xyz/info (status: 503" in caplog.text
