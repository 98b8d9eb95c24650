"""HTTP session management for Hyperliquid API.

Two kinds of sessions:

- Info sessions for ``/info`` reads. Reads are idempotent, so failed
  requests are retried, POST included.

- Exchange sessions for ``/exchange`` writes. Exchange actions are not
  idempotent: a resubmitted order is a duplicate order. POST is never
  retried, only rate limited.

Rate limiting is thread-safe using SQLite backend, so a session can be
shared across the request handler threads of the server.
"""

import logging
from pathlib import Path

from pyrate_limiter import SQLiteBucket
from requests import Session
from requests_ratelimiter import LimiterAdapter

from perp_relay.hyperliquid.constants import HYPERLIQUID_RATE_LIMIT_SQLITE_DATABASE
from perp_relay.logging_retry import LoggingRetry

logger = logging.getLogger(__name__)

#: Default number of retries for info requests
DEFAULT_RETRIES = 5

#: Default backoff factor for retries (seconds)
DEFAULT_BACKOFF_FACTOR = 0.5

#: Default rate limit for Hyperliquid API requests per second.
#:
#: Hyperliquid has a limit of 1200 weight per minute per IP.
#: Most info endpoints have weight 20, so: 1200 / 20 = 60 requests/minute = 1 request/second.
#: Exchange actions have weight 1.
#:
#: See https://hyperliquid.gitbook.io/hyperliquid-docs/for-developers/api/rate-limits-and-user-limits
DEFAULT_REQUESTS_PER_SECOND = 1.0


def create_hyperliquid_session(
    retries: int = DEFAULT_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
    retry_post: bool = True,
    pool_maxsize: int = 32,
    rate_limit_db_path: Path = HYPERLIQUID_RATE_LIMIT_SQLITE_DATABASE,
) -> Session:
    """Create a requests Session configured for Hyperliquid API.

    The session is configured with:

    - Rate limiting to respect Hyperliquid API throttling (thread-safe via SQLite)
    - Retry logic for handling transient errors using exponential backoff

    Example::

        from perp_relay.hyperliquid.session import create_hyperliquid_session

        session = create_hyperliquid_session()
        response = session.post("https://api.hyperliquid.xyz/info", json={"type": "meta"})

    :param retries:
        Maximum number of retry attempts for failed requests
    :param backoff_factor:
        Backoff factor for exponential retry delays
    :param requests_per_second:
        Maximum requests per second to avoid rate limiting.
    :param retry_post:
        Whether POST requests are retried.
        Must be ``False`` for sessions submitting exchange actions.
    :param pool_maxsize:
        Maximum number of connections to keep in the connection pool.
    :param rate_limit_db_path:
        Path to SQLite database for storing rate limit state.
    :return:
        Configured requests Session with rate limiting and retry logic
    """
    rate_limit_db_path.parent.mkdir(parents=True, exist_ok=True)

    session = Session()

    allowed_methods = LoggingRetry.DEFAULT_ALLOWED_METHODS
    if retry_post:
        allowed_methods = allowed_methods | frozenset(["POST"])

    retry_policy = LoggingRetry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        respect_retry_after_header=True,
        logger=logger,
        allowed_methods=allowed_methods,
        # Let the caller see the error body instead of MaxRetryError
        raise_on_status=False,
    )

    adapter = LimiterAdapter(
        per_second=requests_per_second,
        max_retries=retry_policy,
        pool_connections=pool_maxsize,
        pool_maxsize=pool_maxsize,
        bucket_class=SQLiteBucket,
        bucket_kwargs={"path": str(rate_limit_db_path)},
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def create_exchange_session(
    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
    rate_limit_db_path: Path = HYPERLIQUID_RATE_LIMIT_SQLITE_DATABASE,
) -> Session:
    """Session for submitting signed actions.

    No POST retries, see module docs.
    """
    return create_hyperliquid_session(
        retries=0,
        requests_per_second=requests_per_second,
        retry_post=False,
        rate_limit_db_path=rate_limit_db_path,
    )
