"""Error taxonomy shared by the relay components.

None of these errors are retried internally. The HTTP layer in
:py:mod:`perp_relay.server.app` turns them to structured error bodies.
"""


class RelayError(Exception):
    """Base class for all relay errors."""


class UserRejected(RelayError):
    """The wallet user declined a signature or network switch request.

    Terminal, never retried.
    """


class IdentityUnavailable(RelayError):
    """No usable signing identity.

    - No wallet or no unlocked account in the wallet

    - API wallet exists, but has not been authorised on the exchange yet
    """


class WalletRequestFailed(RelayError):
    """Wallet provider returned an error we do not have a better mapping for."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class ValidationError(RelayError):
    """Missing or malformed input. The caller must fix and resubmit."""


class SignerMismatch(ValidationError):
    """Recovered signer differs from the expected one.

    Only raised when strict signer checking is enabled,
    otherwise the mismatch is logged and the payload is submitted.
    """


class ExchangeRejected(RelayError):
    """The exchange returned an error payload.

    :py:attr:`reason` is the exchange's own message text, verbatim.
    """

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class ConfigurationError(RelayError):
    """Missing or malformed configuration detected at startup."""


class PersistenceError(RelayError):
    """API wallet registry file could not be read or written."""


class RecordNotFound(RelayError):
    """No API wallet record for the owner address."""
