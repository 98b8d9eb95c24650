"""Server configuration from environment variables.

A ``.env`` file in the working directory is loaded first, so the same
files the earlier JavaScript server used keep working.

All checks happen in :py:meth:`ServerConfig.from_env`: a misconfigured
server refuses to start instead of failing on the first request.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv
from eth_account import Account
from eth_keys.exceptions import ValidationError as EthKeysValidationError
from eth_typing import HexAddress
from eth_utils import is_address, to_checksum_address

from perp_relay.errors import ConfigurationError
from perp_relay.hyperliquid.constants import get_api_url
from perp_relay.hyperliquid.signing import HotWalletIdentity

logger = logging.getLogger(__name__)

#: Values of ``API_WALLET_PRIVATE_KEY`` in example ``.env`` files
PLACEHOLDER_PRIVATE_KEYS = {"", "your_private_key_here", "0x..."}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, value: str) -> bool:
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be true or false, got {value!r}")


@dataclass(slots=True)
class ServerConfig:
    """Relay server settings."""

    is_mainnet: bool = True

    api_url: str = field(default_factory=lambda: get_api_url(True))

    #: API wallet registry file
    api_wallets_file: Path = Path("api-wallets.json")

    #: Key of the API wallet used for orders that do not name an owner
    default_private_key: str | None = field(default=None, repr=False)

    #: Vault the default API wallet trades for
    vault_address: HexAddress | None = None

    #: Refuse to submit payloads that fail the local signer check
    strict_signer_check: bool = False

    host: str = "0.0.0.0"

    port: int = 3001

    #: Allowed CORS origins
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @property
    def network_name(self) -> str:
        return "mainnet" if self.is_mainnet else "testnet"

    def create_default_identity(self) -> HotWalletIdentity | None:
        if not self.default_private_key:
            return None
        return HotWalletIdentity.from_private_key(self.default_private_key)

    @classmethod
    def from_env(cls, environ: dict | None = None, dotenv: bool = True) -> "ServerConfig":
        """Read settings from the environment.

        :param environ:
            Use this mapping instead of ``os.environ``. Used in tests.

        :param dotenv:
            Load ``.env`` into ``os.environ`` first.

        :raise ConfigurationError:
            Any setting is malformed
        """
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        network = environ.get("HYPERLIQUID_NETWORK", "mainnet").strip().lower()
        if network not in ("mainnet", "testnet"):
            raise ConfigurationError(f"HYPERLIQUID_NETWORK must be mainnet or testnet, got {network!r}")
        is_mainnet = network == "mainnet"

        api_url = environ.get("HYPERLIQUID_API_URL") or get_api_url(is_mainnet)
        if not api_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"HYPERLIQUID_API_URL is not an HTTP URL: {api_url}")

        private_key = environ.get("API_WALLET_PRIVATE_KEY", "").strip()
        if private_key in PLACEHOLDER_PRIVATE_KEYS:
            private_key = None
        else:
            try:
                Account.from_key(private_key)
            except (ValueError, TypeError, EthKeysValidationError) as e:
                # Do not echo the value
                raise ConfigurationError("API_WALLET_PRIVATE_KEY is not a valid private key") from e

        vault_address = environ.get("VAULT_ADDRESS", "").strip() or None
        if vault_address:
            if not is_address(vault_address):
                raise ConfigurationError(f"VAULT_ADDRESS is not an address: {vault_address}")
            vault_address = to_checksum_address(vault_address)

        port = environ.get("PORT", "3001")
        try:
            port = int(port)
        except ValueError as e:
            raise ConfigurationError(f"PORT must be an integer, got {port!r}") from e

        cors_origins = [o.strip() for o in environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

        config = cls(
            is_mainnet=is_mainnet,
            api_url=api_url,
            api_wallets_file=Path(environ.get("API_WALLETS_FILE", "api-wallets.json")),
            default_private_key=private_key,
            vault_address=vault_address,
            strict_signer_check=_parse_bool("STRICT_SIGNER_CHECK", environ.get("STRICT_SIGNER_CHECK", "false")),
            host=environ.get("HOST", "0.0.0.0"),
            port=port,
            cors_origins=cors_origins,
        )

        logger.info(
            "Configured for %s at %s, API wallets in %s, default API wallet %s",
            config.network_name,
            config.api_url,
            config.api_wallets_file,
            "set" if private_key else "not set",
        )
        return config
