"""Constants for the Hyperliquid exchange integration.

Signing domains and chain ids are exchange-mandated and must match what
the exchange's signature verifier reconstructs. They are never user input.

- `Signing documentation <https://hyperliquid.gitbook.io/hyperliquid-docs/for-developers/api/signing>`__
"""

import enum
from pathlib import Path

#: Hyperliquid mainnet API URL
HYPERLIQUID_API_URL = "https://api.hyperliquid.xyz"

#: Hyperliquid testnet API URL
HYPERLIQUID_TESTNET_API_URL = "https://api.hyperliquid-testnet.xyz"

#: Default SQLite database path for rate limiting state.
HYPERLIQUID_RATE_LIMIT_SQLITE_DATABASE = Path("~/.perp-relay/hyperliquid/rate-limit.sqlite").expanduser()

#: Zero address used as ``verifyingContract`` in both signing domains.
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#: Chain id of the domain of L1 actions (orders, cancels).
#:
#: Not a real chain. Browser wallets refuse to sign for it,
#: so L1 actions are signed by API wallets held on the server.
L1_ACTION_CHAIN_ID = 1337

#: EIP-712 domain for L1 actions.
L1_ACTION_DOMAIN = {
    "name": "Exchange",
    "version": "1",
    "chainId": L1_ACTION_CHAIN_ID,
    "verifyingContract": ZERO_ADDRESS,
}

#: EIP-712 domain name for user-signed actions (agent approval, transfers).
USER_SIGNED_DOMAIN_NAME = "HyperliquidSignTransaction"

#: Arbitrum One, the signature chain for mainnet user-signed actions.
MAINNET_SIGNATURE_CHAIN_ID = 42161

#: Arbitrum Sepolia, the signature chain for testnet user-signed actions.
TESTNET_SIGNATURE_CHAIN_ID = 421614

#: Type list of the EIP-712 domain, included in the typed data passed to wallets.
EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

#: Phantom agent struct signed for L1 actions.
AGENT_TYPE = [
    {"name": "source", "type": "string"},
    {"name": "connectionId", "type": "bytes32"},
]

#: Primary type name of agent approvals.
APPROVE_AGENT_PRIMARY_TYPE = "HyperliquidTransaction:ApproveAgent"

#: Agent approval struct.
#:
#: ``type`` and ``signatureChainId`` of the action are not signed.
APPROVE_AGENT_TYPE = [
    {"name": "hyperliquidChain", "type": "string"},
    {"name": "agentAddress", "type": "address"},
    {"name": "agentName", "type": "string"},
    {"name": "nonce", "type": "uint64"},
]

#: Agent names are limited to 1-16 characters by the exchange.
MAX_AGENT_NAME_LENGTH = 16

#: Maximum decimals the exchange accepts in a price or size string.
MAX_WIRE_DECIMALS = 8

#: Maximum significant figures in a perp price.
MAX_PRICE_SIGNIFICANT_FIGURES = 5

#: Perp prices may have at most ``MAX_PERP_DECIMALS - szDecimals`` decimals.
MAX_PERP_DECIMALS = 6


class ActionKind(enum.Enum):
    """Action types the relay signs and forwards."""

    order = "order"
    approve_agent = "approveAgent"


#: Whether ``r`` and ``s`` carry the ``0x`` prefix when transmitted.
#:
#: Order payloads go out without prefix, agent approvals with it.
#: Both forms were accepted when captured from working clients; keep them as is.
WIRE_SIGNATURE_PREFIX = {
    ActionKind.order: False,
    ActionKind.approve_agent: True,
}


class HyperliquidChain(enum.Enum):
    """Value of ``hyperliquidChain`` in user-signed actions."""

    mainnet = "Mainnet"
    testnet = "Testnet"


def get_signature_chain_id(is_mainnet: bool) -> int:
    """Chain id user-signed actions are signed against."""
    return MAINNET_SIGNATURE_CHAIN_ID if is_mainnet else TESTNET_SIGNATURE_CHAIN_ID


def get_api_url(is_mainnet: bool) -> str:
    return HYPERLIQUID_API_URL if is_mainnet else HYPERLIQUID_TESTNET_API_URL


#: Largest value of the 8-byte unsigned integers in signed payloads:
#: nonces, ``expiresAfter`` and asset indexes.
MAX_UINT64 = 2**64 - 1
