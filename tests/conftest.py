"""Shared pytest fixtures.

No test talks to the real exchange or a real browser wallet.

- :py:class:`StubExchange` stands in for
  :py:class:`~perp_relay.hyperliquid.exchange.HyperliquidExchangeClient`
  and checks signatures the way the exchange does

- :py:class:`FakeWallet` is an EIP-1193 provider backed by a local key
"""

import json
from pathlib import Path

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from perp_relay.errors import ExchangeRejected
from perp_relay.hyperliquid.actions import AgentApprovalAction, OrderAction, OrderIntent, SignedEnvelope
from perp_relay.hyperliquid.api_wallet import ApiWalletRegistry
from perp_relay.hyperliquid.exchange import ExchangeOk
from perp_relay.hyperliquid.relay import HyperliquidRelay
from perp_relay.hyperliquid.signing import ProviderRpcError, recover_signer

#: Meta universe of the stub exchange
STUB_META = {
    "universe": [
        {"name": "BTC", "szDecimals": 5, "maxLeverage": 40},
        {"name": "ETH", "szDecimals": 4, "maxLeverage": 25},
        {"name": "SOL", "szDecimals": 2, "maxLeverage": 20},
    ]
}


class StubExchange:
    """In-memory exchange.

    - Recovers the signer of every submitted action
    - Orders are accepted from known users and from agents they approved
    - A nonce is accepted once per signer
    """

    api_url = "https://stub.invalid"

    def __init__(self, is_mainnet: bool = True, users: set[str] | None = None):
        self.is_mainnet = is_mainnet
        self.users = {u.lower() for u in (users or set())}
        #: agent address -> owner address
        self.agents: dict[str, str] = {}
        self.used_nonces: set[tuple[str, int]] = set()
        self.submitted: list[dict] = []
        #: Next order submission returns this error instead
        self.next_error: str | None = None

    def submit(self, envelope: SignedEnvelope) -> ExchangeOk:
        if self.next_error:
            reason, self.next_error = self.next_error, None
            raise ExchangeRejected(reason, status_code=200)

        signer = recover_signer(envelope, self.is_mainnet).lower()
        if (signer, envelope.nonce) in self.used_nonces:
            raise ExchangeRejected("Invalid nonce: duplicate nonce", status_code=200)

        action = envelope.action
        if isinstance(action, AgentApprovalAction):
            self.users.add(signer)
            self.agents[action.agent_address.lower()] = signer
            result = ExchangeOk(payload={"type": "default"})
        else:
            if signer not in self.users and signer not in self.agents:
                raise ExchangeRejected(f"User or API Wallet {signer} does not exist.", status_code=200)
            statuses = [{"resting": {"oid": 1000 + len(self.submitted) + i}} for i, _ in enumerate(action.orders)]
            result = ExchangeOk(payload={"type": "order", "data": {"statuses": statuses}})

        self.used_nonces.add((signer, envelope.nonce))
        self.submitted.append(envelope.to_wire())
        return result

    def fetch_market_info(self):
        return [STUB_META, [{"markPx": "65000.0"}, {"markPx": "3200.0"}, {"markPx": "150.0"}]]


class FakeWallet:
    """EIP-1193 provider backed by a local key.

    Behaves like a browser extension wallet: may be locked,
    knows a fixed set of chains, and the user may reject requests.
    """

    def __init__(self, account: LocalAccount, chain_id: int = 1, known_chains=(1, 1337, 42161, 421614), zero_based_v=False):
        self.account = account
        self.chain_id = chain_id
        self.known_chains = set(known_chains)
        self.zero_based_v = zero_based_v
        self.locked = False
        #: method -> error code the user "answers" with
        self.reject = {}
        self.calls = []

    def request(self, method: str, params: list):
        self.calls.append(method)

        if method in self.reject:
            raise ProviderRpcError(self.reject[method], "Request rejected")

        if method == "eth_accounts":
            return [] if self.locked else [self.account.address.lower()]

        if method == "eth_chainId":
            return hex(self.chain_id)

        if method == "wallet_switchEthereumChain":
            chain_id = int(params[0]["chainId"], 16)
            if chain_id not in self.known_chains:
                raise ProviderRpcError(4902, "Unrecognized chain ID")
            self.chain_id = chain_id
            return None

        if method == "eth_signTypedData_v4":
            address, payload = params
            assert address == self.account.address
            typed_data = json.loads(payload)
            assert typed_data["domain"]["chainId"] == self.chain_id
            signed = self.account.sign_typed_data(full_message=typed_data)
            return self._encode(signed)

        if method == "personal_sign":
            signed = self.account.sign_message(encode_defunct(hexstr=params[0]))
            return self._encode(signed)

        raise ProviderRpcError(4200, f"Unsupported method {method}")

    def _encode(self, signed) -> str:
        v = signed.v - 27 if self.zero_based_v else signed.v
        return "0x" + signed.r.to_bytes(32, "big").hex() + signed.s.to_bytes(32, "big").hex() + f"{v:02x}"


@pytest.fixture()
def stub_meta() -> dict:
    return STUB_META


@pytest.fixture()
def owner() -> LocalAccount:
    """Browser wallet user."""
    return Account.from_key("0x" + "0a" * 32)


@pytest.fixture()
def stranger() -> LocalAccount:
    return Account.from_key("0x" + "0b" * 32)


@pytest.fixture()
def default_api_wallet() -> LocalAccount:
    return Account.from_key("0x" + "0c" * 32)


@pytest.fixture()
def registry_path(tmp_path: Path) -> Path:
    return tmp_path / "api-wallets.json"


@pytest.fixture()
def registry(registry_path: Path) -> ApiWalletRegistry:
    return ApiWalletRegistry(registry_path, lock_timeout=5)


@pytest.fixture()
def stub_exchange(owner) -> StubExchange:
    return StubExchange(is_mainnet=True, users={owner.address})


@pytest.fixture()
def relay(registry, stub_exchange) -> HyperliquidRelay:
    return HyperliquidRelay(registry=registry, exchange=stub_exchange, is_mainnet=True)


@pytest.fixture()
def order_action() -> OrderAction:
    """Buy 0.001 BTC at 65000, GTC."""
    return OrderAction(orders=(OrderIntent.create(asset_index=0, is_buy=True, size="0.001", price="65000"),))


@pytest.fixture()
def nonce() -> int:
    return 1_735_689_600_000


@pytest.fixture()
def make_fake_wallet():
    """Factory of :py:class:`FakeWallet` browser wallets."""
    return FakeWallet
