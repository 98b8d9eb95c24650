"""Fixed vectors for the action encoding and signatures.

The production order vector is the one the exchange's Python SDK pins:
ETH (asset 4) IOC buy of 0.0147 @ 1670.1, nonce 1677777606040.

Signatures are compared against eth-account signing typed data written
out by hand here, so our own typed data builder and EIP-712 hasher
are not on both sides of the comparison.
"""

import pytest
from eth_account import Account
from eth_utils import keccak

from perp_relay.hyperliquid.actions import AgentApprovalAction, LimitOrderType, OrderAction, OrderIntent, TimeInForce, parse_action
from perp_relay.hyperliquid.encoding import action_hash, encode_action_bytes
from perp_relay.hyperliquid.signing import HotWalletIdentity, sign_action

PRIVATE_KEY = "0x0123456789012345678901234567890123456789012345678901234567890123"

NONCE = 1677777606040

VAULT = "0x1719884eb866cb12b2287399b15f7db5e7d775ea"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#: msgpack of {"type": "order", "orders": [{"a": 4, "b": true, "p": "1670.1", "s": "0.0147", "r": false, "t": {"limit": {"tif": "Ioc"}}}], "grouping": "na"}
PACKED_ORDER_ACTION = (
    "83"
    "a474797065" "a56f72646572"
    "a66f7264657273" "91" "86"
    "a161" "04"
    "a162" "c3"
    "a170" "a6313637302e31"
    "a173" "a6302e30313437"
    "a172" "c2"
    "a174" "81" "a56c696d6974" "81" "a3746966" "a3496f63"
    "a867726f7570696e67" "a26e61"
)

NONCE_BYTES = "00000186a3569598"

PRODUCTION_CONNECTION_ID = "0fcbeda5ae3c4950a548021552a4fea2226858c4453571bf3f24ba017eac2908"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]


@pytest.fixture()
def eth_order() -> OrderAction:
    return OrderAction(
        orders=(
            OrderIntent.create(
                asset_index=4,
                is_buy=True,
                size="0.0147",
                price="1670.1",
                order_type=LimitOrderType(TimeInForce.ioc),
            ),
        )
    )


@pytest.fixture()
def account():
    return Account.from_key(PRIVATE_KEY)


def test_order_action_preimage(eth_order):
    wire = eth_order.to_wire()
    assert encode_action_bytes(wire, NONCE).hex() == PACKED_ORDER_ACTION + NONCE_BYTES + "00"
    assert encode_action_bytes(wire, NONCE, vault_address=VAULT).hex() == PACKED_ORDER_ACTION + NONCE_BYTES + "01" + VAULT[2:]
    assert encode_action_bytes(wire, NONCE, expires_after=NONCE + 1).hex() == PACKED_ORDER_ACTION + NONCE_BYTES + "00" + "00" + "00000186a3569599"


def test_production_connection_id(eth_order):
    assert action_hash(eth_order.to_wire(), NONCE).hex() == PRODUCTION_CONNECTION_ID


def test_padded_client_order_has_production_connection_id():
    padded = {
        "type": "order",
        "orders": [{"a": 4, "b": True, "p": "1670.10", "s": "0.014700", "r": False, "t": {"limit": {"tif": "Ioc"}}}],
        "grouping": "na",
    }
    wire = parse_action(padded).to_wire()
    assert encode_action_bytes(wire, NONCE).hex() == PACKED_ORDER_ACTION + NONCE_BYTES + "00"
    assert action_hash(wire, NONCE).hex() == PRODUCTION_CONNECTION_ID


@pytest.mark.parametrize(
    "is_mainnet, source, vault_address, vault_flag",
    [
        (True, "a", None, "00"),
        (False, "b", None, "00"),
        (True, "a", VAULT, "01" + VAULT[2:]),
        (False, "b", VAULT, "01" + VAULT[2:]),
    ],
)
def test_order_signature(eth_order, account, is_mainnet, source, vault_address, vault_flag):
    connection_id = keccak(hexstr=PACKED_ORDER_ACTION + NONCE_BYTES + vault_flag)
    expected = account.sign_typed_data(
        full_message={
            "domain": {"name": "Exchange", "version": "1", "chainId": 1337, "verifyingContract": ZERO_ADDRESS},
            "types": {
                "EIP712Domain": EIP712_DOMAIN_TYPE,
                "Agent": [{"name": "source", "type": "string"}, {"name": "connectionId", "type": "bytes32"}],
            },
            "primaryType": "Agent",
            "message": {"source": source, "connectionId": connection_id},
        }
    )

    envelope = sign_action(HotWalletIdentity(account), eth_order, NONCE, is_mainnet=is_mainnet, vault_address=vault_address)

    assert int.from_bytes(envelope.signature.r, "big") == expected.r
    assert int.from_bytes(envelope.signature.s, "big") == expected.s
    assert envelope.signature.v == expected.v
    wire = envelope.to_wire()["signature"]
    assert wire == {"r": f"{expected.r:064x}", "s": f"{expected.s:064x}", "v": expected.v}


@pytest.mark.parametrize(
    "is_mainnet, chain, chain_id",
    [
        (True, "Mainnet", 42161),
        (False, "Testnet", 421614),
    ],
)
def test_approve_agent_signature(account, is_mainnet, chain, chain_id):
    agent = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
    expected = account.sign_typed_data(
        full_message={
            "domain": {"name": "HyperliquidSignTransaction", "version": "1", "chainId": chain_id, "verifyingContract": ZERO_ADDRESS},
            "types": {
                "EIP712Domain": EIP712_DOMAIN_TYPE,
                "HyperliquidTransaction:ApproveAgent": [
                    {"name": "hyperliquidChain", "type": "string"},
                    {"name": "agentAddress", "type": "address"},
                    {"name": "agentName", "type": "string"},
                    {"name": "nonce", "type": "uint64"},
                ],
            },
            "primaryType": "HyperliquidTransaction:ApproveAgent",
            "message": {"hyperliquidChain": chain, "agentAddress": agent, "agentName": "Bot606040", "nonce": NONCE},
        }
    )

    action = AgentApprovalAction.create(agent, "Bot606040", NONCE, is_mainnet=is_mainnet)
    envelope = sign_action(HotWalletIdentity(account), action, NONCE, is_mainnet=is_mainnet)

    assert envelope.to_wire()["signature"] == {"r": f"0x{expected.r:064x}", "s": f"0x{expected.s:064x}", "v": expected.v}
