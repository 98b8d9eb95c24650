"""Hyperliquid message encoder.

Builds the EIP-712 typed data the exchange's signature verifier reconstructs.
Any deviation in field names, key order or domain recovers to a different
address and the exchange rejects the action, or worse, treats it as
coming from an unknown user.

There are two encoding paths and each action kind uses exactly one of them:

**L1 actions** (:py:class:`~perp_relay.hyperliquid.actions.OrderAction`)

1. msgpack the action wire form
2. append the nonce as 8-byte big-endian integer
3. append vault flag: ``0x00``, or ``0x01`` followed by the 20 vault address bytes
4. if ``expiresAfter`` is set, append ``0x00`` and it as 8-byte big-endian integer
5. keccak the result to a 32-byte *connection id*
6. sign the *phantom agent* ``Agent(string source, bytes32 connectionId)``
   where source is ``"a"`` on mainnet and ``"b"`` on testnet,
   under the ``Exchange`` domain with chain id 1337

**User-signed actions** (:py:class:`~perp_relay.hyperliquid.actions.AgentApprovalAction`)

The action fields themselves are signed as
``HyperliquidTransaction:ApproveAgent(string hyperliquidChain, address agentAddress, string agentName, uint64 nonce)``
under the ``HyperliquidSignTransaction`` domain, with the chain id from ``signatureChainId``.

The typed data dicts are in the format ``eth_signTypedData_v4`` takes,
see :py:func:`typed_data_to_json` for the wallet ready form.

- `Signing documentation <https://hyperliquid.gitbook.io/hyperliquid-docs/for-developers/api/signing>`__
"""

import copy
import logging

import msgpack
from eth_typing import HexAddress
from hexbytes import HexBytes

from perp_relay.eip_712 import eip712_encode_hash, fast_keccak
from perp_relay.errors import ValidationError
from perp_relay.hyperliquid.actions import Action, AgentApprovalAction, OrderAction, require_uint64
from perp_relay.hyperliquid.constants import (
    AGENT_TYPE,
    APPROVE_AGENT_PRIMARY_TYPE,
    APPROVE_AGENT_TYPE,
    EIP712_DOMAIN_TYPE,
    L1_ACTION_DOMAIN,
    USER_SIGNED_DOMAIN_NAME,
    ZERO_ADDRESS,
)

logger = logging.getLogger(__name__)


def _address_to_bytes(address: HexAddress) -> bytes:
    raw = bytes(HexBytes(address))
    if len(raw) != 20:
        raise ValidationError(f"Not a 20-byte address: {address}")
    return raw


def encode_action_bytes(
    action_wire: dict,
    nonce: int,
    vault_address: HexAddress | None = None,
    expires_after: int | None = None,
) -> bytes:
    """Condensed binary encoding of an L1 action.

    This is the preimage of the connection id.

    :param action_wire:
        Action in its wire form, e.g. :py:meth:`OrderAction.to_wire`.
        Key order matters.

    :raise ValidationError:
        Nonce or ``expires_after`` does not fit 8 bytes
    """
    require_uint64(nonce, "nonce")
    if expires_after is not None:
        require_uint64(expires_after, "expiresAfter")

    data = msgpack.packb(action_wire)
    data += nonce.to_bytes(8, "big")
    if vault_address is None:
        data += b"\x00"
    else:
        data += b"\x01" + _address_to_bytes(vault_address)
    if expires_after is not None:
        data += b"\x00" + expires_after.to_bytes(8, "big")
    return data


def action_hash(
    action_wire: dict,
    nonce: int,
    vault_address: HexAddress | None = None,
    expires_after: int | None = None,
) -> bytes:
    """Connection id of an L1 action.

    :return:
        32 bytes keccak-256
    """
    return fast_keccak(encode_action_bytes(action_wire, nonce, vault_address, expires_after))


def construct_phantom_agent(connection_id: bytes, is_mainnet: bool) -> dict:
    """The struct actually signed for L1 actions."""
    assert len(connection_id) == 32, f"Connection id must be 32 bytes, got {len(connection_id)}"
    return {
        "source": "a" if is_mainnet else "b",
        "connectionId": bytes(connection_id),
    }


def build_l1_typed_data(
    action: OrderAction,
    nonce: int,
    is_mainnet: bool,
    vault_address: HexAddress | None = None,
    expires_after: int | None = None,
) -> dict:
    """Typed data for an order action.

    Hash of the action wrapped in a phantom agent.
    """
    assert isinstance(action, OrderAction), f"Not an L1 action: {action}"
    connection_id = action_hash(action.to_wire(), nonce, vault_address, expires_after)
    logger.debug("Connection id 0x%s for nonce %d, vault %s", bytes(connection_id).hex(), nonce, vault_address)
    return {
        "domain": dict(L1_ACTION_DOMAIN),
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "Agent": AGENT_TYPE,
        },
        "primaryType": "Agent",
        "message": construct_phantom_agent(connection_id, is_mainnet),
    }


def build_approve_agent_typed_data(action: AgentApprovalAction) -> dict:
    """Typed data for an agent approval.

    Only the four named fields are signed.
    """
    assert isinstance(action, AgentApprovalAction), f"Not an agent approval: {action}"
    return {
        "domain": {
            "name": USER_SIGNED_DOMAIN_NAME,
            "version": "1",
            "chainId": action.signature_chain_id,
            "verifyingContract": ZERO_ADDRESS,
        },
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            APPROVE_AGENT_PRIMARY_TYPE: APPROVE_AGENT_TYPE,
        },
        "primaryType": APPROVE_AGENT_PRIMARY_TYPE,
        "message": {
            "hyperliquidChain": action.hyperliquid_chain.value,
            "agentAddress": action.agent_address,
            "agentName": action.agent_name,
            "nonce": action.nonce,
        },
    }


def build_typed_data(
    action: Action,
    nonce: int,
    is_mainnet: bool,
    vault_address: HexAddress | None = None,
    expires_after: int | None = None,
) -> dict:
    """Typed data for any supported action.

    :param nonce:
        Envelope nonce. For agent approvals it must equal the action nonce.

    :param is_mainnet:
        Used by L1 actions only. Agent approvals carry their chain in the action.
    """
    if isinstance(action, OrderAction):
        return build_l1_typed_data(action, nonce, is_mainnet, vault_address, expires_after)
    elif isinstance(action, AgentApprovalAction):
        if nonce != action.nonce:
            raise ValidationError(f"Envelope nonce {nonce} differs from agent approval nonce {action.nonce}")
        return build_approve_agent_typed_data(action)
    raise ValidationError(f"Cannot encode action {action!r}")


def typed_data_digest(typed_data: dict) -> bytes:
    """The 32-byte hash a wallet signs for the typed data."""
    return eip712_encode_hash(typed_data)


def typed_data_to_json(typed_data: dict) -> dict:
    """JSON serialisable typed data for ``eth_signTypedData_v4``.

    Bytes values become 0x-hex strings.
    """
    data = copy.deepcopy(typed_data)
    data["message"] = {k: ("0x" + bytes(v).hex() if isinstance(v, (bytes, bytearray)) else v) for k, v in data["message"].items()}
    return data
