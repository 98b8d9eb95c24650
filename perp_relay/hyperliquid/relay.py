"""Order and API wallet flows.

:py:class:`HyperliquidRelay` wires the encoder, signers, registry and
exchange gateway together for the HTTP API in :py:mod:`perp_relay.server.app`.

API wallet setup::

    relay.create_api_wallet(owner)         # returns the agent approval to sign
    # owner signs authMessage.typedData in their wallet
    relay.authorize_api_wallet(owner, api_wallet_address, signed_action)

Trading::

    relay.place_order(order_action_wire, nonce, owner=owner)

The relay signs orders with the owner's API wallet. Orders already signed
by the client are verified and forwarded as is.
"""

import logging
from dataclasses import dataclass

from eth_typing import HexAddress

from perp_relay.errors import IdentityUnavailable, ValidationError
from perp_relay.hyperliquid.actions import (
    AgentApprovalAction,
    OrderAction,
    SignedEnvelope,
    parse_action,
    require_uint64,
)
from perp_relay.hyperliquid.api_wallet import ApiWalletRecord, ApiWalletRegistry
from perp_relay.hyperliquid.encoding import build_approve_agent_typed_data, typed_data_to_json
from perp_relay.hyperliquid.exchange import AssetDirectory, ExchangeOk, HyperliquidExchangeClient
from perp_relay.hyperliquid.signature import SignaturePayload
from perp_relay.hyperliquid.signing import (
    HotWalletIdentity,
    SignatureVerification,
    SigningIdentity,
    sign_action,
    verify_envelope,
)
from perp_relay.utils import get_timestamp_nonce

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class OrderSubmission:
    """Outcome of :py:meth:`HyperliquidRelay.place_order`."""

    envelope: SignedEnvelope

    response: ExchangeOk

    #: Local signer check. Submission went ahead even if it failed.
    verification: SignatureVerification


def make_agent_name(nonce: int) -> str:
    """Agent name within the 16 character limit, e.g. ``Bot123456``."""
    return f"Bot{str(nonce)[-6:]}"


class HyperliquidRelay:
    """Relay between wallet users and the exchange.

    :param registry:
        API wallets held for owners

    :param exchange:
        Gateway to the exchange

    :param is_mainnet:
        Network the relay signs for

    :param default_identity:
        API wallet used for orders that do not name an owner

    :param default_vault_address:
        Vault the default API wallet trades for

    :param strict_signer_check:
        Refuse to submit if the local signer check fails,
        instead of only logging it
    """

    def __init__(
        self,
        registry: ApiWalletRegistry,
        exchange: HyperliquidExchangeClient,
        is_mainnet: bool = True,
        default_identity: HotWalletIdentity | None = None,
        default_vault_address: HexAddress | None = None,
        strict_signer_check: bool = False,
    ):
        self.registry = registry
        self.exchange = exchange
        self.is_mainnet = is_mainnet
        self.default_identity = default_identity
        self.default_vault_address = default_vault_address
        self.strict_signer_check = strict_signer_check
        self.asset_directory: AssetDirectory | None = None

    def __repr__(self):
        network = "mainnet" if self.is_mainnet else "testnet"
        return f"<HyperliquidRelay {network} {self.exchange.api_url}>"

    def fetch_market_info(self):
        """Market snapshot passthrough.

        Refreshes the asset directory used to validate orders as a side effect.
        """
        data = self.exchange.fetch_market_info()
        if isinstance(data, list) and data and isinstance(data[0], dict):
            self.asset_directory = AssetDirectory.from_meta(data[0])
        return data

    def check_api_wallet(self, owner: str) -> dict:
        record = self.registry.find(owner)
        return {
            "exists": record is not None,
            "apiWalletAddress": record.delegate_address if record else None,
            "authorized": record.authorized if record else False,
        }

    def build_authorization_message(self, record: ApiWalletRecord, nonce: int | None = None) -> dict:
        """Agent approval for the owner to sign.

        Includes the typed data ready for ``eth_signTypedData_v4``.
        """
        nonce = nonce or get_timestamp_nonce()
        action = AgentApprovalAction.create(
            agent_address=record.delegate_address,
            agent_name=make_agent_name(nonce),
            nonce=nonce,
            is_mainnet=self.is_mainnet,
        )
        return {
            "agentAddress": action.agent_address,
            "agentName": action.agent_name,
            "nonce": nonce,
            "action": action.to_wire(),
            "typedData": typed_data_to_json(build_approve_agent_typed_data(action)),
        }

    def create_api_wallet(self, owner: str) -> dict:
        """Create the owner's API wallet, or return the existing one."""
        existed = self.registry.exists(owner)
        record = self.registry.create_if_absent(owner)
        return {
            "success": True,
            "exists": existed,
            "apiWalletAddress": record.delegate_address,
            "authorized": record.authorized,
            "needsAuthorization": not record.authorized,
            "authMessage": None if record.authorized else self.build_authorization_message(record),
        }

    def authorize_api_wallet(self, owner: str, api_wallet_address: str, signed_action: dict) -> dict:
        """Forward the owner's signed agent approval and record the result.

        The record is marked authorised only after the exchange
        accepted the approval.

        :raise RecordNotFound: No API wallet for the owner
        :raise ValidationError: Approval does not match the owner's API wallet
        :raise ExchangeRejected: Exchange refused the approval
        """
        record = self.registry.get(owner)

        if record.delegate_address.lower() != api_wallet_address.lower():
            raise ValidationError(f"API wallet {api_wallet_address} does not belong to {owner}")

        envelope = SignedEnvelope.from_wire(signed_action)
        action = envelope.action
        if not isinstance(action, AgentApprovalAction):
            raise ValidationError(f"Expected approveAgent action, got {action.kind.value}")

        if action.agent_address.lower() != record.delegate_address.lower():
            raise ValidationError(f"Approval is for agent {action.agent_address}, expected {record.delegate_address}")

        if action.is_mainnet != self.is_mainnet:
            raise ValidationError(f"Approval is for {action.hyperliquid_chain.value}, relay runs on the other network")

        if envelope.nonce != action.nonce:
            raise ValidationError(f"Envelope nonce {envelope.nonce} differs from approval nonce {action.nonce}")

        logger.info("Authorising API wallet %s for %s", record.delegate_address, record.owner_address)

        verification = verify_envelope(envelope, record.owner_address, self.is_mainnet, strict=self.strict_signer_check)
        result = self.exchange.submit(envelope)
        record = self.registry.mark_authorized(owner)

        return {
            "success": True,
            "status": "ok",
            "message": "API wallet authorized successfully",
            "response": result.payload,
            "authorizedAt": record.authorized_at,
            "signatureVerified": verification.matches,
        }

    def authorize_with_wallet(self, owner_identity: SigningIdentity) -> dict:
        """Run the whole API wallet setup with a wallet the relay can drive.

        Creates the API wallet if needed and asks the owner's wallet
        to sign the approval.
        """
        record = self.registry.create_if_absent(owner_identity.address)
        message = self.build_authorization_message(record)
        action = AgentApprovalAction.from_wire(message["action"])
        envelope = sign_action(owner_identity, action, action.nonce, self.is_mainnet)
        return self.authorize_api_wallet(owner_identity.address, record.delegate_address, envelope.to_wire())

    def _resolve_identity(self, owner: str | None) -> SigningIdentity:
        if owner:
            return self.registry.load_identity(owner)
        if self.default_identity:
            return self.default_identity
        raise IdentityUnavailable("No userAddress given and no default API wallet configured")

    def place_order(
        self,
        action: dict | OrderAction,
        nonce: int,
        owner: str | None = None,
        signature: dict | None = None,
        vault_address: HexAddress | None = None,
    ) -> OrderSubmission:
        """Sign if needed, verify and submit an order action.

        :param action:
            Order action, wire form or parsed

        :param nonce:
            Millisecond timestamp

        :param owner:
            Trade with this owner's API wallet.
            For pre-signed orders, the expected signer.

        :param signature:
            ``{"r", "s", "v"}`` if the client signed the order itself

        :raise ValidationError:
            Malformed action, or once market info is loaded, an unknown asset
            or a price or size off the asset tick

        :raise IdentityUnavailable:
            Owner's API wallet is not authorised, or no signer at all

        :raise ExchangeRejected:
            Exchange refused the order
        """
        if isinstance(action, dict):
            action = parse_action(action)

        if not isinstance(action, OrderAction):
            raise ValidationError(f"Expected order action, got {action.kind.value}")

        require_uint64(nonce, "nonce")

        if self.asset_directory:
            for order in action.orders:
                self.asset_directory.check_order(order)

        if signature is not None:
            if not owner:
                raise ValidationError("userAddress is required for pre-signed orders")
            envelope = SignedEnvelope(
                action=action,
                nonce=nonce,
                signature=SignaturePayload.from_wire(signature),
                vault_address=vault_address,
            )
            expected_signer = owner
        else:
            identity = self._resolve_identity(owner)
            if not owner and vault_address is None:
                vault_address = self.default_vault_address
            envelope = sign_action(identity, action, nonce, self.is_mainnet, vault_address)
            expected_signer = identity.address

        verification = verify_envelope(envelope, expected_signer, self.is_mainnet, strict=self.strict_signer_check)
        response = self.exchange.submit(envelope)
        return OrderSubmission(envelope=envelope, response=response, verification=verification)
