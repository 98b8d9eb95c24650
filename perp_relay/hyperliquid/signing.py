"""Signing identities and signer verification.

A signing identity produces a :py:class:`~perp_relay.hyperliquid.signature.SignaturePayload`
over typed data built by :py:mod:`perp_relay.hyperliquid.encoding`.

- :py:class:`HotWalletIdentity` holds a private key in the process memory.
  Used for API wallets (agents) custodied by the relay.

- :py:class:`Eip1193WalletIdentity` drives an external wallet through
  the EIP-1193 ``request(method, params)`` interface. This is what a browser
  extension exposes as ``window.ethereum``, and what a web3.py provider
  pointed at a signer node (Frame, Anvil) gives.

After signing, the relay recovers the signer address again with
:py:func:`verify_envelope`. It uses eth-account's own typed data
encoder, not the one that produced the signed digest, so a mistake in
either one shows up as a mismatch. A mismatch is logged and flagged,
but the payload is still submitted unless strict checking is on:
the exchange is the authority on signature validity.

Example:

.. code-block:: python

    from eth_account import Account

    identity = HotWalletIdentity(Account.create())
    envelope = sign_action(identity, order_action, nonce=get_timestamp_nonce(), is_mainnet=True)
    verification = verify_envelope(envelope, identity.address, is_mainnet=True)
    assert verification.matches
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_account.signers.local import LocalAccount
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as EthKeysValidationError
from eth_typing import HexAddress
from web3 import Web3
from web3.types import RPCEndpoint

from perp_relay.errors import IdentityUnavailable, SignerMismatch, UserRejected, WalletRequestFailed
from perp_relay.hyperliquid.actions import Action, SignedEnvelope
from perp_relay.hyperliquid.encoding import build_typed_data, typed_data_digest, typed_data_to_json
from perp_relay.hyperliquid.signature import SignaturePayload, decompose

logger = logging.getLogger(__name__)


class SigningIdentity(ABC):
    """Something that can sign typed data and messages as one address."""

    @property
    @abstractmethod
    def address(self) -> HexAddress:
        """Address the signatures recover to."""

    @abstractmethod
    def sign_typed_data(self, typed_data: dict) -> SignaturePayload:
        """Sign EIP-712 typed data.

        Blocks until the signer responds. There is no timeout:
        a wallet user may take as long as they like to approve.
        """

    @abstractmethod
    def sign_message(self, text: str) -> SignaturePayload:
        """Legacy EIP-191 personal message signature."""


class HotWalletIdentity(SigningIdentity):
    """Private key held in the process memory.

    One instance per signing identity. There is no process-wide signer:
    callers construct the identity of the API wallet they act for
    and pass it along.
    """

    def __init__(self, account: LocalAccount):
        assert isinstance(account, LocalAccount), f"Expected LocalAccount, got {account}"
        self.account = account

    def __repr__(self):
        return f"<HotWalletIdentity {self.account.address}>"

    @classmethod
    def from_private_key(cls, private_key: str) -> "HotWalletIdentity":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> HexAddress:
        return self.account.address

    def sign_typed_data(self, typed_data: dict) -> SignaturePayload:
        digest = typed_data_digest(typed_data)
        signed = self.account.unsafe_sign_hash(digest)
        return SignaturePayload.create(signed.r, signed.s, signed.v)

    def sign_message(self, text: str) -> SignaturePayload:
        signed = self.account.sign_message(encode_defunct(text=text))
        return SignaturePayload.create(signed.r, signed.s, signed.v)


class ProviderRpcError(Exception):
    """Error raised by an EIP-1193 ``request()`` callable.

    See `EIP-1193 provider errors <https://eips.ethereum.org/EIPS/eip-1193#provider-errors>`__.
    """

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.data = data


#: The user rejected the request
USER_REJECTED_REQUEST = 4001

#: The requested account or method has not been authorised by the user (wallet locked)
UNAUTHORIZED = 4100

#: The provider is disconnected from all chains
DISCONNECTED = 4900

#: Chain has not been added to the wallet
UNRECOGNIZED_CHAIN = 4902

#: MetaMask: a request of the same type is already waiting for the user
REQUEST_ALREADY_PENDING = -32002

#: Provider error codes mapping to "wallet not usable right now"
_UNAVAILABLE_CODES = {
    UNAUTHORIZED: "Wallet is locked or the account is not connected",
    DISCONNECTED: "Wallet is disconnected",
    UNRECOGNIZED_CHAIN: "Wallet does not know the chain required for signing, add it first",
    REQUEST_ALREADY_PENDING: "A wallet request is already pending, approve or reject it in the wallet first",
}


class Eip1193WalletIdentity(SigningIdentity):
    """External wallet driven through the EIP-1193 ``request`` interface.

    Before signing typed data the wallet must be on the chain of the typed
    data domain, otherwise ``eth_signTypedData_v4`` is refused. If the wallet
    is on another chain, we ask it to switch and continue only after the
    switch is acknowledged.

    :param request:
        ``request(method, params) -> result``.
        Must raise :py:class:`ProviderRpcError` on provider errors.

    :param address:
        The account we expect to sign
    """

    def __init__(self, request: Callable[[str, list], Any], address: HexAddress):
        self.request = request
        self._address = Web3.to_checksum_address(address)

    def __repr__(self):
        return f"<Eip1193WalletIdentity {self._address}>"

    @classmethod
    def from_web3(cls, web3: Web3, address: HexAddress) -> "Eip1193WalletIdentity":
        """Wrap a web3.py provider whose node holds the key, e.g. Anvil or Frame."""

        def request(method: str, params: list):
            response = web3.provider.make_request(RPCEndpoint(method), params)
            if "error" in response:
                error = response["error"]
                if isinstance(error, dict):
                    raise ProviderRpcError(error.get("code", 0), error.get("message", ""), error.get("data"))
                raise ProviderRpcError(0, str(error))
            return response["result"]

        return cls(request, address)

    @property
    def address(self) -> HexAddress:
        return self._address

    def _request(self, method: str, params: list) -> Any:
        try:
            return self.request(method, params)
        except ProviderRpcError as e:
            if e.code == USER_REJECTED_REQUEST:
                raise UserRejected(f"User rejected {method}") from e
            if e.code in _UNAVAILABLE_CODES:
                raise IdentityUnavailable(_UNAVAILABLE_CODES[e.code]) from e
            raise WalletRequestFailed(f"{method} failed: {e.message}", code=e.code) from e

    def ensure_account(self):
        """Check our account is connected and unlocked.

        :raise IdentityUnavailable:
            The wallet does not expose the account
        """
        accounts = self._request("eth_accounts", []) or []
        if self._address.lower() not in {a.lower() for a in accounts}:
            raise IdentityUnavailable(f"Account {self._address} is not available in the wallet, unlock it or connect it first")

    def get_chain_id(self) -> int:
        return int(self._request("eth_chainId", []), 16)

    def ensure_chain(self, chain_id: int):
        """Switch the wallet to the signing chain if needed.

        :raise UserRejected:
            The user declined the switch
        """
        current = self.get_chain_id()
        if current == chain_id:
            return

        logger.info("Wallet is on chain %d, requesting switch to %d", current, chain_id)
        self._request("wallet_switchEthereumChain", [{"chainId": hex(chain_id)}])

        current = self.get_chain_id()
        if current != chain_id:
            raise IdentityUnavailable(f"Wallet stayed on chain {current}, signing needs chain {chain_id}")

    def sign_typed_data(self, typed_data: dict) -> SignaturePayload:
        self.ensure_account()
        self.ensure_chain(typed_data["domain"]["chainId"])
        payload = json.dumps(typed_data_to_json(typed_data))
        raw = self._request("eth_signTypedData_v4", [self._address, payload])
        return decompose(raw)

    def sign_message(self, text: str) -> SignaturePayload:
        self.ensure_account()
        raw = self._request("personal_sign", ["0x" + text.encode("utf-8").hex(), self._address])
        return decompose(raw)


@dataclass(slots=True, frozen=True)
class SignatureVerification:
    """Result of the local re-verification of a signed envelope."""

    expected: HexAddress

    #: ``None`` if the signature could not be recovered at all
    recovered: HexAddress | None

    @property
    def matches(self) -> bool:
        return self.recovered is not None and self.recovered.lower() == self.expected.lower()


def sign_action(
    identity: SigningIdentity,
    action: Action,
    nonce: int,
    is_mainnet: bool,
    vault_address: HexAddress | None = None,
    expires_after: int | None = None,
) -> SignedEnvelope:
    """Encode and sign an action.

    :param nonce:
        Millisecond timestamp, see :py:func:`perp_relay.utils.get_timestamp_nonce`.
    """
    typed_data = build_typed_data(action, nonce, is_mainnet, vault_address, expires_after)
    signature = identity.sign_typed_data(typed_data)
    logger.info("Signed %s action with nonce %d as %s", action.kind.value, nonce, identity.address)
    return SignedEnvelope(
        action=action,
        nonce=nonce,
        signature=signature,
        vault_address=vault_address,
        expires_after=expires_after,
    )


def recover_signer(envelope: SignedEnvelope, is_mainnet: bool) -> HexAddress:
    """Recover the address the exchange will see as the signer.

    :raise ValueError:
        Signature cannot be recovered
    """
    typed_data = build_typed_data(
        envelope.action,
        envelope.nonce,
        is_mainnet,
        envelope.vault_address,
        envelope.expires_after,
    )
    signable = encode_typed_data(full_message=typed_data)
    return Account.recover_message(signable, signature=envelope.signature.to_bytes())


def verify_envelope(
    envelope: SignedEnvelope,
    expected_signer: HexAddress,
    is_mainnet: bool,
    strict: bool = False,
) -> SignatureVerification:
    """Pre-submission signer check.

    The comparison is case-insensitive.

    :param strict:
        Raise instead of logging on mismatch.

    :raise SignerMismatch:
        Only when ``strict`` is set
    """
    try:
        recovered = recover_signer(envelope, is_mainnet)
    except (ValueError, BadSignature, EthKeysValidationError) as e:
        logger.error("Could not recover signer of %s action nonce %d: %s", envelope.kind.value, envelope.nonce, e)
        recovered = None

    verification = SignatureVerification(expected=expected_signer, recovered=recovered)

    if verification.matches:
        logger.info("Local signature verification passed for %s", expected_signer)
    else:
        logger.error(
            "Signer mismatch for %s action nonce %d: expected %s, recovered %s",
            envelope.kind.value,
            envelope.nonce,
            expected_signer,
            recovered,
        )
        if strict:
            raise SignerMismatch(f"Signature recovers to {recovered}, expected {expected_signer}")

    return verification
