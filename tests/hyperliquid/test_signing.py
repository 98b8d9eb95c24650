"""Signing identities and signer verification."""

import logging
from unittest.mock import MagicMock

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from perp_relay.errors import IdentityUnavailable, SignerMismatch, UserRejected, WalletRequestFailed
from perp_relay.hyperliquid.actions import AgentApprovalAction, SignedEnvelope
from perp_relay.hyperliquid.signature import SignaturePayload
from perp_relay.hyperliquid.signing import (
    Eip1193WalletIdentity,
    HotWalletIdentity,
    recover_signer,
    sign_action,
    verify_envelope,
)

AGENT = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


@pytest.fixture()
def hot_wallet(owner) -> HotWalletIdentity:
    return HotWalletIdentity(owner)


@pytest.fixture()
def approval(nonce) -> AgentApprovalAction:
    return AgentApprovalAction.create(AGENT, "Bot600000", nonce, is_mainnet=True)


def test_hot_wallet_order_signature(hot_wallet, order_action, nonce):
    envelope = sign_action(hot_wallet, order_action, nonce, is_mainnet=True)
    assert envelope.nonce == nonce
    assert envelope.signature.v in (27, 28)
    assert recover_signer(envelope, is_mainnet=True) == hot_wallet.address

    verification = verify_envelope(envelope, hot_wallet.address.lower(), is_mainnet=True)
    assert verification.matches

    # Signature is bound to the network
    assert recover_signer(envelope, is_mainnet=False) != hot_wallet.address


def test_hot_wallet_order_with_vault(hot_wallet, order_action, nonce):
    vault = "0x3df9769bbbb335340872f01d8157c779d73c6ed0"
    envelope = sign_action(hot_wallet, order_action, nonce, is_mainnet=True, vault_address=vault, expires_after=nonce + 1000)
    assert envelope.to_wire()["vaultAddress"] == vault
    assert verify_envelope(envelope, hot_wallet.address, is_mainnet=True).matches


def test_hot_wallet_approval_signature(hot_wallet, approval, nonce):
    envelope = sign_action(hot_wallet, approval, nonce, is_mainnet=True)
    assert verify_envelope(envelope, hot_wallet.address, is_mainnet=True).matches
    assert envelope.to_wire()["signature"]["r"].startswith("0x")


def test_hot_wallet_sign_message(hot_wallet):
    signature = hot_wallet.sign_message("hello")
    recovered = Account.recover_message(encode_defunct(text="hello"), signature=signature.to_bytes())
    assert recovered == hot_wallet.address


def test_mismatch_is_flagged_not_raised(hot_wallet, stranger, order_action, nonce, caplog):
    envelope = sign_action(hot_wallet, order_action, nonce, is_mainnet=True)

    with caplog.at_level(logging.ERROR):
        verification = verify_envelope(envelope, stranger.address, is_mainnet=True)

    assert not verification.matches
    assert verification.recovered == hot_wallet.address
    assert "Signer mismatch" in caplog.text


def test_mismatch_strict(hot_wallet, stranger, order_action, nonce):
    envelope = sign_action(hot_wallet, order_action, nonce, is_mainnet=True)
    with pytest.raises(SignerMismatch):
        verify_envelope(envelope, stranger.address, is_mainnet=True, strict=True)


def test_tampered_action_does_not_verify(hot_wallet, order_action, nonce):
    envelope = sign_action(hot_wallet, order_action, nonce, is_mainnet=True)
    tampered = SignedEnvelope(envelope.action, nonce + 1, envelope.signature)
    assert not verify_envelope(tampered, hot_wallet.address, is_mainnet=True).matches


@pytest.mark.parametrize("zero_based_v", [False, True])
def test_browser_wallet_switches_chain_and_signs(make_fake_wallet, owner, approval, nonce, zero_based_v):
    wallet = make_fake_wallet(owner, chain_id=1, zero_based_v=zero_based_v)
    identity = Eip1193WalletIdentity(wallet.request, owner.address.lower())

    envelope = sign_action(identity, approval, nonce, is_mainnet=True)

    assert wallet.chain_id == 42161
    assert wallet.calls.index("wallet_switchEthereumChain") < wallet.calls.index("eth_signTypedData_v4")
    assert envelope.signature.v in (27, 28)
    assert verify_envelope(envelope, owner.address, is_mainnet=True).matches


def test_browser_wallet_on_right_chain_does_not_switch(make_fake_wallet, owner, approval, nonce):
    wallet = make_fake_wallet(owner, chain_id=42161)
    identity = Eip1193WalletIdentity(wallet.request, owner.address)
    sign_action(identity, approval, nonce, is_mainnet=True)
    assert "wallet_switchEthereumChain" not in wallet.calls


def test_browser_wallet_signs_order(make_fake_wallet, owner, order_action, nonce):
    wallet = make_fake_wallet(owner, chain_id=42161)
    identity = Eip1193WalletIdentity(wallet.request, owner.address)
    envelope = sign_action(identity, order_action, nonce, is_mainnet=True)
    assert wallet.chain_id == 1337
    assert verify_envelope(envelope, owner.address, is_mainnet=True).matches


def test_browser_wallet_user_rejects_signature(make_fake_wallet, owner, approval, nonce):
    wallet = make_fake_wallet(owner, chain_id=42161)
    wallet.reject["eth_signTypedData_v4"] = 4001
    identity = Eip1193WalletIdentity(wallet.request, owner.address)
    with pytest.raises(UserRejected):
        sign_action(identity, approval, nonce, is_mainnet=True)


def test_browser_wallet_user_rejects_switch(make_fake_wallet, owner, approval, nonce):
    wallet = make_fake_wallet(owner, chain_id=1)
    wallet.reject["wallet_switchEthereumChain"] = 4001
    identity = Eip1193WalletIdentity(wallet.request, owner.address)
    with pytest.raises(UserRejected):
        sign_action(identity, approval, nonce, is_mainnet=True)
    assert "eth_signTypedData_v4" not in wallet.calls


def test_browser_wallet_unknown_chain(make_fake_wallet, owner, approval, nonce):
    wallet = make_fake_wallet(owner, chain_id=1, known_chains=(1,))
    identity = Eip1193WalletIdentity(wallet.request, owner.address)
    with pytest.raises(IdentityUnavailable):
        sign_action(identity, approval, nonce, is_mainnet=True)


def test_browser_wallet_locked(make_fake_wallet, owner, approval, nonce):
    wallet = make_fake_wallet(owner, chain_id=42161)
    wallet.locked = True
    identity = Eip1193WalletIdentity(wallet.request, owner.address)
    with pytest.raises(IdentityUnavailable):
        sign_action(identity, approval, nonce, is_mainnet=True)


def test_browser_wallet_pending_request(make_fake_wallet, owner, approval, nonce):
    wallet = make_fake_wallet(owner, chain_id=42161)
    wallet.reject["eth_accounts"] = -32002
    identity = Eip1193WalletIdentity(wallet.request, owner.address)
    with pytest.raises(IdentityUnavailable, match="already pending"):
        sign_action(identity, approval, nonce, is_mainnet=True)


def test_browser_wallet_other_error(make_fake_wallet, owner, approval, nonce):
    wallet = make_fake_wallet(owner, chain_id=42161)
    wallet.reject["eth_signTypedData_v4"] = -32603
    identity = Eip1193WalletIdentity(wallet.request, owner.address)
    with pytest.raises(WalletRequestFailed) as exc_info:
        sign_action(identity, approval, nonce, is_mainnet=True)
    assert exc_info.value.code == -32603


def test_browser_wallet_personal_sign(make_fake_wallet, owner):
    wallet = make_fake_wallet(owner)
    identity = Eip1193WalletIdentity(wallet.request, owner.address)
    signature = identity.sign_message("Authorize perp-relay")
    recovered = Account.recover_message(encode_defunct(text="Authorize perp-relay"), signature=signature.to_bytes())
    assert recovered == owner.address


def test_from_web3_maps_errors(owner):
    web3 = MagicMock()
    web3.provider.make_request.return_value = {"jsonrpc": "2.0", "id": 1, "result": "0xa4b1"}
    identity = Eip1193WalletIdentity.from_web3(web3, owner.address)
    assert identity.get_chain_id() == 42161

    web3.provider.make_request.return_value = {"jsonrpc": "2.0", "id": 2, "error": {"code": 4001, "message": "User denied"}}
    with pytest.raises(UserRejected):
        identity.get_chain_id()


def test_signature_payload_is_what_identity_returns(hot_wallet, order_action, nonce):
    envelope = sign_action(hot_wallet, order_action, nonce, is_mainnet=True)
    assert isinstance(envelope.signature, SignaturePayload)
    assert len(envelope.signature.r) == 32
