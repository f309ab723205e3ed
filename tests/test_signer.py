"""Tests for EIP-3009 authorization signing."""

from dataclasses import replace

import pytest
from eth_account import Account

from allowance.errors import ValidationError
from allowance.signer import (
    Authorization,
    AuthorizationSigner,
    TokenDomain,
    build_typed_data,
    recover_authorizer,
    sign_authorization,
    verify_authorization,
)


USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
PAYEE = "0x1111111111111111111111111111111111111111"
CHAIN_ID = 8453


@pytest.fixture
def account():
    return Account.create()


def sign(account, **overrides):
    kwargs = dict(
        token=USDC, to=PAYEE, value=1_000_000,
        valid_after=1_700_000_000, valid_before=1_700_000_060, chain_id=CHAIN_ID,
    )
    kwargs.update(overrides)
    return sign_authorization(account, **kwargs)


class TestSignAuthorization:
    def test_recovers_signer(self, account):
        auth, signature = sign(account)
        assert recover_authorizer(auth, signature, USDC, CHAIN_ID) == account.address.lower()
        assert verify_authorization(auth, signature, USDC, CHAIN_ID)

    def test_signature_shape(self, account):
        auth, signature = sign(account)
        assert signature.startswith("0x")
        assert len(signature) == 132
        assert auth.from_address == account.address.lower()
        assert len(auth.nonce) == 66

    def test_fresh_nonce_each_time(self, account):
        first, _ = sign(account)
        second, _ = sign(account)
        assert first.nonce != second.nonce

    def test_tampered_value_fails_verification(self, account):
        auth, signature = sign(account)
        assert not verify_authorization(replace(auth, value=2_000_000), signature, USDC, CHAIN_ID)

    def test_wrong_chain_fails_verification(self, account):
        auth, signature = sign(account)
        assert not verify_authorization(auth, signature, USDC, 84532)

    def test_domain_is_part_of_signature(self, account):
        auth, signature = sign(account, domain=TokenDomain(name="USDC", version="2"))
        assert not verify_authorization(auth, signature, USDC, CHAIN_ID)
        assert verify_authorization(auth, signature, USDC, CHAIN_ID, TokenDomain(name="USDC", version="2"))

    def test_mismatched_from_rejected(self, account):
        with pytest.raises(ValidationError, match="does not match"):
            sign(account, from_address=PAYEE)

    def test_inverted_validity_rejected(self, account):
        with pytest.raises(ValidationError, match="validAfter must be before validBefore"):
            sign(account, valid_after=10, valid_before=10)

    def test_malformed_signature_does_not_verify(self, account):
        auth, _ = sign(account)
        assert not verify_authorization(auth, "0x1234", USDC, CHAIN_ID)


class TestTypedData:
    def test_domain_uses_token_contract(self, account):
        auth, _ = sign(account)
        typed = build_typed_data(auth, USDC, CHAIN_ID)
        assert typed["domain"] == {
            "name": "USD Coin",
            "version": "2",
            "chainId": CHAIN_ID,
            "verifyingContract": USDC,
        }
        assert typed["primaryType"] == "TransferWithAuthorization"
        assert isinstance(typed["message"]["nonce"], bytes)


class TestAuthorizationDicts:
    def test_integers_are_decimal_strings(self, account):
        auth, _ = sign(account, value=2**200)
        data = auth.to_dict()
        assert data["value"] == str(2**200)
        assert Authorization.from_dict(data) == auth

    def test_missing_field(self):
        with pytest.raises(ValidationError, match="missing"):
            Authorization.from_dict({"from": PAYEE})


class TestAuthorizationSigner:
    def test_from_private_key(self, account):
        signer = AuthorizationSigner.from_private_key(account.key.hex())
        assert signer.address == account.address

    def test_nonces_never_repeat(self, account):
        signer = AuthorizationSigner(account)
        nonces = {
            signer.sign(USDC, PAYEE, 1, 0, 60, CHAIN_ID)[0].nonce
            for _ in range(25)
        }
        assert len(nonces) == 25

    def test_signed_authorization_verifies(self, account):
        signer = AuthorizationSigner(account)
        auth, signature = signer.sign(USDC, PAYEE, 5, 0, 60, CHAIN_ID)
        assert verify_authorization(auth, signature, USDC, CHAIN_ID)
