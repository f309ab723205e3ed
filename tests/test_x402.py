"""Tests for the x402 wire codec."""

import base64
import json

import pytest
from eth_account import Account

from allowance.errors import ProtocolError
from allowance.signer import sign_authorization
from allowance.x402 import (
    REQUIREMENTS_HEADER,
    PaymentRequirement,
    Settlement,
    build_payment_header,
    build_settlement_header,
    parse_challenge,
    parse_payment_header,
    parse_payment_requirements,
    parse_settlement_header,
    resolve_chain_id,
)


USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
PAYEE = "0x1111111111111111111111111111111111111111"


def requirement_dict(**overrides):
    data = {
        "scheme": "exact",
        "network": "base",
        "maxAmountRequired": "1000000",
        "resource": "https://api.example.com/data",
        "description": "Market data",
        "mimeType": "application/json",
        "payTo": PAYEE,
        "maxTimeoutSeconds": 60,
        "asset": USDC,
        "extra": {"name": "USD Coin", "version": "2"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def requirement():
    return PaymentRequirement.from_dict(requirement_dict())


class TestNetworks:
    def test_names_and_caip2(self):
        assert resolve_chain_id("base") == 8453
        assert resolve_chain_id("base-sepolia") == 84532
        assert resolve_chain_id("eip155:8453") == 8453

    def test_unknown_network(self):
        with pytest.raises(ProtocolError) as exc:
            resolve_chain_id("solana")
        assert exc.value.check == "network"

    def test_non_ascii_chain_id(self):
        with pytest.raises(ProtocolError) as exc:
            resolve_chain_id("eip155:²")
        assert exc.value.check == "network"


class TestRequirements:
    def test_from_dict(self, requirement):
        assert requirement.amount == 1_000_000
        assert requirement.chain_id == 8453
        assert requirement.token_domain().name == "USD Coin"

    def test_dict_round_trip(self, requirement):
        assert PaymentRequirement.from_dict(requirement.to_dict()) == requirement

    def test_amount_must_be_string(self):
        with pytest.raises(ProtocolError):
            PaymentRequirement.from_dict(requirement_dict(maxAmountRequired=1.5))

    @pytest.mark.parametrize("amount", ["²", "١٢٣", "-5", "1e6", " "])
    def test_amount_must_be_ascii_digits(self, amount):
        with pytest.raises(ProtocolError) as exc:
            parse_payment_requirements({"accepts": [requirement_dict(maxAmountRequired=amount)]})
        assert exc.value.check == "requirement"

    def test_missing_pay_to(self):
        data = requirement_dict()
        del data["payTo"]
        with pytest.raises(ProtocolError, match="payTo") as exc:
            PaymentRequirement.from_dict(data)
        assert exc.value.check == "requirement"

    def test_challenge_body(self):
        body = json.dumps({"x402Version": 1, "accepts": [requirement_dict()]}).encode()
        [parsed] = parse_payment_requirements(body)
        assert parsed.pay_to == PAYEE

    def test_challenge_header_fallback(self):
        headers = {REQUIREMENTS_HEADER: json.dumps([requirement_dict()])}
        [parsed] = parse_challenge(b"", headers)
        assert parsed.asset == USDC

    def test_body_wins_over_header(self):
        body = json.dumps({"accepts": [requirement_dict(maxAmountRequired="5")]}).encode()
        headers = {REQUIREMENTS_HEADER.lower(): json.dumps([requirement_dict()])}
        [parsed] = parse_challenge(body, headers)
        assert parsed.amount == 5

    def test_empty_challenge(self):
        with pytest.raises(ProtocolError) as exc:
            parse_challenge(b"", {})
        assert exc.value.check == "challenge"

    def test_non_json_challenge(self):
        with pytest.raises(ProtocolError, match="not JSON"):
            parse_challenge(b"<html>pay me</html>", {})


class TestPaymentHeader:
    def test_round_trip(self, requirement):
        account = Account.create()
        auth, signature = sign_authorization(
            account, token=USDC, to=PAYEE, value=10**30,
            valid_after=1_700_000_000, valid_before=1_700_000_060, chain_id=8453,
        )
        parsed = parse_payment_header(build_payment_header(auth, signature, requirement))
        assert parsed.authorization.from_address == auth.from_address
        assert parsed.authorization.to == auth.to
        assert parsed.authorization.value == 10**30
        assert isinstance(parsed.authorization.value, int)
        assert parsed.authorization.nonce == auth.nonce
        assert parsed.signature == signature
        assert parsed.scheme == "exact"
        assert parsed.network == "base"

    def test_wire_format(self, requirement):
        account = Account.create()
        auth, signature = sign_authorization(
            account, token=USDC, to=PAYEE, value=1_000_000,
            valid_after=0, valid_before=60, chain_id=8453,
        )
        raw = json.loads(base64.b64decode(build_payment_header(auth, signature, requirement)))
        assert raw["x402Version"] == 1
        assert raw["payload"]["authorization"]["value"] == "1000000"
        assert raw["payload"]["authorization"]["validBefore"] == "60"
        assert raw["payload"]["signature"] == signature

    def test_garbage_header(self):
        with pytest.raises(ProtocolError) as exc:
            parse_payment_header("not base64!!")
        assert exc.value.check == "payment"

    def test_header_without_authorization(self):
        value = base64.b64encode(json.dumps({"payload": {}}).encode()).decode()
        with pytest.raises(ProtocolError, match="no authorization"):
            parse_payment_header(value)

    def test_non_ascii_value_rejected(self, requirement):
        account = Account.create()
        auth, signature = sign_authorization(
            account, token=USDC, to=PAYEE, value=1,
            valid_after=0, valid_before=60, chain_id=8453,
        )
        raw = json.loads(base64.b64decode(build_payment_header(auth, signature, requirement)))
        raw["payload"]["authorization"]["value"] = "²"
        value = base64.b64encode(json.dumps(raw).encode()).decode()
        with pytest.raises(ProtocolError) as exc:
            parse_payment_header(value)
        assert exc.value.check == "payment"


class TestSettlement:
    def test_round_trip(self):
        settlement = Settlement(success=True, transaction="0xabc", network="base", payer=PAYEE)
        assert parse_settlement_header(build_settlement_header(settlement)) == settlement

    def test_failure_reason(self):
        settlement = Settlement(success=False, error_reason="insufficient_funds")
        parsed = parse_settlement_header(build_settlement_header(settlement))
        assert parsed.error_reason == "insufficient_funds"

    def test_missing_success(self):
        value = base64.b64encode(json.dumps({"transaction": "0x1"}).encode()).decode()
        with pytest.raises(ProtocolError):
            parse_settlement_header(value)
