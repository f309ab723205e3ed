"""
x402 wire codec.

Payment header (sent as ``X-PAYMENT`` on the retried request) is
base64 of UTF-8 JSON; every integer in the authorization is a decimal
string:

    {"x402Version": 1, "scheme": "exact", "network": "base",
     "payload": {"signature": "0x...",
                 "authorization": {"from": "0x...", "to": "0x...",
                                   "value": "1000000", "validAfter": "...",
                                   "validBefore": "...", "nonce": "0x..."}}}

A 402 challenge carries ``{"x402Version": 1, "accepts": [...]}`` in its
body, or a bare JSON list in the ``X-Payment-Requirements`` header.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .errors import ProtocolError, ValidationError
from .money import parse_positive_uint, parse_uint
from .rules import normalize_address
from .signer import Authorization, TokenDomain, normalize_signature


X402_VERSION = 1
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
REQUIREMENTS_HEADER = "X-Payment-Requirements"

NETWORK_CHAIN_IDS = {
    "base": 8453,
    "base-sepolia": 84532,
    "arbitrum": 42161,
    "arbitrum-sepolia": 421614,
}


def resolve_chain_id(network: str) -> int:
    """Map a network name (``base``) or CAIP-2 id (``eip155:8453``) to a chain id."""
    candidate = str(network).strip().lower()
    if candidate in NETWORK_CHAIN_IDS:
        return NETWORK_CHAIN_IDS[candidate]
    if candidate.startswith("eip155:"):
        chain_part = candidate.split(":", 1)[1]
        if chain_part.isascii() and chain_part.isdigit() and int(chain_part) > 0:
            return int(chain_part)
    raise ProtocolError(f"Unsupported network: {network}", check="network")


def header_lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    target = name.lower()
    for k, v in headers.items():
        if k.lower() == target:
            return v
    return None


@dataclass(frozen=True)
class PaymentRequirement:
    """One acceptable way to pay for a resource, as offered in a 402 challenge."""

    scheme: str
    network: str
    max_amount_required: str
    resource: str
    pay_to: str
    asset: str
    max_timeout_seconds: int = 60
    description: str = ""
    mime_type: str = ""
    extra: Optional[dict[str, Any]] = field(default=None, compare=False)

    def __post_init__(self):
        if not isinstance(self.scheme, str) or not self.scheme.strip():
            raise ValidationError("scheme is required", field="scheme")
        if not isinstance(self.network, str) or not self.network.strip():
            raise ValidationError("network is required", field="network")
        if not isinstance(self.max_amount_required, str):
            raise ValidationError(
                "maxAmountRequired must be a decimal string", field="maxAmountRequired"
            )
        amount = parse_uint(self.max_amount_required, "maxAmountRequired")
        object.__setattr__(self, "max_amount_required", str(amount))
        object.__setattr__(self, "pay_to", normalize_address(self.pay_to, "payTo"))
        object.__setattr__(self, "asset", normalize_address(self.asset, "asset"))
        object.__setattr__(
            self,
            "max_timeout_seconds",
            parse_positive_uint(self.max_timeout_seconds, "maxTimeoutSeconds", bits=32),
        )

    @property
    def amount(self) -> int:
        return int(self.max_amount_required)

    @property
    def chain_id(self) -> int:
        return resolve_chain_id(self.network)

    def token_domain(self) -> TokenDomain:
        """EIP-712 domain for the asset, honoring a server-supplied name/version."""
        extra = self.extra or {}
        default = TokenDomain()
        return TokenDomain(
            name=str(extra.get("name") or default.name),
            version=str(extra.get("version") or default.version),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": self.resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
        }
        if self.extra is not None:
            d["extra"] = dict(self.extra)
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PaymentRequirement":
        if not isinstance(data, Mapping):
            raise ProtocolError("Payment requirement must be an object", check="requirement")
        try:
            return cls(
                scheme=data["scheme"],
                network=data["network"],
                max_amount_required=data["maxAmountRequired"],
                resource=str(data.get("resource", "")),
                pay_to=data["payTo"],
                asset=data["asset"],
                max_timeout_seconds=data.get("maxTimeoutSeconds", 60),
                description=str(data.get("description", "")),
                mime_type=str(data.get("mimeType", "")),
                extra=dict(data["extra"]) if isinstance(data.get("extra"), Mapping) else None,
            )
        except KeyError as e:
            raise ProtocolError(
                f"Payment requirement is missing {e.args[0]}", requirement=data, check="requirement"
            ) from e
        except ValidationError as e:
            raise ProtocolError(
                f"Invalid payment requirement: {e}", requirement=data, check="requirement"
            ) from e


def parse_payment_requirements(body: Any) -> list[PaymentRequirement]:
    """Parse ``{"x402Version", "accepts": [...]}`` or a bare list of requirements."""
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ProtocolError(f"402 challenge is not JSON: {e}", check="challenge") from e
    if isinstance(body, Mapping):
        accepts = body.get("accepts")
    else:
        accepts = body
    if not isinstance(accepts, list) or not accepts:
        raise ProtocolError("No payment requirements in 402 response", check="challenge")
    return [PaymentRequirement.from_dict(item) for item in accepts]


def parse_challenge(body: bytes, headers: Mapping[str, str]) -> list[PaymentRequirement]:
    """Requirements from a 402 response: the JSON body first, then the header."""
    body_error: Optional[ProtocolError] = None
    if body and body.strip():
        try:
            return parse_payment_requirements(body)
        except ProtocolError as e:
            body_error = e
    header_value = header_lookup(headers, REQUIREMENTS_HEADER)
    if header_value:
        return parse_payment_requirements(header_value)
    if body_error is not None:
        raise body_error
    raise ProtocolError("No payment requirements in 402 response", check="challenge")


def _b64_json(payload: Mapping[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def _json_from_b64(value: str, check: str) -> dict[str, Any]:
    try:
        decoded = base64.b64decode(value.strip(), validate=True)
        payload = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Malformed {check} header: {e}", check=check) from e
    if not isinstance(payload, dict):
        raise ProtocolError(f"Malformed {check} header: expected an object", check=check)
    return payload


def build_payment_header(
    authorization: Authorization,
    signature: str,
    requirement: PaymentRequirement,
) -> str:
    return _b64_json(
        {
            "x402Version": X402_VERSION,
            "scheme": requirement.scheme,
            "network": requirement.network,
            "payload": {
                "signature": normalize_signature(signature),
                "authorization": authorization.to_dict(),
            },
        }
    )


@dataclass(frozen=True)
class PaymentHeader:
    authorization: Authorization
    signature: str
    scheme: str
    network: str
    x402_version: int = X402_VERSION


def parse_payment_header(header: str) -> PaymentHeader:
    """Inverse of ``build_payment_header``. Integers come back exact."""
    payload = _json_from_b64(header, "payment")
    inner = payload.get("payload")
    if not isinstance(inner, dict) or not isinstance(inner.get("authorization"), dict):
        raise ProtocolError("Payment header has no authorization", check="payment")
    try:
        authorization = Authorization.from_dict(inner["authorization"])
        signature = normalize_signature(inner.get("signature"))
        version = parse_uint(payload.get("x402Version", X402_VERSION), "x402Version")
    except ValidationError as e:
        raise ProtocolError(f"Invalid payment header: {e}", check="payment") from e
    scheme = payload.get("scheme")
    network = payload.get("network")
    if not isinstance(scheme, str) or not isinstance(network, str):
        raise ProtocolError("Payment header needs scheme and network", check="payment")
    return PaymentHeader(
        authorization=authorization,
        signature=signature,
        scheme=scheme,
        network=network,
        x402_version=version,
    )


@dataclass(frozen=True)
class Settlement:
    """Facilitator outcome echoed in ``X-PAYMENT-RESPONSE``."""

    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success}
        if self.transaction is not None:
            d["transaction"] = self.transaction
        if self.network is not None:
            d["network"] = self.network
        if self.payer is not None:
            d["payer"] = self.payer
        if self.error_reason is not None:
            d["errorReason"] = self.error_reason
        return d


def build_settlement_header(settlement: Settlement) -> str:
    return _b64_json(settlement.to_dict())


def parse_settlement_header(value: str) -> Settlement:
    payload = _json_from_b64(value, "settlement")
    success = payload.get("success")
    if not isinstance(success, bool):
        raise ProtocolError("Settlement header needs a boolean success", check="settlement")
    return Settlement(
        success=success,
        transaction=payload.get("transaction"),
        network=payload.get("network"),
        payer=payload.get("payer"),
        error_reason=payload.get("errorReason"),
    )
