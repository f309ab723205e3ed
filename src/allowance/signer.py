"""
EIP-3009 transfer authorizations.

Signs ``TransferWithAuthorization`` typed data scoped to a token
contract, which is what x402 "exact" payments carry. Each authorization
gets a fresh random 32-byte nonce.
"""

from __future__ import annotations

import logging
import re
import secrets
import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount

from .errors import SignatureError, ValidationError
from .money import parse_uint
from .rules import normalize_address

logger = logging.getLogger(__name__)


_NONCE_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
_SIGNATURE_RE = re.compile(r"^0x[a-fA-F0-9]{130}$")

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


@dataclass(frozen=True)
class TokenDomain:
    """EIP-712 name/version fixed by the token contract (USDC uses "USD Coin"/"2")."""

    name: str = "USD Coin"
    version: str = "2"


DEFAULT_TOKEN_DOMAIN = TokenDomain()


def generate_nonce() -> str:
    return "0x" + secrets.token_bytes(32).hex()


def normalize_nonce(value: Any) -> str:
    if not isinstance(value, str) or not _NONCE_RE.match(value.strip()):
        raise ValidationError("nonce must be 0x followed by 64 hex characters", field="nonce")
    return value.strip().lower()


def normalize_signature(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        value = "0x" + bytes(value).hex()
    if not isinstance(value, str) or not _SIGNATURE_RE.match(value.strip()):
        raise ValidationError("signature must be a 65-byte hex string", field="signature")
    return value.strip().lower()


@dataclass(frozen=True)
class Authorization:
    """A single-use permission to move ``value`` base units from ``from_address`` to ``to``."""

    from_address: str
    to: str
    value: int
    valid_after: int
    valid_before: int
    nonce: str

    def __post_init__(self):
        object.__setattr__(self, "from_address", normalize_address(self.from_address, "from"))
        object.__setattr__(self, "to", normalize_address(self.to, "to"))
        object.__setattr__(self, "value", parse_uint(self.value, "value"))
        object.__setattr__(self, "valid_after", parse_uint(self.valid_after, "validAfter"))
        object.__setattr__(self, "valid_before", parse_uint(self.valid_before, "validBefore"))
        object.__setattr__(self, "nonce", normalize_nonce(self.nonce))
        if self.valid_after >= self.valid_before:
            raise ValidationError("validAfter must be before validBefore", field="validAfter")

    def to_message(self) -> dict[str, Any]:
        return {
            "from": self.from_address,
            "to": self.to,
            "value": self.value,
            "validAfter": self.valid_after,
            "validBefore": self.valid_before,
            "nonce": bytes.fromhex(self.nonce[2:]),
        }

    def to_dict(self) -> dict[str, str]:
        return {
            "from": self.from_address,
            "to": self.to,
            "value": str(self.value),
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Authorization":
        try:
            return cls(
                from_address=data["from"],
                to=data["to"],
                value=data["value"],
                valid_after=data["validAfter"],
                valid_before=data["validBefore"],
                nonce=data["nonce"],
            )
        except KeyError as e:
            raise ValidationError(f"Authorization is missing {e.args[0]}", field=e.args[0]) from e


def build_typed_data(
    authorization: Authorization,
    token: str,
    chain_id: int,
    domain: Optional[TokenDomain] = None,
) -> dict[str, Any]:
    """EIP-712 payload for ``authorization`` under the token's own domain."""
    domain = domain or DEFAULT_TOKEN_DOMAIN
    return {
        "domain": {
            "name": domain.name,
            "version": domain.version,
            "chainId": int(chain_id),
            "verifyingContract": normalize_address(token, "token"),
        },
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "message": authorization.to_message(),
    }


def sign_authorization(
    account: LocalAccount,
    token: str,
    to: str,
    value: int,
    valid_after: int,
    valid_before: int,
    chain_id: int,
    from_address: Optional[str] = None,
    domain: Optional[TokenDomain] = None,
    nonce: Optional[str] = None,
) -> tuple[Authorization, str]:
    """Create and sign a transfer authorization. Returns ``(authorization, signature)``."""
    signer_address = normalize_address(account.address, "from")
    if from_address is not None and normalize_address(from_address, "from") != signer_address:
        raise ValidationError(
            f"from {from_address} does not match signing account {account.address}", field="from"
        )

    authorization = Authorization(
        from_address=signer_address,
        to=to,
        value=value,
        valid_after=valid_after,
        valid_before=valid_before,
        nonce=nonce or generate_nonce(),
    )
    typed_data = build_typed_data(authorization, token, chain_id, domain)
    try:
        signed = Account.sign_typed_data(
            account.key,
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
    except (TypeError, ValueError) as e:
        raise SignatureError(f"Failed to sign authorization: {e}") from e
    return authorization, "0x" + bytes(signed.signature).hex()


def recover_authorizer(
    authorization: Authorization,
    signature: str,
    token: str,
    chain_id: int,
    domain: Optional[TokenDomain] = None,
) -> str:
    """Recover the lower-case address that signed ``authorization``."""
    typed_data = build_typed_data(authorization, token, chain_id, domain)
    try:
        signable = encode_typed_data(
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
        recovered = Account.recover_message(
            signable,
            signature=bytes.fromhex(normalize_signature(signature)[2:]),
        )
    except (TypeError, ValueError) as e:
        raise SignatureError(f"Signature recovery failed: {e}") from e
    return normalize_address(recovered)


def verify_authorization(
    authorization: Authorization,
    signature: str,
    token: str,
    chain_id: int,
    domain: Optional[TokenDomain] = None,
) -> bool:
    try:
        recovered = recover_authorizer(authorization, signature, token, chain_id, domain)
    except SignatureError:
        return False
    return recovered == authorization.from_address


class AuthorizationSigner:
    """Signs authorizations for one account and never hands out the same nonce twice."""

    def __init__(self, account: LocalAccount, domain: Optional[TokenDomain] = None):
        self._account = account
        self.domain = domain or DEFAULT_TOKEN_DOMAIN
        self._issued_nonces: set[str] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_private_key(cls, private_key: str, domain: Optional[TokenDomain] = None) -> "AuthorizationSigner":
        return cls(Account.from_key(private_key), domain=domain)

    @property
    def address(self) -> str:
        return self._account.address

    def _fresh_nonce(self) -> str:
        with self._lock:
            nonce = generate_nonce()
            while nonce in self._issued_nonces:
                nonce = generate_nonce()
            self._issued_nonces.add(nonce)
            return nonce

    def sign(
        self,
        token: str,
        to: str,
        value: int,
        valid_after: int,
        valid_before: int,
        chain_id: int,
        domain: Optional[TokenDomain] = None,
    ) -> tuple[Authorization, str]:
        authorization, signature = sign_authorization(
            self._account,
            token=token,
            to=to,
            value=value,
            valid_after=valid_after,
            valid_before=valid_before,
            chain_id=chain_id,
            domain=domain or self.domain,
            nonce=self._fresh_nonce(),
        )
        logger.info(
            "Signed authorization %s: %s to %s on chain %s",
            authorization.nonce[:18], authorization.value, authorization.to, chain_id,
        )
        return authorization, signature
