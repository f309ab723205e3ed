"""
x402 pay-per-call client.

Drives the client side of the handshake:

    IDLE -> REQUESTED -> (402) CHALLENGE_RECEIVED -> AUTHORIZING
         -> RETRYING -> SETTLED | REJECTED

Every spend goes through the agent's BudgetTracker. The tracker lock
is held from the budget check until the payment is recorded, so two
concurrent payments for the same agent cannot both pass the check.
A second 402 on the paid retry is terminal. With ``auto_approve`` off
the budget is still checked but nothing is signed; the 402 response is
handed back for the caller to approve out of band.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount

from .audit import AuditTrail, EventType
from .budget import BudgetTracker, PaymentRecord
from .errors import DeadlineExceededError, ProtocolError, TransientNetworkError, ValidationError
from .signer import AuthorizationSigner
from .x402 import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PaymentRequirement,
    Settlement,
    build_payment_header,
    header_lookup,
    parse_challenge,
    parse_settlement_header,
)

logger = logging.getLogger(__name__)


class HandshakeState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    CHALLENGE_RECEIVED = "challenge_received"
    AUTHORIZING = "authorizing"
    RETRYING = "retrying"
    SETTLED = "settled"
    REJECTED = "rejected"


@dataclass
class X402Config:
    networks: tuple[str, ...] = ("base", "base-sepolia", "eip155:8453", "eip155:84532")
    schemes: tuple[str, ...] = ("exact",)
    timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_delay: float = 1.0
    deadline_seconds: Optional[float] = None
    allowed_payees: tuple[str, ...] = ()
    require_settlement_header: bool = False
    payment_header: str = PAYMENT_HEADER
    auto_approve: bool = True
    base_url: Optional[str] = None
    default_headers: dict[str, str] = field(default_factory=dict)


@dataclass
class X402PaymentResult:
    state: HandshakeState
    url: str
    status_code: Optional[int] = None
    requirement: Optional[PaymentRequirement] = None
    record: Optional[PaymentRecord] = None
    settlement: Optional[Settlement] = None
    reason: Optional[str] = None
    failed_check: Optional[str] = None
    transitions: list[HandshakeState] = field(default_factory=list)
    response: Optional[httpx.Response] = field(default=None, repr=False)

    @property
    def success(self) -> bool:
        if self.state is HandshakeState.SETTLED:
            return True
        return (
            self.state is HandshakeState.REQUESTED
            and self.status_code is not None
            and 200 <= self.status_code < 300
        )

    @property
    def paid(self) -> bool:
        return self.state is HandshakeState.SETTLED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "success": self.success,
            "url": self.url,
            "status_code": self.status_code,
            "requirement": self.requirement.to_dict() if self.requirement else None,
            "payment_id": self.record.id if self.record else None,
            "amount": str(self.record.amount) if self.record else None,
            "tx_hash": self.record.tx_hash if self.record else None,
            "reason": self.reason,
            "failed_check": self.failed_check,
            "transitions": [s.value for s in self.transitions],
        }


class _Handshake:
    """Per-call state holder; records every transition."""

    def __init__(self, url: str):
        self.result = X402PaymentResult(state=HandshakeState.IDLE, url=url)
        self.result.transitions.append(HandshakeState.IDLE)

    def move(self, state: HandshakeState) -> None:
        self.result.state = state
        self.result.transitions.append(state)

    def reject(self, check: str, reason: str) -> X402PaymentResult:
        self.result.failed_check = check
        self.result.reason = reason
        self.move(HandshakeState.REJECTED)
        return self.result


class X402PaymentClient:
    """Pays for x402-protected resources within an agent's budget."""

    def __init__(
        self,
        account: Optional[LocalAccount] = None,
        tracker: Optional[BudgetTracker] = None,
        config: Optional[X402Config] = None,
        signer: Optional[AuthorizationSigner] = None,
        transport: Optional[httpx.BaseTransport] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        on_payment: Optional[Callable[[PaymentRecord], None]] = None,
        on_rejected: Optional[Callable[[Optional[PaymentRequirement], str], None]] = None,
    ):
        self.config = config or X402Config()

        if signer is not None:
            self._signer = signer
        elif account is not None:
            self._signer = AuthorizationSigner(account)
        else:
            raise ValidationError("Provide either account or signer", field="account")
        if tracker is None:
            raise ValidationError("A budget tracker is required", field="tracker")

        self.tracker = tracker
        self._audit = audit
        self._clock = clock
        self._sleep = sleep
        self._on_payment = on_payment
        self._on_rejected = on_rejected
        self._http = httpx.Client(
            timeout=self.config.timeout_seconds,
            headers=self.config.default_headers,
            transport=transport,
        )

    @classmethod
    def from_private_key(
        cls,
        private_key: str,
        tracker: BudgetTracker,
        config: Optional[X402Config] = None,
        **kwargs,
    ) -> "X402PaymentClient":
        account = Account.from_key(private_key)
        return cls(account=account, tracker=tracker, config=config, **kwargs)

    @property
    def address(self) -> str:
        return self._signer.address

    def pay(
        self,
        url: str,
        method: str = "GET",
        deadline_seconds: Optional[float] = None,
        **kwargs,
    ) -> X402PaymentResult:
        """Fetch ``url``, paying once if the server answers 402.

        Never raises for network or protocol failures: every outcome is
        reported as a result whose ``failed_check`` names the failing step.
        """
        url = self._resolve_url(url)
        budget_seconds = deadline_seconds if deadline_seconds is not None else self.config.deadline_seconds
        deadline = time.monotonic() + budget_seconds if budget_seconds is not None else None
        headers = dict(kwargs.pop("headers", None) or {})

        hs = _Handshake(url)
        hs.move(HandshakeState.REQUESTED)
        try:
            result = self._run(hs, method, url, headers, deadline, kwargs)
        except DeadlineExceededError as e:
            result = self._rejected(hs, "timeout", str(e))
        except TransientNetworkError as e:
            result = self._rejected(hs, "network", str(e))
        except Exception as e:
            logger.exception("x402 payment failed (non-retryable)")
            if hs.result.paid:
                result = hs.result
            else:
                result = self._rejected(hs, "internal", f"{type(e).__name__}: {e}")

        if result.paid and self._on_payment is not None:
            self._on_payment(result.record)
        elif result.state is HandshakeState.REJECTED and self._on_rejected is not None:
            self._on_rejected(result.requirement, result.reason)
        return result

    def _resolve_url(self, url: str) -> str:
        base = self.config.base_url
        if base and not url.startswith(("http://", "https://")):
            return f"{base.rstrip('/')}/{url.lstrip('/')}"
        return url

    def _run(
        self,
        hs: _Handshake,
        method: str,
        url: str,
        headers: dict[str, str],
        deadline: Optional[float],
        kwargs: dict[str, Any],
    ) -> X402PaymentResult:
        result = hs.result
        response = self._send(method, url, headers, kwargs, deadline)
        result.status_code = response.status_code
        result.response = response

        if response.status_code != 402:
            return result

        hs.move(HandshakeState.CHALLENGE_RECEIVED)
        try:
            requirements = parse_challenge(response.content, response.headers)
        except ProtocolError as e:
            return self._rejected(hs, e.check or "challenge", str(e))

        requirement = self._select_requirement(requirements)
        if requirement is None:
            offered = ", ".join(f"{r.scheme}/{r.network}" for r in requirements)
            return self._rejected(hs, "scheme_network", f"No supported payment requirement (offered: {offered})")
        result.requirement = requirement

        if self.config.allowed_payees:
            allowed = {p.lower() for p in self.config.allowed_payees}
            if requirement.pay_to not in allowed:
                return self._rejected(hs, "payee", f"402 payee {requirement.pay_to} not allowed")

        try:
            chain_id = requirement.chain_id
        except ProtocolError as e:
            return self._rejected(hs, "network", str(e))

        hs.move(HandshakeState.AUTHORIZING)
        domain = urlparse(url).hostname
        amount = requirement.amount

        with self.tracker.lock:
            allowed, reason = self.tracker.check_spending(amount, requirement.asset, domain)
            self._log_event(
                EventType.SPENDING_CHECK, amount=amount, asset=requirement.asset,
                resource=url, success=allowed, reason=reason,
            )
            if not allowed:
                self._log_event(
                    EventType.SPENDING_DENIED, amount=amount, asset=requirement.asset,
                    resource=url, success=False, reason=reason,
                )
                return self._rejected(hs, "budget", reason)

            if not self.config.auto_approve:
                return self._rejected(
                    hs, "approval", f"Payment of {amount} base units needs manual approval"
                )

            now = int(self._clock())
            authorization, signature = self._signer.sign(
                token=requirement.asset,
                to=requirement.pay_to,
                value=amount,
                valid_after=now,
                valid_before=now + requirement.max_timeout_seconds,
                chain_id=chain_id,
                domain=requirement.token_domain(),
            )
            self._log_event(
                EventType.AUTHORIZATION_SIGNED, amount=amount, asset=requirement.asset,
                resource=url, details={"nonce": authorization.nonce, "pay_to": requirement.pay_to},
            )

            hs.move(HandshakeState.RETRYING)
            paid_headers = {
                **headers,
                self.config.payment_header: build_payment_header(authorization, signature, requirement),
            }
            paid = self._send(method, url, paid_headers, kwargs, deadline)
            result.status_code = paid.status_code
            result.response = paid

            if paid.status_code == 402:
                return self._rejected(hs, "double_challenge", "Server issued a second 402 for a paid request")
            if not paid.is_success:
                return self._rejected(
                    hs, "settlement", f"Payment rejected ({paid.status_code}): {paid.text[:200]}"
                )

            settlement = None
            settlement_value = header_lookup(paid.headers, PAYMENT_RESPONSE_HEADER)
            if settlement_value:
                try:
                    settlement = parse_settlement_header(settlement_value)
                except ProtocolError as e:
                    return self._rejected(hs, "settlement", str(e))
                if not settlement.success:
                    return self._rejected(
                        hs, "settlement", f"Settlement failed: {settlement.error_reason or 'unknown'}"
                    )
            elif self.config.require_settlement_header:
                return self._rejected(hs, "settlement", "Missing settlement response header")
            result.settlement = settlement

            record = PaymentRecord(
                url=url,
                amount=amount,
                asset=requirement.asset,
                timestamp=now,
                pay_to=requirement.pay_to,
                authorization=authorization,
                signature=signature,
                network=requirement.network,
                tx_hash=settlement.transaction if settlement else None,
            )
            self.tracker.record_payment(record)

        result.record = record
        hs.move(HandshakeState.SETTLED)
        self._log_event(
            EventType.PAYMENT_SETTLED, amount=amount, asset=requirement.asset, resource=url,
            details={"payment_id": record.id, "tx_hash": record.tx_hash, "network": record.network},
        )
        logger.info("x402 payment settled: %s base units to %s for %s", amount, requirement.pay_to, url)
        return result

    def _select_requirement(self, requirements: list[PaymentRequirement]) -> Optional[PaymentRequirement]:
        schemes = {s.lower() for s in self.config.schemes}
        networks = {n.lower() for n in self.config.networks}
        for requirement in requirements:
            if requirement.scheme.lower() in schemes and requirement.network.lower() in networks:
                return requirement
        return None

    def _remaining(self, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.config.timeout_seconds
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceededError("Handshake deadline exceeded")
        return min(self.config.timeout_seconds, remaining)

    def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        kwargs: dict[str, Any],
        deadline: Optional[float],
    ) -> httpx.Response:
        """Issue one request, retrying transport failures with linear backoff."""
        max_retries = self.config.max_retries
        last_error = None
        for attempt in range(max_retries + 1):
            timeout = self._remaining(deadline)
            try:
                return self._http.request(method, url, headers=headers, timeout=timeout, **kwargs)
            except httpx.TimeoutException as e:
                last_error = f"Request timeout: {e}"
            except httpx.TransportError as e:
                last_error = f"Connection failed: {e}"

            if attempt < max_retries:
                delay = self.config.retry_delay * (attempt + 1)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    raise DeadlineExceededError(f"Handshake deadline exceeded after: {last_error}")
                logger.info(
                    "Retryable error (attempt %d/%d): %s", attempt + 1, max_retries + 1, last_error
                )
                self._sleep(delay)

        raise TransientNetworkError(
            f"Failed after {max_retries + 1} attempts: {last_error}",
            retry_after=self.config.retry_delay,
        )

    def _rejected(self, hs: _Handshake, check: str, reason: str) -> X402PaymentResult:
        result = hs.reject(check, reason)
        self._log_rejection(result)
        return result

    def _log_rejection(self, result: X402PaymentResult) -> None:
        requirement = result.requirement
        logger.info("x402 payment rejected (%s): %s", result.failed_check, result.reason)
        self._log_event(
            EventType.PAYMENT_REJECTED,
            amount=requirement.amount if requirement else None,
            asset=requirement.asset if requirement else None,
            resource=result.url,
            success=False,
            reason=result.reason,
            details={"failed_check": result.failed_check},
        )

    def _log_event(self, event_type: EventType, **fields) -> None:
        if self._audit is None:
            return
        self._audit.log(event_type, agent=self.address.lower(), **fields)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
