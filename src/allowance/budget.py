"""
Budget tracking for metered agent payments.

A BudgetTracker owns the payment history of exactly one agent and
answers "can this amount be spent now" against a BudgetPolicy:
per-request cap, rolling 24h cap, optional lifetime cap, and domain
and asset allowlists (empty = unrestricted).

``can_spend`` followed by ``record_payment`` is a check-then-act pair.
Hold ``tracker.lock`` around both, or use ``check_and_record``.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Optional

from eth_utils import keccak

from .errors import NotFoundError, ValidationError
from .money import UINT256_MAX, parse_uint
from .onchain import X402Budget
from .policy import Policy, get_rules_by_type
from .rules import RuleType, normalize_address

if TYPE_CHECKING:
    from .signer import Authorization

logger = logging.getLogger(__name__)


DAILY_WINDOW_SECONDS = 86400
DEFAULT_RETENTION_SECONDS = 604800


def _normalize_domain(domain: str) -> str:
    return domain.strip().lower()


@dataclass(frozen=True)
class BudgetPolicy:
    """Spend limits in token base units. ``total_budget=None`` means no lifetime cap."""

    max_per_request: int
    max_daily: int
    total_budget: Optional[int] = None
    allowed_domains: tuple[str, ...] = ()
    allowed_assets: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "max_per_request", parse_uint(self.max_per_request, "maxPerRequest"))
        object.__setattr__(self, "max_daily", parse_uint(self.max_daily, "maxDaily"))
        if self.total_budget is not None:
            object.__setattr__(self, "total_budget", parse_uint(self.total_budget, "totalBudget"))
        if isinstance(self.allowed_domains, str) or isinstance(self.allowed_assets, str):
            raise ValidationError("Allowlists must be lists, not strings", field="allowedDomains")
        domains = tuple(dict.fromkeys(_normalize_domain(d) for d in self.allowed_domains if d.strip()))
        assets = tuple(dict.fromkeys(normalize_address(a, "allowedAssets") for a in self.allowed_assets))
        object.__setattr__(self, "allowed_domains", domains)
        object.__setattr__(self, "allowed_assets", assets)

    @classmethod
    def from_policy(
        cls,
        policy: Policy,
        total_budget: Optional[int] = None,
        allowed_domains: Iterable[str] = (),
    ) -> "BudgetPolicy":
        """Derive caps and the asset allowlist from a policy's spending limits.

        With several spending limits the smallest non-zero cap per level wins.
        A level with no non-zero cap is unrestricted.
        """
        limits = get_rules_by_type(policy, RuleType.SPENDING)
        if not limits:
            raise ValidationError("Policy has no spending limit rule", field="rules")

        def tightest(values: Iterable[int]) -> int:
            caps = [v for v in values if v]
            return min(caps) if caps else UINT256_MAX

        return cls(
            max_per_request=tightest(r.max_per_transaction for r in limits),
            max_daily=tightest(r.max_daily for r in limits),
            total_budget=total_budget,
            allowed_domains=tuple(allowed_domains),
            allowed_assets=tuple(r.token for r in limits),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxPerRequest": str(self.max_per_request),
            "maxDaily": str(self.max_daily),
            "totalBudget": None if self.total_budget is None else str(self.total_budget),
            "allowedDomains": list(self.allowed_domains),
            "allowedAssets": list(self.allowed_assets),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BudgetPolicy":
        return cls(
            max_per_request=data.get("maxPerRequest", 0),
            max_daily=data.get("maxDaily", 0),
            total_budget=data.get("totalBudget"),
            allowed_domains=tuple(data.get("allowedDomains") or ()),
            allowed_assets=tuple(data.get("allowedAssets") or ()),
        )


def new_payment_id() -> str:
    return "0x" + keccak(secrets.token_bytes(32)).hex()


@dataclass(frozen=True)
class PaymentRecord:
    """A settled payment. Immutable once recorded."""

    url: str
    amount: int
    asset: str
    timestamp: int
    pay_to: Optional[str] = None
    authorization: Optional["Authorization"] = field(default=None, repr=False)
    signature: Optional[str] = field(default=None, repr=False)
    network: Optional[str] = None
    tx_hash: Optional[str] = None
    id: str = field(default_factory=new_payment_id)

    def __post_init__(self):
        object.__setattr__(self, "amount", parse_uint(self.amount, "amount"))
        object.__setattr__(self, "asset", normalize_address(self.asset, "asset"))
        object.__setattr__(self, "timestamp", int(self.timestamp))
        if self.pay_to is not None:
            object.__setattr__(self, "pay_to", normalize_address(self.pay_to, "payTo"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "amount": str(self.amount),
            "asset": self.asset,
            "pay_to": self.pay_to,
            "timestamp": self.timestamp,
            "network": self.network,
            "tx_hash": self.tx_hash,
            "authorization": self.authorization.to_dict() if self.authorization else None,
            "signature": self.signature,
        }


class BudgetTracker:
    """In-memory spend accounting for a single agent."""

    def __init__(self, policy: BudgetPolicy, clock: Callable[[], float] = time.time):
        self.policy = policy
        self._clock = clock
        self._records: list[PaymentRecord] = []
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Mutual-exclusion boundary for a ``can_spend`` + ``record_payment`` pair."""
        return self._lock

    def _now(self) -> int:
        return int(self._clock())

    def check_spending(
        self,
        amount: int,
        asset: Optional[str] = None,
        domain: Optional[str] = None,
    ) -> tuple[bool, str]:
        """Return ``(allowed, reason)`` without touching state."""
        amount = parse_uint(amount, "amount")
        policy = self.policy

        if amount > policy.max_per_request:
            return False, f"{amount} exceeds per-request limit {policy.max_per_request}"

        if domain and policy.allowed_domains:
            if _normalize_domain(domain) not in policy.allowed_domains:
                return False, f"Domain {domain} not in allowlist"

        normalized_asset = normalize_address(asset, "asset") if asset else None
        if normalized_asset and policy.allowed_assets:
            if normalized_asset not in policy.allowed_assets:
                return False, f"Asset {normalized_asset} not in allowlist"

        with self._lock:
            daily = self.daily_spend(normalized_asset)
            if daily + amount > policy.max_daily:
                return False, (
                    f"{amount} would exceed daily limit {policy.max_daily} "
                    f"(spent {daily} in last 24h)"
                )

            if policy.total_budget is not None:
                total = self.total_spend(normalized_asset)
                if total + amount > policy.total_budget:
                    return False, (
                        f"{amount} would exceed total budget {policy.total_budget} (spent {total})"
                    )

        return True, "Within limits"

    def can_spend(self, amount: int, asset: Optional[str] = None, domain: Optional[str] = None) -> bool:
        allowed, reason = self.check_spending(amount, asset, domain)
        logger.debug("Spend check %s for %s (%s): %s", "passed" if allowed else "denied", amount, domain, reason)
        return allowed

    def record_payment(self, record: PaymentRecord) -> None:
        """Append a settled payment. Does not re-check limits."""
        with self._lock:
            self._records.append(record)
        logger.info("Recorded payment %s: %s of %s to %s", record.id, record.amount, record.asset, record.url)

    def check_and_record(self, record: PaymentRecord, domain: Optional[str] = None) -> bool:
        """Atomically check ``record`` against the policy and append it if allowed."""
        with self._lock:
            if not self.can_spend(record.amount, record.asset, domain):
                return False
            self.record_payment(record)
            return True

    def daily_spend(self, asset: Optional[str] = None) -> int:
        """Sum over the rolling 24h window ending now."""
        cutoff = self._now() - DAILY_WINDOW_SECONDS
        target = normalize_address(asset, "asset") if asset else None
        with self._lock:
            return sum(
                r.amount
                for r in self._records
                if r.timestamp >= cutoff and (target is None or r.asset == target)
            )

    def total_spend(self, asset: Optional[str] = None) -> int:
        target = normalize_address(asset, "asset") if asset else None
        with self._lock:
            return sum(r.amount for r in self._records if target is None or r.asset == target)

    def remaining_daily_budget(self, asset: Optional[str] = None) -> int:
        return max(0, self.policy.max_daily - self.daily_spend(asset))

    def remaining_per_request_budget(self) -> int:
        return self.policy.max_per_request

    def remaining_total_budget(self, asset: Optional[str] = None) -> Optional[int]:
        """Lifetime headroom, or None when no lifetime cap is set."""
        if self.policy.total_budget is None:
            return None
        return max(0, self.policy.total_budget - self.total_spend(asset))

    def is_exhausted(self, asset: Optional[str] = None) -> bool:
        """True when no further payment could pass the daily or lifetime cap."""
        with self._lock:
            if self.remaining_daily_budget(asset) == 0:
                return True
            return self.remaining_total_budget(asset) == 0

    def payment_history(self) -> list[PaymentRecord]:
        with self._lock:
            return list(self._records)

    def payment_count(self) -> int:
        with self._lock:
            return len(self._records)

    def clear_history(self) -> None:
        with self._lock:
            self._records = []

    def prune_expired_records(self, max_age_seconds: int = DEFAULT_RETENTION_SECONDS) -> int:
        """Drop records older than ``max_age_seconds``. Returns how many were removed."""
        cutoff = self._now() - max_age_seconds
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.timestamp >= cutoff]
            removed = before - len(self._records)
        if removed:
            logger.debug("Pruned %d payment records older than %ds", removed, max_age_seconds)
        return removed

    def to_onchain_budget(self) -> X402Budget:
        """Snapshot as the on-chain budget tuple; ``lastReset`` is the start of the 24h window."""
        total = self.policy.total_budget
        return X402Budget(
            max_per_request=self.policy.max_per_request,
            daily_budget=self.policy.max_daily,
            total_budget=UINT256_MAX if total is None else total,
            spent=self.total_spend(),
            daily_spent=self.daily_spend(),
            last_reset=max(0, self._now() - DAILY_WINDOW_SECONDS),
            allowed_domains=list(self.policy.allowed_domains),
        )

    def summary(self) -> dict[str, Any]:
        remaining_total = self.remaining_total_budget()
        return {
            "payments": self.payment_count(),
            "daily_spent": str(self.daily_spend()),
            "total_spent": str(self.total_spend()),
            "remaining_daily": str(self.remaining_daily_budget()),
            "remaining_total": None if remaining_total is None else str(remaining_total),
            "max_per_request": str(self.policy.max_per_request),
        }


class BudgetBook:
    """Per-agent tracker table, owned by whatever manages agent lifecycles."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._trackers: dict[str, BudgetTracker] = {}
        self._lock = threading.Lock()

    def tracker_for(self, agent: str, policy: Optional[BudgetPolicy] = None) -> BudgetTracker:
        """Return the agent's tracker, creating it with ``policy`` on first use."""
        key = normalize_address(agent, "agent")
        with self._lock:
            tracker = self._trackers.get(key)
            if tracker is None:
                if policy is None:
                    raise NotFoundError(f"No budget tracker for agent {key}")
                tracker = BudgetTracker(policy, clock=self._clock)
                self._trackers[key] = tracker
                logger.info("Created budget tracker for agent %s", key)
            return tracker

    def get(self, agent: str) -> BudgetTracker:
        return self.tracker_for(agent)

    def remove(self, agent: str) -> BudgetTracker:
        key = normalize_address(agent, "agent")
        with self._lock:
            try:
                return self._trackers.pop(key)
            except KeyError:
                raise NotFoundError(f"No budget tracker for agent {key}") from None

    def agents(self) -> list[str]:
        with self._lock:
            return list(self._trackers)

    def __contains__(self, agent: str) -> bool:
        with self._lock:
            return normalize_address(agent, "agent") in self._trackers

    def __len__(self) -> int:
        with self._lock:
            return len(self._trackers)
