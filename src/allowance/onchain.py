"""
ABI layouts consumed by the on-chain enforcement modules.

The agent validator stores an ``AgentPolicy`` tuple per agent and the
x402 payment policy stores an ``X402Budget`` tuple. Both are encoded
as a single ABI tuple so the modules can ``abi.decode`` them as-is.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError

from .errors import ValidationError
from .money import parse_uint
from .policy import Policy
from .rules import (
    ContractAllowlist,
    FunctionAllowlist,
    Rule,
    SpendingLimit,
    TimeWindow,
    normalize_address,
    normalize_selector,
)


AGENT_POLICY_TUPLE = "(address[],bytes4[],uint256,uint256,uint256,uint48,uint48,bool)"
X402_BUDGET_TUPLE = "(uint256,uint256,uint256,uint256,uint256,uint256,string[])"


@dataclass
class AgentPolicy:
    """Flattened per-agent policy. Zero limits and zero window bounds mean unrestricted."""

    allowed_targets: list[str] = field(default_factory=list)
    allowed_selectors: list[str] = field(default_factory=list)
    max_amount_per_tx: int = 0
    daily_limit: int = 0
    weekly_limit: int = 0
    valid_after: int = 0
    valid_until: int = 0
    active: bool = True

    def __post_init__(self):
        self.allowed_targets = [normalize_address(t, "allowedTargets") for t in self.allowed_targets]
        self.allowed_selectors = [normalize_selector(s) for s in self.allowed_selectors]
        self.max_amount_per_tx = parse_uint(self.max_amount_per_tx, "maxAmountPerTx")
        self.daily_limit = parse_uint(self.daily_limit, "dailyLimit")
        self.weekly_limit = parse_uint(self.weekly_limit, "weeklyLimit")
        self.valid_after = parse_uint(self.valid_after, "validAfter", bits=48)
        self.valid_until = parse_uint(self.valid_until, "validUntil", bits=48)

    def as_abi_tuple(self) -> tuple:
        return (
            list(self.allowed_targets),
            [bytes.fromhex(s[2:]) for s in self.allowed_selectors],
            self.max_amount_per_tx,
            self.daily_limit,
            self.weekly_limit,
            self.valid_after,
            self.valid_until,
            bool(self.active),
        )

    def to_dict(self) -> dict:
        return {
            "allowedTargets": list(self.allowed_targets),
            "allowedSelectors": list(self.allowed_selectors),
            "maxAmountPerTx": str(self.max_amount_per_tx),
            "dailyLimit": str(self.daily_limit),
            "weeklyLimit": str(self.weekly_limit),
            "validAfter": self.valid_after,
            "validUntil": self.valid_until,
            "active": self.active,
        }


@dataclass
class X402Budget:
    max_per_request: int
    daily_budget: int
    total_budget: int
    spent: int = 0
    daily_spent: int = 0
    last_reset: int = 0
    allowed_domains: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.max_per_request = parse_uint(self.max_per_request, "maxPerRequest")
        self.daily_budget = parse_uint(self.daily_budget, "dailyBudget")
        self.total_budget = parse_uint(self.total_budget, "totalBudget")
        self.spent = parse_uint(self.spent, "spent")
        self.daily_spent = parse_uint(self.daily_spent, "dailySpent")
        self.last_reset = parse_uint(self.last_reset, "lastReset")
        self.allowed_domains = [str(d) for d in self.allowed_domains]

    def as_abi_tuple(self) -> tuple:
        return (
            self.max_per_request,
            self.daily_budget,
            self.total_budget,
            self.spent,
            self.daily_spent,
            self.last_reset,
            list(self.allowed_domains),
        )

    def to_dict(self) -> dict:
        return {
            "maxPerRequest": str(self.max_per_request),
            "dailyBudget": str(self.daily_budget),
            "totalBudget": str(self.total_budget),
            "spent": str(self.spent),
            "dailySpent": str(self.daily_spent),
            "lastReset": str(self.last_reset),
            "allowedDomains": list(self.allowed_domains),
        }


def _as_bytes(data: bytes | str) -> bytes:
    if isinstance(data, str):
        return bytes.fromhex(data[2:] if data.lower().startswith("0x") else data)
    return data


def encode_agent_policy(policy: AgentPolicy) -> bytes:
    return encode([AGENT_POLICY_TUPLE], [policy.as_abi_tuple()])


def decode_agent_policy(data: bytes | str) -> AgentPolicy:
    try:
        (decoded,) = decode([AGENT_POLICY_TUPLE], _as_bytes(data))
    except (DecodingError, ValueError) as e:
        raise ValidationError(f"Malformed agent policy: {e}", field="encoded") from e
    targets, selectors, per_tx, daily, weekly, valid_after, valid_until, active = decoded
    return AgentPolicy(
        allowed_targets=list(targets),
        allowed_selectors=["0x" + s.hex() for s in selectors],
        max_amount_per_tx=per_tx,
        daily_limit=daily,
        weekly_limit=weekly,
        valid_after=valid_after,
        valid_until=valid_until,
        active=active,
    )


def encode_x402_budget(budget: X402Budget) -> bytes:
    return encode([X402_BUDGET_TUPLE], [budget.as_abi_tuple()])


def decode_x402_budget(data: bytes | str) -> X402Budget:
    try:
        (decoded,) = decode([X402_BUDGET_TUPLE], _as_bytes(data))
    except (DecodingError, ValueError) as e:
        raise ValidationError(f"Malformed x402 budget: {e}", field="encoded") from e
    max_per_request, daily, total, spent, daily_spent, last_reset, domains = decoded
    return X402Budget(
        max_per_request=max_per_request,
        daily_budget=daily,
        total_budget=total,
        spent=spent,
        daily_spent=daily_spent,
        last_reset=last_reset,
        allowed_domains=list(domains),
    )


def agent_policy_from_rules(rules: Union[Policy, Iterable[Rule]]) -> AgentPolicy:
    """Fold a rule list into the flat on-chain layout.

    Allowlists accumulate (deduplicated); a later spending limit or time
    window replaces an earlier one. Rate limits have no on-chain field.
    """
    if isinstance(rules, Policy):
        rules = rules.rules
    targets: dict[str, None] = {}
    selectors: dict[str, None] = {}
    result = AgentPolicy()
    for rule in rules:
        if isinstance(rule, ContractAllowlist):
            for address in rule.addresses:
                targets.setdefault(address, None)
        elif isinstance(rule, FunctionAllowlist):
            targets.setdefault(rule.contract, None)
            for selector in rule.selectors:
                selectors.setdefault(selector, None)
        elif isinstance(rule, SpendingLimit):
            result.max_amount_per_tx = rule.max_per_transaction
            result.daily_limit = rule.max_daily
            result.weekly_limit = rule.max_weekly
        elif isinstance(rule, TimeWindow):
            result.valid_after = rule.valid_after
            result.valid_until = rule.valid_until
    result.allowed_targets = list(targets)
    result.allowed_selectors = list(selectors)
    return result


def validate_agent_policy(policy: AgentPolicy) -> bool:
    if policy.daily_limit > 0 and policy.max_amount_per_tx > policy.daily_limit:
        return False
    if policy.weekly_limit > 0 and policy.daily_limit > policy.weekly_limit:
        return False
    if policy.valid_until > 0 and policy.valid_until <= policy.valid_after:
        return False
    return True


def is_agent_policy_active(policy: AgentPolicy, now: Optional[int] = None) -> bool:
    if not policy.active:
        return False
    current = int(time.time()) if now is None else now
    if policy.valid_after > 0 and current < policy.valid_after:
        return False
    if policy.valid_until > 0 and current >= policy.valid_until:
        return False
    return True


def is_target_allowed(policy: AgentPolicy, target: str) -> bool:
    if not policy.allowed_targets:
        return True
    return normalize_address(target, "target") in policy.allowed_targets


def is_selector_allowed(policy: AgentPolicy, selector: str) -> bool:
    """Check a selector, or the first four bytes of full calldata."""
    if not policy.allowed_selectors:
        return True
    candidate = selector.strip().lower()
    if candidate.startswith("0x") and len(candidate) > 10:
        candidate = candidate[:10]
    return normalize_selector(candidate) in policy.allowed_selectors


def validate_x402_budget(budget: X402Budget) -> bool:
    if budget.max_per_request > budget.daily_budget:
        return False
    if budget.daily_budget > budget.total_budget:
        return False
    return True


def encode_install_agent_validator(agent: str, policy: AgentPolicy) -> bytes:
    return encode(
        ["address", AGENT_POLICY_TUPLE],
        [normalize_address(agent, "agent"), policy.as_abi_tuple()],
    )


def encode_install_x402_policy(
    agent: str,
    max_per_request: int,
    daily_budget: int,
    total_budget: int,
    domains: list[str],
) -> bytes:
    return encode(
        ["address", "uint256", "uint256", "uint256", "string[]"],
        [
            normalize_address(agent, "agent"),
            parse_uint(max_per_request, "maxPerRequest"),
            parse_uint(daily_budget, "dailyBudget"),
            parse_uint(total_budget, "totalBudget"),
            [str(d) for d in domains],
        ],
    )


def encode_install_spending_limit_hook(
    agent: str,
    token: str,
    daily_limit: int,
    weekly_limit: int,
) -> bytes:
    return encode(
        ["address", "address", "uint256", "uint256"],
        [
            normalize_address(agent, "agent"),
            normalize_address(token, "token"),
            parse_uint(daily_limit, "dailyLimit"),
            parse_uint(weekly_limit, "weeklyLimit"),
        ],
    )


def encode_session_key_data(
    session_key: str,
    valid_after: int,
    valid_until: int,
    policy_data: bytes | str,
) -> bytes:
    """Session-key install payload; ``policy_data`` is usually ``Policy.encoded``."""
    return encode(
        ["address", "uint48", "uint48", "bytes"],
        [
            normalize_address(session_key, "sessionKey"),
            parse_uint(valid_after, "validAfter", bits=48),
            parse_uint(valid_until, "validUntil", bits=48),
            _as_bytes(policy_data),
        ],
    )
