"""
Policy composition and canonical encoding.

A Policy is an ordered list of rules plus an AND/OR operator. Its
``encoded`` bytes use standard contract-ABI encoding so the on-chain
validator can decode them unmodified:

    policy  = abi.encode(uint8 composition, bytes[] rules)
    rule    = abi.encode(uint8 ruleType, <rule fields>...)

``id`` is keccak-256 over ``encoded``, so it changes with any rule
field, the rule order, or the operator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from .errors import ValidationError
from .rules import (
    ContractAllowlist,
    FunctionAllowlist,
    RateLimit,
    Rule,
    RuleType,
    SpendingLimit,
    TimeWindow,
    coerce_rule_type,
    rule_from_dict,
)

logger = logging.getLogger(__name__)


class Operator(str, Enum):
    AND = "AND"
    OR = "OR"

    @property
    def flag(self) -> int:
        return 0 if self is Operator.AND else 1

    @classmethod
    def from_flag(cls, flag: int) -> "Operator":
        if flag == 0:
            return cls.AND
        if flag == 1:
            return cls.OR
        raise ValidationError(f"Invalid composition flag: {flag}", field="operator")


def coerce_operator(value: Any) -> Operator:
    if isinstance(value, Operator):
        return value
    if isinstance(value, str) and value.strip().upper() in Operator.__members__:
        return Operator[value.strip().upper()]
    raise ValidationError(f"Invalid composition operator: {value}", field="operator")


_RULE_ABI: dict[RuleType, list[str]] = {
    RuleType.SPENDING: ["uint8", "uint256", "uint256", "uint256", "address"],
    RuleType.CONTRACT_ALLOWLIST: ["uint8", "address[]"],
    RuleType.FUNCTION_ALLOWLIST: ["uint8", "address", "bytes4[]"],
    RuleType.TIME_WINDOW: ["uint8", "uint48", "uint48"],
    RuleType.RATE_LIMIT: ["uint8", "uint32", "uint32"],
}
_TAG_TO_TYPE = {
    0: RuleType.SPENDING,
    1: RuleType.CONTRACT_ALLOWLIST,
    2: RuleType.FUNCTION_ALLOWLIST,
    3: RuleType.TIME_WINDOW,
    4: RuleType.RATE_LIMIT,
}
_POLICY_ABI = ["uint8", "bytes[]"]


def _selector_bytes(selector: str) -> bytes:
    return bytes.fromhex(selector[2:])


def encode_rule(rule: Rule) -> bytes:
    """ABI-encode a single rule, type tag first."""
    if isinstance(rule, SpendingLimit):
        values = [rule.abi_tag, rule.max_per_transaction, rule.max_daily, rule.max_weekly, rule.token]
    elif isinstance(rule, ContractAllowlist):
        values = [rule.abi_tag, list(rule.addresses)]
    elif isinstance(rule, FunctionAllowlist):
        values = [rule.abi_tag, rule.contract, [_selector_bytes(s) for s in rule.selectors]]
    elif isinstance(rule, TimeWindow):
        values = [rule.abi_tag, rule.valid_after, rule.valid_until]
    elif isinstance(rule, RateLimit):
        values = [rule.abi_tag, rule.max_calls, rule.interval_seconds]
    else:
        raise ValidationError(f"Unknown rule: {rule!r}", field="rules")
    return encode(_RULE_ABI[rule.rule_type], values)


def decode_rule(data: bytes) -> Rule:
    """Decode one rule produced by ``encode_rule``."""
    if len(data) < 32:
        raise ValidationError("Encoded rule is too short", field="rules")
    tag = int.from_bytes(data[:32], "big")
    rule_type = _TAG_TO_TYPE.get(tag)
    if rule_type is None:
        raise ValidationError(f"Unknown rule tag: {tag}", field="rules")
    try:
        values = decode(_RULE_ABI[rule_type], data)
    except DecodingError as e:
        raise ValidationError(f"Malformed {rule_type.value} rule: {e}", field="rules") from e

    if rule_type is RuleType.SPENDING:
        _, per_tx, daily, weekly, token = values
        return SpendingLimit(token=token, max_per_transaction=per_tx, max_daily=daily, max_weekly=weekly)
    if rule_type is RuleType.CONTRACT_ALLOWLIST:
        return ContractAllowlist(addresses=tuple(values[1]))
    if rule_type is RuleType.FUNCTION_ALLOWLIST:
        _, contract, selectors = values
        return FunctionAllowlist(contract=contract, selectors=tuple("0x" + s.hex() for s in selectors))
    if rule_type is RuleType.TIME_WINDOW:
        return TimeWindow(valid_after=values[1], valid_until=values[2])
    return RateLimit(max_calls=values[1], interval_seconds=values[2])


def encode_policy(rules: Sequence[Rule], operator: Operator | str = Operator.AND) -> bytes:
    op = coerce_operator(operator)
    return encode(_POLICY_ABI, [op.flag, [encode_rule(r) for r in rules]])


def decode_policy(data: bytes | str) -> tuple[list[Rule], Operator]:
    """Inverse of ``encode_policy``: recover every rule and the operator."""
    if isinstance(data, str):
        try:
            data = bytes.fromhex(data[2:] if data.lower().startswith("0x") else data)
        except ValueError as e:
            raise ValidationError("Encoded policy must be hex", field="encoded") from e
    try:
        flag, encoded_rules = decode(_POLICY_ABI, data)
    except DecodingError as e:
        raise ValidationError(f"Malformed policy encoding: {e}", field="encoded") from e
    return [decode_rule(r) for r in encoded_rules], Operator.from_flag(flag)


def compute_policy_id(rules: Sequence[Rule], operator: Operator | str = Operator.AND) -> str:
    return "0x" + keccak(encode_policy(rules, operator)).hex()


@dataclass(frozen=True)
class Policy:
    """Immutable composed policy. ``id`` and ``encoded`` derive from ``(rules, operator)``."""

    rules: tuple[Rule, ...]
    operator: Operator = Operator.AND
    id: str = field(init=False)
    encoded: bytes = field(init=False, repr=False)

    def __post_init__(self):
        rules = tuple(self.rules)
        if not rules:
            raise ValidationError("Cannot compose an empty policy", field="rules")
        operator = coerce_operator(self.operator)
        encoded = encode_policy(rules, operator)
        object.__setattr__(self, "rules", rules)
        object.__setattr__(self, "operator", operator)
        object.__setattr__(self, "encoded", encoded)
        object.__setattr__(self, "id", "0x" + keccak(encoded).hex())

    @property
    def encoded_hex(self) -> str:
        return "0x" + self.encoded.hex()

    @classmethod
    def from_encoded(cls, data: bytes | str) -> "Policy":
        rules, operator = decode_policy(data)
        return cls(rules=tuple(rules), operator=operator)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operator": self.operator.value,
            "rules": [r.to_dict() for r in self.rules],
            "encoded": self.encoded_hex,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Policy":
        """Rebuild a policy from ``to_dict`` output, rejecting a stale or forged id."""
        raw_rules = data.get("rules")
        if not isinstance(raw_rules, list):
            raise ValidationError("Policy rules must be a list", field="rules")
        policy = cls(
            rules=tuple(rule_from_dict(r) for r in raw_rules),
            operator=data.get("operator", Operator.AND),
        )
        expected_id = data.get("id")
        if expected_id is not None and str(expected_id).lower() != policy.id:
            raise ValidationError(
                f"Policy id mismatch: stored {expected_id}, computed {policy.id}", field="id"
            )
        return policy


def compose_policy(rules: Iterable[Rule], operator: Operator | str = Operator.AND) -> Policy:
    policy = Policy(rules=tuple(rules), operator=coerce_operator(operator))
    logger.debug(
        "Composed policy %s (%d rules, %s)", policy.id, len(policy.rules), policy.operator.value
    )
    return policy


def extend_policy(
    policy: Policy,
    more_rules: Iterable[Rule],
    operator: Optional[Operator | str] = None,
) -> Policy:
    return compose_policy(
        list(policy.rules) + list(more_rules),
        policy.operator if operator is None else operator,
    )


def intersect_policies(a: Policy, b: Policy) -> Policy:
    return compose_policy(list(a.rules) + list(b.rules), Operator.AND)


def union_policies(a: Policy, b: Policy) -> Policy:
    return compose_policy(list(a.rules) + list(b.rules), Operator.OR)


def remove_rules_by_type(policy: Policy, rule_type: RuleType | str) -> Policy:
    target = coerce_rule_type(rule_type)
    remaining = [r for r in policy.rules if r.rule_type is not target]
    if len(remaining) == len(policy.rules):
        return policy
    if not remaining:
        raise ValidationError("Cannot remove all rules from a policy", field="rules")
    return compose_policy(remaining, policy.operator)


def get_rules_by_type(policy: Policy, rule_type: RuleType | str) -> list[Rule]:
    target = coerce_rule_type(rule_type)
    return [r for r in policy.rules if r.rule_type is target]

