"""
Policy rules.

Each rule kind is an immutable value that validates and normalizes
itself on construction, so semantically equal rules always compare
and encode equal. The ``create_*`` helpers are the public constructors.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Iterable, Mapping, Optional, Union

from eth_utils import keccak

from .errors import RateLimitExceededError, ValidationError
from .money import parse_positive_uint, parse_uint


NATIVE_TOKEN_ADDRESS = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_SELECTOR_RE = re.compile(r"^0x[a-fA-F0-9]{8}$")


class RuleType(str, Enum):
    SPENDING = "spending"
    CONTRACT_ALLOWLIST = "contract-allowlist"
    FUNCTION_ALLOWLIST = "function-allowlist"
    TIME_WINDOW = "time-window"
    RATE_LIMIT = "rate-limit"


def normalize_address(address: Any, field_name: str = "address") -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    if not isinstance(address, str):
        raise ValidationError(f"Invalid address for {field_name}: {address!r}", field=field_name)
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValidationError(f"Invalid address for {field_name}: {address}", field=field_name)
    return "0x" + candidate[2:].lower()


def function_selector(signature: str) -> str:
    """Return the 4-byte selector for a function signature like ``transfer(address,uint256)``."""
    canonical = "".join(signature.split())
    if "(" not in canonical or not canonical.endswith(")"):
        raise ValidationError(f"Invalid function signature: {signature}", field="selectors")
    return "0x" + keccak(text=canonical)[:4].hex()


def normalize_selector(value: Any) -> str:
    """Accept a raw 4-byte selector (hex or bytes) or a function signature."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 4:
            raise ValidationError("Selector must be exactly 4 bytes", field="selectors")
        return "0x" + bytes(value).hex()
    if not isinstance(value, str):
        raise ValidationError(f"Invalid selector: {value!r}", field="selectors")
    candidate = value.strip()
    if _SELECTOR_RE.match(candidate):
        return candidate.lower()
    return function_selector(candidate)


def _dedupe(values: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return tuple(seen)


@dataclass(frozen=True)
class SpendingLimit:
    """Per-token caps in base units. A zero cap means no cap at that level."""

    rule_type: ClassVar[RuleType] = RuleType.SPENDING
    abi_tag: ClassVar[int] = 0

    token: str
    max_per_transaction: int = 0
    max_daily: int = 0
    max_weekly: int = 0

    def __post_init__(self):
        object.__setattr__(self, "token", normalize_address(self.token, "token"))
        caps = []
        for attr, label in (
            ("max_per_transaction", "maxPerTransaction"),
            ("max_daily", "maxDaily"),
            ("max_weekly", "maxWeekly"),
        ):
            value = parse_uint(getattr(self, attr), label)
            object.__setattr__(self, attr, value)
            if value:
                caps.append((label, value))
        for (lower_label, lower), (upper_label, upper) in zip(caps, caps[1:]):
            if lower > upper:
                raise ValidationError(
                    f"{lower_label} cannot exceed {upper_label}", field=lower_label
                )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.rule_type.value,
            "token": self.token,
            "maxPerTransaction": str(self.max_per_transaction),
            "maxDaily": str(self.max_daily),
            "maxWeekly": str(self.max_weekly),
        }


@dataclass(frozen=True)
class ContractAllowlist:
    rule_type: ClassVar[RuleType] = RuleType.CONTRACT_ALLOWLIST
    abi_tag: ClassVar[int] = 1

    addresses: tuple[str, ...]

    def __post_init__(self):
        if isinstance(self.addresses, str):
            raise ValidationError("addresses must be a list of addresses", field="addresses")
        normalized = _dedupe(normalize_address(a, "addresses") for a in self.addresses)
        if not normalized:
            raise ValidationError(
                "Allowlist must contain at least one address", field="addresses"
            )
        object.__setattr__(self, "addresses", normalized)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.rule_type.value, "addresses": list(self.addresses)}


@dataclass(frozen=True)
class FunctionAllowlist:
    rule_type: ClassVar[RuleType] = RuleType.FUNCTION_ALLOWLIST
    abi_tag: ClassVar[int] = 2

    contract: str
    selectors: tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, "contract", normalize_address(self.contract, "contract"))
        if isinstance(self.selectors, str):
            raise ValidationError("selectors must be a list", field="selectors")
        normalized = _dedupe(normalize_selector(s) for s in self.selectors)
        if not normalized:
            raise ValidationError(
                "Function allowlist must contain at least one selector", field="selectors"
            )
        object.__setattr__(self, "selectors", normalized)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.rule_type.value,
            "contract": self.contract,
            "selectors": list(self.selectors),
        }


@dataclass(frozen=True)
class TimeWindow:
    """Active window in unix seconds, ``valid_after`` inclusive and ``valid_until`` exclusive."""

    rule_type: ClassVar[RuleType] = RuleType.TIME_WINDOW
    abi_tag: ClassVar[int] = 3

    valid_after: int
    valid_until: int

    def __post_init__(self):
        valid_after = parse_uint(self.valid_after, "validAfter", bits=48)
        valid_until = parse_uint(self.valid_until, "validUntil", bits=48)
        if valid_after >= valid_until:
            raise ValidationError("validAfter must be before validUntil", field="validAfter")
        object.__setattr__(self, "valid_after", valid_after)
        object.__setattr__(self, "valid_until", valid_until)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.rule_type.value,
            "validAfter": self.valid_after,
            "validUntil": self.valid_until,
        }


@dataclass(frozen=True)
class RateLimit:
    rule_type: ClassVar[RuleType] = RuleType.RATE_LIMIT
    abi_tag: ClassVar[int] = 4

    max_calls: int
    interval_seconds: int

    def __post_init__(self):
        object.__setattr__(
            self, "max_calls", parse_positive_uint(self.max_calls, "maxCalls", bits=32)
        )
        object.__setattr__(
            self,
            "interval_seconds",
            parse_positive_uint(self.interval_seconds, "intervalSeconds", bits=32),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.rule_type.value,
            "maxCalls": self.max_calls,
            "intervalSeconds": self.interval_seconds,
        }


Rule = Union[SpendingLimit, ContractAllowlist, FunctionAllowlist, TimeWindow, RateLimit]

RULE_CLASSES: dict[RuleType, type] = {
    RuleType.SPENDING: SpendingLimit,
    RuleType.CONTRACT_ALLOWLIST: ContractAllowlist,
    RuleType.FUNCTION_ALLOWLIST: FunctionAllowlist,
    RuleType.TIME_WINDOW: TimeWindow,
    RuleType.RATE_LIMIT: RateLimit,
}


def coerce_rule_type(value: Any) -> RuleType:
    if isinstance(value, RuleType):
        return value
    try:
        return RuleType(value)
    except ValueError as e:
        raise ValidationError(f"Unknown rule type: {value}", field="type") from e


# ── Rate limits ──────────────────────────────────────────────────

def create_rate_limit(max_calls: int, interval_seconds: int) -> RateLimit:
    return RateLimit(max_calls=max_calls, interval_seconds=interval_seconds)


def rate_limit_per_minute(max_calls: int) -> RateLimit:
    return create_rate_limit(max_calls, 60)


def rate_limit_per_hour(max_calls: int) -> RateLimit:
    return create_rate_limit(max_calls, 3600)


def rate_limit_per_day(max_calls: int) -> RateLimit:
    return create_rate_limit(max_calls, 86400)


class RateLimitTracker:
    """Sliding-window call counter for a single rate-limit rule."""

    def __init__(self, rate_limit: RateLimit, clock: Callable[[], float] = time.time):
        self.rate_limit = rate_limit
        self._clock = clock
        self._calls: list[float] = []

    def _prune(self) -> None:
        cutoff = self._clock() - self.rate_limit.interval_seconds
        self._calls = [t for t in self._calls if t > cutoff]

    def can_proceed(self) -> bool:
        self._prune()
        return len(self._calls) < self.rate_limit.max_calls

    def record_call(self) -> None:
        if not self.can_proceed():
            raise RateLimitExceededError(
                f"Rate limit exceeded: {self.rate_limit.max_calls} calls "
                f"per {self.rate_limit.interval_seconds}s"
            )
        self._calls.append(self._clock())

    def remaining_calls(self) -> int:
        self._prune()
        return max(0, self.rate_limit.max_calls - len(self._calls))

    def next_available_time(self) -> Optional[float]:
        """Unix time at which another call fits, or None if one fits now."""
        self._prune()
        if len(self._calls) < self.rate_limit.max_calls:
            return None
        return self._calls[0] + self.rate_limit.interval_seconds

    def reset(self) -> None:
        self._calls = []


# ── Time windows ─────────────────────────────────────────────────

def create_time_window(valid_after: int, valid_until: int) -> TimeWindow:
    return TimeWindow(valid_after=valid_after, valid_until=valid_until)


def time_window_from_duration(duration_seconds: int, now: Optional[int] = None) -> TimeWindow:
    if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, (int, float)):
        raise ValidationError("Duration must be a number of seconds", field="duration")
    if duration_seconds <= 0:
        raise ValidationError("Duration must be positive", field="duration")
    start = int(time.time()) if now is None else int(now)
    return TimeWindow(valid_after=start, valid_until=start + int(duration_seconds))


def time_window_from_hours(hours: float, now: Optional[int] = None) -> TimeWindow:
    return time_window_from_duration(int(hours * 3600), now=now)


def time_window_from_days(days: float, now: Optional[int] = None) -> TimeWindow:
    return time_window_from_duration(int(days * 86400), now=now)


def is_time_window_active(window: TimeWindow, now: Optional[int] = None) -> bool:
    current = int(time.time()) if now is None else now
    return window.valid_after <= current < window.valid_until


def time_window_remaining(window: TimeWindow, now: Optional[int] = None) -> int:
    """Seconds of validity left; the full span if the window has not opened yet."""
    current = int(time.time()) if now is None else now
    if current >= window.valid_until:
        return 0
    if current < window.valid_after:
        return window.valid_until - window.valid_after
    return window.valid_until - current


# ── Allowlists ───────────────────────────────────────────────────

def create_contract_allowlist(addresses: Iterable[str]) -> ContractAllowlist:
    return ContractAllowlist(addresses=tuple(addresses))


def create_function_allowlist(contract: str, signatures: Iterable[Any]) -> FunctionAllowlist:
    """Build a function allowlist from raw selectors and/or function signatures."""
    return FunctionAllowlist(contract=contract, selectors=tuple(signatures))


def merge_contract_allowlists(*allowlists: ContractAllowlist) -> ContractAllowlist:
    addresses = [a for allowlist in allowlists for a in allowlist.addresses]
    return create_contract_allowlist(addresses)


def merge_contract_and_function_allowlists(
    contracts: ContractAllowlist,
    functions: Iterable[FunctionAllowlist],
) -> tuple[ContractAllowlist, list[FunctionAllowlist]]:
    """Make sure every contract named by a function allowlist is also an allowed target."""
    functions = list(functions)
    merged = create_contract_allowlist(
        list(contracts.addresses) + [f.contract for f in functions]
    )
    return merged, functions


# ── Spending limits ──────────────────────────────────────────────

def create_spending_limit(
    token: str,
    max_per_transaction: int,
    max_daily: int,
    max_weekly: int,
) -> SpendingLimit:
    return SpendingLimit(
        token=token,
        max_per_transaction=max_per_transaction,
        max_daily=max_daily,
        max_weekly=max_weekly,
    )


def eth_spending_limit(max_per_transaction: int, max_daily: int, max_weekly: int) -> SpendingLimit:
    return create_spending_limit(NATIVE_TOKEN_ADDRESS, max_per_transaction, max_daily, max_weekly)


def usdc_spending_limit(
    max_per_transaction: int,
    max_daily: int,
    max_weekly: int,
    usdc_address: str,
) -> SpendingLimit:
    return create_spending_limit(usdc_address, max_per_transaction, max_daily, max_weekly)


# ── Serialization ────────────────────────────────────────────────

def rule_to_dict(rule: Rule) -> dict[str, Any]:
    return rule.to_dict()


def rule_from_dict(data: Mapping[str, Any]) -> Rule:
    """Build a rule from its JSON form (camelCase keys, uint256 values as decimal strings)."""
    if not isinstance(data, Mapping):
        raise ValidationError("Rule must be an object", field="type")
    rule_type = coerce_rule_type(data.get("type"))
    try:
        if rule_type is RuleType.SPENDING:
            return SpendingLimit(
                token=data.get("token", data.get("tokenAddress")),
                max_per_transaction=data.get("maxPerTransaction", 0),
                max_daily=data.get("maxDaily", 0),
                max_weekly=data.get("maxWeekly", 0),
            )
        if rule_type is RuleType.CONTRACT_ALLOWLIST:
            return ContractAllowlist(addresses=tuple(data["addresses"]))
        if rule_type is RuleType.FUNCTION_ALLOWLIST:
            return FunctionAllowlist(
                contract=data["contract"],
                selectors=tuple(data.get("selectors", data.get("signatures", ()))),
            )
        if rule_type is RuleType.TIME_WINDOW:
            return TimeWindow(valid_after=data["validAfter"], valid_until=data["validUntil"])
        return RateLimit(max_calls=data["maxCalls"], interval_seconds=data["intervalSeconds"])
    except KeyError as e:
        field_name = e.args[0]
        raise ValidationError(f"{rule_type.value} rule is missing {field_name}", field=field_name) from e
