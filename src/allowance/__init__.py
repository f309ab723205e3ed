"""
Allowance: bounded spending for AI agents.

Composable policies become on-chain module payloads and the
off-chain budgets that gate x402 pay-per-call requests.
"""

__version__ = "0.1.0"

from .rules import (
    ContractAllowlist,
    FunctionAllowlist,
    RateLimit,
    RateLimitTracker,
    RuleType,
    SpendingLimit,
    TimeWindow,
)
from .policy import (
    Operator,
    Policy,
    compose_policy,
    decode_policy,
    encode_policy,
    extend_policy,
    intersect_policies,
    union_policies,
)
from .onchain import AgentPolicy, X402Budget, agent_policy_from_rules
from .budget import BudgetBook, BudgetPolicy, BudgetTracker, PaymentRecord
from .signer import Authorization, AuthorizationSigner, sign_authorization, verify_authorization
from .x402 import PaymentRequirement, build_payment_header, parse_payment_header
from .x402_client import HandshakeState, X402Config, X402PaymentClient, X402PaymentResult
from .policy_store import PolicyStore
from .audit import AuditTrail, EventType

__all__ = [
    "SpendingLimit", "ContractAllowlist", "FunctionAllowlist", "TimeWindow", "RateLimit",
    "RateLimitTracker", "RuleType",
    "Operator", "Policy", "compose_policy", "encode_policy", "decode_policy",
    "extend_policy", "intersect_policies", "union_policies",
    "AgentPolicy", "X402Budget", "agent_policy_from_rules",
    "BudgetBook", "BudgetPolicy", "BudgetTracker", "PaymentRecord",
    "Authorization", "AuthorizationSigner", "sign_authorization", "verify_authorization",
    "PaymentRequirement", "build_payment_header", "parse_payment_header",
    "HandshakeState", "X402Config", "X402PaymentClient", "X402PaymentResult",
    "PolicyStore", "AuditTrail", "EventType",
]
