"""Tests for policy composition, encoding and identity."""

from dataclasses import replace

import pytest
from eth_abi import decode
from eth_utils import keccak

from allowance.errors import ValidationError
from allowance.policy import (
    Operator,
    Policy,
    compose_policy,
    decode_policy,
    encode_policy,
    encode_rule,
    extend_policy,
    get_rules_by_type,
    intersect_policies,
    remove_rules_by_type,
    union_policies,
)
from allowance.rules import (
    ContractAllowlist,
    FunctionAllowlist,
    RateLimit,
    RuleType,
    SpendingLimit,
    TimeWindow,
    create_spending_limit,
)


USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
TARGET_A = "0x1111111111111111111111111111111111111111"
TARGET_B = "0x2222222222222222222222222222222222222222"

SPENDING = SpendingLimit(
    token=USDC, max_per_transaction=1_000_000, max_daily=10_000_000, max_weekly=50_000_000
)
CONTRACTS = ContractAllowlist(addresses=(TARGET_A,))
FUNCTIONS = FunctionAllowlist(contract=USDC, selectors=("transfer(address,uint256)",))
WINDOW = TimeWindow(valid_after=1_700_000_000, valid_until=1_800_000_000)
RATE = RateLimit(max_calls=10, interval_seconds=3600)


@pytest.fixture
def spending():
    return create_spending_limit(USDC, 1_000_000, 10_000_000, 50_000_000)


@pytest.fixture
def allowlist():
    return ContractAllowlist(addresses=(TARGET_A,))


@pytest.fixture
def every_rule(spending, allowlist):
    return [
        spending,
        allowlist,
        FunctionAllowlist(contract=USDC, selectors=("transfer(address,uint256)",)),
        TimeWindow(valid_after=1_700_000_000, valid_until=1_800_000_000),
        RateLimit(max_calls=10, interval_seconds=3600),
    ]


class TestCompose:
    def test_empty_policy_rejected(self):
        with pytest.raises(ValidationError, match="Cannot compose an empty policy"):
            compose_policy([])

    def test_id_is_deterministic(self, spending, allowlist):
        a = compose_policy([spending, allowlist])
        b = compose_policy([spending, allowlist])
        assert a.id == b.id
        assert a == b

    def test_id_format(self, spending):
        policy = compose_policy([spending])
        assert policy.id.startswith("0x")
        assert len(policy.id) == 66
        assert policy.id == "0x" + keccak(policy.encoded).hex()

    def test_order_changes_id(self, spending, allowlist):
        assert compose_policy([spending, allowlist]).id != compose_policy([allowlist, spending]).id

    def test_operator_changes_id(self, spending):
        assert compose_policy([spending], "AND").id != compose_policy([spending], "OR").id

    @pytest.mark.parametrize(
        "rule, changed",
        [
            pytest.param(SPENDING, replace(SPENDING, token=TARGET_A), id="spending-token"),
            pytest.param(SPENDING, replace(SPENDING, max_per_transaction=2_000_000), id="spending-per-tx"),
            pytest.param(SPENDING, replace(SPENDING, max_daily=20_000_000), id="spending-daily"),
            pytest.param(SPENDING, replace(SPENDING, max_weekly=60_000_000), id="spending-weekly"),
            pytest.param(CONTRACTS, replace(CONTRACTS, addresses=(TARGET_B,)), id="contracts-address"),
            pytest.param(CONTRACTS, replace(CONTRACTS, addresses=(TARGET_A, TARGET_B)), id="contracts-extra"),
            pytest.param(FUNCTIONS, replace(FUNCTIONS, contract=TARGET_A), id="functions-contract"),
            pytest.param(
                FUNCTIONS, replace(FUNCTIONS, selectors=("approve(address,uint256)",)), id="functions-selector"
            ),
            pytest.param(WINDOW, replace(WINDOW, valid_after=1_700_000_001), id="window-after"),
            pytest.param(WINDOW, replace(WINDOW, valid_until=1_800_000_001), id="window-until"),
            pytest.param(RATE, replace(RATE, max_calls=11), id="rate-calls"),
            pytest.param(RATE, replace(RATE, interval_seconds=60), id="rate-interval"),
        ],
    )
    def test_any_field_change_changes_id(self, rule, changed):
        assert rule != changed
        assert compose_policy([rule]).id != compose_policy([changed]).id
        assert compose_policy([SPENDING, rule]).id != compose_policy([SPENDING, changed]).id

    def test_string_operator_accepted(self, spending):
        assert compose_policy([spending], "or").operator is Operator.OR

    def test_invalid_operator(self, spending):
        with pytest.raises(ValidationError):
            compose_policy([spending], "XOR")


class TestEncoding:
    def test_round_trip_every_rule(self, every_rule):
        policy = compose_policy(every_rule, Operator.OR)
        rules, operator = decode_policy(policy.encoded)
        assert tuple(rules) == policy.rules
        assert operator is Operator.OR

    @pytest.mark.parametrize(
        "rules",
        [
            pytest.param([SPENDING], id="spending"),
            pytest.param([WINDOW], id="window"),
            pytest.param([CONTRACTS, FUNCTIONS], id="allowlists"),
            pytest.param([RATE, SPENDING], id="rate-spending"),
            pytest.param([SPENDING, CONTRACTS, WINDOW], id="spending-contracts-window"),
            pytest.param([FUNCTIONS, RATE, CONTRACTS], id="functions-rate-contracts"),
        ],
    )
    @pytest.mark.parametrize("operator", [Operator.AND, Operator.OR])
    def test_round_trip_small_policies(self, rules, operator):
        policy = compose_policy(rules, operator)
        decoded, decoded_operator = decode_policy(policy.encoded)
        assert len(decoded) == len(rules)
        assert [r.rule_type for r in decoded] == [r.rule_type for r in rules]
        assert tuple(decoded) == tuple(rules)
        assert decoded_operator is operator
        assert compose_policy(decoded, decoded_operator).id == policy.id

    def test_decode_from_hex(self, every_rule):
        policy = compose_policy(every_rule)
        assert Policy.from_encoded(policy.encoded_hex) == policy

    def test_head_layout(self, spending):
        encoded = encode_policy([spending], Operator.OR)
        flag, rules = decode(["uint8", "bytes[]"], encoded)
        assert flag == 1
        assert rules == (encode_rule(spending),)

    def test_spending_rule_layout(self, spending):
        tag, per_tx, daily, weekly, token = decode(
            ["uint8", "uint256", "uint256", "uint256", "address"], encode_rule(spending)
        )
        assert (tag, per_tx, daily, weekly) == (0, 1_000_000, 10_000_000, 50_000_000)
        assert token.lower() == USDC

    def test_malformed_bytes(self):
        with pytest.raises(ValidationError):
            decode_policy(b"\x01\x02")

    def test_non_hex_string(self):
        with pytest.raises(ValidationError):
            decode_policy("0xnothex")


class TestDicts:
    def test_round_trip(self, every_rule):
        policy = compose_policy(every_rule)
        assert Policy.from_dict(policy.to_dict()) == policy

    def test_forged_id_rejected(self, spending):
        data = compose_policy([spending]).to_dict()
        data["id"] = "0x" + "00" * 32
        with pytest.raises(ValidationError, match="Policy id mismatch"):
            Policy.from_dict(data)


class TestTransforms:
    def test_extend_keeps_operator(self, spending, allowlist):
        policy = compose_policy([spending], Operator.OR)
        extended = extend_policy(policy, [allowlist])
        assert extended.rules == (spending, allowlist)
        assert extended.operator is Operator.OR

    def test_intersect_and_union(self, spending, allowlist):
        a = compose_policy([spending])
        b = compose_policy([allowlist])
        assert intersect_policies(a, b).operator is Operator.AND
        assert union_policies(a, b).operator is Operator.OR
        assert union_policies(a, b).rules == (spending, allowlist)

    def test_remove_rules_by_type(self, spending, allowlist):
        policy = compose_policy([spending, allowlist])
        trimmed = remove_rules_by_type(policy, RuleType.CONTRACT_ALLOWLIST)
        assert trimmed.rules == (spending,)
        assert trimmed.id != policy.id

    def test_remove_absent_type_is_identity(self, spending):
        policy = compose_policy([spending])
        assert remove_rules_by_type(policy, "rate-limit") is policy

    def test_remove_everything_rejected(self, spending):
        with pytest.raises(ValidationError, match="Cannot remove all rules"):
            remove_rules_by_type(compose_policy([spending]), RuleType.SPENDING)

    def test_get_rules_by_type(self, every_rule):
        policy = compose_policy(every_rule)
        assert get_rules_by_type(policy, RuleType.SPENDING) == [every_rule[0]]
        assert isinstance(get_rules_by_type(policy, "time-window")[0], TimeWindow)

    def test_policy_is_hashable(self, spending):
        policy = compose_policy([spending])
        assert {policy: 1}[compose_policy([spending])] == 1

    def test_spending_limit_equality_after_normalization(self):
        upper = SpendingLimit(token=USDC.upper().replace("0X", "0x"), max_per_transaction=1)
        lower = SpendingLimit(token=USDC, max_per_transaction="1")
        assert compose_policy([upper]).id == compose_policy([lower]).id
