"""Tests for local policy persistence."""

import json

import pytest

from allowance.errors import NotFoundError
from allowance.policy import Operator, compose_policy
from allowance.policy_store import PolicyStore
from allowance.rules import ContractAllowlist, SpendingLimit, TimeWindow


USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
TARGET = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def store(tmp_path):
    return PolicyStore(tmp_path / "policies")


@pytest.fixture
def policy():
    return compose_policy(
        [
            SpendingLimit(token=USDC, max_per_transaction=1_000_000, max_daily=5_000_000),
            ContractAllowlist(addresses=(TARGET,)),
            TimeWindow(valid_after=1_700_000_000, valid_until=1_800_000_000),
        ],
        Operator.AND,
    )


def test_save_and_get(store, policy):
    policy_id = store.save(policy)
    assert policy_id == policy.id
    assert store.get(policy.id) == policy
    assert policy.id in store


def test_get_accepts_unprefixed_id(store, policy):
    store.save(policy)
    assert store.get(policy.id[2:]) == policy


def test_missing_policy(store):
    with pytest.raises(NotFoundError, match="Policy not found"):
        store.get("0x" + "ab" * 32)


def test_list_and_delete(store, policy):
    other = compose_policy([ContractAllowlist(addresses=(TARGET,))], Operator.OR)
    store.save(policy)
    store.save(other)
    assert {p.id for p in store.list()} == {policy.id, other.id}

    store.delete(other.id)
    assert [p.id for p in store.list()] == [policy.id]
    with pytest.raises(NotFoundError):
        store.delete(other.id)


def test_tampered_file_rejected(store, policy, tmp_path):
    store.save(policy)
    path = tmp_path / "policies" / f"{policy.id[2:]}.json"
    raw = json.loads(path.read_text())
    raw["rules"][0]["maxDaily"] = "999999999"
    path.write_text(json.dumps(raw))

    with pytest.raises(ValueError, match="failed verification"):
        store.get(policy.id)


def test_files_are_private(store, policy, tmp_path):
    store.save(policy)
    path = tmp_path / "policies" / f"{policy.id[2:]}.json"
    assert path.stat().st_mode & 0o777 == 0o600
