"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from allowance.audit import AUDIT_KEY_ENV, AuditTrail, EventType


AGENT = "0x3333333333333333333333333333333333333333"


@pytest.fixture
def trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(trail, tmp_path):
    trail.log(EventType.POLICY_COMPOSED, policy_id="0xabc", success=True)
    trail.log(EventType.PAYMENT_SETTLED, agent=AGENT, amount=500_000, success=True)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    second = json.loads(lines[1])
    second["amount"] = "9999"
    lines[1] = json.dumps(second, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_deleted_event_breaks_chain(trail, tmp_path):
    for i in range(3):
        trail.log(EventType.SPENDING_CHECK, agent=AGENT, amount=i)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_survives_reopen(trail, tmp_path):
    trail.log(EventType.POLICY_COMPOSED, policy_id="0x1")
    reopened = AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )
    reopened.log(EventType.POLICY_COMPOSED, policy_id="0x2")
    assert [e.policy_id for e in reopened.read_events()] == ["0x1", "0x2"]


def test_amounts_stored_as_decimal_strings(trail):
    event = trail.log(EventType.AUTHORIZATION_SIGNED, agent=AGENT, amount=2**100)
    assert event.amount == str(2**100)
    assert trail.read_events()[0].amount == str(2**100)


def test_filters_and_limit(trail):
    other = "0x4444444444444444444444444444444444444444"
    trail.log(EventType.SPENDING_CHECK, agent=AGENT, amount=1)
    trail.log(EventType.SPENDING_DENIED, agent=AGENT, amount=2, success=False, reason="over")
    trail.log(EventType.SPENDING_CHECK, agent=other, amount=3)

    assert len(trail.read_events(agent=AGENT.upper().replace("0X", "0x"))) == 2
    assert len(trail.read_events(event_type=EventType.SPENDING_CHECK)) == 2
    assert [e.amount for e in trail.read_events(limit=1)] == ["3"]


def test_summary(trail):
    trail.log(EventType.SPENDING_CHECK, agent=AGENT, amount=1)
    trail.log(EventType.SPENDING_DENIED, agent=AGENT, amount=2, success=False)
    summary = trail.summary(agent=AGENT)
    assert summary["total_events"] == 2
    assert summary["failures"] == 1
    assert summary["by_type"] == {"spending_check": 1, "spending_denied": 1}


def test_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(AUDIT_KEY_ENV, "shared-secret")
    trail = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "k")
    trail.log(EventType.POLICY_COMPOSED, policy_id="0x1")
    assert not (tmp_path / "secret" / "k").exists()

    monkeypatch.setenv(AUDIT_KEY_ENV, "different-secret")
    other = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "k")
    with pytest.raises(RuntimeError, match="event hash mismatch"):
        other.read_events()


def test_verify_counts_entries(trail):
    assert trail.verify() == 0
    trail.log(EventType.POLICY_COMPOSED, policy_id="0x1")
    trail.log(EventType.POLICY_COMPOSED, policy_id="0x2")
    assert trail.verify() == 2


def test_policy_filter(trail):
    trail.log(EventType.POLICY_COMPOSED, policy_id="0xAB")
    trail.log(EventType.POLICY_COMPOSED, policy_id="0xcd")
    assert [e.policy_id for e in trail.read_events(policy_id="0xab")] == ["0xAB"]


def test_summary_totals_settled_amounts(trail):
    asset = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
    trail.log(EventType.PAYMENT_SETTLED, agent=AGENT, amount=1_000_000, asset=asset)
    trail.log(EventType.PAYMENT_SETTLED, agent=AGENT, amount=2**70, asset=asset)
    trail.log(EventType.PAYMENT_REJECTED, agent=AGENT, amount=5, asset=asset, success=False)
    assert trail.summary()["settled"] == {asset: str(1_000_000 + 2**70)}
