"""
Audit trail for policy and payment decisions.

Every entry is one JSON line whose ``event_hash`` is an HMAC over the
previous entry's hash and the entry itself, so editing, dropping or
reordering lines breaks the chain on the next read. Amounts are
decimal strings of token base units.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import allowance_home, ensure_private_dir, ensure_private_file, file_lock


AUDIT_KEY_ENV = "ALLOWANCE_AUDIT_HMAC_KEY"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    POLICY_COMPOSED = "policy_composed"
    SPENDING_CHECK = "spending_check"
    SPENDING_DENIED = "spending_denied"
    AUTHORIZATION_SIGNED = "authorization_signed"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_REJECTED = "payment_rejected"


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    agent: Optional[str] = None
    policy_id: Optional[str] = None
    amount: Optional[str] = None
    asset: Optional[str] = None
    resource: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "AuditEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, separators=(",", ":"))


class AuditTrail:
    """Append-only, HMAC-chained JSONL log shared safely between processes."""

    def __init__(self, path: Optional[Path] = None, key_path: Optional[Path] = None):
        home = allowance_home()
        self.path = path or home / "audit.jsonl"
        self.key_path = key_path or home / "secrets" / "audit_hmac.key"
        self._lock_path = self.path.with_name(self.path.name + ".lock")

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        self._key = self._load_key()

    def _load_key(self) -> bytes:
        from_env = os.getenv(AUDIT_KEY_ENV)
        if from_env:
            return from_env.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _digest(self, payload: dict[str, Any], prev_hash: str) -> str:
        body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{body}".encode(), hashlib.sha256).hexdigest()

    def _tail_hash(self) -> str:
        tail = ""
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    tail = json.loads(line).get("event_hash", "")
        return tail

    def _verified(self) -> Iterator[dict[str, Any]]:
        """Yield raw entries in order, raising as soon as the chain breaks."""
        expected_prev = ""
        with open(self.path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                raw = json.loads(line)
                prev_hash = raw.get("prev_hash") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError(f"Audit chain broken: previous hash mismatch at line {lineno}")
                payload = {k: v for k, v in raw.items() if k not in _CHAIN_FIELDS}
                if not hmac.compare_digest(self._digest(payload, prev_hash), raw.get("event_hash") or ""):
                    raise RuntimeError(f"Audit chain broken: event hash mismatch at line {lineno}")
                expected_prev = raw["event_hash"]
                yield raw

    def log(
        self,
        event_type: EventType,
        agent: Optional[str] = None,
        policy_id: Optional[str] = None,
        amount: Optional[int] = None,
        asset: Optional[str] = None,
        resource: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "agent": agent,
            "policy_id": policy_id,
            "amount": None if amount is None else str(amount),
            "asset": asset,
            "resource": resource,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in payload.items() if v is not None}

        with file_lock(self._lock_path):
            prev_hash = self._tail_hash()
            event = AuditEvent(**payload, prev_hash=prev_hash or None, event_hash=self._digest(payload, prev_hash))
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
        return event

    def verify(self) -> int:
        """Check the whole chain; returns the number of entries."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        agent: Optional[str] = None,
        event_type: Optional[EventType] = None,
        policy_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent matching events, oldest first. The full chain is verified."""
        events = []
        for raw in self._verified():
            if agent and (raw.get("agent") or "").lower() != agent.lower():
                continue
            if event_type and raw.get("event_type") != event_type.value:
                continue
            if policy_id and (raw.get("policy_id") or "").lower() != policy_id.lower():
                continue
            events.append(AuditEvent.from_raw(raw))
        return events[-limit:] if limit else events

    def summary(self, agent: Optional[str] = None) -> dict:
        events = self.read_events(agent=agent, limit=0)
        by_type: dict[str, int] = {}
        settled: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
            if e.event_type == EventType.PAYMENT_SETTLED.value and e.amount and e.asset:
                settled[e.asset] = settled.get(e.asset, 0) + int(e.amount)
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "settled": {asset: str(total) for asset, total in settled.items()},
            "last_event": events[-1].to_json() if events else None,
        }
