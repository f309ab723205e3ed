"""Composed-policy persistence with integrity verification on load."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from .errors import NotFoundError, ValidationError
from .policy import Policy
from .storage import allowance_home, child_path, ensure_private_dir, file_lock, write_json_atomic

logger = logging.getLogger(__name__)


class PolicyStore:
    """One JSON document per policy, named by policy id.

    A stored policy is recomposed on every load; if its rules no longer
    hash to the recorded id the file has been edited and is rejected.
    """

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or allowance_home() / "policies"
        ensure_private_dir(self.base_dir)
        self._lock_path = self.base_dir / ".lock"

    def _path_for(self, policy_id: str) -> Path:
        key = policy_id.strip().lower()
        if key.startswith("0x"):
            key = key[2:]
        return child_path(self.base_dir, key, ".json")

    def _load(self, path: Path) -> Policy:
        with open(path, encoding="utf-8") as f:
            document = json.load(f)
        try:
            return Policy.from_dict(document)
        except ValidationError as e:
            raise ValueError(f"Stored policy {path.stem} failed verification: {e}") from e

    def save(self, policy: Policy) -> str:
        """Persist ``policy`` and return its id. Re-saving a policy rewrites the same file."""
        path = self._path_for(policy.id)
        with file_lock(self._lock_path):
            write_json_atomic(path, policy.to_dict())
        logger.debug("Stored policy %s at %s", policy.id, path)
        return policy.id

    def get(self, policy_id: str) -> Policy:
        path = self._path_for(policy_id)
        with file_lock(self._lock_path):
            if not path.exists():
                raise NotFoundError(f"Policy not found: {policy_id}")
            return self._load(path)

    def list(self) -> list[Policy]:
        with file_lock(self._lock_path):
            return [self._load(path) for path in sorted(self.base_dir.glob("*.json"))]

    def delete(self, policy_id: str) -> None:
        path = self._path_for(policy_id)
        with file_lock(self._lock_path):
            if not path.exists():
                raise NotFoundError(f"Policy not found: {policy_id}")
            path.unlink()

    def __contains__(self, policy_id: str) -> bool:
        return self._path_for(policy_id).exists()
