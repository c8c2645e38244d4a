"""
Tamper-evident record of every Leash operation outcome.

Each JSONL line is sealed with an HMAC over the previous line's seal and the
line's own canonical payload. Writers from any number of processes append
under an exclusive ``flock`` on a sidecar lock file, re-reading the chain
head inside the lock, so concurrent CLI invocations extend a single chain.
Entries are keyed by the EIP-712 instruction hash that produced them.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import AuditIntegrityError
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".leash" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".leash-secrets" / "audit_hmac.key"
_SEAL_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    VAULT_INITIALIZED = "vault_initialized"
    PERMISSION_AUTHORIZED = "permission_authorized"
    PERMISSION_REVOKED = "permission_revoked"
    SPEND_COMPLETED = "spend_completed"
    SPEND_DENIED = "spend_denied"
    VAULT_CLOSED = "vault_closed"
    OPERATION_FAILED = "operation_failed"


@dataclass
class AuditEvent:
    """One sealed outcome of one instruction."""

    event_type: str
    timestamp: float
    operation: str
    instruction: Optional[str] = None
    authority: Optional[str] = None
    agent: Optional[str] = None
    account: Optional[str] = None
    amount: Optional[int] = None
    success: bool = True
    dry_run: bool = False
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AuditEvent:
        fields = {k: v for k, v in record.items() if k in cls.__dataclass_fields__}
        if fields.get("amount") is not None:
            fields["amount"] = int(fields["amount"])
        return cls(**fields)

    def to_json(self) -> str:
        record = {k: v for k, v in asdict(self).items() if v is not None}
        if self.amount is not None:
            record["amount"] = str(self.amount)
        return json.dumps(record, separators=(",", ":"))


class AuditTrail:
    """Append-only, HMAC-chained audit log shared by every ledger writer."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = Path(path or DEFAULT_AUDIT_PATH)
        self.key_path = Path(key_path or DEFAULT_AUDIT_KEY_PATH)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

        for directory in {self.path.parent, self.key_path.parent}:
            ensure_private_dir(directory)
        for private in (self.path, self.lock_path, self.key_path):
            ensure_private_file(private)

        self._key = self._hmac_key()

    def _hmac_key(self) -> bytes:
        configured = os.getenv("LEASH_AUDIT_HMAC_KEY")
        if configured:
            return configured.encode()
        with self._chain_lock():
            stored = self.key_path.read_bytes().strip()
            if not stored:
                stored = secrets.token_hex(32).encode()
                self.key_path.write_bytes(stored)
        return stored

    @contextmanager
    def _chain_lock(self) -> Iterator[None]:
        with open(self.lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _seal(self, record: dict[str, Any], prev_hash: str) -> str:
        body = {k: v for k, v in record.items() if k not in _SEAL_FIELDS}
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def _chain_head(self) -> str:
        """Seal of the last line on disk; the caller holds the chain lock."""
        head = ""
        with open(self.path, "rb") as f:
            for line in f:
                if line.strip():
                    head = json.loads(line).get("event_hash", "")
        return head

    def log(
        self,
        event_type: EventType,
        operation: str,
        instruction: Optional[str] = None,
        authority: Optional[str] = None,
        agent: Optional[str] = None,
        account: Optional[str] = None,
        amount: Optional[int] = None,
        success: bool = True,
        dry_run: bool = False,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            operation=operation,
            instruction=instruction,
            authority=authority,
            agent=agent,
            account=account,
            amount=amount,
            success=success,
            dry_run=dry_run,
            reason=reason,
            details=details,
        )
        with self._chain_lock():
            prev_hash = self._chain_head()
            record = json.loads(event.to_json())
            event.prev_hash = prev_hash or None
            event.event_hash = self._seal(record, prev_hash)
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
        return event

    def _verified_records(self) -> Iterator[dict[str, Any]]:
        expected_prev = ""
        with open(self.path, "r") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    raise AuditIntegrityError(line_no, f"unreadable entry ({e})") from e
                prev_hash = record.get("prev_hash") or ""
                if prev_hash != expected_prev:
                    raise AuditIntegrityError(line_no, "previous hash mismatch")
                if not hmac.compare_digest(self._seal(record, prev_hash), record.get("event_hash") or ""):
                    raise AuditIntegrityError(line_no, "event hash mismatch")
                expected_prev = record["event_hash"]
                yield record

    def verify(self) -> int:
        """Walk the whole chain and return the number of sealed events."""
        return sum(1 for _ in self._verified_records())

    def read_events(
        self,
        account: Optional[str] = None,
        event_type: Optional[EventType] = None,
        instruction: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return matching events, oldest first; the full chain is always verified."""
        matched = []
        for record in self._verified_records():
            if account and record.get("account") != account:
                continue
            if event_type and record.get("event_type") != event_type.value:
                continue
            if instruction and record.get("instruction") != instruction:
                continue
            matched.append(AuditEvent.from_record(record))
        return matched[-limit:] if limit else matched

    def summary(self, account: Optional[str] = None) -> dict:
        events = self.read_events(account=account, limit=0)
        by_operation: dict[str, int] = {}
        for event in events:
            by_operation[event.operation] = by_operation.get(event.operation, 0) + 1
        committed = [e for e in events if e.success and not e.dry_run]
        return {
            "total_events": len(events),
            "by_operation": by_operation,
            "failures": sum(1 for e in events if not e.success),
            "spent": sum(e.amount or 0 for e in committed if e.event_type == EventType.SPEND_COMPLETED.value),
            "last_event": events[-1] if events else None,
        }
