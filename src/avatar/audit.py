"""
Audit trail for wallet operations.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .storage import avatar_dir, ensure_private_dir, ensure_private_file, secrets_dir


AUDIT_KEY_ENV = "AVATAR_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    WALLET_ACTIVATED = "wallet_activated"
    BATCH_SIGNED = "batch_signed"
    BATCH_SUBMITTED = "batch_submitted"
    BATCH_EXECUTED = "batch_executed"
    BATCH_FAILED = "batch_failed"
    MODULE_CHANGED = "module_changed"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    wallet: Optional[str] = None
    digest: Optional[str] = None
    actor: Optional[str] = None
    nonce: Optional[int] = None
    fee_amount: Optional[int] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or avatar_dir() / "audit.jsonl"
        self.key_path = key_path or secrets_dir() / "audit_hmac.key"

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    last = json.loads(line).get("event_hash", "")
        return last

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        wallet: Optional[str] = None,
        digest: Optional[str] = None,
        actor: Optional[str] = None,
        nonce: Optional[int] = None,
        fee_amount: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "wallet": wallet,
            "digest": digest,
            "actor": actor,
            "nonce": nonce,
            "fee_amount": fee_amount,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}
        prev_hash = self._last_hash
        current_hash = self._event_hash(payload, prev_hash)

        event = AuditEvent(
            **payload,
            prev_hash=prev_hash or None,
            event_hash=current_hash,
        )

        with open(self.path, "a") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._last_hash = current_hash
        return event

    def read_events(
        self,
        wallet: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
        digest: Optional[str] = None,
    ) -> list[AuditEvent]:
        """Read events oldest-first, verifying the whole chain on the way.

        ``digest`` selects the events of one signed batch (hex, any case,
        with or without ``0x``).
        """
        if digest is not None:
            digest = "0x" + digest.lower().removeprefix("0x")
        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if wallet and (raw.get("wallet") or "").lower() != wallet.lower():
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue
                if digest and (raw.get("digest") or "").lower() != digest:
                    continue
                events.append(
                    AuditEvent(**{k: v for k, v in raw.items() if k in AuditEvent.__dataclass_fields__})
                )

        self._last_hash = expected_prev
        return events[-limit:]

    def batch_status(self, digest: str) -> Optional[str]:
        """Latest outcome recorded for a batch: executed, failed, submitted or signed."""
        outcomes = {
            EventType.BATCH_EXECUTED.value: "executed",
            EventType.BATCH_FAILED.value: "failed",
            EventType.BATCH_SUBMITTED.value: "submitted",
            EventType.BATCH_SIGNED.value: "signed",
        }
        events = self.read_events(digest=digest, limit=10000)
        if any(e.event_type == EventType.BATCH_EXECUTED.value for e in events):
            return "executed"
        for event in reversed(events):
            if event.event_type in outcomes:
                return outcomes[event.event_type]
        return None

    def summary(self, wallet: Optional[str] = None) -> dict:
        events = self.read_events(wallet=wallet, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
