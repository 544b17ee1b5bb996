"""Tamper-evident append-only audit log.

A JSONL file where each record carries:
- prev_hash: entry_hash of the previous record (hex)
- event_hash: SHA256 of the canonical event JSON (hex)
- entry_hash: SHA256(prev_hash || event_hash || ts) (hex)
- signature_b64: Ed25519 signature over the length-prefixed payload

Editing, deleting or reordering a record breaks the chain and is detected
by `verify_file`. This does not protect against an attacker who controls
both the host and the signing key.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .canonical import canonical_json_dumps, now_iso, safe_hash_encode, sha256_hex
from .crypto import TrustedKeyStore
from .signing import Signer, coerce_signer

logger = logging.getLogger("agent_authz.audit_log")

AUDIT_VERSION = "AUTHZ_AUDIT_V1"
GENESIS = "0" * 64


@dataclass
class AuditLogRecord:
    version: str
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str
    key_id: str
    signature_b64: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _signature_payload(ts: str, prev_hash: str, event_hash: str, entry_hash: str) -> bytes:
    return safe_hash_encode([AUDIT_VERSION, ts, prev_hash, event_hash, entry_hash])


class TamperEvidentAuditLog:
    """Append-only signed hash chain on disk."""

    def __init__(self, path: str, signer: Any, *, fsync: bool = True):
        self.path = str(path)
        self.signer: Signer = coerce_signer(signer)
        self.fsync = fsync
        self._lock = threading.Lock()
        self._last_hash = GENESIS

        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.exists() and p.stat().st_size > 0:
            last_line = self._read_last_line(p)
            try:
                rec = json.loads(last_line)
            except json.JSONDecodeError:
                logger.warning("Audit log %s ends in an unreadable record; verify_file will flag it", self.path)
            else:
                self._last_hash = str(rec.get("entry_hash", GENESIS))

    @property
    def last_hash(self) -> str:
        return self._last_hash

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            if end == 0:
                return ""
            pos = max(0, end - 65536)
            f.seek(pos)
            lines = f.read(end - pos).splitlines()
            return lines[-1].decode("utf-8") if lines else ""

    def append_event(self, event: Dict[str, Any], ts_utc: Optional[str] = None) -> AuditLogRecord:
        ts = ts_utc or now_iso()
        event_hash = sha256_hex(canonical_json_dumps(event).encode("utf-8"))
        with self._lock:
            prev = self._last_hash
            entry_hash = sha256_hex(safe_hash_encode([prev, event_hash, ts]))
            sig = self.signer.sign(_signature_payload(ts, prev, event_hash, entry_hash))
            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                ts_utc=ts,
                prev_hash=prev,
                event=event,
                event_hash=event_hash,
                entry_hash=entry_hash,
                key_id=self.signer.key_id,
                signature_b64=base64.b64encode(sig).decode("ascii"),
            )
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")
                if self.fsync:
                    f.flush()
                    os.fsync(f.fileno())
            self._last_hash = entry_hash
        return rec

    @staticmethod
    def verify_file(path: str, trusted_keys: TrustedKeyStore) -> Tuple[bool, str, int]:
        """Verify chain and signatures. Returns (ok, reason, records_checked)."""
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev = GENESIS
        count = 0
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    return False, "PARSE_ERROR", count
                if not isinstance(rec, dict):
                    return False, "PARSE_ERROR", count
                if rec.get("version") != AUDIT_VERSION:
                    return False, f"BAD_VERSION:{rec.get('version')}", count
                ts = str(rec.get("ts_utc"))
                prev_hash = str(rec.get("prev_hash"))
                if prev_hash != prev:
                    return False, "CHAIN_BROKEN", count
                event = rec.get("event")
                if not isinstance(event, dict):
                    return False, "BAD_EVENT", count
                event_hash = sha256_hex(canonical_json_dumps(event).encode("utf-8"))
                if event_hash != str(rec.get("event_hash")):
                    return False, "EVENT_HASH_MISMATCH", count
                expected_entry = sha256_hex(safe_hash_encode([prev_hash, event_hash, ts]))
                if expected_entry != str(rec.get("entry_hash")):
                    return False, "ENTRY_HASH_MISMATCH", count
                try:
                    sig = base64.b64decode(str(rec.get("signature_b64")), validate=True)
                except (binascii.Error, ValueError):
                    return False, "BAD_SIGNATURE_ENCODING", count
                payload = _signature_payload(ts, prev_hash, event_hash, expected_entry)
                if not trusted_keys.verify_signature(str(rec.get("key_id")), payload, sig, signed_at_utc=ts or None):
                    return False, "INVALID_SIGNATURE", count
                prev = expected_entry
        return True, "OK", count
