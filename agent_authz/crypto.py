"""Ed25519 key material, trusted key registry and signed reviewer approvals.

The core never holds reviewer private keys. Reviewers (humans behind an
approval UI, an HSM-backed approval bot, ...) sign their verdicts with their
own keys; the core only verifies them against a registry of trusted public
keys. Even a fully compromised agent cannot forge an approval.

Receipt signing keys live behind the `signing.Signer` seam.
"""

from __future__ import annotations

import base64
import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .canonical import now_utc, parse_iso_utc, safe_hash_encode


@dataclass
class Ed25519KeyPair:
    """Ed25519 key pair; `private_key_bytes` is None for verify-only keys."""

    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        return cls.from_seed(
            Ed25519PrivateKey.generate().private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            ),
            key_id,
        )

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        raw = bytes.fromhex(public_key_hex)
        if len(raw) != 32:
            raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
        return cls(key_id=key_id, public_key_bytes=raw)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        """Create a signing key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=bytes(seed))

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        return Ed25519PrivateKey.from_private_bytes(self.private_key_bytes).sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            Ed25519PublicKey.from_public_bytes(self.public_key_bytes).verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False


def create_key_pair(key_id: str) -> Ed25519KeyPair:
    return Ed25519KeyPair.generate(key_id)


def load_key_pair_from_env(
    *,
    key_env: str = "AUTHZ_SIGNING_KEY",
    key_id_env: str = "AUTHZ_SIGNING_KEY_ID",
    file_env: str = "AUTHZ_SIGNING_KEY_FILE",
) -> Optional[Ed25519KeyPair]:
    """Load the receipt signing key from a hex seed in env or a key file.

    Key file format: {"key_id": "...", "private_key_hex": "<64 hex>"}.
    Returns None when nothing is configured; raises on malformed material.
    """
    seed_hex = (os.getenv(key_env, "") or "").strip()
    key_id = (os.getenv(key_id_env, "") or "").strip() or "authz"
    if seed_hex:
        return Ed25519KeyPair.from_seed(bytes.fromhex(seed_hex), key_id)

    path = (os.getenv(file_env, "") or "").strip()
    if path:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict) or "private_key_hex" not in data:
            raise ValueError(f"{file_env} must contain a JSON object with private_key_hex")
        return Ed25519KeyPair.from_seed(bytes.fromhex(str(data["private_key_hex"])), str(data.get("key_id") or key_id))
    return None


@dataclass
class TrustedKeyRecord:
    key_id: str
    keypair: Ed25519KeyPair
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None


@dataclass
class TrustedKeyStore:
    """Public keys trusted to sign approvals, receipts and audit records.

    Supports rotation (several active keys), absolute revocation and
    optional not_before/not_after windows checked against the artifact's
    signing time. Only public keys belong here.
    """

    records: Dict[str, TrustedKeyRecord] = field(default_factory=dict)
    revoked_key_ids: Set[str] = field(default_factory=set)

    def add_public_key(
        self,
        key_id: str,
        public_key_hex: str,
        *,
        not_before_utc: Optional[str] = None,
        not_after_utc: Optional[str] = None,
    ) -> None:
        self.records[key_id] = TrustedKeyRecord(
            key_id=key_id,
            keypair=Ed25519KeyPair.from_public_key(key_id, public_key_hex),
            not_before=parse_iso_utc(not_before_utc),
            not_after=parse_iso_utc(not_after_utc),
        )

    def revoke_key(self, key_id: str) -> None:
        self.revoked_key_ids.add(str(key_id))

    def list_key_ids(self) -> List[str]:
        return sorted(self.records.keys())

    def verify_signature_detailed(
        self,
        key_id: str,
        message: bytes,
        signature: bytes,
        *,
        signed_at_utc: Optional[str] = None,
    ) -> Tuple[bool, Dict[str, Any]]:
        kid = str(key_id)
        info: Dict[str, Any] = {"key_id": kid}
        rec = self.records.get(kid)
        if rec is None:
            info["failure"] = "unknown_key"
            return False, info
        if kid in self.revoked_key_ids:
            info["failure"] = "revoked"
            return False, info

        t = parse_iso_utc(signed_at_utc) or now_utc()
        if rec.not_before is not None and t < rec.not_before:
            info["failure"] = "not_yet_valid"
            return False, info
        if rec.not_after is not None and t > rec.not_after:
            info["failure"] = "expired"
            return False, info

        if not rec.keypair.verify(message, signature):
            info["failure"] = "bad_signature"
            return False, info
        return True, info

    def verify_signature(
        self,
        key_id: str,
        message: bytes,
        signature: bytes,
        *,
        signed_at_utc: Optional[str] = None,
    ) -> bool:
        ok, _info = self.verify_signature_detailed(key_id, message, signature, signed_at_utc=signed_at_utc)
        return ok

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "TrustedKeyStore":
        """Build from {"kid": "<hex>"} or {"kid": {"public_key_hex": ..., "not_before_utc": ...}}.

        A wrapped form {"keys": {...}, "revoked": ["kid", ...]} is accepted too.
        """
        store = cls()
        if not isinstance(config, dict):
            raise ValueError("trusted key config must be a JSON object")
        raw = config.get("keys") if isinstance(config.get("keys"), dict) else config
        for kid, value in raw.items():
            if isinstance(value, str):
                store.add_public_key(str(kid), value)
            elif isinstance(value, dict) and isinstance(value.get("public_key_hex"), str):
                store.add_public_key(
                    str(kid),
                    value["public_key_hex"],
                    not_before_utc=value.get("not_before_utc"),
                    not_after_utc=value.get("not_after_utc"),
                )
                if str(value.get("status", "active")).lower() == "revoked":
                    store.revoke_key(str(kid))
            else:
                raise ValueError(f"invalid trusted key entry for {kid!r}")
        if raw is not config:
            for kid in config.get("revoked", []) or []:
                store.revoke_key(str(kid))
        return store

    @classmethod
    def from_env(
        cls,
        *,
        json_env: str = "AUTHZ_TRUSTED_REVIEWER_KEYS_JSON",
        file_env: str = "AUTHZ_TRUSTED_REVIEWER_KEYS_FILE",
    ) -> Optional["TrustedKeyStore"]:
        """Load reviewer keys from env; None when not configured."""
        raw_json = (os.getenv(json_env, "") or "").strip()
        path = (os.getenv(file_env, "") or "").strip()
        if raw_json:
            return cls.from_config(json.loads(raw_json))
        if path:
            with open(path, "r", encoding="utf-8") as f:
                return cls.from_config(json.load(f))
        return None


_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")
APPROVAL_DECISIONS = ("approve", "deny")


@dataclass
class SignedApproval:
    """A reviewer's verdict on a STEP_UP request, signed with Ed25519.

    Bound to one `action_id` and to `decision_hash`, the hash of the draft
    decision the reviewer saw, so an approval cannot be replayed for another
    action or for a different draft of the same action.
    """

    action_id: str
    decision_hash: str
    reviewer_id: str
    decision: str
    reason: str
    reviewed_at_utc: str
    key_id: str
    signature: bytes = b""

    def __post_init__(self) -> None:
        if not self.action_id or not self.action_id.strip():
            raise ValueError("APPROVAL_VALIDATION_FAILED: action_id cannot be empty")
        if not _SHA256_HEX.match(self.decision_hash or ""):
            raise ValueError("APPROVAL_VALIDATION_FAILED: decision_hash must be 64 lowercase hex chars")
        if self.decision not in APPROVAL_DECISIONS:
            raise ValueError(f"APPROVAL_VALIDATION_FAILED: decision must be one of {APPROVAL_DECISIONS}")

    def compute_signature_payload(self) -> bytes:
        return safe_hash_encode([
            "AUTHZ_APPROVAL_V1",
            self.action_id,
            self.decision_hash,
            self.reviewer_id,
            self.decision,
            self.reason,
            self.reviewed_at_utc,
        ])

    def verify(self, key_store: TrustedKeyStore) -> bool:
        if not self.signature or not self.key_id:
            return False
        return key_store.verify_signature(
            self.key_id,
            self.compute_signature_payload(),
            self.signature,
            signed_at_utc=self.reviewed_at_utc,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "decision_hash": self.decision_hash,
            "reviewer_id": self.reviewer_id,
            "decision": self.decision,
            "reason": self.reason,
            "reviewed_at_utc": self.reviewed_at_utc,
            "key_id": self.key_id,
            "signature": base64.b64encode(self.signature).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedApproval":
        return cls(
            action_id=str(data.get("action_id", "")),
            decision_hash=str(data.get("decision_hash", "")),
            reviewer_id=str(data["reviewer_id"]),
            decision=str(data["decision"]),
            reason=str(data.get("reason", "")),
            reviewed_at_utc=str(data["reviewed_at_utc"]),
            key_id=str(data["key_id"]),
            signature=base64.b64decode(str(data.get("signature", ""))),
        )

    @classmethod
    def create_signed(
        cls,
        *,
        action_id: str,
        decision_hash: str,
        reviewer_id: str,
        decision: str,
        key_pair: Ed25519KeyPair,
        reason: str = "",
    ) -> "SignedApproval":
        """Sign a verdict. Called by the reviewer's side, never by the core."""
        approval = cls(
            action_id=action_id,
            decision_hash=decision_hash,
            reviewer_id=reviewer_id,
            decision=decision,
            reason=reason,
            reviewed_at_utc=now_utc().isoformat(),
            key_id=key_pair.key_id,
        )
        approval.signature = key_pair.sign(approval.compute_signature_payload())
        return approval
