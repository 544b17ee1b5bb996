"""Signed decision receipts.

A receipt binds a signer's key to one committed ReceiptInput through its
hash, so a third party holding only the public key can check that the
ledger record it was shown is the one that was signed.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict

from .canonical import now_iso, safe_hash_encode, sha256_hex
from .crypto import TrustedKeyStore
from .ledger import ReceiptInput
from .signing import Signer, coerce_signer

RECEIPT_VERSION = "AUTHZ_RECEIPT_V1"


@dataclass(frozen=True)
class DecisionReceipt:
    receipt_id: str
    action_id: str
    decision_id: str
    receipt_input_hash: str
    sequence: int
    signed_at_utc: str
    key_id: str
    signature: bytes

    @staticmethod
    def payload(
        action_id: str, decision_id: str, receipt_input_hash: str, sequence: int, signed_at_utc: str
    ) -> bytes:
        return safe_hash_encode([
            RECEIPT_VERSION,
            action_id,
            decision_id,
            receipt_input_hash,
            str(int(sequence)),
            signed_at_utc,
        ])

    def compute_signature_payload(self) -> bytes:
        return self.payload(self.action_id, self.decision_id, self.receipt_input_hash, self.sequence, self.signed_at_utc)

    def verify(self, key_store: TrustedKeyStore) -> bool:
        if not self.signature or not self.key_id:
            return False
        return key_store.verify_signature(
            self.key_id, self.compute_signature_payload(), self.signature, signed_at_utc=self.signed_at_utc
        )

    def matches(self, receipt_input: ReceiptInput) -> bool:
        """True when this receipt covers exactly the given ledger record."""
        return (
            self.action_id == receipt_input.action_id
            and self.sequence == receipt_input.sequence
            and self.receipt_input_hash == sha256_hex(receipt_input.canonical_bytes())
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": RECEIPT_VERSION,
            "receipt_id": self.receipt_id,
            "action_id": self.action_id,
            "decision_id": self.decision_id,
            "receipt_input_hash": self.receipt_input_hash,
            "sequence": self.sequence,
            "signed_at_utc": self.signed_at_utc,
            "key_id": self.key_id,
            "signature": base64.b64encode(self.signature).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionReceipt":
        return cls(
            receipt_id=str(data["receipt_id"]),
            action_id=str(data["action_id"]),
            decision_id=str(data["decision_id"]),
            receipt_input_hash=str(data["receipt_input_hash"]),
            sequence=int(data["sequence"]),
            signed_at_utc=str(data["signed_at_utc"]),
            key_id=str(data["key_id"]),
            signature=base64.b64decode(str(data.get("signature", ""))),
        )


class Ed25519ReceiptGenerator:
    """Signs receipts with any Signer backend (in-process key or external command)."""

    def __init__(self, signer: Any):
        self.signer: Signer = coerce_signer(signer)

    def sign(self, receipt_input: ReceiptInput) -> DecisionReceipt:
        signed_at = now_iso()
        payload = DecisionReceipt.payload(
            receipt_input.action_id,
            receipt_input.decision_id,
            receipt_input.receipt_input_hash,
            receipt_input.sequence,
            signed_at,
        )
        sig = self.signer.sign(payload)
        return DecisionReceipt(
            receipt_id="rcpt_" + receipt_input.receipt_input_hash[:24],
            action_id=receipt_input.action_id,
            decision_id=receipt_input.decision_id,
            receipt_input_hash=receipt_input.receipt_input_hash,
            sequence=receipt_input.sequence,
            signed_at_utc=signed_at,
            key_id=self.signer.key_id,
            signature=sig,
        )
