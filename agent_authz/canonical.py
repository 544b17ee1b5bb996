"""Canonical encoding and hashing helpers.

Everything the core hashes or signs (raw call references, context chain
hashes, rule set digests, ledger records, receipts) goes through the same
canonical JSON encoding so that identical inputs always produce identical
bytes.

Two encodings exist:

- permissive: stringifies unknown types. Used only for opaque raw payload
  references, which must never fail.
- strict: rejects non-JSON types, non-finite floats, oversized integers and
  pathological nesting; normalizes unicode to NFC. Used for every record the
  core produces.
"""

from __future__ import annotations

import hashlib
import json
import math
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import (
    AuthzError,
    authz_error,
    AUTHZ_E_CANON_NON_JSON,
    AUTHZ_E_CANON_DEPTH,
    AUTHZ_E_CANON_NONFINITE,
    AUTHZ_E_CANON_KEY_TYPE,
    AUTHZ_E_CANON_INT_TOO_LARGE,
)


_MAX_DEPTH = 64
_MAX_INT_DIGITS = 128


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return now_utc().isoformat()


def parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    s = str(ts).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_hash_encode(components: List[str]) -> bytes:
    """Length-prefixed encoding for hash inputs (no delimiter collisions)."""
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


def _canonicalize(obj: Any, *, path: str = "$", depth: int = 0) -> Any:
    if depth > _MAX_DEPTH:
        raise authz_error(AUTHZ_E_CANON_DEPTH, "max nesting depth exceeded", path=path, max_depth=_MAX_DEPTH)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, int):
        digits = len(str(abs(obj)))
        if digits > _MAX_INT_DIGITS:
            raise authz_error(AUTHZ_E_CANON_INT_TOO_LARGE, "integer has too many digits", path=path, digits=digits)
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise authz_error(AUTHZ_E_CANON_NONFINITE, "non-finite float", path=path)
        return obj

    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise authz_error(AUTHZ_E_CANON_KEY_TYPE, "dict key must be str", path=path, got=type(k).__name__)
            nk = unicodedata.normalize("NFC", k)
            if nk in out:
                raise authz_error(AUTHZ_E_CANON_KEY_TYPE, "duplicate dict key after unicode normalization", path=path)
            out[nk] = _canonicalize(v, path=f"{path}['{nk}']", depth=depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, path=f"{path}[{i}]", depth=depth + 1) for i, v in enumerate(obj)]

    raise authz_error(AUTHZ_E_CANON_NON_JSON, "non-JSON-serializable type", path=path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any, *, strict: bool = True) -> str:
    """Deterministic JSON: sorted keys, no whitespace, UTF-8 preserved."""
    if not strict:
        return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    try:
        return json.dumps(
            _canonicalize(obj),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except AuthzError:
        raise
    except (TypeError, ValueError) as e:
        raise authz_error(AUTHZ_E_CANON_NON_JSON, f"canonical encoding failed: {e}") from e


def canonical_hash(obj: Any, *, strict: bool = True) -> str:
    return sha256_hex(canonical_json_dumps(obj, strict=strict).encode("utf-8"))
