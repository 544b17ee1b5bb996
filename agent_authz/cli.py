"""
agent-authz: operator command line

Usage:
    agent-authz check-policy <rules.json>        Validate a rule-set file
    agent-authz normalize <call.json>            Normalize a raw call, print the Action or rejection
    agent-authz verify-audit <audit.jsonl> --key KID=HEX [--key ...]
                                                 Verify the audit log chain and signatures
    agent-authz ledger <authz.db> [--session ID] Replay committed decisions as JSON lines
    agent-authz keygen [--key-id ID]             Generate an Ed25519 signing key
    agent-authz serve [--host H] [--port P]      Start the HTTP gateway

Exit codes: 0 ok, 1 rejected / verification failed, 2 bad input.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from .audit_log import TamperEvidentAuditLog
from .crypto import TrustedKeyStore, create_key_pair
from .errors import MalformedInput, PolicyInvalid
from .ledger import DecisionLedger
from .lockdown import StorageLockdownError
from .normalizer import ActionNormalizer
from .policy import PolicyStore


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def _load_json(path: str):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"ERROR: File not found: {path}", file=sys.stderr)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON in {path}: {e}", file=sys.stderr)
    return None


def cmd_check_policy(args) -> int:
    """Schema and semantic validation of a rule-set file."""
    store = PolicyStore()
    try:
        rule_set = store.load_file(args.rules_file)
    except PolicyInvalid as e:
        print(f"✗ {e.message}", file=sys.stderr)
        for err in e.details.get("errors", []):
            print(f"  - {err}", file=sys.stderr)
        return 2
    print(f"✓ version {rule_set.version}")
    print(f"  digest: {rule_set.digest}")
    print(f"  rules:  {len(rule_set.rules)}")
    for rule in rule_set.rules:
        print(f"    {rule.priority:>5}  {rule.verdict.value:<16} {rule.rule_id}")
    return 0


def cmd_normalize(args) -> int:
    raw = _load_json(args.call_file)
    if raw is None:
        return 2
    normalizer = ActionNormalizer(require_actor=not args.allow_anonymous)
    try:
        action = normalizer.normalize(raw)
    except MalformedInput as e:
        print(json.dumps({"rejected": True, **e.as_dict()}, indent=2, sort_keys=True))
        return 1
    print(json.dumps(action.to_dict(), indent=2, sort_keys=True))
    return 0


def _parse_keys(pairs: List[str], store: Optional[TrustedKeyStore] = None) -> TrustedKeyStore:
    store = store if store is not None else TrustedKeyStore()
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"--key expects KID=HEX, got {pair!r}")
        kid, hex_key = pair.split("=", 1)
        store.add_public_key(kid.strip(), hex_key.strip())
    return store


def cmd_verify_audit(args) -> int:
    """Verify the tamper-evident audit log."""
    try:
        if args.keys_file:
            with open(args.keys_file, "r", encoding="utf-8") as f:
                keys = _parse_keys(args.key or [], TrustedKeyStore.from_config(json.load(f)))
        else:
            keys = _parse_keys(args.key or [])
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    if not keys.list_key_ids():
        print("ERROR: at least one --key KID=HEX (or --keys-file) is required", file=sys.stderr)
        return 2

    ok, reason, count = TamperEvidentAuditLog.verify_file(args.log_file, keys)
    mark = "✓" if ok else "✗"
    print(f"{mark} {reason} ({count} records checked)")
    return 0 if ok else 1


def cmd_ledger(args) -> int:
    """Replay committed decisions in commit order."""
    if not os.path.exists(args.db_file):
        print(f"ERROR: Ledger not found: {args.db_file}", file=sys.stderr)
        return 2
    try:
        ledger = DecisionLedger.open(args.db_file)
        records = ledger.for_session(args.session) if args.session else ledger.replay()
        for ri in records:
            if args.full:
                print(json.dumps(ri.to_dict(), sort_keys=True))
            else:
                print(json.dumps({
                    "sequence": ri.sequence,
                    "action_id": ri.action_id,
                    "session_id": ri.session_id,
                    "outcome": ri.outcome,
                    "reason_code": ri.reason_code,
                    "supersedes": ri.supersedes,
                    "committed_at_utc": ri.committed_at_utc,
                }, sort_keys=True))
    except StorageLockdownError:
        print("ERROR: ledger storage is in lockdown", file=sys.stderr)
        return 1
    return 0


def cmd_keygen(args) -> int:
    kp = create_key_pair(args.key_id)
    print(json.dumps({
        "key_id": kp.key_id,
        "private_key_hex": (kp.private_key_bytes or b"").hex(),
        "public_key_hex": kp.public_key_hex,
    }, indent=2))
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    from .server import create_app

    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.verbose else "info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-authz",
        description="Agent action authorization: operator tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    cp = subparsers.add_parser("check-policy", help="Validate a rule-set file")
    cp.add_argument("rules_file")
    cp.set_defaults(func=cmd_check_policy)

    np = subparsers.add_parser("normalize", help="Normalize a raw call JSON")
    np.add_argument("call_file")
    np.add_argument("--allow-anonymous", action="store_true", help="Accept calls without an actor identity")
    np.set_defaults(func=cmd_normalize)

    vp = subparsers.add_parser("verify-audit", help="Verify the tamper-evident audit log")
    vp.add_argument("log_file")
    vp.add_argument("--key", action="append", help="Trusted public key as KID=HEX (repeatable)")
    vp.add_argument("--keys-file", help="JSON trusted key config")
    vp.set_defaults(func=cmd_verify_audit)

    lp = subparsers.add_parser("ledger", help="Replay committed decisions")
    lp.add_argument("db_file")
    lp.add_argument("--session", help="Only decisions of this session")
    lp.add_argument("--full", action="store_true", help="Print complete receipt inputs")
    lp.set_defaults(func=cmd_ledger)

    kp = subparsers.add_parser("keygen", help="Generate an Ed25519 signing key")
    kp.add_argument("--key-id", default="authz")
    kp.set_defaults(func=cmd_keygen)

    sp = subparsers.add_parser("serve", help="Start the HTTP gateway")
    sp.add_argument("--host", default="127.0.0.1")
    sp.add_argument("--port", type=int, default=8000)
    sp.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2
    setup_logging(args.verbose)
    return int(args.func(args) or 0)


if __name__ == "__main__":
    sys.exit(main())
