#!/usr/bin/env python3
"""
verify_audit.py: verify the tamper-evident ceremony audit log (JSONL).

Checks that every line links to the previous one through prev_hash and that
each hash recomputes, using the same chaining rule as rp_auth/audit.py.
With --state, also checks that the state file holds the last hash.

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from rp_auth.audit import verify_log_chain


def main(argv=None) -> int:
    p = argparse.ArgumentParser(
        description="Verify WebAuthn RP ceremony audit log integrity (hash-chained JSONL)."
    )
    p.add_argument(
        "log",
        type=Path,
        help="Path to audit JSONL file (e.g. audit/ceremony_audit.jsonl)",
    )
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Optional state file containing last hash (e.g. audit/ceremony_audit.state)",
    )
    args = p.parse_args(argv)

    if not args.log.exists():
        print(f"FAIL: log not found: {args.log}", file=sys.stderr)
        return 1

    if verify_log_chain(args.log, state_path=args.state):
        print("OK")
        return 0

    print("FAIL: audit chain broken", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
