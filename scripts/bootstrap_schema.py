#!/usr/bin/env python3
"""Emit deterministic SQL for the job store schema and, optionally, the operator key hash."""

from __future__ import annotations

import argparse
import secrets

from stackroll.core.security import hash_api_key
from stackroll.services.schema import COMMIT_OWNERSHIP_TABLE_DDL, DEV_JOBS_TABLE_DDL


def render_sql(*, include_commit_ownership: bool) -> str:
    parts = ["-- stackroll job store schema", "-- Safe to re-run: every statement is idempotent.", DEV_JOBS_TABLE_DDL]
    if include_commit_ownership:
        parts.append(COMMIT_OWNERSHIP_TABLE_DDL)
    return "\n".join(part.strip("\n") for part in parts) + "\n"


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to create the stackroll job store tables.")
    parser.add_argument(
        "--skip-commit-ownership",
        action="store_true",
        help="Only emit the dev_jobs table",
    )
    key_group = parser.add_mutually_exclusive_group()
    key_group.add_argument("--api-key", help="Print STACKROLL_ADMIN_API_KEY_SHA256 for this operator key")
    key_group.add_argument(
        "--generate-api-key",
        action="store_true",
        help="Generate a new operator key and print it with its hash",
    )
    args = parser.parse_args()

    print(render_sql(include_commit_ownership=not args.skip_commit_ownership))

    api_key = args.api_key
    if args.generate_api_key:
        api_key = secrets.token_urlsafe(32)
        print(f"-- operator api key: {api_key}")
    if api_key:
        print(f"-- STACKROLL_ADMIN_API_KEY_SHA256={hash_api_key(api_key)}")


if __name__ == "__main__":
    main()
