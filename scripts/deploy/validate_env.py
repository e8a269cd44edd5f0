#!/usr/bin/env python3
"""Validate `.env.deploy` / `.env.deploy.secrets` against the deterministic schema.

Intended to run before `ubuntu_deploy.py`, locally or in CI.

Strict by default:
- unknown keys => error
- malformed values (git URL, host, ports, names) => error
- missing mandatory keys => error only with --require-all, since the deploy
  script prompts for anything left unset
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from scripts.deploy.env_schema import (
    DEPLOY_SCHEMA,
    EnvValidationError,
    SecretsEnum,
    apply_defaults,
    parse_dotenv_file,
    validate_field_rules,
    validate_known_keys,
    validate_required,
)


def _env_subset(schema_keys: set[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for k in schema_keys:
        v = os.getenv(k)
        if v is None:
            continue
        v = str(v).strip()
        if not v:
            continue
        out[k] = v
    return out


def validate_deploy_files(
    *,
    deploy_path: Path | None,
    secrets_path: Path | None,
    require_all: bool = False,
    check_key_file: bool = True,
) -> dict[str, str]:
    context = "deploy (.env.deploy + .env.deploy.secrets + env)"

    merged: dict[str, str] = {}
    if deploy_path is not None and deploy_path.exists():
        file_kv = parse_dotenv_file(deploy_path)
        validate_known_keys(DEPLOY_SCHEMA, file_kv, context=context)
        secrets_in_vars = sorted(k for k in file_kv if k in {s.value for s in SecretsEnum})
        if secrets_in_vars:
            raise EnvValidationError(
                context=context,
                problems=[f"Secret key(s) belong in .env.deploy.secrets: {', '.join(secrets_in_vars)}"],
            )
        merged.update(file_kv)
    if secrets_path is not None and secrets_path.exists():
        secret_kv = parse_dotenv_file(secrets_path)
        validate_known_keys(DEPLOY_SCHEMA, secret_kv, context=context)
        merged.update(secret_kv)

    # Overlay process env (CI) on top of file values.
    merged.update(_env_subset({spec.key.value for spec in DEPLOY_SCHEMA}))
    merged = apply_defaults(DEPLOY_SCHEMA, merged)

    if require_all:
        validate_required(DEPLOY_SCHEMA, merged, context=context)
    validate_field_rules(merged, context=context, check_key_file=check_key_file)
    return merged


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Validate .env.deploy and .env.deploy.secrets against schema")
    ap.add_argument("--deploy", default=".env.deploy", help="Path to deploy env file (default: .env.deploy)")
    ap.add_argument(
        "--secrets",
        default=".env.deploy.secrets",
        help="Path to deploy secrets file (default: .env.deploy.secrets)",
    )
    ap.add_argument("--require-all", action="store_true", help="Fail on missing mandatory keys instead of prompting later")
    ap.add_argument("--no-key-check", action="store_true", help="Don't require DEPLOY_SSH_KEY to exist on this machine")

    args = ap.parse_args(argv)

    try:
        validate_deploy_files(
            deploy_path=Path(args.deploy).expanduser().resolve(),
            secrets_path=Path(args.secrets).expanduser().resolve(),
            require_all=args.require_all,
            check_key_file=not args.no_key_check,
        )
    except EnvValidationError as e:
        print(e.format(), file=sys.stderr)
        return 2

    print("[env] ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
