#!/usr/bin/env python3
"""
tokengate -- operator commands for the token auth service.

Usage:
  python main.py generate-secret
  python main.py generate-secret --bytes 96
  python main.py check-secret                  # checks SECRET_KEY from env/.env
  python main.py check-secret --value <secret>
  python main.py create-user --username admin --email admin@example.com --role admin
  python main.py purge-expired
  python main.py inspect-token <token>

Environment variables are read through core.config (SECRET_KEY, DATABASE_URL,
TOKEN_ISSUER, ...). Commands that only generate or grade a secret do not need
a configured SECRET_KEY.
"""

import argparse
import getpass
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError, SecretMisconfigured, StoreUnavailable
from auth.models import Role, User
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import TokenCodec, check_secret_strength, generate_secret, hash_password

logger = logging.getLogger("tokengate.cli")


def _settings():
    # Imported lazily: loading Settings validates SECRET_KEY, which the
    # secret helper commands must not require.
    from core.config import get_settings

    return get_settings()


def cmd_generate_secret(args: argparse.Namespace) -> int:
    print(generate_secret(args.bytes))
    return 0


def cmd_check_secret(args: argparse.Namespace) -> int:
    secret: Optional[str] = args.value
    if secret is None:
        try:
            secret = _settings().secret_key
        except SecretMisconfigured as exc:
            print(f"  [!] {exc.detail}")
            return 1
    report = check_secret_strength(secret)
    print(f"Strength: {report['strength']}")
    print(f"Valid:    {report['is_valid']}")
    for issue in report["issues"]:
        print(f"  - {issue}")
    return 0 if report["is_valid"] else 1


def cmd_create_user(args: argparse.Namespace) -> int:
    settings = _settings()
    password = args.password or getpass.getpass("Password: ")
    if not password:
        print("  [!] A password is required.")
        return 1
    store = UserStore(settings.database_url, timeout_seconds=settings.store_timeout_seconds)
    try:
        user_id = store.create_user(
            User(username=args.username, email=args.email, role=args.role, hashed_password=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] A user with username '{args.username}' or email '{args.email}' already exists.")
        return 1
    finally:
        store.close()
    print(f"Created user {args.username} (id={user_id}, role={args.role}).")
    return 0


def cmd_purge_expired(args: argparse.Namespace) -> int:
    settings = _settings()
    store = RefreshTokenStore(settings.database_url, timeout_seconds=settings.store_timeout_seconds)
    try:
        removed = store.purge_expired()
    finally:
        store.close()
    print(f"Purged {removed} expired refresh token(s).")
    return 0


def cmd_inspect_token(args: argparse.Namespace) -> int:
    """Print unverified claims. For debugging; says nothing about validity."""
    codec = TokenCodec(_settings().auth_config())
    try:
        claims = codec.decode_unsafe(args.token)
    except AuthError:
        print("  [!] Not a parsable token.")
        return 1
    print(json.dumps(claims, indent=2, sort_keys=True, default=str))
    for key in ("iat", "exp", "nbf"):
        if isinstance(claims.get(key), (int, float)):
            stamp = datetime.fromtimestamp(claims[key], tz=timezone.utc).isoformat()
            print(f"  {key}: {stamp}")
    print(f"  remaining_seconds: {codec.remaining_seconds(args.token)}")
    result = codec.verify(args.token)
    print(f"  verification: {'ok' if result.ok else result.error.value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokengate",
        description="Operator commands for the tokengate auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py generate-secret > .secret
  SECRET_KEY=$(cat .secret) python main.py check-secret
  python main.py create-user --username admin --email admin@example.com --role admin
  python main.py inspect-token eyJhbGciOi...
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("generate-secret", help="Print a new random hex signing secret")
    p.add_argument("--bytes", type=int, default=64, metavar="N", help="Random bytes (default: 64, minimum 32)")
    p.set_defaults(func=cmd_generate_secret)

    p = sub.add_parser("check-secret", help="Grade a signing secret (default: the configured SECRET_KEY)")
    p.add_argument("--value", metavar="SECRET", help="Secret to grade instead of SECRET_KEY")
    p.set_defaults(func=cmd_check_secret)

    p = sub.add_parser("create-user", help="Create a login account")
    p.add_argument("--username", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--role", choices=[r.value for r in Role], default=Role.service_staff.value)
    p.add_argument("--password", help="Password (prompted when omitted)")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("purge-expired", help="Delete refresh tokens past their expiry")
    p.set_defaults(func=cmd_purge_expired)

    p = sub.add_parser("inspect-token", help="Show a token's claims WITHOUT verifying it")
    p.add_argument("token")
    p.set_defaults(func=cmd_inspect_token)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    try:
        return args.func(args)
    except SecretMisconfigured as exc:
        print(f"  [!] {exc.detail}")
        return 2
    except StoreUnavailable:
        print("  [!] Database unavailable. Check DATABASE_URL and try again.")
        return 3
    except ValueError as exc:
        print(f"  [!] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
