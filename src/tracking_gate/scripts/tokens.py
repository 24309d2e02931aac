# src/tracking_gate/scripts/tokens.py
"""
Mint tokens and signed request headers for manual testing.

Examples:
    tracking-gate-tokens access --site-id site_1 --tenant-id tenant_1 -p read -p write
    tracking-gate-tokens refresh --user-id u_1 --site-id site_1 --tenant-id tenant_1
    tracking-gate-tokens sign --site-id site_1 --salt "$SITE_SALT" --payload '{"test": "data"}'

Secrets are read from the same environment variables as the server.
"""

from __future__ import annotations

import argparse
import json
from collections.abc import Sequence

from tracking_gate.core.settings import get_settings
from tracking_gate.services.integrity import sign_envelope
from tracking_gate.services.tokens import TokenService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tracking-gate-tokens", description=__doc__.splitlines()[1])
    commands = parser.add_subparsers(dest="command", required=True)

    access = commands.add_parser("access", help="issue an access token")
    access.add_argument("--site-id", required=True)
    access.add_argument("--tenant-id", required=True)
    access.add_argument("--user-id")
    access.add_argument("--session-id")
    access.add_argument("-p", "--permission", action="append", default=[], dest="permissions")

    refresh = commands.add_parser("refresh", help="issue a refresh token")
    refresh.add_argument("--user-id", required=True)
    refresh.add_argument("--site-id", required=True)
    refresh.add_argument("--tenant-id", required=True)

    sign = commands.add_parser("sign", help="print integrity headers for a JSON payload")
    sign.add_argument("--site-id", required=True)
    sign.add_argument("--salt", help="per-site salt from the site registry")
    sign.add_argument("--payload", default="{}", help="JSON document to sign")
    return parser


def compact_json(document: str) -> str:
    """Re-serialize JSON without whitespace so the signed bytes are predictable."""
    return json.dumps(json.loads(document), separators=(",", ":"))


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()

    if args.command == "access":
        tokens = TokenService.from_settings(settings)
        claims = {
            "site_id": args.site_id,
            "tenant_id": args.tenant_id,
            "user_id": args.user_id,
            "session_id": args.session_id,
            "permissions": args.permissions,
        }
        print(tokens.issue_access_token(claims))
    elif args.command == "refresh":
        tokens = TokenService.from_settings(settings)
        print(tokens.issue_refresh_token(args.user_id, args.site_id, args.tenant_id))
    else:
        body = compact_json(args.payload)
        envelope = sign_envelope(body, args.site_id, settings.hmac_secret, args.salt)
        print(json.dumps({"headers": envelope.headers(), "body": body}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
