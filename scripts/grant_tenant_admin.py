from __future__ import annotations

import argparse
import asyncio
import sys

from tenantadmin.core.errors import AuthenticationError
from tenantadmin.core.logging import configure_logging
from tenantadmin.services.auth.tokens import parse_uuid_claim
from tenantadmin.services.authz.relationships import get_relationship_store


def _build_parser() -> argparse.ArgumentParser:
    # Bootstraps the first tenant admin; later grants go through /v1/relationships.
    parser = argparse.ArgumentParser(description="Grant a user admin on a tenant's projects collection")
    parser.add_argument("--tenant", required=True, help="Tenant id (UUID)")
    parser.add_argument("--user-id", required=True, help="User id (UUID)")
    parser.add_argument(
        "--relation",
        default="admin",
        choices=["admin", "create"],
        help="admin implies create; create alone only allows creating projects",
    )
    parser.add_argument("--revoke", action="store_true", help="Remove the tuple instead of writing it")
    return parser


async def _apply(args: argparse.Namespace) -> int:
    tenant_id = parse_uuid_claim(args.tenant, "tenant id")
    user_id = parse_uuid_claim(args.user_id, "user id")
    store = get_relationship_store()
    if args.revoke:
        await store.remove(user_id, args.relation, "projects", tenant_id)
        print(f"revoked {args.relation} on projects:{tenant_id} from {user_id}")
    else:
        await store.write(user_id, args.relation, "projects", tenant_id)
        print(f"granted {args.relation} on projects:{tenant_id} to {user_id}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_apply(args))
    except AuthenticationError as exc:
        print(f"invalid identifier: {exc}", file=sys.stderr)
        return 2
    except Exception as exc:  # noqa: BLE001 - surface store failures clearly
        print(f"grant_tenant_admin failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
