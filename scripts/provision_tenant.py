#!/usr/bin/env python3
"""Register a company and its first admin from the command line.

Usage:
    python scripts/provision_tenant.py --company "Acme Inc" --domain acme \\
        --admin-name "Owner" --admin-email owner@acme.com --admin-password 'S3curePassw0rd'

    # Password from the environment:
    ADMIN_PASSWORD='S3curePassw0rd' python scripts/provision_tenant.py ...

Environment Variables:
    ADMIN_PASSWORD: Password for the admin user when --admin-password is omitted
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    ROOT_DOMAIN, APP_BASE_URL: Used to build the printed login URL
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def provision(args: argparse.Namespace, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from hivehr.service.runtime import get_runtime

    runtime = get_runtime()
    registration = runtime.registration

    if dry_run:
        data = registration.validate(
            company_name=args.company,
            company_domain=args.domain,
            admin_name=args.admin_name,
            admin_email=args.admin_email,
            admin_password=args.admin_password,
            admin_username=args.admin_username,
        )
        available = runtime.store.is_subdomain_available(data.company_domain)
        print(f"[DRY RUN] Domain '{data.company_domain}' available: {available}")
        return {"status": "dry_run", "available": available}

    result = await registration.register(
        company_name=args.company,
        company_domain=args.domain,
        admin_name=args.admin_name,
        admin_email=args.admin_email,
        admin_password=args.admin_password,
        admin_username=args.admin_username,
    )
    # No HTTP worker runs here; deliver the welcome mail before exiting
    await runtime.notifications.process_pending()
    runtime.close()
    return {
        "status": "created",
        "tenant_id": result.tenant.id,
        "subdomain": result.tenant.subdomain,
        "admin_user_id": result.admin_user.id,
        "admin_username": result.admin_user.username,
        "login_url": result.login_url,
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Provision a HiveHR tenant and admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--company", required=True, help="Company display name")
    parser.add_argument("--domain", required=True, help="Tenant subdomain, e.g. 'acme'")
    parser.add_argument("--admin-name", required=True, help="Admin's full name")
    parser.add_argument("--admin-email", required=True, help="Admin email address")
    parser.add_argument(
        "--admin-password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--admin-username", default=None, help="Optional admin username")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate input and check domain availability without making changes",
    )
    args = parser.parse_args()

    if not args.admin_password:
        print("Error: --admin-password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/hivehr-provision")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from hivehr.service.errors import ServiceError

    try:
        result = asyncio.run(provision(args, args.dry_run))
    except ServiceError as exc:
        print(f"Error ({exc.error_code}): {exc.message}")
        for err in exc.detail.get("errors", []):
            print(f"  {'.'.join(str(p) for p in err['path'])}: {err['message']}")
        if "path" in exc.detail:
            print(f"  field: {exc.detail['path']}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nTenant provisioned successfully!")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Subdomain: {result['subdomain']}")
        print(f"  Admin user: {result['admin_username']} ({result['admin_user_id']})")
        print(f"  Login URL: {result['login_url']}")


if __name__ == "__main__":
    main()
