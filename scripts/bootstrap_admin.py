#!/usr/bin/env python3
"""Bootstrap a tenant and its first admin identity.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Passw0rd' TENANT_NAME=Acme \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Passw0rd' \
        --tenant-name Acme

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PASSWORD: Password for the admin identity (must satisfy the password policy)
    TENANT_NAME: Name of the tenant to create when --tenant-id is not given
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    tenant_id: Optional[str] = None,
    tenant_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create a tenant (when needed) and an admin identity, or promote an existing one.

    Returns:
        dict with identity_id, tenant_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from staffauth.service.errors import PasswordPolicyViolation
    from staffauth.service.runtime import get_runtime
    from staffauth.storage.models import Role

    runtime = get_runtime()

    existing = runtime.store.get_identity_by_email(email)
    if existing:
        if existing.role == Role.ADMIN:
            print(f"Identity {email} is already an admin (id: {existing.id})")
            return {
                "identity_id": existing.id,
                "tenant_id": existing.tenant_id,
                "email": email,
                "status": "already_admin",
            }
        if dry_run:
            print(f"[DRY RUN] Would promote existing identity {email} to admin")
            return {"identity_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_identity(existing.id, role=Role.ADMIN)
        print(f"Promoted existing identity {email} to admin (id: {existing.id})")
        return {
            "identity_id": existing.id,
            "tenant_id": existing.tenant_id,
            "email": email,
            "status": "promoted",
        }

    violations = runtime.policy.violations(password, email=email)
    if violations:
        raise PasswordPolicyViolation(
            [v.as_dict() for v in violations], strength=runtime.policy.strength(password)
        )

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {email}")
        return {"identity_id": None, "email": email, "status": "dry_run"}

    if tenant_id:
        tenant = runtime.store.get_tenant(tenant_id)
        if not tenant:
            raise ValueError(f"tenant {tenant_id} does not exist")
    else:
        tenant = runtime.store.create_tenant(tenant_name or "Default")
        print(f"Created tenant {tenant.name} (id: {tenant.id})")

    identity = await runtime.auth.provision_identity(
        tenant.id, email, password, role=Role.ADMIN
    )
    print(f"Created admin identity: {email} (id: {identity.id})")
    return {
        "identity_id": identity.id,
        "tenant_id": tenant.id,
        "email": email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for staffauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--tenant-id", default=None, help="Attach to an existing tenant")
    parser.add_argument(
        "--tenant-name",
        default=os.environ.get("TENANT_NAME"),
        help="Name for a new tenant (or set TENANT_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                tenant_id=args.tenant_id,
                tenant_name=args.tenant_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        detail = getattr(e, "detail", None)
        print(f"Error: {e}")
        if detail:
            for violation in detail.get("violations", []):
                print(f"  - {violation['message']}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
        print(f"  Tenant ID: {result['tenant_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - identity is already an admin.")


if __name__ == "__main__":
    main()
