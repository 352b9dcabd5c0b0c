#!/usr/bin/env python3
"""Create the payment tables for local development.

Creates every table in orgpay.services.tables under the environment's prefix
(skipping existing ones) and can seed a demo organization to donate to.

Usage:
    python scripts/create_tables.py --env dev
    python scripts/create_tables.py --env dev --endpoint-url http://localhost:8000
    python scripts/create_tables.py --env dev --seed-org demo --admin-sub <cognito-sub>
"""

import argparse
import sys
from pathlib import Path

# Add the shared package to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "shared" / "src"))

import boto3  # noqa: E402

from orgpay.services.tables import ORGANIZATIONS_TABLE, create_tables  # noqa: E402


def seed_organization(
    resource, name_prefix: str, slug: str, admin_sub: str | None, account: str | None
) -> dict:
    """Put a demo organization (overwrites an existing one with the same ID)."""
    item = {
        "organization_id": f"org-{slug}",
        "slug": slug,
        "name": slug.replace("-", " ").title(),
        "admin_user_ids": [admin_sub] if admin_sub else [],
    }
    if account:
        item["connected_account_id"] = account
    resource.Table(f"{name_prefix}-{ORGANIZATIONS_TABLE}").put_item(Item=item)
    return item


def main() -> int:
    parser = argparse.ArgumentParser(description="Create payment DynamoDB tables")
    parser.add_argument(
        "--env",
        choices=["dev", "staging", "prod"],
        default="dev",
        help="Target environment (default: dev)",
    )
    parser.add_argument("--prefix", help="Table name prefix (default: orgpay-{env})")
    parser.add_argument("--region", help="AWS region (default: from AWS config)")
    parser.add_argument("--endpoint-url", help="DynamoDB endpoint, e.g. DynamoDB Local")
    parser.add_argument("--seed-org", metavar="SLUG", help="Seed a demo organization")
    parser.add_argument("--admin-sub", help="Cognito sub of the demo organization's admin")
    parser.add_argument("--connected-account", help="Connected account (acct_xxx) to attach")
    args = parser.parse_args()

    if args.env == "prod":
        print("Refusing to run against prod; create prod tables with Terraform.")
        return 1

    name_prefix = args.prefix or f"orgpay-{args.env}"
    kwargs = {}
    if args.region:
        kwargs["region_name"] = args.region
    if args.endpoint_url:
        kwargs["endpoint_url"] = args.endpoint_url

    client = boto3.client("dynamodb", **kwargs)
    created = create_tables(client, name_prefix)
    for table_name in created:
        client.get_waiter("table_exists").wait(TableName=table_name)
        print(f"  Created {table_name}")
    print(f"{len(created)} table(s) created under prefix '{name_prefix}'")

    if args.seed_org:
        resource = boto3.resource("dynamodb", **kwargs)
        item = seed_organization(
            resource, name_prefix, args.seed_org, args.admin_sub, args.connected_account
        )
        print(f"Seeded organization {item['organization_id']} ({item['slug']})")

    return 0


if __name__ == "__main__":
    sys.exit(main())
