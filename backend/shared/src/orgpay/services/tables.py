"""DynamoDB table definitions.

Shared by the local bootstrap script and the test suite so both create the
same keys and indexes. Names are unprefixed; see DynamoDBService.table_name.
"""

from typing import Any

PAYMENT_ATTEMPTS_TABLE = "payment-attempts"
PAYMENT_ATTEMPT_KEYS_TABLE = "payment-attempt-keys"
PROCESSED_EVENTS_TABLE = "processed-events"
DONATIONS_TABLE = "donations"
DONATION_STATS_TABLE = "donation-stats"
SUBSCRIPTIONS_TABLE = "subscriptions"
ORGANIZATIONS_TABLE = "organizations"


def _gsi(index_name: str, attribute: str, sort_attribute: str | None = None) -> dict[str, Any]:
    key_schema = [{"AttributeName": attribute, "KeyType": "HASH"}]
    if sort_attribute:
        key_schema.append({"AttributeName": sort_attribute, "KeyType": "RANGE"})
    return {
        "IndexName": index_name,
        "KeySchema": key_schema,
        "Projection": {"ProjectionType": "ALL"},
    }


TABLE_DEFINITIONS: dict[str, dict[str, Any]] = {
    PAYMENT_ATTEMPTS_TABLE: {
        "KeySchema": [{"AttributeName": "attempt_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "attempt_id", "AttributeType": "S"},
            {"AttributeName": "provider_payment_intent_id", "AttributeType": "S"},
            {"AttributeName": "provider_checkout_session_id", "AttributeType": "S"},
            {"AttributeName": "organization_id", "AttributeType": "S"},
            {"AttributeName": "created_at", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [
            _gsi("payment_intent-index", "provider_payment_intent_id"),
            _gsi("checkout_session-index", "provider_checkout_session_id"),
            _gsi("organization-index", "organization_id", "created_at"),
        ],
    },
    PAYMENT_ATTEMPT_KEYS_TABLE: {
        "KeySchema": [{"AttributeName": "idempotency_key", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "idempotency_key", "AttributeType": "S"},
        ],
    },
    PROCESSED_EVENTS_TABLE: {
        "KeySchema": [{"AttributeName": "event_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "event_id", "AttributeType": "S"},
        ],
    },
    DONATIONS_TABLE: {
        "KeySchema": [
            {"AttributeName": "organization_id", "KeyType": "HASH"},
            {"AttributeName": "donation_key", "KeyType": "RANGE"},
        ],
        "AttributeDefinitions": [
            {"AttributeName": "organization_id", "AttributeType": "S"},
            {"AttributeName": "donation_key", "AttributeType": "S"},
        ],
    },
    DONATION_STATS_TABLE: {
        "KeySchema": [{"AttributeName": "organization_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "organization_id", "AttributeType": "S"},
        ],
    },
    SUBSCRIPTIONS_TABLE: {
        "KeySchema": [
            {"AttributeName": "organization_id", "KeyType": "HASH"},
            {"AttributeName": "subscription_id", "KeyType": "RANGE"},
        ],
        "AttributeDefinitions": [
            {"AttributeName": "organization_id", "AttributeType": "S"},
            {"AttributeName": "subscription_id", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [
            _gsi("subscription_id-index", "subscription_id"),
        ],
    },
    ORGANIZATIONS_TABLE: {
        "KeySchema": [{"AttributeName": "organization_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "organization_id", "AttributeType": "S"},
            {"AttributeName": "slug", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [
            _gsi("slug-index", "slug"),
        ],
    },
}


def create_tables(client: Any, name_prefix: str) -> list[str]:
    """Create every table under `name_prefix`, skipping ones that exist.

    Args:
        client: boto3 DynamoDB client
        name_prefix: Table name prefix (e.g., "orgpay-dev")

    Returns:
        Full names of the tables that were created
    """
    existing = set(client.list_tables().get("TableNames", []))
    created = []
    for table, definition in TABLE_DEFINITIONS.items():
        table_name = f"{name_prefix}-{table}"
        if table_name in existing:
            continue
        client.create_table(
            TableName=table_name,
            BillingMode="PAY_PER_REQUEST",
            **definition,
        )
        created.append(table_name)
    return created
