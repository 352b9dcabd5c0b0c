"""Read-only organization directory.

Organizations are managed elsewhere; payments only look them up and record
a newly created connected account.
"""

from typing import TYPE_CHECKING, Any, Optional

from ..models.errors import OrganizationNotFoundError
from ..models.financial import Organization
from .tables import ORGANIZATIONS_TABLE

if TYPE_CHECKING:
    from .dynamodb import DynamoDBService


class OrganizationDirectory:
    """Lookup of organizations by ID or slug."""

    TABLE = ORGANIZATIONS_TABLE

    def __init__(self, db: "DynamoDBService") -> None:
        self.db = db

    def get_by_id(self, organization_id: str) -> Organization | None:
        item = self.db.get_item(self.TABLE, {"organization_id": organization_id})
        return self._item_to_organization(item) if item else None

    def get_by_slug(self, slug: str) -> Organization | None:
        items = self.db.query_by_gsi(
            table=self.TABLE,
            index_name="slug-index",
            partition_key_name="slug",
            partition_key_value=slug,
        )
        return self._item_to_organization(items[0]) if items else None

    def resolve(
        self,
        organization_id: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Organization:
        """Find an organization by ID, falling back to slug.

        Raises:
            OrganizationNotFoundError: Neither identifier matches.
        """
        organization = None
        if organization_id:
            organization = self.get_by_id(organization_id)
        elif slug:
            organization = self.get_by_slug(slug)
        if organization is None:
            raise OrganizationNotFoundError(
                details={"organization": organization_id or slug or ""}
            )
        return organization

    def set_connected_account(
        self, organization_id: str, connected_account_id: str
    ) -> Organization:
        """Record a connected account unless a different one is already stored.

        Returns:
            The organization as stored afterwards; its `connected_account_id`
            is the existing one if another writer got there first.
        """
        attrs = self.db.update_item(
            table=self.TABLE,
            key={"organization_id": organization_id},
            update_expression="SET connected_account_id = :account",
            expression_attribute_values={":account": connected_account_id},
            condition_expression=(
                "attribute_exists(organization_id) AND "
                "(attribute_not_exists(connected_account_id) OR connected_account_id = :account)"
            ),
        )
        if attrs is not None:
            return self._item_to_organization(attrs)

        existing = self.get_by_id(organization_id)
        if existing is None:
            raise OrganizationNotFoundError(details={"organization": organization_id})
        return existing

    @staticmethod
    def _item_to_organization(item: dict[str, Any]) -> Organization:
        return Organization(
            organization_id=item["organization_id"],
            slug=item["slug"],
            name=item.get("name"),
            connected_account_id=item.get("connected_account_id"),
            admin_user_ids=[str(u) for u in item.get("admin_user_ids") or []],
            stripe_customer_id=item.get("stripe_customer_id"),
        )
