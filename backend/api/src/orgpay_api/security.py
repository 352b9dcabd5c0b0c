"""Caller identity for organization admin endpoints.

API Gateway validates the JWT and forwards the user's `sub` claim in the
x-user-sub header (HTTP API claim mapping), or in the authorizer claims of
the Lambda event (REST API Cognito authorizer). This module only reads it.
"""

from fastapi import Depends, Request

from orgpay.models.errors import (
    AuthenticationRequiredError,
    ForbiddenError,
)
from orgpay.models.financial import Organization
from orgpay.services.organizations import OrganizationDirectory
from orgpay.utils.logging import get_logger

from orgpay_api.dependencies import get_organization_directory

logger = get_logger(__name__)

USER_SUB_HEADER = "x-user-sub"


def get_user_sub(request: Request) -> str:
    """Return the authenticated user's sub.

    Raises:
        AuthenticationRequiredError: No identity was forwarded (401).
    """
    user_sub = (request.headers.get(USER_SUB_HEADER) or "").strip()

    if not user_sub:
        event = request.scope.get("aws.event", {})
        claims = event.get("requestContext", {}).get("authorizer", {}).get("claims", {})
        user_sub = claims.get("sub") or ""

    if not user_sub:
        logger.warning("Authentication missing for %s", request.url.path)
        raise AuthenticationRequiredError()
    return user_sub


def require_org_admin(
    organization_id: str,
    user_sub: str = Depends(get_user_sub),
    organizations: OrganizationDirectory = Depends(get_organization_directory),
) -> Organization:
    """Resolve the path organization and require the caller to administer it.

    Raises:
        OrganizationNotFoundError: Unknown organization (404).
        ForbiddenError: Caller is not an admin of the organization (403).
    """
    organization = organizations.resolve(organization_id)
    if user_sub not in organization.admin_user_ids:
        logger.warning(
            "User %s... is not an admin of organization %s",
            user_sub[:8],
            organization_id,
        )
        raise ForbiddenError(details={"organization_id": organization_id})
    return organization
