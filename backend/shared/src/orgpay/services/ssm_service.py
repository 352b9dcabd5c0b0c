"""SSM Parameter Store access for the Stripe secrets.

All Stripe secrets for an environment live under one path
(`/orgpay/{env}/stripe/`): `secret_key`, `webhook_secret` and
`connect_webhook_secret`. They are read in one GetParametersByPath call and
cached for the life of the process.
"""

from functools import lru_cache
from typing import ClassVar

import boto3
from botocore.exceptions import ClientError

from ..utils.logging import get_logger

logger = get_logger(__name__)


class SSMServiceError(Exception):
    """Raised when SSM parameter retrieval fails."""


class SSMService:
    """Cached reader for SecureString parameters.

    Usage:
        ssm = get_ssm_service()
        secrets = ssm.get_parameters_by_path("/orgpay/dev/stripe")
        secrets["secret_key"]
    """

    _cache: ClassVar[dict[str, dict[str, str]]] = {}

    def __init__(self) -> None:
        self._client = boto3.client("ssm")

    def get_parameters_by_path(self, path: str, *, use_cache: bool = True) -> dict[str, str]:
        """Return the decrypted parameters directly under `path`.

        Keys are the last path segment ("/orgpay/dev/stripe/secret_key" ->
        "secret_key"). A path with no parameters yields an empty dict.

        Raises:
            SSMServiceError: The path cannot be read.
        """
        path = path.rstrip("/")
        if use_cache and path in self._cache:
            logger.debug("SSM cache hit for %s", path)
            return dict(self._cache[path])

        values: dict[str, str] = {}
        try:
            logger.info("Fetching SSM parameters under %s", path)
            paginator = self._client.get_paginator("get_parameters_by_path")
            for page in paginator.paginate(Path=path, WithDecryption=True, Recursive=False):
                for parameter in page["Parameters"]:
                    values[parameter["Name"].rsplit("/", 1)[-1]] = parameter["Value"]
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "AccessDeniedException":
                raise SSMServiceError(
                    f"Access denied to SSM path: {path}. "
                    "Check IAM permissions for ssm:GetParametersByPath."
                ) from e
            raise SSMServiceError(f"Failed to read SSM path {path}: {e}") from e

        self._cache[path] = values
        return dict(values)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("SSM parameter cache cleared")


@lru_cache(maxsize=1)
def get_ssm_service() -> SSMService:
    """Get the shared SSMService instance."""
    return SSMService()
