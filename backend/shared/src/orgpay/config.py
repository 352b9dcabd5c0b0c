"""Runtime settings for the payment services.

Settings come from environment variables; secrets (Stripe keys and webhook
signing secrets) are not settings and are read from SSM Parameter Store by
the Stripe service.
"""

import os

from pydantic import BaseModel, ConfigDict, Field

# Server-side platform fee. Never configurable per request or per deployment.
PLATFORM_FEE_BPS = 300

SUPPORTED_CURRENCIES: frozenset[str] = frozenset({"usd", "eur", "gbp", "cad"})
DEFAULT_CURRENCY = "usd"

# Amount limits in minor units ($1.00 - $100,000.00)
MIN_AMOUNT_CENTS = 100
MAX_AMOUNT_CENTS = 10_000_000


class PaymentSettings(BaseModel):
    """Deployment settings shared by the API and the services."""

    model_config = ConfigDict(frozen=True)

    environment: str = Field(default="dev", description="Deployment environment (dev/prod)")
    table_prefix: str = Field(
        default="orgpay-dev",
        description="Prefix for DynamoDB table names",
    )
    claim_wait_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="How long a request that lost the claim waits for the winner's resource",
    )
    claim_lease_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Age after which a claim with no gateway resource may be re-claimed",
    )
    stripe_timeout_seconds: float = Field(default=10.0, gt=0)
    stripe_max_network_retries: int = Field(default=2, ge=0)
    checkout_success_url: str = Field(
        default="http://localhost:3000/donate/success?session_id={CHECKOUT_SESSION_ID}",
    )
    checkout_cancel_url: str = Field(default="http://localhost:3000/donate/cancel")
    connect_return_url: str = Field(default="http://localhost:3000/settings/donations")
    connect_refresh_url: str = Field(default="http://localhost:3000/settings/donations?refresh=1")

    @property
    def ssm_prefix(self) -> str:
        return f"/orgpay/{self.environment}"

    @classmethod
    def from_env(cls) -> "PaymentSettings":
        """Build settings from environment variables, using defaults for unset ones."""
        environment = os.getenv("ENVIRONMENT", "dev")
        values: dict[str, str] = {
            "environment": environment,
            "table_prefix": os.getenv("DYNAMODB_TABLE_PREFIX", f"orgpay-{environment}"),
        }
        env_map = {
            "claim_wait_timeout_seconds": "CLAIM_WAIT_TIMEOUT_SECONDS",
            "claim_lease_seconds": "CLAIM_LEASE_SECONDS",
            "stripe_timeout_seconds": "STRIPE_TIMEOUT_SECONDS",
            "stripe_max_network_retries": "STRIPE_MAX_NETWORK_RETRIES",
            "checkout_success_url": "CHECKOUT_SUCCESS_URL",
            "checkout_cancel_url": "CHECKOUT_CANCEL_URL",
            "connect_return_url": "CONNECT_RETURN_URL",
            "connect_refresh_url": "CONNECT_REFRESH_URL",
        }
        for field_name, env_var in env_map.items():
            value = os.getenv(env_var)
            if value:
                values[field_name] = value
        return cls.model_validate(values)
