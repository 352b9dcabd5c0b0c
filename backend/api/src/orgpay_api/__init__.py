"""REST API for organization donations, subscriptions and Stripe webhooks."""
