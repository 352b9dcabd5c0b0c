"""API routers, mounted under /api by orgpay_api.main."""
