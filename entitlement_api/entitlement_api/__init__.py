"""HTTP surface of the entitlement engine: webhooks, polling, gating, retention admin."""

__version__ = "0.3.0"
