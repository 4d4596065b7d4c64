"""HTTP API for agency subscriptions, add-ons and managed services."""

__version__ = "0.4.0"
