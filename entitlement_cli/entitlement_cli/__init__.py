"""Operator command line for the entitlement engine."""

__version__ = "0.3.0"
