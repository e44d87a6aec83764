"""Entitlement and lifecycle engine for the detailing platform billing core."""

__version__ = "0.3.0"
