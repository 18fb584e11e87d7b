"""Collective Coordinator — trust-weighted agent mesh with collective learning."""

__version__ = "0.1.0"
