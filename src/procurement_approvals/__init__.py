"""Approval workflow core for maritime procurement requisitions."""

__version__ = "0.1.0"
