"""Affiliate earnings clearance and batch-payment service."""

__version__ = "1.0.0"
