"""Ingress trust boundary for a multi-tenant event-tracking API."""

__version__ = "0.1.0"
