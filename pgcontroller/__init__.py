"""Kubernetes controller reconciling PostgreSQL databases, roles, credentials and publications."""

__version__ = "0.1.0"
