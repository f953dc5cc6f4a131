"""Clients for external services the lifecycle engine hands work to."""
