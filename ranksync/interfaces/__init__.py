"""Interfaces exposed by the service."""
