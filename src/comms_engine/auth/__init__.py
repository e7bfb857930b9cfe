"""Caller identity, roles and token validation."""
