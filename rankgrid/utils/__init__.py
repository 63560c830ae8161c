"""Shared helpers: rate limiting and keyed locks."""
