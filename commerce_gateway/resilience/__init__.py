"""Outbound resilience primitives: token-bucket rate limits, retry, response cache."""
