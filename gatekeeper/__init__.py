"""Gatekeeper: distributed sliding window rate limiting for FastAPI."""
