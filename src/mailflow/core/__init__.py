"""Shared infrastructure: errors, logging, time helpers and rate limiting."""
