"""Shared infrastructure: logging, time helpers and key-value state."""
