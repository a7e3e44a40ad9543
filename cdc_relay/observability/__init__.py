"""Logging, metrics and health/status reporting."""
