"""Command-line interface for the CDC relay."""
