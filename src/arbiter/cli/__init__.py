"""Command-line interface for Arbiter."""
