"""Command-line interface for safepoint."""
