"""Command-line administration."""
