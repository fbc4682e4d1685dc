"""Command-line interface for Compass Usage."""
