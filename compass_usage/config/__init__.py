"""Configuration loading for Compass Usage."""
