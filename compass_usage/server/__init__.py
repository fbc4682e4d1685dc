"""HTTP server exposing monthly card usage as JSON."""

from .app import create_app

__all__ = ["create_app"]
