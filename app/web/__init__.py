"""Web interface for Audioshelf."""

from .server import create_app

__all__ = ["create_app"]
