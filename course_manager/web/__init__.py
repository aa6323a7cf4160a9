"""Web interface for the Course Manager application."""

from .server import create_app

__all__ = ["create_app"]
