"""Document upload and knowledge sharing web application."""

from .api import create_app, serve

__all__ = ["create_app", "serve"]
