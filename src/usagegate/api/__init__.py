"""Admin HTTP API."""

from usagegate.api.app import create_app

__all__ = ["create_app"]
