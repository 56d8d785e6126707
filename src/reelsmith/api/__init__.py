"""HTTP surface for the composition UI."""

from .main import create_app

__all__ = ["create_app"]
