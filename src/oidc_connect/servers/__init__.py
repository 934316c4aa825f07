"""HTTP layer: Starlette routes and middleware for the OpenID Connect flows."""

from .main import create_app

__all__ = ["create_app"]
