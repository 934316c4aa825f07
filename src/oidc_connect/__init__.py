"""OpenID Connect login and account linking for web applications."""

__version__ = "0.1.0"
