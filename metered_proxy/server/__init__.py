"""HTTP surface of the metering proxy."""

from .app import create_app

__all__ = ["create_app"]
