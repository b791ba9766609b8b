"""Account and channel backend for a video sharing application."""

from .api import app

__all__ = ["app"]
