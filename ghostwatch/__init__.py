"""Ghostwatch: background execution core of a story-delivery Telegram bot."""

from .version import __version__

__all__ = ["__version__"]
