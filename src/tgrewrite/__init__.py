"""Telegram userbot that rewrites outgoing messages through a language model."""

__version__ = "0.3.0"
