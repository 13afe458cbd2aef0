"""Loopback callback listener."""

from .server import CallbackServer

__all__ = ["CallbackServer"]
