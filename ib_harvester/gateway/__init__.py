"""Gateway interface and the ib_async-backed adapter."""

from .base import Gateway

__all__ = ["Gateway"]
