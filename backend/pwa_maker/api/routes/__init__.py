"""API routes package."""

from . import build, health, manifest, token

__all__ = ["build", "health", "manifest", "token"]
