"""Response payload models for the HTTP API.

These are the `data` part of the `{data, error}` envelope.
"""

from typing import Any

from pydantic import BaseModel

from .manifest import ManifestDefaults


class HealthData(BaseModel):
    """Liveness payload."""
    status: str = "ok"
    version: str
    uptime: int


class TokenData(BaseModel):
    """A freshly issued build token."""
    token: str


class StartBuildData(BaseModel):
    """Returned when a build has been accepted."""
    build_id: str


class ManifestData(BaseModel):
    """A fetched manifest plus the build options derived from it."""
    manifest: dict[str, Any]
    defaults: ManifestDefaults
