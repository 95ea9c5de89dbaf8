"""Web app manifest models (the subset the builder cares about).

Manifests in the wild carry many more members, so extra fields are kept
rather than rejected.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from .build_options import DisplayMode, OrientationMode


class WebManifestIcon(BaseModel):
    """One entry of the manifest `icons` array."""
    model_config = ConfigDict(extra="allow")

    src: str
    sizes: Optional[str] = None
    type: Optional[str] = None
    purpose: Optional[str] = None


class WebManifest(BaseModel):
    """A parsed web app manifest."""
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    short_name: Optional[str] = None
    start_url: Optional[str] = None
    scope: Optional[str] = None
    display: Optional[str] = None
    orientation: Optional[str] = None
    theme_color: Optional[str] = None
    background_color: Optional[str] = None
    icons: list[WebManifestIcon] = Field(default_factory=list)

    # URL the manifest was fetched from; icon URLs resolve against it
    _source_url: Optional[str] = PrivateAttr(default=None)

    @property
    def source_url(self) -> Optional[str]:
        return self._source_url


class ManifestDefaults(BaseModel):
    """Build options pre-filled from a manifest; every field is user-overridable."""

    pwaUrl: str
    appName: str
    shortName: str
    packageId: str
    display: DisplayMode
    orientation: OrientationMode
    themeColor: str
    backgroundColor: str
    iconUrl: Optional[str] = None
    maskableIconUrl: Optional[str] = None
