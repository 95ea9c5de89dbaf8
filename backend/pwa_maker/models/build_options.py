"""Pydantic models for build options submitted by the user.

Field names are camelCase to match the JSON the frontend sends.
BuildOptions is frozen: once a build is created from it, it never changes.
The pipeline derives modified copies with `model_copy(update=...)`.

Pass `context={"allow_http": True}` to `model_validate` to accept http://
PWA URLs (development mode only).
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

HEX_COLOR_PATTERN = r"^#[0-9a-fA-F]{6}$"
PACKAGE_ID_PATTERN = r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*){2,}$"

MAX_APP_NAME_LENGTH = 50
MAX_SHORT_NAME_LENGTH = 12

# Markup characters plus C0/DEL control characters
_UNSAFE_NAME_CHARS = re.compile(r"[<>&\"'`\x00-\x1f\x7f]")


class DisplayMode(str, Enum):
    """How the launched app is presented."""
    standalone = "standalone"
    fullscreen = "fullscreen"
    minimal_ui = "minimal-ui"


class OrientationMode(str, Enum):
    """Screen orientation lock."""
    portrait = "portrait"
    landscape = "landscape"
    default = "default"


def strip_unsafe_chars(value: str) -> str:
    """Remove markup and control characters from a display name."""
    return _UNSAFE_NAME_CHARS.sub("", value).strip()


def is_url(value: str, schemes: tuple[str, ...] = ("http", "https")) -> bool:
    """Check that a string is an absolute URL with a host and an allowed scheme."""
    try:
        parts = urlsplit(value)
        hostname = parts.hostname
    except ValueError:
        return False
    return parts.scheme in schemes and bool(hostname)


class BuildOptions(BaseModel):
    """User-supplied packaging intent for one APK build."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    pwaUrl: str = Field(description="URL of the PWA start page")
    appName: Annotated[str, Field(min_length=1, max_length=MAX_APP_NAME_LENGTH)]
    shortName: Annotated[str, Field(min_length=1, max_length=MAX_SHORT_NAME_LENGTH)]
    packageId: str
    display: DisplayMode
    orientation: OrientationMode
    themeColor: str
    backgroundColor: str
    iconUrl: str = Field(description="Primary launcher icon URL")
    maskableIconUrl: Optional[str] = Field(
        default=None,
        description="Adaptive (maskable) icon URL"
    )

    @field_validator("appName", "shortName", mode="before")
    @classmethod
    def _strip_names(cls, value: Any) -> Any:
        if isinstance(value, str):
            return strip_unsafe_chars(value)
        return value

    @field_validator("packageId")
    @classmethod
    def _check_package_id(cls, value: str) -> str:
        if not re.fullmatch(PACKAGE_ID_PATTERN, value):
            raise ValueError(
                "packageId must be a valid Android package name (e.g. com.example.app)"
            )
        return value

    @field_validator("themeColor", "backgroundColor")
    @classmethod
    def _check_color(cls, value: str, info: ValidationInfo) -> str:
        if not re.fullmatch(HEX_COLOR_PATTERN, value):
            raise ValueError(
                f"{info.field_name} must be a 6-digit hex color (e.g. #1a1a2e)"
            )
        return value

    @field_validator("pwaUrl")
    @classmethod
    def _check_pwa_url(cls, value: str, info: ValidationInfo) -> str:
        value = value.strip()
        if not is_url(value):
            raise ValueError("pwaUrl must be a valid URL")
        allow_http = bool(info.context and info.context.get("allow_http"))
        if not allow_http and urlsplit(value).scheme != "https":
            raise ValueError("pwaUrl must use HTTPS")
        return value

    @field_validator("iconUrl")
    @classmethod
    def _check_icon_url(cls, value: str) -> str:
        value = value.strip()
        if not is_url(value):
            raise ValueError("iconUrl must be a valid URL")
        return value

    @field_validator("maskableIconUrl")
    @classmethod
    def _check_maskable_icon_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        if not is_url(value):
            raise ValueError("maskableIconUrl must be a valid URL")
        return value
