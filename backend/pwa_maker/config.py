"""Process configuration read from the environment.

Values are read once at import. `.env` files are loaded by `pwa_maker.api.main`
before this module is imported. Service constructors accept explicit
overrides, so tests never need to touch the environment.
"""

import os
import tempfile
from pathlib import Path

APP_ENV = os.environ.get("APP_ENV", "production").lower()

# http:// PWA URLs are only accepted while developing locally
DEVELOPMENT_MODE = APP_ENV == "development"

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3001"))
CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Admission cap: queued + running builds
MAX_CONCURRENT_BUILDS = int(os.environ.get("MAX_CONCURRENT_BUILDS", "3") or 3)

# Unclaimed builds (and their working directories) are removed after this
BUILD_TTL_SECONDS = int(float(os.environ.get("BUILD_TTL_HOURS", "1") or 1) * 3600)

# Empty means "generate a random secret for this process"
BUILD_TOKEN_SECRET = os.environ.get("BUILD_TOKEN_SECRET", "")

ANDROID_HOME = Path(os.environ.get("ANDROID_HOME", "/opt/android-sdk"))
JAVA_HOME = Path(os.environ.get("JAVA_HOME", "/usr/lib/jvm/java-17-openjdk-amd64"))
ANDROID_BUILD_TOOLS_VERSION = os.environ.get("ANDROID_BUILD_TOOLS_VERSION", "34.0.0")
GRADLE_USER_HOME = Path(
    os.environ.get("GRADLE_USER_HOME", str(Path.home() / ".gradle"))
)
BUBBLEWRAP_BIN = os.environ.get("BUBBLEWRAP_BIN", "bubblewrap")

# Parent directory for per-build working directories
BUILD_WORK_ROOT = Path(os.environ.get("BUILD_WORK_ROOT", tempfile.gettempdir()))

# Per-IP request limits (slowapi); the build limit is the only tunable one
BUILD_RATE_LIMIT_PER_HOUR = int(os.environ.get("BUILD_RATE_LIMIT_PER_HOUR", "10") or 10)

# JSON option bodies are small; anything larger is refused with 413
MAX_REQUEST_BODY_BYTES = 16 * 1024
