"""APK build pipeline.

Turns validated BuildOptions into a signed APK inside a private working
directory:

1. Icon preparation (SVG icons rasterized and served on loopback)
2. Android project generation (Bubblewrap CLI from twa-manifest.json)
3. Signing keystore generation (keytool)
4. Gradle release build
5. Unsigned APK discovery
6. APK signing (apksigner)

Every external tool goes through a ToolRunner. On any failure the working
directory is removed before the error propagates; on success it is kept
for the download.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import shutil
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlsplit

import httpx

from pwa_maker import config
from pwa_maker.models import BuildOptions

from .errors import ArtifactNotFoundError, ToolFailureError
from .icon_server import serve_png
from .image_utils import is_svg_url, rasterize_svg
from .manifest_fetcher import fetch_icon_bytes
from .tool_runner import BuildStage, SubprocessToolRunner, ToolResult, ToolRunner

logger = logging.getLogger(__name__)

# (message, percent)
ProgressCallback = Callable[[str, int], None]

KEY_ALIAS = "key0"
KEYSTORE_FILE_NAME = "keystore.jks"
TWA_MANIFEST_FILE_NAME = "twa-manifest.json"
KEYSTORE_DNAME = "CN=PWA Maker,OU=PWA Maker,O=PWA Maker,L=Unknown,ST=Unknown,C=US"
# The keystore credential reaches the tools through this variable only
KEYSTORE_PASSWORD_ENV = "PWA_MAKER_KEYSTORE_PASS"

APK_OUTPUT_DIR = Path("app", "build", "outputs", "apk", "release")

TARGET_SDK_VERSION = 34
MIN_SDK_VERSION = 21

# Gradle progress: starts after the 40% checkpoint, +1 per stdout line
GRADLE_PROGRESS_START = 42
GRADLE_PROGRESS_MAX = 80


@dataclass
class BuildResult:
    """Successful pipeline outcome."""
    apk_path: Path
    work_dir: Path


class ApkBuilder:
    """Runs the build pipeline for one job at a time per call.

    The builder holds only configuration; concurrent `build` calls are
    independent as long as each gets its own working directory.
    """

    def __init__(
        self,
        runner: Optional[ToolRunner] = None,
        android_home: Optional[Path] = None,
        java_home: Optional[Path] = None,
        build_tools_version: Optional[str] = None,
        gradle_user_home: Optional[Path] = None,
        bubblewrap_bin: Optional[str] = None,
        work_root: Optional[Path] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the builder.

        Args:
            runner: Tool runner. Defaults to real subprocesses.
            android_home: Android SDK root. Defaults to ANDROID_HOME.
            java_home: JDK root. Defaults to JAVA_HOME.
            build_tools_version: SDK build-tools version holding apksigner.
            gradle_user_home: Gradle cache directory.
            bubblewrap_bin: Project generator executable.
            work_root: Parent of per-build working directories.
            http_transport: httpx transport for icon fetches (tests).
        """
        self.runner = runner or SubprocessToolRunner()
        self.android_home = Path(android_home or config.ANDROID_HOME)
        self.java_home = Path(java_home or config.JAVA_HOME)
        self.build_tools_version = build_tools_version or config.ANDROID_BUILD_TOOLS_VERSION
        self.gradle_user_home = Path(gradle_user_home or config.GRADLE_USER_HOME)
        self.bubblewrap_bin = bubblewrap_bin or config.BUBBLEWRAP_BIN
        self.work_root = Path(work_root or config.BUILD_WORK_ROOT)
        self.http_transport = http_transport

    # -------------------------------------------------------------------------
    # Paths and environment
    # -------------------------------------------------------------------------

    @property
    def build_tools_dir(self) -> Path:
        return self.android_home / "build-tools" / self.build_tools_version

    @property
    def keytool(self) -> Path:
        return self.java_home / "bin" / "keytool"

    @property
    def apksigner(self) -> Path:
        return self.build_tools_dir / "apksigner"

    def allocate_work_dir(self) -> Path:
        """Return a fresh, unguessable working directory path (not created)."""
        return self.work_root / f"pwa-maker-{secrets.token_hex(8)}"

    def tool_env(self, **extra: str) -> dict[str, str]:
        """Environment for SDK tools: inherited env plus SDK/JDK locations."""
        path_entries = [
            str(self.java_home / "bin"),
            str(self.android_home / "cmdline-tools" / "latest" / "bin"),
            str(self.android_home / "platform-tools"),
            str(self.build_tools_dir),
        ]
        inherited_path = os.environ.get("PATH")
        if inherited_path:
            path_entries.append(inherited_path)

        env = dict(os.environ)
        env.update(
            ANDROID_HOME=str(self.android_home),
            ANDROID_SDK_ROOT=str(self.android_home),
            JAVA_HOME=str(self.java_home),
            GRADLE_USER_HOME=str(self.gradle_user_home),
            PATH=os.pathsep.join(path_entries),
        )
        env.update(extra)
        return env

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def build(
        self,
        options: BuildOptions,
        work_dir: Path,
        on_progress: ProgressCallback,
    ) -> BuildResult:
        """Run every stage in order.

        Args:
            options: Validated build options.
            work_dir: Private working directory (created here).
            on_progress: Receives (message, percent) checkpoints and Gradle output.

        Returns:
            BuildResult with the signed APK path.

        Raises:
            FetchError: An SVG icon could not be fetched.
            ToolFailureError: A tool failed or could not be started.
            ArtifactNotFoundError: Gradle produced no APK.
        """
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        try:
            return await self._run_pipeline(options, work_dir, on_progress)
        except BaseException:
            logger.info(f"Removing working directory {work_dir.name} after failure")
            await asyncio.to_thread(shutil.rmtree, work_dir, ignore_errors=True)
            raise

    async def _run_pipeline(
        self,
        options: BuildOptions,
        work_dir: Path,
        on_progress: ProgressCallback,
    ) -> BuildResult:
        async with AsyncExitStack() as stack:
            on_progress("Preparing icons…", 10)
            options = await self._prepare_icons(options, stack)

            on_progress("Generating Android project files…", 15)
            await self._generate_project(options, work_dir)
        # Loopback icon listeners are closed here

        on_progress("Generating signing keystore…", 30)
        keystore_password = secrets.token_hex(16)
        keystore_path = work_dir / KEYSTORE_FILE_NAME
        await self._generate_keystore(keystore_path, keystore_password)

        on_progress(
            "Starting Gradle build (first run may take 2-5 min while downloading dependencies)…",
            40,
        )
        await self._run_gradle(work_dir, on_progress)

        on_progress("Locating unsigned APK…", 82)
        unsigned_apk = find_apk(work_dir)

        on_progress("Signing APK…", 88)
        signed_apk = signed_apk_path(unsigned_apk)
        await self._sign_apk(unsigned_apk, signed_apk, keystore_path, keystore_password)

        on_progress("Build complete!", 100)
        return BuildResult(apk_path=signed_apk, work_dir=work_dir)

    async def _prepare_icons(self, options: BuildOptions, stack: AsyncExitStack) -> BuildOptions:
        """Swap SVG icon URLs for loopback PNG URLs kept alive by `stack`."""
        served: dict[str, str] = {}
        updates: dict[str, str] = {}

        for field in ("iconUrl", "maskableIconUrl"):
            url = getattr(options, field)
            if not url or not is_svg_url(url):
                continue
            if url not in served:
                svg = await fetch_icon_bytes(url, transport=self.http_transport)
                png = await asyncio.to_thread(rasterize_svg, svg)
                served[url] = await stack.enter_async_context(serve_png(png))
                logger.info(f"Rasterized SVG icon for {field}")
            updates[field] = served[url]

        if not updates:
            return options
        return options.model_copy(update=updates)

    async def _generate_project(self, options: BuildOptions, work_dir: Path) -> None:
        manifest_path = work_dir / TWA_MANIFEST_FILE_NAME
        manifest_path.write_text(
            json.dumps(twa_manifest(options, work_dir / KEYSTORE_FILE_NAME), indent=2),
            encoding="utf-8",
        )

        result = await self.runner.invoke(
            BuildStage.generate_project,
            [
                self.bubblewrap_bin,
                "update",
                "--skipVersionUpgrade",
                f"--manifest={manifest_path}",
                f"--directory={work_dir}",
            ],
            cwd=work_dir,
            env=self.tool_env(),
        )
        _check(BuildStage.generate_project, result, "Android project generation failed")

        gradlew = work_dir / "gradlew"
        if not gradlew.is_file():
            raise ToolFailureError(
                BuildStage.generate_project.value,
                result.exit_code,
                "Android project generation did not produce a Gradle wrapper.",
            )
        gradlew.chmod(0o755)

    async def _generate_keystore(self, keystore_path: Path, password: str) -> None:
        result = await self.runner.invoke(
            BuildStage.keystore,
            [
                str(self.keytool),
                "-genkey",
                "-v",
                "-keystore", str(keystore_path),
                "-alias", KEY_ALIAS,
                "-keyalg", "RSA",
                "-keysize", "2048",
                "-validity", "10000",
                "-storepass:env", KEYSTORE_PASSWORD_ENV,
                "-keypass:env", KEYSTORE_PASSWORD_ENV,
                "-dname", KEYSTORE_DNAME,
            ],
            cwd=keystore_path.parent,
            env=self.tool_env(**{KEYSTORE_PASSWORD_ENV: password}),
        )
        _check(BuildStage.keystore, result, "Keystore generation failed")

    async def _run_gradle(self, work_dir: Path, on_progress: ProgressCallback) -> None:
        percent = GRADLE_PROGRESS_START

        def on_line(stream: str, line: str) -> None:
            nonlocal percent
            if stream == "stdout":
                percent = min(percent + 1, GRADLE_PROGRESS_MAX)
                on_progress(line, percent)
            else:
                on_progress(f"[gradle] {line}", percent)

        result = await self.runner.invoke(
            BuildStage.compile,
            [str(work_dir / "gradlew"), "assembleRelease", "--no-daemon", "--stacktrace"],
            cwd=work_dir,
            env=self.tool_env(),
            on_line=on_line,
        )
        if not result.ok:
            raise ToolFailureError(
                BuildStage.compile.value,
                result.exit_code,
                f"Gradle build failed with exit code {result.exit_code}. "
                "Check the build log above for details.",
            )

    async def _sign_apk(
        self,
        unsigned_apk: Path,
        signed_apk: Path,
        keystore_path: Path,
        password: str,
    ) -> None:
        result = await self.runner.invoke(
            BuildStage.sign,
            [
                str(self.apksigner),
                "sign",
                "--ks", str(keystore_path),
                "--ks-key-alias", KEY_ALIAS,
                "--ks-pass", f"env:{KEYSTORE_PASSWORD_ENV}",
                "--key-pass", f"env:{KEYSTORE_PASSWORD_ENV}",
                "--out", str(signed_apk),
                str(unsigned_apk),
            ],
            cwd=keystore_path.parent,
            env=self.tool_env(**{KEYSTORE_PASSWORD_ENV: password}),
        )
        _check(BuildStage.sign, result, "APK signing failed")
        if not signed_apk.is_file():
            raise ArtifactNotFoundError(
                str(signed_apk.parent), "Signing reported success but wrote no APK."
            )


# =============================================================================
# Helpers
# =============================================================================

def _check(stage: BuildStage, result: ToolResult, summary: str) -> None:
    if not result.ok:
        raise ToolFailureError(stage.value, result.exit_code, f"{summary}: {result.diagnostic()}")


def twa_manifest(options: BuildOptions, keystore_path: Path) -> dict:
    """Project generator input for the given options."""
    parts = urlsplit(options.pwaUrl)
    start_url = parts.path or "/"
    if parts.query:
        start_url = f"{start_url}?{parts.query}"

    return {
        "packageId": options.packageId,
        "host": parts.hostname,
        "name": options.appName,
        "launcherName": options.shortName[:12],
        "display": options.display.value,
        "orientation": options.orientation.value,
        "themeColor": options.themeColor,
        "themeColorDark": options.themeColor,
        "navigationColor": options.themeColor,
        "navigationColorDark": options.themeColor,
        "navigationDividerColor": "#000000",
        "navigationDividerColorDark": "#000000",
        "backgroundColor": options.backgroundColor,
        "enableNotifications": False,
        "startUrl": start_url,
        "iconUrl": options.iconUrl,
        "maskableIconUrl": options.maskableIconUrl,
        "monochromeIconUrl": None,
        "appVersionName": "1.0.0",
        "appVersionCode": 1,
        "shortcuts": [],
        "generatorApp": "pwa-maker-android",
        "webManifestUrl": None,
        "signingKey": {"path": str(keystore_path), "alias": KEY_ALIAS},
        "additionalTrustedOrigins": [],
        "retainedBundles": [],
        "sdkVersion": TARGET_SDK_VERSION,
        "minSdkVersion": MIN_SDK_VERSION,
        "fingerprints": [],
        "features": {},
        "alphaDependencies": {"enabled": False},
        "enableSiteSettingsShortcut": True,
        "isChromeOSOnly": False,
        "isMetaQuest": False,
        "isMonochrome": False,
    }


def find_apk(work_dir: Path) -> Path:
    """Locate the Gradle release APK, preferring the unsigned variant.

    Raises:
        ArtifactNotFoundError: Output directory missing or holds no APK.
    """
    release_dir = work_dir / APK_OUTPUT_DIR
    if not release_dir.is_dir():
        raise ArtifactNotFoundError(
            str(release_dir), "The Gradle build may have failed silently."
        )

    apks = sorted(p for p in release_dir.iterdir() if p.is_file() and p.suffix == ".apk")
    for apk in apks:
        if "unsigned" in apk.name:
            return apk
    if apks:
        return apks[0]

    files = ", ".join(sorted(p.name for p in release_dir.iterdir())) or "none"
    raise ArtifactNotFoundError(str(release_dir), f"Files: {files}")


def signed_apk_path(unsigned_apk: Path) -> Path:
    """app-release-unsigned.apk -> app-release-signed.apk"""
    if "-unsigned" in unsigned_apk.name:
        return unsigned_apk.with_name(unsigned_apk.name.replace("-unsigned", "-signed"))
    return unsigned_apk.with_name(f"{unsigned_apk.stem}-signed.apk")
