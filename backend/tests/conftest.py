"""Pytest fixtures for testing."""

import asyncio
import json
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pwa_maker.api.main import create_app
from pwa_maker.api.rate_limit import limiter
from pwa_maker.models import BuildOptions, DisplayMode, OrientationMode
from pwa_maker.services import ApkBuilder, BuildStore, BuildTokenIssuer, ssrf_guard
from pwa_maker.services.tool_runner import BuildStage, ToolResult, ToolRunner

TEST_TOKEN_SECRET = "test-secret"


# =============================================================================
# Scripted tool runner
# =============================================================================

def _arg_after(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


def _arg_value(args: list[str], prefix: str) -> str:
    return next(a[len(prefix):] for a in args if a.startswith(prefix))


class FakeToolRunner(ToolRunner):
    """ToolRunner that imitates the Android toolchain on the filesystem.

    Each stage writes the files the real tool would produce. Failures,
    missing artifacts and Gradle output are scripted per test.
    """

    def __init__(self):
        self.calls: list[tuple[BuildStage, list[str], dict[str, str]]] = []
        self.exit_codes: dict[BuildStage, int] = {}
        self.stderr: dict[BuildStage, str] = {}
        self.gradle_stdout: list[str] = ["> Task :app:preBuild", "> Task :app:assembleRelease"]
        self.gradle_stderr: list[str] = []
        self.apk_names: list[str] = ["app-release-unsigned.apk"]
        self.skip_gradlew = False
        self.skip_signed_output = False
        # Set to pause the Gradle stage until released
        self.gradle_gate: Optional[asyncio.Event] = None
        self.twa_manifest: Optional[dict[str, Any]] = None
        self.fetched_icons: dict[str, bytes] = {}

    def stages(self) -> list[BuildStage]:
        return [stage for stage, _, _ in self.calls]

    async def invoke(self, stage, args, *, cwd=None, env=None, on_line=None) -> ToolResult:
        args = list(args)
        self.calls.append((stage, args, dict(env or {})))

        exit_code = self.exit_codes.get(stage, 0)
        if exit_code != 0:
            return ToolResult(exit_code=exit_code, stderr=self.stderr.get(stage, ""))

        if stage == BuildStage.generate_project:
            await self._generate(args)
        elif stage == BuildStage.keystore:
            Path(_arg_after(args, "-keystore")).write_bytes(b"keystore")
        elif stage == BuildStage.compile:
            if self.gradle_gate is not None:
                await self.gradle_gate.wait()
            if on_line:
                for line in self.gradle_stdout:
                    on_line("stdout", line)
                for line in self.gradle_stderr:
                    on_line("stderr", line)
            release_dir = Path(cwd) / "app" / "build" / "outputs" / "apk" / "release"
            release_dir.mkdir(parents=True, exist_ok=True)
            for name in self.apk_names:
                (release_dir / name).write_bytes(b"PK\x03\x04 unsigned apk")
        elif stage == BuildStage.sign:
            if not self.skip_signed_output:
                Path(_arg_after(args, "--out")).write_bytes(b"PK\x03\x04 signed apk")

        return ToolResult(exit_code=0, stdout="ok\n")

    async def _generate(self, args: list[str]) -> None:
        manifest_path = Path(_arg_value(args, "--manifest="))
        work_dir = Path(_arg_value(args, "--directory="))
        self.twa_manifest = json.loads(manifest_path.read_text(encoding="utf-8"))

        # Loopback icons must be reachable while the project is generated
        for key in ("iconUrl", "maskableIconUrl"):
            url = self.twa_manifest.get(key)
            if url and url.startswith("http://127.0.0.1:"):
                async with httpx.AsyncClient(trust_env=False) as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    self.fetched_icons[key] = response.content

        if not self.skip_gradlew:
            (work_dir / "gradlew").write_text("#!/bin/sh\n", encoding="utf-8")


# =============================================================================
# Fixtures
# =============================================================================

# Stand-in for public upstream hosts; names resolve here unless a test scripts otherwise
PUBLIC_TEST_ADDRESS = "93.184.216.34"


@pytest.fixture
def dns_records() -> dict[str, list[str]]:
    """hostname -> resolved addresses served by the fake resolver."""
    return {}


@pytest.fixture(autouse=True)
def fake_dns(monkeypatch, dns_records):
    """Resolve hostnames from `dns_records` instead of the network."""
    async def resolve(hostname: str, port: int) -> list[str]:
        return dns_records.get(hostname.lower().rstrip("."), [PUBLIC_TEST_ADDRESS])

    monkeypatch.setattr(ssrf_guard, "resolve_host", resolve)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Start every test with empty per-IP counters."""
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def build_options_data() -> dict[str, Any]:
    """Valid build request fields (without the token)."""
    return {
        "pwaUrl": "https://app.example.com/",
        "appName": "Example App",
        "shortName": "Example",
        "packageId": "com.example.app",
        "display": "standalone",
        "orientation": "portrait",
        "themeColor": "#1a1a2e",
        "backgroundColor": "#ffffff",
        "iconUrl": "https://app.example.com/icon-512.png",
    }


@pytest.fixture
def build_options(build_options_data: dict[str, Any]) -> BuildOptions:
    """Validated BuildOptions for pipeline tests."""
    return BuildOptions(
        pwaUrl=build_options_data["pwaUrl"],
        appName=build_options_data["appName"],
        shortName=build_options_data["shortName"],
        packageId=build_options_data["packageId"],
        display=DisplayMode.standalone,
        orientation=OrientationMode.portrait,
        themeColor=build_options_data["themeColor"],
        backgroundColor=build_options_data["backgroundColor"],
        iconUrl=build_options_data["iconUrl"],
    )


@pytest.fixture
def store() -> BuildStore:
    """Fresh build store."""
    return BuildStore(ttl_seconds=3600)


@pytest.fixture
def token_issuer() -> BuildTokenIssuer:
    """Token issuer with a fixed secret."""
    return BuildTokenIssuer(secret=TEST_TOKEN_SECRET)


@pytest.fixture
def fake_runner() -> FakeToolRunner:
    """Scripted tool runner."""
    return FakeToolRunner()


@pytest.fixture
def work_root(tmp_path: Path) -> Path:
    """Parent directory for build working directories."""
    root = tmp_path / "builds"
    root.mkdir()
    return root


@pytest.fixture
def upstream_routes() -> dict[str, Callable[[httpx.Request], httpx.Response]]:
    """URL -> handler map served by the mock upstream transport."""
    return {}


@pytest.fixture
def upstream_transport(upstream_routes) -> httpx.MockTransport:
    """httpx transport answering from `upstream_routes`, 404 otherwise."""
    def handler(request: httpx.Request) -> httpx.Response:
        route = upstream_routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="not found")
        return route(request)

    return httpx.MockTransport(handler)


@pytest.fixture
def builder(fake_runner: FakeToolRunner, work_root: Path, tmp_path: Path, upstream_transport) -> ApkBuilder:
    """ApkBuilder wired to the fake toolchain."""
    return ApkBuilder(
        runner=fake_runner,
        android_home=tmp_path / "android-sdk",
        java_home=tmp_path / "jdk",
        build_tools_version="34.0.0",
        gradle_user_home=tmp_path / "gradle",
        bubblewrap_bin="bubblewrap",
        work_root=work_root,
        http_transport=upstream_transport,
    )


@pytest.fixture
def app(store, token_issuer, builder, upstream_transport):
    """Application with test services on app.state."""
    return create_app(
        store=store,
        token_issuer=token_issuer,
        builder=builder,
        allow_http=False,
        max_concurrent_builds=2,
        http_transport=upstream_transport,
        cors_origin="https://pwa-maker.example.com",
    )


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
