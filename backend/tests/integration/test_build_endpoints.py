"""Integration tests for the build endpoints.

Tests:
- POST /api/build
- GET /api/build/{build_id}/stream
- GET /api/build/{build_id}/download

The pipeline runs for real against the scripted FakeToolRunner.
"""

import asyncio
import json
import os

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pwa_maker import config
from pwa_maker.models import BuildStatus
from pwa_maker.services.tool_runner import BuildStage


def _parse_sse(text: str) -> tuple[list[dict], int]:
    """Return (data events, heartbeat count) from an event-stream body."""
    events, heartbeats = [], 0
    for block in text.split("\n\n"):
        if block.startswith("data: "):
            events.append(json.loads(block[len("data: "):]))
        elif block.startswith(": heartbeat"):
            heartbeats += 1
    return events, heartbeats


async def _wait_for_status(store, build_id: str, *statuses: BuildStatus, timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        job = store.get_job(build_id)
        if job is not None and job.status in statuses:
            return job
        await asyncio.sleep(0.01)
    raise AssertionError(f"build {build_id} never reached {statuses}")


@pytest_asyncio.fixture
async def build_token(client: AsyncClient) -> str:
    """A fresh token from the API."""
    response = await client.get("/api/token")
    return response.json()["data"]["token"]


@pytest.fixture
def build_request(build_options_data, build_token) -> dict:
    """Valid POST /api/build body."""
    return {**build_options_data, "buildToken": build_token}


# =============================================================================
# POST /api/build
# =============================================================================

class TestCreateBuild:
    """Tests for POST /api/build."""

    @pytest.mark.asyncio
    async def test_accepts_valid_request(self, client: AsyncClient, build_request, store):
        """Test that a valid request returns 202 with a build id."""
        response = await client.post("/api/build", json=build_request)

        assert response.status_code == 202
        build_id = response.json()["data"]["build_id"]
        assert store.get_job(build_id) is not None
        await _wait_for_status(store, build_id, BuildStatus.complete)

    @pytest.mark.asyncio
    async def test_missing_token(self, client: AsyncClient, build_options_data, store):
        """Test that a request without a token is 401."""
        response = await client.post("/api/build", json=build_options_data)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "TOKEN_INVALID"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_forged_token(self, client: AsyncClient, build_options_data):
        """Test that a forged token is 401."""
        body = {**build_options_data, "buildToken": "1700000000000." + "0" * 64}

        response = await client.post("/api/build", json=body)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_token_checked_before_validation(self, client: AsyncClient):
        """Test that an invalid body without a token still reports 401."""
        response = await client.post("/api/build", json={"pwaUrl": "nope"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_non_object_body(self, client: AsyncClient):
        """Test that a JSON array body is rejected without a token."""
        response = await client.post("/api/build", json=[1, 2])

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_json(self, client: AsyncClient):
        """Test that unparseable JSON is a validation error."""
        response = await client.post(
            "/api/build", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value,fragment",
        [
            ("pwaUrl", "http://app.example.com/", "HTTPS"),
            ("packageId", "Invalid", "packageId"),
            ("themeColor", "red", "themeColor"),
            ("appName", "x" * 51, "appName"),
            ("shortName", "<>", "shortName"),
            ("display", "browser", "display"),
        ],
    )
    async def test_validation_errors(self, client: AsyncClient, build_request, store, field, value, fragment):
        """Test that invalid options are 400 with a readable message."""
        build_request[field] = value

        response = await client.post("/api/build", json=build_request)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert fragment in error["message"]
        assert not error["message"].startswith("Value error")
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_missing_icon(self, client: AsyncClient, build_request):
        """Test that the icon URL is required."""
        del build_request["iconUrl"]

        response = await client.post("/api/build", json=build_request)

        assert response.status_code == 400
        assert "iconUrl" in response.json()["error"]["message"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [
            ("pwaUrl", "https://localhost/"),
            ("iconUrl", "https://127.0.0.1/icon.png"),
            ("maskableIconUrl", "https://169.254.169.254/icon.png"),
            ("iconUrl", "https://[::1]/icon.png"),
        ],
    )
    async def test_private_urls_blocked(self, client: AsyncClient, build_request, store, field, value):
        """Test that private destinations are 403 and create no job."""
        build_request[field] = value

        response = await client.post("/api/build", json=build_request)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "SSRF_BLOCKED"
        assert len(store) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["pwaUrl", "iconUrl", "maskableIconUrl"])
    async def test_names_resolving_to_private_addresses_blocked(
        self, client: AsyncClient, build_request, store, dns_records, field
    ):
        """Test that public-looking names pointing inside the network are 403."""
        dns_records["internal.example.com"] = ["10.0.0.5"]
        build_request[field] = "https://internal.example.com/icon.png"

        response = await client.post("/api/build", json=build_request)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "SSRF_BLOCKED"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_unresolvable_icon_host(self, client: AsyncClient, build_request, store, dns_records):
        """Test that a URL whose host does not resolve is a validation error."""
        dns_records["nowhere.example.com"] = []
        build_request["iconUrl"] = "https://nowhere.example.com/icon.png"

        response = await client.post("/api/build", json=build_request)

        assert response.status_code == 400
        assert "nowhere.example.com" in response.json()["error"]["message"]
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_oversized_body_rejected(self, client: AsyncClient, build_request, store):
        """Test that bodies over the size cap are 413 before anything else runs."""
        body = json.dumps({**build_request, "padding": "x" * config.MAX_REQUEST_BODY_BYTES})

        response = await client.post(
            "/api/build", content=body, headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 413
        assert response.json()["error"]["code"] == "PAYLOAD_TOO_LARGE"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_oversized_chunked_body_rejected(self, client: AsyncClient, build_request, store):
        """Test that the cap also applies without a Content-Length header."""
        body = json.dumps({**build_request, "padding": "x" * config.MAX_REQUEST_BODY_BYTES}).encode()

        async def chunks():
            yield body[:4096]
            yield body[4096:]

        response = await client.post(
            "/api/build", content=chunks(), headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 413
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_rate_limited_per_ip(self, client: AsyncClient, app, build_options_data):
        """Test that one IP gets BUILD_RATE_LIMIT_PER_HOUR attempts, then 429."""
        for _ in range(config.BUILD_RATE_LIMIT_PER_HOUR):
            response = await client.post("/api/build", json=build_options_data)
            assert response.status_code == 401

        limited = await client.post("/api/build", json=build_options_data)

        assert limited.status_code == 429
        assert limited.json()["data"] is None
        assert limited.json()["error"]["code"] == "RATE_LIMITED"
        assert "build requests per hour" in limited.json()["error"]["message"]
        assert int(limited.headers["retry-after"]) > 0

        # Other addresses keep their own budget
        transport = ASGITransport(app=app, client=("203.0.113.7", 4000))
        async with AsyncClient(transport=transport, base_url="http://test") as other:
            response = await other.post("/api/build", json=build_options_data)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_capacity_exceeded(self, client: AsyncClient, build_request, token_issuer, fake_runner, store):
        """Test that the third concurrent build is refused with 503."""
        fake_runner.gradle_gate = asyncio.Event()
        first = await client.post("/api/build", json=build_request)
        second = await client.post(
            "/api/build", json={**build_request, "buildToken": token_issuer.generate_token()}
        )
        assert first.status_code == 202
        assert second.status_code == 202

        third = await client.post(
            "/api/build", json={**build_request, "buildToken": token_issuer.generate_token()}
        )

        assert third.status_code == 503
        assert third.json()["error"]["code"] == "CAPACITY_EXCEEDED"
        assert len(store) == 2

        fake_runner.gradle_gate.set()
        for response in (first, second):
            await _wait_for_status(store, response.json()["data"]["build_id"], BuildStatus.complete)

        fourth = await client.post(
            "/api/build", json={**build_request, "buildToken": token_issuer.generate_token()}
        )
        assert fourth.status_code == 202
        await _wait_for_status(store, fourth.json()["data"]["build_id"], BuildStatus.complete)

    @pytest.mark.asyncio
    async def test_failed_builds_free_capacity(self, client: AsyncClient, build_request, token_issuer, fake_runner, store):
        """Test that errored builds no longer count against the cap."""
        fake_runner.exit_codes[BuildStage.keystore] = 1
        for _ in range(2):
            response = await client.post(
                "/api/build", json={**build_request, "buildToken": token_issuer.generate_token()}
            )
            await _wait_for_status(store, response.json()["data"]["build_id"], BuildStatus.error)

        response = await client.post(
            "/api/build", json={**build_request, "buildToken": token_issuer.generate_token()}
        )
        assert response.status_code == 202
        await _wait_for_status(store, response.json()["data"]["build_id"], BuildStatus.error)


# =============================================================================
# Stream
# =============================================================================

class TestStreamBuild:
    """Tests for GET /api/build/{build_id}/stream."""

    @pytest.mark.asyncio
    async def test_unknown_build(self, client: AsyncClient):
        """Test that streaming an unknown build is 404."""
        response = await client.get("/api/build/does-not-exist/stream")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "BUILD_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_stream_replays_after_completion(self, client: AsyncClient, build_request, store):
        """Test that a late subscriber gets the full history and the stream ends."""
        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]
        await _wait_for_status(store, build_id, BuildStatus.complete)

        response = await client.get(f"/api/build/{build_id}/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"

        events, _ = _parse_sse(response.text)
        assert events[0] == {"type": "log", "message": "Build started…", "percent": 5}
        assert events[-1]["type"] == "complete"
        assert events[-1]["percent"] == 100
        percents = [e["percent"] for e in events]
        assert percents == sorted(percents)

    @pytest.mark.asyncio
    async def test_stream_follows_live_build(self, client: AsyncClient, build_request, fake_runner):
        """Test that a subscriber attached mid-build sees every event once, in order."""
        fake_runner.gradle_gate = asyncio.Event()
        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]

        stream = asyncio.create_task(client.get(f"/api/build/{build_id}/stream"))
        await asyncio.sleep(0.05)
        fake_runner.gradle_gate.set()
        response = await asyncio.wait_for(stream, timeout=5)

        events, _ = _parse_sse(response.text)
        messages = [e.get("message") for e in events]
        assert messages.count("Build started…") == 1
        assert "> Task :app:assembleRelease" in messages
        assert events[-1]["type"] == "complete"
        assert sum(1 for e in events if e["type"] in ("complete", "error")) == 1

    @pytest.mark.asyncio
    async def test_stream_reports_failure(self, client: AsyncClient, build_request, fake_runner):
        """Test that a failed build ends the stream with an error event."""
        fake_runner.exit_codes[BuildStage.compile] = 1

        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]
        response = await asyncio.wait_for(client.get(f"/api/build/{build_id}/stream"), timeout=5)

        events, _ = _parse_sse(response.text)
        assert events[-1]["type"] == "error"
        assert "Gradle build failed with exit code 1" in events[-1]["message"]
        assert not any(e["type"] == "complete" for e in events)

    @pytest.mark.asyncio
    async def test_heartbeat_while_idle(self, client: AsyncClient, build_request, fake_runner, monkeypatch):
        """Test that heartbeat comments are sent while no events arrive."""
        monkeypatch.setattr("pwa_maker.api.routes.build.HEARTBEAT_INTERVAL_SECONDS", 0.02)
        fake_runner.gradle_gate = asyncio.Event()
        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]

        stream = asyncio.create_task(client.get(f"/api/build/{build_id}/stream"))
        await asyncio.sleep(0.2)
        fake_runner.gradle_gate.set()
        response = await asyncio.wait_for(stream, timeout=5)

        events, heartbeats = _parse_sse(response.text)
        assert heartbeats >= 1
        assert events[-1]["type"] == "complete"

    @pytest.mark.asyncio
    async def test_listener_removed_after_stream(self, client: AsyncClient, build_request, store):
        """Test that finished streams unsubscribe."""
        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]
        await client.get(f"/api/build/{build_id}/stream")

        assert store.get_job(build_id).listeners == []


# =============================================================================
# Download
# =============================================================================

class TestDownloadBuild:
    """Tests for GET /api/build/{build_id}/download."""

    @pytest.mark.asyncio
    async def test_end_to_end_single_download(self, client: AsyncClient, build_request, store):
        """Test build -> stream -> download once -> second download 404."""
        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]
        await client.get(f"/api/build/{build_id}/stream")
        work_dir = store.get_job(build_id).work_dir

        response = await client.get(f"/api/build/{build_id}/download")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/vnd.android.package-archive"
        assert 'filename="ExampleApp.apk"' in response.headers["content-disposition"]
        assert response.content == b"PK\x03\x04 signed apk"

        # Job and working directory are gone after the response
        assert store.get_job(build_id) is None
        for _ in range(100):
            if not os.path.exists(work_dir):
                break
            await asyncio.sleep(0.01)
        assert not os.path.exists(work_dir)

        again = await client.get(f"/api/build/{build_id}/download")
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "BUILD_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_download_unknown(self, client: AsyncClient):
        """Test that an unknown build is 404."""
        response = await client.get("/api/build/nope/download")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_download_before_complete(self, client: AsyncClient, build_request, fake_runner, store):
        """Test that downloading a running build is 409."""
        fake_runner.gradle_gate = asyncio.Event()
        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]

        response = await client.get(f"/api/build/{build_id}/download")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "BUILD_NOT_READY"

        fake_runner.gradle_gate.set()
        await _wait_for_status(store, build_id, BuildStatus.complete)

    @pytest.mark.asyncio
    async def test_download_failed_build(self, client: AsyncClient, build_request, fake_runner, store):
        """Test that a failed build has nothing to download."""
        fake_runner.exit_codes[BuildStage.sign] = 1
        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]
        await _wait_for_status(store, build_id, BuildStatus.error)

        response = await client.get(f"/api/build/{build_id}/download")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_download_missing_file(self, client: AsyncClient, build_request, store):
        """Test that a completed build whose APK vanished is 410."""
        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]
        job = await _wait_for_status(store, build_id, BuildStatus.complete)
        os.remove(job.apk_path)

        response = await client.get(f"/api/build/{build_id}/download")

        assert response.status_code == 410
        assert response.json()["error"]["code"] == "ARTIFACT_EXPIRED"

    @pytest.mark.asyncio
    async def test_concurrent_downloads_serve_apk_once(self, client: AsyncClient, build_request, store):
        """Test that overlapping download requests yield one APK and one 404."""
        build_id = (await client.post("/api/build", json=build_request)).json()["data"]["build_id"]
        await _wait_for_status(store, build_id, BuildStatus.complete)

        responses = await asyncio.gather(
            client.get(f"/api/build/{build_id}/download"),
            client.get(f"/api/build/{build_id}/download"),
        )

        statuses = sorted(r.status_code for r in responses)
        assert statuses == [200, 404]
        assert store.get_job(build_id) is None
