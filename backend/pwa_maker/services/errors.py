"""Service error hierarchy.

Two families:
- FetchError: outbound fetches on behalf of the user (manifest, page, icon).
  Raised synchronously to API callers and mapped to HTTP statuses.
- BuildError: pipeline stage failures. Caught by the build runner and
  recorded on the job, never raised to an unrelated caller.
"""


class FetchError(Exception):
    """Base exception for user-driven outbound fetches."""

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.url = url


class SSRFBlockedError(FetchError):
    """Destination host is loopback, private, link-local or a metadata endpoint.

    Maps to 403: the request itself is forbidden, this is not a server fault.
    """

    def __init__(self, hostname: str, url: str | None = None):
        super().__init__(
            f"Requests to private or internal hosts are not allowed: {hostname}",
            url,
        )
        self.hostname = hostname


class HostResolutionError(FetchError):
    """Destination hostname did not resolve to any address."""

    def __init__(self, hostname: str, url: str | None = None):
        super().__init__(f"Could not resolve host: {hostname}", url)
        self.hostname = hostname


class ManifestFetchError(FetchError):
    """Upstream returned a non-2xx response, or could not be reached at all.

    `status` is None when no HTTP response was received.
    """

    def __init__(
        self,
        status: int | None,
        url: str,
        what: str = "manifest",
        detail: str | None = None,
    ):
        if status is not None:
            message = f"Failed to fetch {what} ({status}): {url}"
        else:
            message = f"Failed to fetch {what}: {url}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, url)
        self.status = status


class ManifestLinkNotFoundError(FetchError):
    """HTML page has no <link rel="manifest">."""

    def __init__(self, url: str):
        super().__init__(
            'No <link rel="manifest"> found on the page. '
            "Provide the direct manifest JSON URL instead.",
            url,
        )


class InvalidManifestError(FetchError):
    """Manifest body is not a JSON object."""

    pass


class FetchTimeoutError(FetchError):
    """Fetch exceeded its deadline."""

    def __init__(self, url: str, timeout: float):
        super().__init__(f"Timed out after {timeout:g}s fetching {url}", url)
        self.timeout = timeout


class BuildError(Exception):
    """Base exception for build pipeline failures."""

    pass


class ToolFailureError(BuildError):
    """An external tool exited non-zero.

    The message is the tool's own diagnostic text where it produced one,
    so users can fix their PWA without server log access.
    """

    def __init__(self, stage: str, exit_code: int | None, message: str):
        super().__init__(message)
        self.stage = stage
        self.exit_code = exit_code


class ArtifactNotFoundError(BuildError):
    """No APK in the expected output directory after the build claimed success."""

    def __init__(self, directory: str, detail: str = ""):
        message = f"No APK found in {directory}."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)
        self.directory = directory
