"""Custom exception classes for the API."""


class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TokenInvalidError(Exception):
    """Raised when a build request carries a missing, expired or forged token."""

    def __init__(self):
        super().__init__("Invalid or expired build token. Please reload the page and try again.")


class CapacityExceededError(Exception):
    """Raised when the concurrent build limit is reached."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            f"Server is busy ({limit} builds in progress). Please retry in a few minutes."
        )


class BuildNotFoundError(Exception):
    """Raised when a build is not found (unknown, downloaded or expired)."""

    def __init__(self, build_id: str):
        self.build_id = build_id
        super().__init__(f"Build with ID '{build_id}' not found")


class BuildNotReadyError(Exception):
    """Raised when a download is requested before the build completed."""

    def __init__(self, build_id: str, status: str):
        self.build_id = build_id
        self.status = status
        super().__init__(f"Build '{build_id}' is not complete (status: {status})")


class ArtifactExpiredError(Exception):
    """Raised when a completed build's APK is no longer on disk."""

    def __init__(self, build_id: str):
        self.build_id = build_id
        super().__init__(f"The APK for build '{build_id}' is no longer available")


class PayloadTooLargeError(Exception):
    """Raised when a request body exceeds the accepted size."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Request body too large (limit {limit // 1024}kb)")
