"""Error taxonomy shared by the fleetdash services.

Transport and backend failures are raised by the API client, geometry and
validation failures by the services that detect them. ``LargeFileWarning`` and
``UserDeclinedLargeFile`` are control-flow signals rather than failures.
"""

from dataclasses import dataclass, field


class FleetDashError(Exception):
    """Base exception for fleetdash errors."""

    retryable: bool = False


class NetworkError(FleetDashError):
    """Backend unreachable or request timed out."""

    retryable = True


class BackendError(FleetDashError):
    """Backend answered with a non-2xx status."""

    RETRYABLE_STATUSES = (502, 503, 504)

    def __init__(self, status_code: int, message: str | None = None, payload: dict | None = None):
        self.status_code = status_code
        self.message = message or f"Backend returned HTTP {status_code}"
        self.payload = payload or {}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        # 502/503/504 are what the backend returns while it restarts
        return self.status_code in self.RETRYABLE_STATUSES


class AuthenticationRequired(FleetDashError):
    """Session is missing or expired (HTTP 401)."""


class ParseError(FleetDashError):
    """Malformed or unsupported geometry/file content."""


class DownloadError(FleetDashError):
    """Full file download failed."""

    def __init__(self, file_id: int, reason: str):
        self.file_id = file_id
        super().__init__(f"Failed to download library file {file_id}: {reason}")


class ValidationError(FleetDashError):
    """Rejected on the client before any request was sent."""


class LargeFileWarning(FleetDashError):
    """Download exceeds the large-file threshold and needs explicit confirmation."""

    def __init__(self, size_bytes: int, threshold: int):
        self.size_bytes = size_bytes
        self.threshold = threshold
        super().__init__(
            f"File is {size_bytes / 1024 / 1024:.1f}MB (limit {threshold / 1024 / 1024:.0f}MB), confirmation required"
        )


class UserDeclinedLargeFile(FleetDashError):
    """The user chose not to load a large file."""

    def __init__(self, size_bytes: int):
        self.size_bytes = size_bytes
        super().__init__(f"Loading declined for {size_bytes} byte file")


@dataclass
class BatchResult:
    """Summary of a batch operation where each item may fail on its own."""

    succeeded: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def record_success(self):
        self.succeeded += 1

    def record_failure(self, item: object, error: BaseException):
        self.failed += 1
        self.errors[str(item)] = str(error)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def summary(self, verb: str, noun: str = "file(s)") -> str:
        message = f"{verb} {self.succeeded} {noun}"
        if self.failed:
            message += f", {self.failed} failed"
        return message
