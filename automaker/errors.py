"""Exception hierarchy shared by every Automaker component.

All errors derive from ``AutomakerError`` so request handlers can convert any
of them into a ``{"success": False, "error": ...}`` response without
inspecting component-specific shapes.
"""

from __future__ import annotations


class AutomakerError(Exception):
    """Base class for all Automaker errors."""


class ValidationError(AutomakerError):
    """A request is missing a required field or carries an unusable value."""


class SymlinkLoopError(AutomakerError):
    """Directory creation failed because the path runs through a symlink cycle."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Cannot create directory: symlink loop detected in path {path}")


class GitOperationError(AutomakerError):
    """Raised when a git command fails or the target is not a usable repository."""

    def __init__(self, message: str, command: str = "", stderr: str = "") -> None:
        self.command = command
        self.stderr = stderr
        super().__init__(message)


class NothingToCommitError(GitOperationError):
    """Raised by ``commit`` when the working tree has no staged changes."""


class ProcessSpawnError(AutomakerError):
    """An external process (preview server, test command, agent CLI) could not start."""

    def __init__(self, message: str, command: str = "") -> None:
        self.command = command
        super().__init__(message)


class DependencyCycleError(AutomakerError):
    """Adding a dependency edge would make the feature graph cyclic."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class OperationCancelled(AutomakerError):
    """Cooperative cancellation was requested through a ``CancellationToken``."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(AutomakerError):
    """Classified failure from an agent provider call.

    ``type`` is one of ``authentication``, ``rate_limit``, ``network``,
    ``invalid_request`` or ``unknown`` so callers can branch without looking at
    vendor-specific error payloads.
    """

    type: str = "unknown"

    def __init__(self, message: str, original: BaseException | None = None) -> None:
        self.original = original
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"type": self.type, "message": str(self)}


class AuthenticationError(ProviderError):
    type = "authentication"


class RateLimitError(ProviderError):
    type = "rate_limit"

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        original: BaseException | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, original=original)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retryAfter"] = self.retry_after
        return data


class NetworkError(ProviderError):
    type = "network"


class InvalidRequestError(ProviderError):
    type = "invalid_request"


class UnknownProviderError(ProviderError):
    type = "unknown"
