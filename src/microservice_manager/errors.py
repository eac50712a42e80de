"""Error taxonomy for the microservice manager.

Every fatal condition a command can hit is a ``ManagerError`` subclass.
The CLI prints the message and exits with ``exit_code``.
"""

from __future__ import annotations


class ManagerError(Exception):
    """Base class for all fatal manager errors."""

    exit_code = 1


class LockTimeout(ManagerError):
    """The registry lock was not acquired within the configured bound.

    Recover by retrying, or by removing the lock directory by hand when the
    previous holder is known to have crashed.
    """

    exit_code = 10

    def __init__(self, path: str, waited: float) -> None:
        super().__init__(
            f"Could not acquire lock {path} after {waited:.1f}s. "
            f"If no other manager is running, remove it manually and retry."
        )
        self.path = path
        self.waited = waited


class NoPortAvailable(ManagerError):
    """Every port in the scanned range is in use."""

    exit_code = 11

    def __init__(self, start_port: int, end_port: int) -> None:
        super().__init__(f"No open port found between {start_port} and {end_port}.")
        self.start_port = start_port
        self.end_port = end_port


class LaunchError(ManagerError):
    """The container runtime failed to launch the instance."""

    exit_code = 12


class ReadinessTimeout(ManagerError):
    """The instance launched but never answered its readiness probe."""

    exit_code = 13

    def __init__(self, url: str, attempts: int) -> None:
        super().__init__(f"Application did not become ready in time ({url}, {attempts} attempts).")
        self.url = url
        self.attempts = attempts


class RegistryIOError(ManagerError):
    """Reading or writing the shared services file failed."""

    exit_code = 14


class FetchError(ManagerError):
    """Retrieving a remote payload or version marker failed."""

    exit_code = 15

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to download {url}: {reason}")
        self.url = url
        self.reason = reason


class UpdateFailed(ManagerError):
    """An explicitly requested self-update could not complete."""

    exit_code = 16


class ExternalToolError(ManagerError):
    """A build, packaging or conversion tool exited unsuccessfully."""

    exit_code = 17


class ImageResolutionError(ManagerError):
    """No image reference could be determined for the service."""

    exit_code = 18
