"""FleetKeys exception classes."""

from __future__ import annotations


class FleetKeysError(RuntimeError):
    """Base exception for FleetKeys errors."""


class UserError(FleetKeysError):
    """Errors that should be shown to user without traceback."""

    def __init__(self, message: str, rc: int = 2):
        super().__init__(message)
        self.rc = rc


class CommandFailureError(FleetKeysError):
    """Command failed - error message already printed, just need to exit.

    This exception is for cases where a command has already printed
    its error message and just needs to signal failure without
    additional output from main().
    """

    def __init__(self, rc: int = 1):
        super().__init__("")
        self.rc = rc


class KeyMaterialError(FleetKeysError):
    """Local key pair is missing or unusable."""


class KeyGenerationError(KeyMaterialError):
    """ssh-keygen is unavailable or could not create the key pair."""


class TrustPrimingWarning(FleetKeysError):
    """Host key could not be fetched; provisioning continues without it."""


class TransportUnavailable(FleetKeysError):
    """A transport's backing executable is not on PATH."""


class TransportExecutionFailure(FleetKeysError):
    """A transport attempt failed (timeout, auth rejected, connection dropped)."""

    def __init__(self, transport: str, message: str):
        super().__init__(f"{transport}: {message}")
        self.transport = transport


class VerificationFailure(FleetKeysError):
    """Key-based login could not be confirmed after install."""
