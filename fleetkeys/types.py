"""Data types shared by runners, the engine and the CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .transports import TransportCapability


@dataclass
class HostTarget:
    """A host to provision. Never persisted; the password stays out of repr."""

    hostname: str
    username: str
    password: str = field(repr=False, default="")


@dataclass
class CommandOutcome:
    """Exit status of one command; None when the transport could not see it."""

    command: str
    exit_code: int | None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class RunResult:
    """What a command runner observed for one command sequence."""

    succeeded: bool
    outcomes: list[CommandOutcome]
    output: str = ""


@dataclass
class ProvisioningResult:
    """Outcome of provisioning one host."""

    host: str
    succeeded: bool
    transport_used: TransportCapability | None = None
    verified: bool = False
    error: str | None = None
    user: str | None = None
    attempts: list[dict[str, Any]] = field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "user": self.user,
            "ok": self.succeeded,
            "transport": self.transport_used.value if self.transport_used else None,
            "verified": self.verified,
            "error": self.error,
            "attempts": self.attempts,
        }
