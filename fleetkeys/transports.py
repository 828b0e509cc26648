"""FleetKeys transport inventory and selection."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Sequence
from enum import Enum

from .exceptions import UserError

logger = logging.getLogger("fleetkeys")


class TransportCapability(str, Enum):
    """Mechanisms able to run commands on a password-only host."""

    # Password handed to ssh by sshpass through the environment.
    PASSWORD_INJECTION = "sshpass"
    # Interactive pexpect handshake, then batch commands over a control master.
    INTERACTIVE_HANDSHAKE = "pexpect"
    # PuTTY plink session fed the password and commands on stdin.
    STDIN_INJECTION = "plink"
    # Script copied with scp and executed once with ssh.
    UPLOAD_AND_EXECUTE = "scp-exec"


# Scriptable password injection first, script upload last.
TRANSPORT_PRIORITY: tuple[TransportCapability, ...] = (
    TransportCapability.PASSWORD_INJECTION,
    TransportCapability.INTERACTIVE_HANDSHAKE,
    TransportCapability.STDIN_INJECTION,
    TransportCapability.UPLOAD_AND_EXECUTE,
)

REQUIRED_EXECUTABLES: dict[TransportCapability, tuple[str, ...]] = {
    TransportCapability.PASSWORD_INJECTION: ("sshpass", "ssh"),
    TransportCapability.INTERACTIVE_HANDSHAKE: ("ssh",),
    TransportCapability.STDIN_INJECTION: ("plink",),
    TransportCapability.UPLOAD_AND_EXECUTE: ("scp", "ssh"),
}


def parse_transports(names: Sequence[str] | None) -> list[TransportCapability] | None:
    """Convert --transport values to capabilities (None means all)."""
    if not names:
        return None
    result = []
    for name in names:
        try:
            result.append(TransportCapability(name))
        except ValueError:
            choices = ", ".join(t.value for t in TRANSPORT_PRIORITY)
            raise UserError(f"Unknown transport '{name}'. Choose from: {choices}")
    return result


class TransportSelector:
    """Answers which transports can be used right now, in priority order."""

    def __init__(
        self,
        *,
        allowed: Sequence[TransportCapability] | None = None,
        which: Callable[[str], str | None] | None = None,
    ):
        self.allowed = set(allowed) if allowed else None
        self.which = which or shutil.which

    def missing_executables(self, capability: TransportCapability) -> list[str]:
        return [exe for exe in REQUIRED_EXECUTABLES[capability] if self.which(exe) is None]

    def inventory(self) -> list[tuple[TransportCapability, bool, list[str]]]:
        """Return (capability, available, missing executables) for every transport."""
        rows = []
        for capability in TRANSPORT_PRIORITY:
            missing = self.missing_executables(capability)
            rows.append((capability, not missing, missing))
        return rows

    def available_transports(self) -> list[TransportCapability]:
        """Transports whose executables are on PATH, highest priority first.

        Computed fresh on every call; an empty list is a valid answer.
        """
        available = []
        for capability, ok, missing in self.inventory():
            if self.allowed is not None and capability not in self.allowed:
                continue
            if not ok:
                logger.debug(
                    "Transport %s unavailable (missing: %s)", capability.value, ", ".join(missing)
                )
                continue
            available.append(capability)
        return available
